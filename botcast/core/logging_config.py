"""
Logging configuration for botcast.
File-based logging with rotation plus a dedicated delivery log that keeps the
full lifecycle of every queued delivery in one place.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, MutableMapping, Optional, Tuple


# Create logs directory
LOGS_DIR = Path(__file__).parent.parent.parent / "logs"

# Log files
ERROR_LOG_FILE = LOGS_DIR / "error.log"
DEBUG_LOG_FILE = LOGS_DIR / "debug.log"
DELIVERY_LOG_FILE = LOGS_DIR / "delivery.log"

DELIVERY_LOGGER_NAME = "botcast.delivery"


class ColoredFormatter(logging.Formatter):
    """Colored console formatter for better readability"""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record):
        levelname = record.levelname
        log_color = self.COLORS.get(levelname, self.COLORS['RESET'])
        record.levelname = f"{log_color}{levelname}{self.COLORS['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def setup_logging(app_name: str = "botcast", level: str = "INFO", log_to_files: bool = True):
    """
    Setup logging with console and rotating file handlers.

    Creates three log files:
    - error.log: Only ERROR and CRITICAL messages
    - debug.log: All DEBUG and above messages
    - delivery.log: Queue job lifecycle (enqueue, dispatch, outcome)
    """

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # ═══════════════════════════════════════════════════════════
    # Console Handler - with colors
    # ═══════════════════════════════════════════════════════════
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(ColoredFormatter('%(levelname)s | %(name)s | %(message)s'))
    root_logger.addHandler(console_handler)

    if not log_to_files:
        return root_logger

    LOGS_DIR.mkdir(exist_ok=True)

    # ═══════════════════════════════════════════════════════════
    # ERROR Log File - Rotating, only errors
    # ═══════════════════════════════════════════════════════════
    error_handler = logging.handlers.RotatingFileHandler(
        ERROR_LOG_FILE,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding='utf-8'
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(filename)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(error_handler)

    # ═══════════════════════════════════════════════════════════
    # DEBUG Log File - Rotating, all messages
    # ═══════════════════════════════════════════════════════════
    debug_handler = logging.handlers.RotatingFileHandler(
        DEBUG_LOG_FILE,
        maxBytes=20 * 1024 * 1024,  # 20 MB
        backupCount=5,
        encoding='utf-8'
    )
    debug_handler.setLevel(logging.DEBUG)
    debug_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(name)-30s | %(filename)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(debug_handler)

    # ═══════════════════════════════════════════════════════════
    # Delivery Log File - queue job lifecycle only
    # ═══════════════════════════════════════════════════════════
    delivery_handler = logging.handlers.RotatingFileHandler(
        DELIVERY_LOG_FILE,
        maxBytes=20 * 1024 * 1024,  # 20 MB
        backupCount=5,
        encoding='utf-8'
    )
    delivery_handler.setLevel(logging.DEBUG)
    delivery_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    delivery_logger = logging.getLogger(DELIVERY_LOGGER_NAME)
    delivery_logger.addHandler(delivery_handler)
    delivery_logger.setLevel(logging.DEBUG)
    delivery_logger.propagate = True  # Also send to root handlers

    logger = logging.getLogger(__name__)
    logger.info(f"{'='*60}")
    logger.info(f"Logging initialized for {app_name}")
    logger.info(f"Log directory: {LOGS_DIR}")
    logger.info(f"Delivery log: {DELIVERY_LOG_FILE}")
    logger.info(f"{'='*60}")

    return root_logger


def get_delivery_logger() -> logging.Logger:
    """Get logger for queue job lifecycle events"""
    return logging.getLogger(DELIVERY_LOGGER_NAME)


class JobLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the job correlation fields."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        ctx = self.extra
        prefix = (
            f"[job={ctx.get('job_id')} campaign={ctx.get('campaign_id')} "
            f"recipient={ctx.get('recipient_id')} attempt={ctx.get('attempt')}]"
        )
        return f"{prefix} {msg}", kwargs


def job_logger(job, logger: Optional[logging.Logger] = None) -> JobLoggerAdapter:
    """Logger carrying campaign id, recipient id, job id and attempt number."""
    return JobLoggerAdapter(
        logger or get_delivery_logger(),
        {
            "job_id": getattr(job, "id", None),
            "campaign_id": getattr(job, "campaign_id", None),
            "recipient_id": getattr(job, "recipient_id", None),
            "attempt": (getattr(job, "attempt_count", 0) or 0) + 1,
        },
    )
