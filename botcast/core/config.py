# botcast/core/config.py
"""
Application configuration - loads from environment variables.
Single source of truth for all settings.
"""
import os
from typing import Optional
from urllib.parse import quote_plus
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables FIRST
BASE_DIR = Path(__file__).resolve().parent.parent.parent
env_path = BASE_DIR / '.env'
load_dotenv(dotenv_path=env_path)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() not in ("0", "false", "no", "off")


# ────────────────────────────────────────────
# Telegram Bot API
# ────────────────────────────────────────────
TELEGRAM_API_BASE: str = os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org")
TELEGRAM_TIMEOUT_SECONDS: float = _env_float("TELEGRAM_TIMEOUT_SECONDS", 30.0)

# Provider limits
TEXT_LIMIT: int = 4096
CAPTION_LIMIT: int = 1024

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "America/Sao_Paulo")

# ────────────────────────────────────────────
# Broadcast engine
# ────────────────────────────────────────────
WORKERS_ENABLED: bool = _env_bool("WORKERS_ENABLED", True)
WORKER_INTERVAL_SECONDS: float = _env_float("WORKER_INTERVAL_SECONDS", 7.0)
WORKER_BATCH_SIZE: int = _env_int("WORKER_BATCH_SIZE", 25)
MAX_ATTEMPTS: int = _env_int("MAX_ATTEMPTS", 3)
BACKOFF_BASE_SECONDS: float = _env_float("BACKOFF_BASE_SECONDS", 30.0)
BACKOFF_MULTIPLIER: float = _env_float("BACKOFF_MULTIPLIER", 4.0)
BACKOFF_MAX_SECONDS: float = _env_float("BACKOFF_MAX_SECONDS", 900.0)
STUCK_TIMEOUT_MINUTES: int = _env_int("STUCK_TIMEOUT_MINUTES", 30)
DISPATCH_CONCURRENCY: int = _env_int("DISPATCH_CONCURRENCY", 10)
RATE_PER_SECOND: float = _env_float("RATE_PER_SECOND", 25.0)
RATE_LIMIT_MAX_PAUSE_SECONDS: float = _env_float("RATE_LIMIT_MAX_PAUSE_SECONDS", 60.0)
ENQUEUE_BATCH_SIZE: int = _env_int("ENQUEUE_BATCH_SIZE", 500)
LAST_ERROR_MAX_LENGTH: int = 500

# ────────────────────────────────────────────
# Database Configuration
# ────────────────────────────────────────────
DB_USER = os.getenv("DB_USER", "postgres")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "botcast_db")
DATABASE_URL = os.getenv("DATABASE_URL")

# Build DATABASE_URL
if not DATABASE_URL:
    encoded_password = quote_plus(DB_PASSWORD)
    DATABASE_URL = f"postgresql://{DB_USER}:{encoded_password}@{DB_HOST}:{DB_PORT}/{DB_NAME}"

# ────────────────────────────────────────────
# JWT Configuration
# ────────────────────────────────────────────
JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "")
JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
DEFAULT_TENANT_ID: Optional[str] = os.getenv("TENANT_ID") or os.getenv("DEFAULT_TENANT_ID")

if not JWT_SECRET_KEY:
    import warnings
    warnings.warn("JWT_SECRET_KEY not set!")


# ────────────────────────────────────────────
# Settings Class
# ────────────────────────────────────────────
class Settings:
    DATABASE_URL: str = DATABASE_URL
    TELEGRAM_API_BASE: str = TELEGRAM_API_BASE
    TELEGRAM_TIMEOUT_SECONDS: float = TELEGRAM_TIMEOUT_SECONDS
    TEXT_LIMIT: int = TEXT_LIMIT
    CAPTION_LIMIT: int = CAPTION_LIMIT
    LOG_LEVEL: str = LOG_LEVEL
    DEFAULT_TIMEZONE: str = DEFAULT_TIMEZONE
    WORKERS_ENABLED: bool = WORKERS_ENABLED
    WORKER_INTERVAL_SECONDS: float = WORKER_INTERVAL_SECONDS
    WORKER_BATCH_SIZE: int = WORKER_BATCH_SIZE
    MAX_ATTEMPTS: int = MAX_ATTEMPTS
    BACKOFF_BASE_SECONDS: float = BACKOFF_BASE_SECONDS
    BACKOFF_MULTIPLIER: float = BACKOFF_MULTIPLIER
    BACKOFF_MAX_SECONDS: float = BACKOFF_MAX_SECONDS
    STUCK_TIMEOUT_MINUTES: int = STUCK_TIMEOUT_MINUTES
    DISPATCH_CONCURRENCY: int = DISPATCH_CONCURRENCY
    RATE_PER_SECOND: float = RATE_PER_SECOND
    RATE_LIMIT_MAX_PAUSE_SECONDS: float = RATE_LIMIT_MAX_PAUSE_SECONDS
    ENQUEUE_BATCH_SIZE: int = ENQUEUE_BATCH_SIZE
    LAST_ERROR_MAX_LENGTH: int = LAST_ERROR_MAX_LENGTH
    JWT_SECRET_KEY: str = JWT_SECRET_KEY
    JWT_ALGORITHM: str = JWT_ALGORITHM

settings = Settings()
