# botcast/services/scheduling.py
"""
Pure time helpers consulted before dispatch:
due timestamps, hour-of-day windows, daily cap bounds and retry backoff.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from botcast.core.config import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_MAX_SECONDS,
    BACKOFF_MULTIPLIER,
    DEFAULT_TIMEZONE,
)

log = logging.getLogger("botcast.scheduling")

MAX_DELAY_MINUTES = 7 * 24 * 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo), convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def clamp_delay(delay_minutes) -> int:
    try:
        delay = int(delay_minutes or 0)
    except (TypeError, ValueError):
        delay = 0
    return max(0, min(MAX_DELAY_MINUTES, delay))


def compute_due_at(delay_minutes, trigger_time: Optional[datetime] = None) -> datetime:
    """trigger_time + delay, with the delay clamped to [0, one week]."""
    base = as_utc(trigger_time) or utcnow()
    return base + timedelta(minutes=clamp_delay(delay_minutes))


def is_within_window(hour: int, start: Optional[int], end: Optional[int]) -> bool:
    """
    Hour-of-day gate.

    start <= hour < end for a normal window; start > end wraps around midnight
    (22-6 accepts 23 and 2). Unset bounds or start == end mean the whole day.
    """
    if start is None or end is None or start == end:
        return True
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning(f"⚠️ Unknown timezone '{name}', falling back to {DEFAULT_TIMEZONE}")
        try:
            return ZoneInfo(DEFAULT_TIMEZONE)
        except (ZoneInfoNotFoundError, ValueError):
            return ZoneInfo("UTC")


def local_hour(now: datetime, tz_name: Optional[str]) -> int:
    return as_utc(now).astimezone(resolve_timezone(tz_name)).hour


def local_day_bounds(now: datetime, tz_name: Optional[str]) -> Tuple[datetime, datetime]:
    """UTC [start, end) of the local calendar day containing `now`."""
    tz = resolve_timezone(tz_name)
    local_now = as_utc(now).astimezone(tz)
    start_local = datetime(local_now.year, local_now.month, local_now.day, tzinfo=tz)
    next_day = local_now.date() + timedelta(days=1)
    end_local = datetime(next_day.year, next_day.month, next_day.day, tzinfo=tz)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def backoff_seconds(
    attempt: int,
    base: float = BACKOFF_BASE_SECONDS,
    multiplier: float = BACKOFF_MULTIPLIER,
    max_delay: float = BACKOFF_MAX_SECONDS,
) -> float:
    """min(max_delay, base * multiplier ** (attempt - 1)), attempt counted from 1."""
    attempt = max(1, int(attempt))
    try:
        delay = base * (multiplier ** (attempt - 1))
    except OverflowError:
        return float(max_delay)
    return float(min(max_delay, delay))
