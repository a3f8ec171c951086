from datetime import datetime, timedelta, timezone

from botcast.services import scheduling
from botcast.services.scheduling import (
    backoff_seconds,
    compute_due_at,
    is_within_window,
    local_day_bounds,
    local_hour,
)

T0 = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def test_wraparound_window_accepts_night_hours():
    assert is_within_window(23, 22, 6) is True
    assert is_within_window(2, 22, 6) is True
    assert is_within_window(22, 22, 6) is True
    assert is_within_window(10, 22, 6) is False
    assert is_within_window(6, 22, 6) is False


def test_regular_window_is_half_open():
    assert is_within_window(9, 9, 18) is True
    assert is_within_window(17, 9, 18) is True
    assert is_within_window(18, 9, 18) is False
    assert is_within_window(8, 9, 18) is False


def test_missing_or_empty_window_means_whole_day():
    assert is_within_window(3, None, None) is True
    assert is_within_window(3, 9, None) is True
    assert is_within_window(3, 9, 9) is True


def test_backoff_grows_and_caps():
    delays = [backoff_seconds(attempt) for attempt in range(1, 10)]

    assert delays[:3] == [30.0, 120.0, 480.0]
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert max(delays) == 900.0


def test_backoff_custom_parameters():
    assert backoff_seconds(1, base=10, multiplier=2, max_delay=50) == 10
    assert backoff_seconds(3, base=10, multiplier=2, max_delay=50) == 40
    assert backoff_seconds(4, base=10, multiplier=2, max_delay=50) == 50
    assert backoff_seconds(0, base=10, multiplier=2, max_delay=50) == 10


def test_compute_due_at_clamps_delay():
    assert compute_due_at(15, T0) == T0 + timedelta(minutes=15)
    assert compute_due_at(-5, T0) == T0
    assert compute_due_at(None, T0) == T0
    assert compute_due_at(50_000, T0) == T0 + timedelta(minutes=10080)


def test_compute_due_at_treats_naive_as_utc():
    naive = datetime(2026, 10, 17, 12, 0)
    assert compute_due_at(10, naive) == T0 + timedelta(minutes=10)


def test_local_day_bounds_follow_the_campaign_timezone():
    # 02:00 UTC is still the previous day in Sao Paulo (UTC-3)
    now = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)

    start, end = local_day_bounds(now, "America/Sao_Paulo")

    assert start == datetime(2026, 3, 9, 3, 0, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)


def test_local_hour_and_unknown_timezone(monkeypatch):
    now = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)
    assert local_hour(now, "America/Sao_Paulo") == 23
    assert local_hour(now, "UTC") == 2

    monkeypatch.setattr(scheduling, "DEFAULT_TIMEZONE", "UTC")
    assert local_hour(now, "Not/A_Zone") == 2
