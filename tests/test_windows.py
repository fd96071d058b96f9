from datetime import datetime, timedelta, timezone

from zoneinfo import ZoneInfo

from utils.windows import (
    EPOCH,
    ONE_US,
    Window,
    bucket_windows,
    daily_windows,
    hourly_windows,
    parse_range,
    range_window,
    span_of,
)

NOW = datetime(2026, 3, 10, 14, 25, 30, 123456)


def _assert_contiguous(windows):
    for prev, nxt in zip(windows, windows[1:]):
        assert nxt.start == prev.end + ONE_US


def test_parse_range_aliases_and_fallback():
    assert parse_range("24h") == "24h"
    assert parse_range("today") == "24h"
    assert parse_range("week") == "7d"
    assert parse_range("MONTH") == "30d"
    assert parse_range("1y") == "1y"
    assert parse_range("all") == "all"
    assert parse_range("bogus") == "30d"
    assert parse_range(None) == "30d"


def test_window_contains_is_inclusive():
    w = Window(datetime(2026, 1, 1), datetime(2026, 1, 1, 23, 59, 59, 999999))
    assert w.contains(w.start)
    assert w.contains(w.end)
    assert not w.contains(w.end + ONE_US)
    assert not w.contains(None)


def test_clip_to_now():
    w = Window(datetime(2026, 1, 1), datetime(2026, 1, 2))
    clipped = w.clip_to_now(datetime(2026, 1, 1, 6))
    assert clipped.end == datetime(2026, 1, 1, 6)
    assert w.clip_to_now(datetime(2026, 2, 1)) is w


def test_hourly_windows_end_at_now():
    windows = hourly_windows(NOW, timezone.utc)
    assert len(windows) == 24
    _assert_contiguous(windows)
    assert windows[-1].contains(NOW)
    assert windows[-1].end == NOW
    assert windows[-1].label == "14:00"
    assert windows[0].start == datetime(2026, 3, 9, 15, 0)
    assert windows[0].end == datetime(2026, 3, 9, 15, 59, 59, 999999)


def test_daily_windows_cover_whole_days():
    windows = daily_windows(NOW, 30, timezone.utc)
    assert len(windows) == 30
    _assert_contiguous(windows)
    assert windows[0].start == datetime(2026, 2, 9)
    assert windows[0].label == "2026-02-09"
    assert windows[-2].end == datetime(2026, 3, 9, 23, 59, 59, 999999)
    assert windows[-1].start == datetime(2026, 3, 10)
    assert windows[-1].end == NOW


def test_daily_windows_follow_stats_timezone():
    now = datetime(2026, 1, 15, 12, 0)
    windows = daily_windows(now, 2, ZoneInfo("America/New_York"))
    # EST is UTC-5 in January
    assert windows[-1].start == datetime(2026, 1, 15, 5, 0)
    assert windows[-1].label == "2026-01-15"
    assert windows[0].start == datetime(2026, 1, 14, 5, 0)
    assert windows[0].end == datetime(2026, 1, 15, 4, 59, 59, 999999)


def test_bucket_counts_per_range():
    assert len(bucket_windows("24h", NOW, timezone.utc)) == 24
    assert len(bucket_windows("7d", NOW, timezone.utc)) == 7
    assert len(bucket_windows("30d", NOW, timezone.utc)) == 30
    assert len(bucket_windows("90d", NOW, timezone.utc)) == 90
    assert len(bucket_windows("1y", NOW, timezone.utc)) == 365
    assert len(bucket_windows("all", NOW, timezone.utc)) == 90


def test_range_window():
    assert range_window("all", NOW, timezone.utc).start == EPOCH
    assert range_window("all", NOW, timezone.utc).end == NOW
    span = span_of(bucket_windows("7d", NOW, timezone.utc))
    w = range_window("7d", NOW, timezone.utc)
    assert w.start == span.start == datetime(2026, 3, 4)
    assert w.end == NOW
    assert range_window("24h", NOW, timezone.utc).start == NOW.replace(minute=0, second=0, microsecond=0) - timedelta(hours=23)
