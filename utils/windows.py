"""
Time windows for statistics

All stored timestamps are naive UTC. Windows are inclusive on both ends with
microsecond resolution, so consecutive buckets (next.start == prev.end + 1us)
partition their span with no gap and no overlap.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import List, Optional

from core.config import STATS_TIMEZONE, ALL_TIME_BUCKETS

ONE_US = timedelta(microseconds=1)
EPOCH = datetime(1970, 1, 1)

RANGE_24H = "24h"
RANGE_7D = "7d"
RANGE_30D = "30d"
RANGE_90D = "90d"
RANGE_1Y = "1y"
RANGE_ALL = "all"

_RANGE_ALIASES = {
    "24h": RANGE_24H,
    "1d": RANGE_24H,
    "today": RANGE_24H,
    "7d": RANGE_7D,
    "week": RANGE_7D,
    "30d": RANGE_30D,
    "month": RANGE_30D,
    "90d": RANGE_90D,
    "1y": RANGE_1Y,
    "year": RANGE_1Y,
    "all": RANGE_ALL,
}

# Number of daily buckets rendered per range; "all" is a bounded lookback
DAILY_BUCKETS = {
    RANGE_7D: 7,
    RANGE_30D: 30,
    RANGE_90D: 90,
    RANGE_1Y: 365,
    RANGE_ALL: ALL_TIME_BUCKETS,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_range(value: Optional[str]) -> str:
    """Normalize a dateRange query value; unknown values fall back to 30d."""
    return _RANGE_ALIASES.get((value or "").strip().lower(), RANGE_30D)


def stats_tz(name: Optional[str] = None) -> tzinfo:
    name = (name or STATS_TIMEZONE or "UTC").strip()
    if name.upper() == "UTC":
        return timezone.utc
    from zoneinfo import ZoneInfo
    return ZoneInfo(name)


def _to_local(ts: datetime, tz: tzinfo) -> datetime:
    return ts.replace(tzinfo=timezone.utc).astimezone(tz)


def _to_utc_naive(ts: datetime) -> datetime:
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class Window:
    start: datetime
    end: datetime
    label: str = ""

    def contains(self, ts: Optional[datetime]) -> bool:
        if ts is None:
            return False
        return self.start <= ts <= self.end

    def clip_to_now(self, now: datetime) -> "Window":
        if self.end <= now:
            return self
        return Window(self.start, max(self.start, now), self.label)

    def to_dict(self):
        return {"start": self.start.isoformat(), "end": self.end.isoformat(), "label": self.label}


def hourly_windows(now: datetime, tz: Optional[tzinfo] = None) -> List[Window]:
    """24 hourly windows ending with the one that contains now, oldest first."""
    tz = tz or stats_tz()
    current = now.replace(minute=0, second=0, microsecond=0)
    out: List[Window] = []
    for i in range(23, -1, -1):
        start = current - timedelta(hours=i)
        end = start + timedelta(hours=1) - ONE_US
        label = f"{_to_local(start, tz).hour:02d}:00"
        out.append(Window(start, end, label).clip_to_now(now))
    return out


def daily_windows(now: datetime, days: int, tz: Optional[tzinfo] = None) -> List[Window]:
    """`days` local-calendar day windows ending with today, oldest first, today clipped to now."""
    tz = tz or stats_tz()
    today = _to_local(now, tz).date()
    out: List[Window] = []
    for i in range(days - 1, -1, -1):
        day = today - timedelta(days=i)
        local_start = datetime(day.year, day.month, day.day, tzinfo=tz)
        nxt = day + timedelta(days=1)
        local_next = datetime(nxt.year, nxt.month, nxt.day, tzinfo=tz)
        start = _to_utc_naive(local_start)
        end = _to_utc_naive(local_next) - ONE_US
        out.append(Window(start, end, day.isoformat()).clip_to_now(now))
    return out


def bucket_windows(range_key: str, now: datetime, tz: Optional[tzinfo] = None) -> List[Window]:
    key = parse_range(range_key)
    if key == RANGE_24H:
        return hourly_windows(now, tz)
    return daily_windows(now, DAILY_BUCKETS[key], tz)


def span_of(windows: List[Window]) -> Window:
    return Window(windows[0].start, windows[-1].end, "span")


def range_window(range_key: str, now: datetime, tz: Optional[tzinfo] = None) -> Window:
    """Window used for range totals: the bucket span, or everything up to now for "all"."""
    key = parse_range(range_key)
    if key == RANGE_ALL:
        return Window(EPOCH, now, RANGE_ALL)
    return Window(span_of(bucket_windows(key, now, tz)).start, now, key)
