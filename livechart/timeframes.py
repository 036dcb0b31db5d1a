"""Candle time windows.

Maps timestamps onto the canonical window ("bucket") they belong to for a
given interval code, and decides whether a freshly fetched candle updates
an existing candle, starts a new one, or is too old to place.

Timestamps are integer epoch milliseconds unless stated otherwise.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional, Sequence

from pydantic import BaseModel, Field

from livechart.models import Candle

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_MINUTE_MS = 60 * 1000
_HOUR_MS = 60 * _MINUTE_MS
_DAY_MS = 24 * _HOUR_MS

INTERVAL_MS = {
    "1m": _MINUTE_MS,
    "3m": 3 * _MINUTE_MS,
    "5m": 5 * _MINUTE_MS,
    "15m": 15 * _MINUTE_MS,
    "30m": 30 * _MINUTE_MS,
    "1h": _HOUR_MS,
    "2h": 2 * _HOUR_MS,
    "4h": 4 * _HOUR_MS,
    "6h": 6 * _HOUR_MS,
    "8h": 8 * _HOUR_MS,
    "12h": 12 * _HOUR_MS,
    "1d": _DAY_MS,
    "3d": 3 * _DAY_MS,
    "1w": 7 * _DAY_MS,
    "1M": 30 * _DAY_MS,  # nominal; windows are calendar-aligned
}

DEFAULT_INTERVAL = "1m"

# Intervals whose windows follow the calendar rather than epoch multiples
_WEEK = "1w"
_MONTH = "1M"


class WindowDecision(BaseModel):
    """Outcome of placing a candle against an existing series."""

    action: Literal["update", "append", "ignore"] = Field(..., description="What to do")
    index: Optional[int] = Field(default=None, ge=0, description="Target index for updates")

    model_config = {"frozen": True}


def interval_duration_ms(interval: str) -> int:
    """Get the duration of an interval in milliseconds.

    Unknown codes fall back to one minute.

    Args:
        interval: Interval code such as "1m", "4h" or "1M".

    Returns:
        Duration in milliseconds.
    """
    duration = INTERVAL_MS.get(interval)
    if duration is None:
        logger.debug("Unknown interval %r, using %s windows", interval, DEFAULT_INTERVAL)
        return INTERVAL_MS[DEFAULT_INTERVAL]
    return duration


def to_ms(dt: datetime) -> int:
    """Convert a datetime to epoch milliseconds (naive values are UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def from_ms(timestamp_ms: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=timestamp_ms)


def window_start_ms(timestamp_ms: int, interval: str) -> int:
    """Get the start of the window containing a timestamp.

    Fixed intervals are epoch-aligned. Weeks start on Monday 00:00 UTC and
    months on day 1 00:00 UTC.

    Args:
        timestamp_ms: Epoch milliseconds.
        interval: Interval code.

    Returns:
        Window start in epoch milliseconds.
    """
    if interval == _WEEK:
        dt = from_ms(timestamp_ms)
        monday = dt - timedelta(days=dt.weekday())
        monday = monday.replace(hour=0, minute=0, second=0, microsecond=0)
        return to_ms(monday)

    if interval == _MONTH:
        dt = from_ms(timestamp_ms)
        first = dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return to_ms(first)

    duration = interval_duration_ms(interval)
    return (timestamp_ms // duration) * duration


def window_start(timestamp: datetime, interval: str) -> datetime:
    """Datetime flavour of :func:`window_start_ms`."""
    return from_ms(window_start_ms(to_ms(timestamp), interval))


def window_end_ms(timestamp_ms: int, interval: str) -> int:
    """Last millisecond of the window containing a timestamp."""
    start = window_start_ms(timestamp_ms, interval)
    if interval == _MONTH:
        dt = from_ms(start)
        if dt.month == 12:
            nxt = dt.replace(year=dt.year + 1, month=1)
        else:
            nxt = dt.replace(month=dt.month + 1)
        return to_ms(nxt) - 1
    return start + interval_duration_ms(interval) - 1


def is_same_window(timestamp1_ms: int, timestamp2_ms: int, interval: str) -> bool:
    """Check whether two timestamps fall in the same window."""
    return window_start_ms(timestamp1_ms, interval) == window_start_ms(timestamp2_ms, interval)


def classify(
    series: Sequence[Candle],
    candle: Candle,
    interval: str,
    scan_limit: Optional[int] = None,
) -> WindowDecision:
    """Decide how a new candle relates to an ordered series.

    Rules, in priority order:

    1. Empty series: append.
    2. Same window as the last candle: update the last candle.
    3. Newer than the last candle: append.
    4. Same window as an older retained candle: update that candle.
    5. Anything else is ignored.

    Args:
        series: Candles ordered by window start, no duplicate windows.
        candle: Incoming candle.
        interval: Interval code.
        scan_limit: Maximum number of older candles to examine in rule 4.
            ``None`` scans the whole series.

    Returns:
        WindowDecision with the action and, for updates, the index.
    """
    if not series:
        return WindowDecision(action="append")

    new_ms = candle.timestamp_ms
    new_window = window_start_ms(new_ms, interval)
    last_index = len(series) - 1
    last = series[last_index]

    if new_window == window_start_ms(last.timestamp_ms, interval):
        return WindowDecision(action="update", index=last_index)

    if new_ms > last.timestamp_ms:
        return WindowDecision(action="append")

    lowest = 0
    if scan_limit is not None:
        lowest = max(0, last_index - scan_limit)

    for i in range(last_index - 1, lowest - 1, -1):
        if window_start_ms(series[i].timestamp_ms, interval) == new_window:
            return WindowDecision(action="update", index=i)

    return WindowDecision(action="ignore")


def candle_debug_info(candle: Candle, interval: str) -> dict:
    """Describe the window a candle falls into.

    Args:
        candle: Candle to inspect.
        interval: Interval code.

    Returns:
        Dict with raw and ISO-formatted timestamp, window start and end.
    """
    ts = candle.timestamp_ms
    start = window_start_ms(ts, interval)
    end = window_end_ms(ts, interval)
    return {
        "timestamp": ts,
        "window_start": start,
        "window_end": end,
        "formatted_time": from_ms(ts).isoformat(),
        "formatted_window_start": from_ms(start).isoformat(),
        "formatted_window_end": from_ms(end).isoformat(),
    }
