"""
Time Utilities

Every timestamp the bot stores is an ISO-8601 string in one configured time
zone, truncated to whole seconds.
"""

from __future__ import annotations
import math
from datetime import datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo

DEFAULT_TZ_NAME = "America/Sao_Paulo"


class Clock:
    """Source of "now" in the configured zone. Tests swap in a fixed clock."""

    def __init__(self, tz_name: str = DEFAULT_TZ_NAME):
        self.tz: tzinfo = ZoneInfo(tz_name)

    def now(self) -> datetime:
        return datetime.now(tz=self.tz).replace(microsecond=0)


def to_iso(dt: datetime) -> str:
    """
    Serialize a timezone-aware datetime for storage.

    Args:
        dt: aware datetime

    Returns:
        ISO string with offset, e.g. 2024-05-01T10:00:00-03:00
    """
    return dt.isoformat(timespec="seconds")


def from_iso(value: str, tz: tzinfo | None = None) -> datetime:
    """Parse a stored timestamp, converting it into tz when given."""
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None and tz is not None:
        dt = dt.replace(tzinfo=tz)
    elif tz is not None:
        dt = dt.astimezone(tz)
    return dt


def rounded_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between start and end, halves rounded up (90s -> 2)."""
    seconds = (end - start).total_seconds()
    return int(math.floor(seconds / 60 + 0.5))


def floor_minutes(start: datetime, end: datetime) -> int:
    """Whole elapsed minutes, truncated."""
    seconds = (end - start).total_seconds()
    return int(math.floor(seconds / 60))


def seconds_until(deadline: datetime, now: datetime) -> float:
    return max(0.0, (deadline - now).total_seconds())


def end_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1, seconds=-1)


def fmt_short(dt: datetime) -> str:
    """dd/mm HH:MM as shown in reports."""
    return dt.strftime("%d/%m %H:%M")
