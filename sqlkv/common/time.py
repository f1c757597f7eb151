"""
Time Utilities

Storage policy:
- Store/query in database as UTC (naive) timestamps.
- Use UTC-aware datetimes at the domain boundary.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

UTC = timezone.utc

TtlLike = Union[timedelta, int, float]


def utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def utc_now_naive() -> datetime:
    """Return current UTC time as a naive datetime, the database representation."""
    return utc_now().replace(tzinfo=None)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is UTC-aware.

    - If `dt` is naive, treat it as UTC.
    - If `dt` is timezone-aware, convert it to UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_utc_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert a datetime to naive UTC for database storage/query.

    Returns `None` if input is `None`.
    """
    aware = ensure_utc(dt)
    if aware is None:
        return None
    return aware.replace(tzinfo=None)


def to_timedelta(ttl: TtlLike) -> timedelta:
    """Normalize a TTL given as a timedelta or as seconds."""
    if isinstance(ttl, timedelta):
        return ttl
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)):
        raise TypeError(f"ttl must be a timedelta or a number of seconds, got {type(ttl).__name__}")
    return timedelta(seconds=ttl)
