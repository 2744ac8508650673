"""
Naive-UTC datetime helpers for expiry and audit timestamps.

All trade, redirection and profile timestamps are stored as timezone-naive UTC
(DateTime(timezone=False)) so that SQLite and PostgreSQL compare them identically.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a caller-supplied moment (webhook clock, test override) to naive UTC.

    Args:
        dt: Aware or naive datetime; naive values are assumed to already be UTC

    Returns:
        Naive UTC datetime, or None when dt is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time as naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def days_from_now(days: int, now: Optional[datetime] = None) -> datetime:
    """Naive UTC timestamp `days` after `now` (defaults to the current time)"""
    base = ensure_naive_datetime(now) or get_naive_utc_now()
    return base + timedelta(days=days)


def is_past(moment: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when `moment` is at or before `now`"""
    if moment is None:
        return False
    reference = ensure_naive_datetime(now) or get_naive_utc_now()
    return ensure_naive_datetime(moment) <= reference
