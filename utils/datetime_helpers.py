"""
Datetime helper utilities to ensure consistent timezone handling across the ledger.

All columns are declared DateTime(timezone=True). PostgreSQL hands back aware
values, SQLite hands back naive ones; both are UTC, so comparisons in Python
go through ensure_aware_utc().
"""

from datetime import datetime, timezone, timedelta
from typing import Optional


def utc_now() -> datetime:
    """Current UTC time as an aware datetime"""
    return datetime.now(timezone.utc)


def ensure_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes read back from SQLite.

    Example:
        >>> ensure_aware_utc(datetime(2024, 1, 1)).tzinfo is timezone.utc
        True
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def is_past(dt: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when dt is set and strictly before now"""
    if dt is None:
        return False
    now = now or utc_now()
    return ensure_aware_utc(dt) < ensure_aware_utc(now)


def rolling_window_start(hours: int = 24, now: Optional[datetime] = None) -> datetime:
    return (now or utc_now()) - timedelta(hours=hours)
