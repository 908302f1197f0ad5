"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All escrow tables store timezone-naive UTC datetimes (DateTime(timezone=False)).
These helpers keep aware datetimes from leaking into those columns.
"""

from datetime import datetime, timezone
from typing import Optional


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time as naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def resolve_now(now: Optional[datetime] = None) -> datetime:
    """Explicit ``now`` (tests, scheduler ticks) or the current naive UTC time"""
    return ensure_naive_datetime(now) if now is not None else get_naive_utc_now()


def month_period(moment: datetime):
    """Calendar-month billing period ``(start, end)`` containing ``moment``"""
    start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end
