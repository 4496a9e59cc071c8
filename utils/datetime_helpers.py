"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All timestamp columns are timezone-naive and hold UTC. These helpers keep
timezone-aware values from leaking into them and define the UTC day window
used by the daily payout limit.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
import logging

logger = logging.getLogger(__name__)


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
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Get current UTC time as naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_day_bounds(moment: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Return [start, end) of the UTC calendar day containing moment."""
    moment = ensure_naive_datetime(moment) or get_naive_utc_now()
    start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)
