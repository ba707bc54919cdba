"""
Datetime helper utilities to ensure consistent timezone handling across the ledger.

All ledger columns are timezone-naive UTC (DateTime(timezone=False)). These helpers
keep timezone-aware values from leaking into those columns and give services an
injectable clock so expiry rules can be tested deterministically.
"""

from datetime import datetime, timezone
from typing import Callable, Optional
import logging

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        logger.debug(f"TIMEZONE_NORMALIZE: converting {dt.tzinfo} datetime to naive UTC")
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    """True once `now` has reached `expires_at` (both compared as naive UTC)"""
    current = ensure_naive_datetime(now) or get_naive_utc_now()
    return current >= ensure_naive_datetime(expires_at)
