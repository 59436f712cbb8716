"""Datetime utilities for timezone-aware UTC timestamps.

Usage:
    from blend_planner.utils.datetime_utils import utc_now

    # For SQLAlchemy Column defaults
    created_at = Column(DateTime, default=utc_now)

SQLite does not store tzinfo, so timestamps read back from the database are
naive. Use ensure_utc() before comparing them with utc_now().
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime.

    Returns:
        Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return value as an aware UTC datetime.

    Naive datetimes are assumed to already be UTC (that is how they are
    written by utc_now()).

    Args:
        value: Datetime to normalize, or None

    Returns:
        Timezone-aware UTC datetime, or None if value is None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
