"""
Reversal window checks for committed blends.

A blend may be deleted (and its batches released) only within a fixed window
after it was created. Timestamps read back from SQLite are naive and are
treated as UTC.
"""

from datetime import datetime, timedelta
from typing import Optional

from blend_planner.services.exceptions import ExpiredWindow
from blend_planner.utils.config import get_config
from blend_planner.utils.datetime_utils import ensure_utc, utc_now


def _window(window: Optional[timedelta]) -> timedelta:
    if window is None:
        return get_config().reversal_window
    return window


def reversal_deadline(created_at: datetime, window: Optional[timedelta] = None) -> datetime:
    """Last moment at which a blend created at created_at may be deleted."""
    return ensure_utc(created_at) + _window(window)


def check_reversal_window(
    created_at: datetime,
    *,
    now: Optional[datetime] = None,
    window: Optional[timedelta] = None,
    blend_id=None,
) -> timedelta:
    """
    Check that a blend is still inside its reversal window.

    Transaction boundary: Pure computation (no database access).

    The window is inclusive: a blend exactly ``window`` old may still be
    deleted.

    Args:
        created_at: Blend creation time
        now: Current time (defaults to utc_now())
        window: Reversal window (defaults to the configured window)
        blend_id: Blend identifier, used in the error

    Returns:
        Time elapsed since creation

    Raises:
        ExpiredWindow: If more than ``window`` has elapsed
    """
    window = _window(window)
    now = ensure_utc(now) if now is not None else utc_now()
    elapsed = now - ensure_utc(created_at)
    if elapsed > window:
        raise ExpiredWindow(blend_id, elapsed, window)
    return elapsed


def is_reversible(
    created_at: datetime,
    *,
    now: Optional[datetime] = None,
    window: Optional[timedelta] = None,
) -> bool:
    """True if a blend created at created_at can still be deleted."""
    try:
        check_reversal_window(created_at, now=now, window=window)
    except ExpiredWindow:
        return False
    return True
