"""Derived order flags: stalled orders (5 days without a move or update) and due-date status."""
from datetime import date, datetime, timedelta, timezone
from typing import Optional

INACTIVITY_THRESHOLD = timedelta(days=5)


def _as_utc(value: datetime) -> datetime:
    # stored timestamps are naive UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_alert(last_updated: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Return True iff at least ``INACTIVITY_THRESHOLD`` of elapsed time separates ``last_updated`` and ``now``."""
    if last_updated is None:
        return False
    if now is None:
        now = datetime.now(timezone.utc)
    return _as_utc(now) - _as_utc(last_updated) >= INACTIVITY_THRESHOLD


DUE_SOON_DAYS = 3


def due_status(due_date: Optional[date], today: Optional[date] = None) -> str:
    """``overdue`` once the due date has passed, ``urgent`` when it is at most 3 days away, else ``normal``."""
    if due_date is None:
        return "normal"
    if today is None:
        today = datetime.now(timezone.utc).date()
    days_left = (due_date - today).days
    if days_left < 0:
        return "overdue"
    if days_left <= DUE_SOON_DAYS:
        return "urgent"
    return "normal"
