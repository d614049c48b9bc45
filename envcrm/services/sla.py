"""
SLA classification for tasks.

Pure functions: no I/O, no session access.  Task reads call ``classify``
on every request; nothing here ever persists a value.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

SLA_ON_TRACK = "on_track"
SLA_DUE_TODAY = "due_today"
SLA_OVERDUE = "overdue"
SLA_STATUSES = (SLA_ON_TRACK, SLA_DUE_TODAY, SLA_OVERDUE)


def utcnow() -> datetime:
    """Default clock."""
    return datetime.now(timezone.utc)


def today(now: datetime | date | None = None) -> date:
    """Calendar date of *now* (defaults to the current UTC date)."""
    if now is None:
        now = utcnow()
    if isinstance(now, datetime):
        return now.date()
    return now


def classify(due_date: datetime | date | None, status: str, now: datetime | date | None = None) -> str:
    """Classify a task as ``on_track``, ``due_today`` or ``overdue``.

    Completed tasks and tasks without a due date are always on track.
    Otherwise only the calendar dates are compared; time of day is ignored.
    """
    if due_date is None or status == "done":
        return SLA_ON_TRACK

    due = today(due_date)
    current = today(now)
    if due < current:
        return SLA_OVERDUE
    if due == current:
        return SLA_DUE_TODAY
    return SLA_ON_TRACK
