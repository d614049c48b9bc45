"""
Environmental Consulting Operations Core
Notification dispatch and inbox service.

Services receive a dispatcher through their constructor and call
``dispatch_safely`` after their own commit.  A failing dispatcher is logged
and never rolls back or blocks the state change that triggered it.

Event types:
    - task-locked       → task creator and assignee
    - unlock-requested  → task creator and the lock-admin group recipient
    - unlock-decided    → the requester
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import select

from envcrm.models import db
from envcrm.models.notification import Notification

logger = logging.getLogger(__name__)

EVENT_TASK_LOCKED = "task-locked"
EVENT_UNLOCK_REQUESTED = "unlock-requested"
EVENT_UNLOCK_DECIDED = "unlock-decided"


@dataclass(frozen=True)
class NotificationEvent:
    event_type: str
    recipients: tuple[str, ...]
    title: str
    message: str = ""
    entity_type: str = ""
    entity_id: int | None = None
    payload: dict = field(default_factory=dict)

    def distinct_recipients(self) -> list[str]:
        """Recipients with blanks and duplicates removed, order preserved."""
        seen = []
        for r in self.recipients:
            if r and r not in seen:
                seen.append(r)
        return seen


class NotificationDispatcher(Protocol):
    def notify(self, event: NotificationEvent) -> None: ...


class InAppNotificationDispatcher:
    """Persist one ``Notification`` row per distinct recipient, in its own commit."""

    def notify(self, event: NotificationEvent) -> None:
        recipients = event.distinct_recipients()
        for recipient in recipients:
            db.session.add(Notification(
                recipient=recipient,
                event_type=event.event_type,
                title=event.title,
                message=event.message,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                payload=dict(event.payload),
            ))
        db.session.commit()
        logger.info(
            "Notification %s sent to %d recipient(s)",
            event.event_type, len(recipients),
            extra={"event_type": event.event_type},
        )


def dispatch_safely(dispatcher: NotificationDispatcher | None, event: NotificationEvent) -> bool:
    """Deliver *event*; log and swallow any dispatcher failure.

    Callers must have committed their own state change first.
    Returns True when the dispatcher accepted the event.
    """
    if dispatcher is None:
        return False
    try:
        dispatcher.notify(event)
        return True
    except Exception:
        db.session.rollback()
        logger.warning(
            "Notification dispatch failed for %s on %s/%s",
            event.event_type, event.entity_type, event.entity_id,
            exc_info=True,
            extra={"event_type": event.event_type},
        )
        return False


class NotificationService:
    """Stateless service class for the notification inbox."""

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.

        Returns:
            (items, total)
        """
        stmt = select(Notification).where(Notification.recipient == recipient)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        total = db.session.execute(
            select(db.func.count()).select_from(stmt.subquery())
        ).scalar_one()
        items = db.session.execute(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit)
        ).scalars().all()
        return items, total

    @staticmethod
    def unread_count(recipient):
        """Return count of unread notifications."""
        return db.session.execute(
            select(db.func.count(Notification.id)).where(
                Notification.recipient == recipient,
                Notification.is_read.is_(False),
            )
        ).scalar_one()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read.  Returns None if it does not exist."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient):
        """Mark all notifications for a recipient as read."""
        now = datetime.now(timezone.utc)
        count = Notification.query.filter_by(recipient=recipient, is_read=False).update(
            {"is_read": True, "read_at": now}, synchronize_session="fetch",
        )
        db.session.commit()
        return count
