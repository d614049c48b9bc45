"""
Unlock request workflow.

Request → review protocol for lifting a task lock:

    pending ──approve──▶ approved   (task unlocked in the same transaction)
        └────reject───▶ rejected   (task stays locked)

At most one ``pending`` request exists per task.  The service pre-checks it
and the partial unique index on ``task_unlock_requests(task_id) WHERE
status = 'pending'`` rejects racing inserts.  Resolution is a compare-and-set
on ``status = 'pending'`` so two concurrent reviewers cannot both decide.
Approved and rejected rows are never modified again.
"""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from envcrm.core.exceptions import ConflictError, NotFoundError, PermissionDenied, ValidationError
from envcrm.models import db
from envcrm.models.audit import write_audit
from envcrm.models.task import UNLOCK_DECISIONS, UnlockRequest
from envcrm.services.notification import (
    EVENT_UNLOCK_DECIDED,
    EVENT_UNLOCK_REQUESTED,
    NotificationEvent,
    dispatch_safely,
)
from envcrm.services.sla import utcnow
from envcrm.services.task_lock_service import get_task_or_404
from envcrm.utils.errors import E

logger = logging.getLogger(__name__)


def _paginate(stmt, count_stmt, page, page_size):
    page = max(int(page or 1), 1)
    page_size = max(min(int(page_size or 10), 100), 1)
    total = db.session.execute(count_stmt).scalar_one()
    items = db.session.execute(
        stmt.offset((page - 1) * page_size).limit(page_size)
    ).scalars().all()
    return {"requests": [r.to_dict() for r in items], "total": total, "page": page, "page_size": page_size}


class UnlockWorkflow:
    """Creates and resolves unlock requests on top of the LockController."""

    def __init__(self, lock_controller, dispatcher=None, clock: Callable | None = None,
                 admin_recipient: str | None = "lock-admins"):
        self.lock_controller = lock_controller
        self.dispatcher = dispatcher
        self.clock = clock or utcnow
        self.admin_recipient = admin_recipient

    # ── Commands ─────────────────────────────────────────────────────────

    def request_unlock(self, task_id, requester_id, reason) -> UnlockRequest:
        task = get_task_or_404(task_id)
        if not task.is_locked:
            raise ValidationError("Task is not locked", code=E.TASK_NOT_LOCKED)

        reason = reason.strip() if isinstance(reason, str) else ""
        if not reason:
            raise ValidationError("Reason is required for unlock request", code=E.REASON_REQUIRED)

        pending = db.session.execute(
            select(UnlockRequest.id).where(
                UnlockRequest.task_id == task.id,
                UnlockRequest.status == "pending",
            )
        ).first()
        if pending is not None:
            raise ConflictError(
                "An unlock request is already pending for this task",
                code=E.UNLOCK_REQUEST_PENDING,
                details={"pending_request_id": pending[0]},
            )

        now = self.clock()
        unlock_request = UnlockRequest(
            task_id=task.id,
            requested_by_id=requester_id,
            reason=reason,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        db.session.add(unlock_request)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError(
                "An unlock request is already pending for this task",
                code=E.UNLOCK_REQUEST_PENDING,
            )
        write_audit(
            entity_type="unlock_request",
            entity_id=unlock_request.id,
            action="unlock_request.create",
            actor=requester_id,
            diff={"task_id": task.id, "status": {"old": None, "new": "pending"}},
            timestamp=now,
        )
        db.session.commit()

        logger.info(
            "Unlock request %s created for task %s by %s",
            unlock_request.id, task.id, requester_id,
            extra={"task_id": task.id, "unlock_request_id": unlock_request.id},
        )

        dispatch_safely(self.dispatcher, NotificationEvent(
            event_type=EVENT_UNLOCK_REQUESTED,
            recipients=(task.created_by_id, self.admin_recipient),
            title=f"Unlock Request: {task.title}",
            message=f'An unlock request has been submitted for task "{task.title}". Reason: {reason}',
            entity_type="unlock_request",
            entity_id=unlock_request.id,
            payload={"task_id": task.id, "request_id": unlock_request.id,
                     "requested_by_id": requester_id, "reason": reason},
        ))
        return unlock_request

    def review_unlock_request(self, request_id, decision, reviewer_id, permissions,
                              review_note=None) -> UnlockRequest:
        unlock_request = db.session.get(UnlockRequest, request_id)
        if unlock_request is None:
            raise NotFoundError("Unlock request", request_id, code=E.UNLOCK_REQUEST_NOT_FOUND)
        if decision not in UNLOCK_DECISIONS:
            raise ValidationError(
                "decision must be 'approved' or 'rejected'",
                details={"allowed": sorted(UNLOCK_DECISIONS)},
            )
        if unlock_request.status != "pending":
            raise ValidationError(
                f"Request has already been {unlock_request.status}",
                code=E.REQUEST_ALREADY_REVIEWED,
            )

        task = get_task_or_404(unlock_request.task_id)
        is_creator = reviewer_id is not None and task.created_by_id == reviewer_id
        if not is_creator and not self.lock_controller.can_override(permissions):
            raise PermissionDenied(
                reviewer_id, self.lock_controller.manage_permission,
                "You do not have permission to review this unlock request",
            )

        now = self.clock()
        note = review_note.strip() if isinstance(review_note, str) and review_note.strip() else None
        claimed = db.session.execute(
            update(UnlockRequest)
            .where(UnlockRequest.id == unlock_request.id, UnlockRequest.status == "pending")
            .values(
                status=decision,
                reviewed_by_id=reviewer_id,
                reviewed_at=now,
                review_note=note,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        ).rowcount
        if claimed != 1:
            db.session.rollback()
            raise ValidationError("Request has already been reviewed", code=E.REQUEST_ALREADY_REVIEWED)

        unlocked = False
        if decision == "approved":
            unlocked = self.lock_controller.try_unlock(task.id, now)
            if unlocked:
                write_audit(
                    entity_type="task",
                    entity_id=task.id,
                    action="task.unlock",
                    actor=reviewer_id,
                    diff={"is_locked": {"old": True, "new": False}, "trigger": "unlock_request",
                          "request_id": unlock_request.id},
                    timestamp=now,
                )
        write_audit(
            entity_type="unlock_request",
            entity_id=unlock_request.id,
            action="unlock_request.approve" if decision == "approved" else "unlock_request.reject",
            actor=reviewer_id,
            diff={"status": {"old": "pending", "new": decision}},
            timestamp=now,
        )
        db.session.commit()

        logger.info(
            "Unlock request %s %s by %s (task %s%s)",
            unlock_request.id, decision, reviewer_id, task.id,
            ", unlocked" if unlocked else "",
            extra={"task_id": task.id, "unlock_request_id": unlock_request.id},
        )

        unlock_request = db.session.get(UnlockRequest, request_id)
        message = f'Your unlock request for task "{task.title}" has been {decision}.'
        if note:
            message += f" Note: {note}"
        dispatch_safely(self.dispatcher, NotificationEvent(
            event_type=EVENT_UNLOCK_DECIDED,
            recipients=(unlock_request.requested_by_id,),
            title=f"Unlock Request {decision.capitalize()}: {task.title}",
            message=message,
            entity_type="unlock_request",
            entity_id=unlock_request.id,
            payload={"task_id": task.id, "request_id": unlock_request.id, "decision": decision,
                     "reviewed_by_id": reviewer_id, "review_note": note},
        ))
        return unlock_request

    # ── Queries ──────────────────────────────────────────────────────────

    def list_requests_for_task(self, task_id, page=1, page_size=10) -> dict:
        """Request history for one task, newest first."""
        get_task_or_404(task_id)
        stmt = (
            select(UnlockRequest)
            .where(UnlockRequest.task_id == task_id)
            .order_by(UnlockRequest.created_at.desc(), UnlockRequest.id.desc())
        )
        count_stmt = select(db.func.count(UnlockRequest.id)).where(UnlockRequest.task_id == task_id)
        return _paginate(stmt, count_stmt, page, page_size)

    def list_pending_requests(self, page=1, page_size=20) -> dict:
        """Lock-admin queue, oldest first."""
        stmt = (
            select(UnlockRequest)
            .where(UnlockRequest.status == "pending")
            .order_by(UnlockRequest.created_at.asc(), UnlockRequest.id.asc())
        )
        count_stmt = select(db.func.count(UnlockRequest.id)).where(UnlockRequest.status == "pending")
        return _paginate(stmt, count_stmt, page, page_size)
