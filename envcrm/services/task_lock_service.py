"""
Task Lock Controller.

A task whose due date has passed without reaching ``done`` becomes locked.
Locking happens only here:

    - ``auto_lock_sweep``: periodic sweep run by the ``task_auto_lock`` job
    - ``manual_lock``:     lock-admin action
    - ``direct_unlock``:   lock-admin action; also resolves pending requests

Every lock/unlock is a compare-and-set ``UPDATE`` guarded on ``is_locked``.
When the sweep races a manual action (or a second sweep), exactly one writer
sees an affected row; only that writer audits and emits ``task-locked``.
"""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import select, update

from envcrm.core.exceptions import NotFoundError, ResourceLocked, ValidationError
from envcrm.models import db
from envcrm.models.audit import write_audit
from envcrm.models.task import Task, UnlockRequest
from envcrm.services.notification import EVENT_TASK_LOCKED, NotificationEvent, dispatch_safely
from envcrm.services.permission import check_permission, has_permission
from envcrm.services.sla import today, utcnow
from envcrm.utils.errors import E

logger = logging.getLogger(__name__)

DEFAULT_MANAGE_PERMISSION = "tasks:manage-locks"
DIRECT_UNLOCK_NOTE = "Directly unlocked by admin"


def get_task_or_404(task_id) -> Task:
    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError("Task", task_id, code=E.TASK_NOT_FOUND)
    return task


class LockController:
    """Owns every write to ``Task.is_locked`` / ``Task.locked_at``."""

    def __init__(self, dispatcher=None, clock: Callable | None = None,
                 manage_permission: str = DEFAULT_MANAGE_PERMISSION):
        self.dispatcher = dispatcher
        self.clock = clock or utcnow
        self.manage_permission = manage_permission

    # ── Compare-and-set primitives (no commit) ───────────────────────────

    def _try_lock(self, task_id, now) -> bool:
        result = db.session.execute(
            update(Task)
            .where(Task.id == task_id, Task.is_locked.is_(False), Task.status != "done")
            .values(is_locked=True, locked_at=now, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def try_unlock(self, task_id, now) -> bool:
        """Clear the lock if it is still set.  Caller commits."""
        result = db.session.execute(
            update(Task)
            .where(Task.id == task_id, Task.is_locked.is_(True))
            .values(is_locked=False, locked_at=None, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    # ── Mutation gate ────────────────────────────────────────────────────

    def can_override(self, permissions) -> bool:
        return has_permission(permissions, self.manage_permission)

    def ensure_mutable(self, task: Task, permissions=None) -> None:
        """Reject mutation of a locked task unless the actor manages locks."""
        if task.is_locked and not self.can_override(permissions):
            raise ResourceLocked(
                "This task is locked because it passed its due date. "
                "Submit an unlock request to continue working on it.",
                details={"task_id": task.id, "locked_at": task.locked_at.isoformat() if task.locked_at else None},
            )

    # ── Sweep ────────────────────────────────────────────────────────────

    def auto_lock_sweep(self, now=None) -> dict:
        """Lock every task that is past due, not done and not yet locked.

        Idempotent: a second run over the same data locks nothing and leaves
        ``locked_at`` untouched.
        """
        now = now or self.clock()
        cutoff = today(now)

        candidate_ids = db.session.execute(
            select(Task.id).where(
                Task.is_locked.is_(False),
                Task.status != "done",
                Task.due_date.is_not(None),
                Task.due_date < cutoff,
            ).order_by(Task.id)
        ).scalars().all()

        locked_ids = []
        for task_id in candidate_ids:
            if not self._try_lock(task_id, now):
                continue
            write_audit(
                entity_type="task",
                entity_id=task_id,
                action="task.lock",
                actor="system",
                diff={"is_locked": {"old": False, "new": True}, "trigger": "auto_lock_sweep"},
                timestamp=now,
            )
            db.session.commit()
            locked_ids.append(task_id)
            self._emit_locked(db.session.get(Task, task_id), trigger="auto")

        logger.info(
            "Auto-locked %d of %d overdue tasks", len(locked_ids), len(candidate_ids),
            extra={"event_type": "task_auto_lock"},
        )
        return {
            "total_checked": len(candidate_ids),
            "newly_locked": len(locked_ids),
            "locked_task_ids": locked_ids,
        }

    # ── Admin actions ────────────────────────────────────────────────────

    def manual_lock(self, task_id, actor_id, permissions) -> Task:
        check_permission(actor_id, permissions, self.manage_permission)
        task = get_task_or_404(task_id)
        if task.is_locked:
            raise ValidationError("Task is already locked", code=E.TASK_ALREADY_LOCKED)
        if task.status == "done":
            raise ValidationError("Cannot lock a completed task", code=E.TASK_COMPLETED)

        now = self.clock()
        if not self._try_lock(task.id, now):
            db.session.rollback()
            raise ValidationError("Task is already locked", code=E.TASK_ALREADY_LOCKED)
        write_audit(
            entity_type="task",
            entity_id=task.id,
            action="task.lock",
            actor=actor_id,
            diff={"is_locked": {"old": False, "new": True}, "trigger": "manual"},
            timestamp=now,
        )
        db.session.commit()
        logger.info("Task %s manually locked by %s", task.id, actor_id, extra={"task_id": task.id})

        task = get_task_or_404(task_id)
        self._emit_locked(task, trigger="manual")
        return task

    def direct_unlock(self, task_id, actor_id, permissions) -> Task:
        """Unlock without a request; resolve any pending request as approved."""
        check_permission(actor_id, permissions, self.manage_permission)
        task = get_task_or_404(task_id)
        if not task.is_locked:
            raise ValidationError("Task is not locked", code=E.TASK_NOT_LOCKED)

        now = self.clock()
        if not self.try_unlock(task.id, now):
            db.session.rollback()
            raise ValidationError("Task is not locked", code=E.TASK_NOT_LOCKED)

        resolved = db.session.execute(
            update(UnlockRequest)
            .where(UnlockRequest.task_id == task.id, UnlockRequest.status == "pending")
            .values(
                status="approved",
                reviewed_by_id=actor_id,
                reviewed_at=now,
                review_note=DIRECT_UNLOCK_NOTE,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        ).rowcount
        write_audit(
            entity_type="task",
            entity_id=task.id,
            action="task.unlock",
            actor=actor_id,
            diff={"is_locked": {"old": True, "new": False}, "trigger": "direct", "resolved_requests": resolved},
            timestamp=now,
        )
        db.session.commit()
        logger.info("Task %s directly unlocked by %s (%d pending request(s) resolved)",
                    task.id, actor_id, resolved, extra={"task_id": task.id})
        return get_task_or_404(task_id)

    # ── Events ───────────────────────────────────────────────────────────

    def _emit_locked(self, task: Task | None, *, trigger: str) -> None:
        if task is None:
            return
        dispatch_safely(self.dispatcher, NotificationEvent(
            event_type=EVENT_TASK_LOCKED,
            recipients=(task.assignee_id, task.created_by_id),
            title=f"Task Locked: {task.title}",
            message=f'Task "{task.title}" has been locked because it passed its due date.'
            if trigger == "auto" else f'Task "{task.title}" has been locked by an administrator.',
            entity_type="task",
            entity_id=task.id,
            payload={
                "task_id": task.id,
                "project_id": task.project_id,
                "due_date": task.due_date.isoformat() if task.due_date else None,
                "locked_at": task.locked_at.isoformat() if task.locked_at else None,
                "trigger": trigger,
            },
        ))
