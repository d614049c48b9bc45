"""
Task Service — create, read, update and reassign tasks.

Every mutation passes ``LockController.ensure_mutable`` first, so a locked
task answers 423 unless the actor manages locks.  Reads attach a freshly
computed ``sla_status`` and never write: locking happens only in the sweep.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable

from sqlalchemy import and_, or_, select

from envcrm.core.exceptions import NotFoundError, ValidationError
from envcrm.models import db
from envcrm.models.audit import write_audit
from envcrm.models.project import Project
from envcrm.models.task import (
    TASK_PRIORITIES,
    TASK_STATUSES,
    TASK_TRANSITIONS,
    TASK_TYPES,
    Task,
    validate_task_transition,
)
from envcrm.services.sla import SLA_DUE_TODAY, SLA_OVERDUE, SLA_STATUSES, classify, today, utcnow
from envcrm.services.task_lock_service import get_task_or_404
from envcrm.utils.errors import E

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = ("title", "description", "notes", "assignee_id", "priority", "due_date", "blocked_reason", "status")
_SORT_COLUMNS = {
    "due_date": Task.due_date,
    "status": Task.status,
    "priority": Task.priority,
    "updated_at": Task.updated_at,
    "created_at": Task.created_at,
}


def _parse_due_date(value):
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid due_date '{value}'; expected YYYY-MM-DD",
                              details={"field": "due_date"})


def _require_choice(field, value, choices):
    if value not in choices:
        raise ValidationError(
            f"Invalid {field} '{value}'",
            details={"field": field, "allowed": sorted(choices)},
        )


class TaskService:
    """Task CRUD behind the lock gate."""

    def __init__(self, lock_controller, clock: Callable | None = None):
        self.lock_controller = lock_controller
        self.clock = clock or utcnow

    def serialize(self, task: Task) -> dict:
        return task.to_dict(sla_status=classify(task.due_date, task.status, self.clock()))

    # ── Create ───────────────────────────────────────────────────────────

    def create_task(self, data: dict, created_by_id) -> dict:
        data = data or {}
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required", code=E.VALIDATION_REQUIRED, details={"field": "title"})
        assignee_id = data.get("assignee_id")
        if not assignee_id:
            raise ValidationError("assignee_id is required", code=E.VALIDATION_REQUIRED,
                                  details={"field": "assignee_id"})

        project_id = data.get("project_id")
        is_general = data.get("task_type") == "general" or not project_id
        if not is_general and db.session.get(Project, project_id) is None:
            raise NotFoundError("Project", project_id, code=E.PROJECT_NOT_FOUND)

        priority = data.get("priority") or "medium"
        _require_choice("priority", priority, TASK_PRIORITIES)

        task = Task(
            project_id=None if is_general else project_id,
            task_type="general" if is_general else "project",
            title=title,
            description=data.get("description"),
            notes=data.get("notes"),
            assignee_id=str(assignee_id),
            created_by_id=created_by_id,
            status="to_do",
            priority=priority,
            due_date=_parse_due_date(data.get("due_date")),
            is_locked=False,
        )
        db.session.add(task)
        db.session.flush()
        write_audit(
            entity_type="task",
            entity_id=task.id,
            action="task.create",
            actor=created_by_id,
            diff={"title": {"old": None, "new": task.title}, "assignee_id": {"old": None, "new": task.assignee_id}},
        )
        db.session.commit()
        logger.info("Task created: %s (%s) by %s", task.id, task.task_type, created_by_id,
                    extra={"project_id": task.project_id})
        return self.serialize(task)

    # ── Read ─────────────────────────────────────────────────────────────

    def get_task(self, task_id) -> dict:
        task = get_task_or_404(task_id)
        result = self.serialize(task)
        recent = task.unlock_requests.limit(5).all()
        result["unlock_requests"] = [r.to_dict() for r in recent]
        pending = next((r for r in recent if r.status == "pending"), None)
        result["pending_unlock_request"] = pending.to_dict() if pending else None
        return result

    def list_tasks(self, filters: dict | None = None) -> dict:
        """Filter, sort and paginate tasks.  Never writes."""
        filters = filters or {}
        stmt = select(Task)

        if filters.get("project_id"):
            stmt = stmt.where(Task.project_id == filters["project_id"])
        if filters.get("assignee_id"):
            stmt = stmt.where(Task.assignee_id == filters["assignee_id"])
        if filters.get("status"):
            _require_choice("status", filters["status"], TASK_STATUSES)
            stmt = stmt.where(Task.status == filters["status"])
        if filters.get("priority"):
            _require_choice("priority", filters["priority"], TASK_PRIORITIES)
            stmt = stmt.where(Task.priority == filters["priority"])
        if filters.get("task_type"):
            _require_choice("task_type", filters["task_type"], TASK_TYPES)
            stmt = stmt.where(Task.task_type == filters["task_type"])
        if filters.get("is_locked") is not None:
            stmt = stmt.where(Task.is_locked.is_(bool(filters["is_locked"])))
        if filters.get("search"):
            term = f"%{filters['search']}%"
            stmt = stmt.where(or_(Task.title.ilike(term), Task.description.ilike(term)))
        if filters.get("sla_status"):
            _require_choice("sla_status", filters["sla_status"], SLA_STATUSES)
            stmt = stmt.where(self._sla_clause(filters["sla_status"]))

        total = db.session.execute(
            select(db.func.count()).select_from(stmt.subquery())
        ).scalar_one()

        column = _SORT_COLUMNS.get(filters.get("sort_by") or "due_date", Task.due_date)
        ordered = column.desc() if filters.get("sort_order") == "desc" else column.asc()
        page = max(int(filters.get("page") or 1), 1)
        page_size = max(min(int(filters.get("page_size") or 20), 100), 1)
        tasks = db.session.execute(
            stmt.order_by(ordered, Task.id).offset((page - 1) * page_size).limit(page_size)
        ).scalars().all()

        return {
            "tasks": [self.serialize(t) for t in tasks],
            "total": total,
            "page": page,
            "page_size": page_size,
        }

    def _sla_clause(self, sla_status):
        """SQL form of ``classify`` so the filter paginates correctly."""
        current = today(self.clock())
        open_with_due = and_(Task.status != "done", Task.due_date.is_not(None))
        if sla_status == SLA_OVERDUE:
            return and_(open_with_due, Task.due_date < current)
        if sla_status == SLA_DUE_TODAY:
            return and_(open_with_due, Task.due_date == current)
        return or_(Task.due_date.is_(None), Task.status == "done", Task.due_date > current)

    # ── Update ───────────────────────────────────────────────────────────

    def update_task(self, task_id, data: dict, actor_id, permissions=None) -> dict:
        task = get_task_or_404(task_id)
        self.lock_controller.ensure_mutable(task, permissions)

        data = {k: v for k, v in (data or {}).items() if k in _EDITABLE_FIELDS}
        new_status = data.get("status")

        leaving_done = task.status == "done" and new_status is not None and new_status != "done"
        if task.status == "done" and not leaving_done:
            disallowed = sorted(k for k, v in data.items() if k != "notes" and v is not None)
            if disallowed:
                raise ValidationError(
                    "Completed tasks can only have notes updated",
                    code=E.TASK_COMPLETED,
                    details={"fields": disallowed},
                )

        if new_status is not None:
            _require_choice("status", new_status, TASK_STATUSES)
            if new_status != task.status and not validate_task_transition(task.status, new_status):
                allowed = TASK_TRANSITIONS.get(task.status, [])
                raise ValidationError(
                    f"Invalid task status transition from '{task.status}' to '{new_status}'. "
                    f"Allowed: [{', '.join(allowed)}]",
                    code=E.INVALID_STATUS_TRANSITION,
                    details={"old": task.status, "new": new_status, "allowed": allowed},
                )
            if new_status == "blocked" and not (data.get("blocked_reason") or task.blocked_reason):
                raise ValidationError(
                    "Blocked reason is required when setting status to blocked",
                    code=E.BLOCKED_REASON_REQUIRED,
                )

        if "title" in data and not (data["title"] or "").strip():
            raise ValidationError("title cannot be empty", code=E.VALIDATION_REQUIRED, details={"field": "title"})
        if "assignee_id" in data and not data["assignee_id"]:
            raise ValidationError("assignee_id cannot be empty", code=E.VALIDATION_REQUIRED,
                                  details={"field": "assignee_id"})
        if data.get("priority") is not None:
            _require_choice("priority", data["priority"], TASK_PRIORITIES)
        if "due_date" in data:
            data["due_date"] = _parse_due_date(data["due_date"])

        diff = {}
        for field in ("title", "description", "notes", "assignee_id", "priority", "due_date", "blocked_reason"):
            if field in data and getattr(task, field) != data[field]:
                diff[field] = {"old": getattr(task, field), "new": data[field]}
                setattr(task, field, data[field])

        if new_status is not None and new_status != task.status:
            diff["status"] = {"old": task.status, "new": new_status}
            if new_status == "done":
                task.completed_at = self.clock()
            elif task.status == "done":
                task.completed_at = None
            task.status = new_status
        if new_status is not None and new_status != "blocked" and task.blocked_reason is not None:
            diff["blocked_reason"] = {"old": task.blocked_reason, "new": None}
            task.blocked_reason = None

        if diff:
            write_audit(entity_type="task", entity_id=task.id, action="task.update", actor=actor_id, diff=diff)
            db.session.commit()
            logger.info("Task updated: %s by %s (%s)", task.id, actor_id, ", ".join(sorted(diff)),
                        extra={"task_id": task.id})
        else:
            db.session.rollback()
        return self.serialize(get_task_or_404(task_id))

    def update_task_status(self, task_id, status, actor_id, permissions=None, blocked_reason=None) -> dict:
        if not status:
            raise ValidationError("status is required", code=E.VALIDATION_REQUIRED, details={"field": "status"})
        data = {"status": status}
        if blocked_reason is not None:
            data["blocked_reason"] = blocked_reason
        return self.update_task(task_id, data, actor_id, permissions)

    def reassign_task(self, task_id, assignee_id, actor_id, permissions=None) -> dict:
        task = get_task_or_404(task_id)
        self.lock_controller.ensure_mutable(task, permissions)
        if not assignee_id:
            raise ValidationError("assignee_id is required", code=E.VALIDATION_REQUIRED,
                                  details={"field": "assignee_id"})

        previous = task.assignee_id
        if previous != assignee_id:
            task.assignee_id = str(assignee_id)
            write_audit(
                entity_type="task",
                entity_id=task.id,
                action="task.update",
                actor=actor_id,
                diff={"assignee_id": {"old": previous, "new": task.assignee_id}},
            )
            db.session.commit()
            logger.info("Task reassigned: %s %s → %s by %s", task.id, previous, assignee_id, actor_id,
                        extra={"task_id": task.id})
        return self.serialize(get_task_or_404(task_id))
