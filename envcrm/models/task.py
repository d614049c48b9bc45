"""
Environmental Consulting Operations Core
Task domain model.

Models:
    - Task: project or general task with due date and time-lock state
    - UnlockRequest: request to lift the lock on a task, reviewed by the task
      creator or a lock administrator

Lock state (``is_locked`` / ``locked_at``) is derived from wall-clock time and
is written only by ``LockController`` and ``UnlockWorkflow``.  ``sla_status``
is never stored; it is computed on read.
"""

from datetime import datetime, timezone

from envcrm.models import db


# ── Constants ────────────────────────────────────────────────────────────────

TASK_STATUSES = {"to_do", "doing", "blocked", "done"}
TASK_PRIORITIES = {"low", "medium", "high"}
TASK_TYPES = {"project", "general"}
UNLOCK_REQUEST_STATUSES = {"pending", "approved", "rejected"}
UNLOCK_DECISIONS = {"approved", "rejected"}

# current → allowed next statuses
TASK_TRANSITIONS = {
    "to_do": ["doing", "blocked"],
    "doing": ["blocked", "done", "to_do"],
    "blocked": ["to_do", "doing", "done"],
    "done": ["doing"],
}


def validate_task_transition(old_status, new_status):
    """Return True if the task status transition is allowed."""
    return new_status in TASK_TRANSITIONS.get(old_status, [])


class Task(db.Model):
    """
    Unit of work, optionally attached to a project.

    A task whose due date has passed without reaching ``done`` is locked by
    the auto-lock sweep and rejects mutation until unlocked.
    """

    __tablename__ = "project_tasks"
    __table_args__ = (
        db.Index("idx_task_lock_sweep", "is_locked", "status", "due_date"),
        db.Index("idx_task_assignee", "assignee_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="NULL for general (non-project) tasks",
    )
    task_type = db.Column(db.String(20), nullable=False, default="general", comment="project | general")
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    blocked_reason = db.Column(db.Text, nullable=True)

    assignee_id = db.Column(db.String(150), nullable=False)
    created_by_id = db.Column(db.String(150), nullable=False)

    status = db.Column(db.String(20), nullable=False, default="to_do", comment="to_do | doing | blocked | done")
    priority = db.Column(db.String(20), nullable=False, default="medium", comment="low | medium | high")
    due_date = db.Column(db.Date, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Lock state ──
    is_locked = db.Column(db.Boolean, nullable=False, default=False)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    project = db.relationship("Project", backref=db.backref("tasks", lazy="dynamic"))
    unlock_requests = db.relationship(
        "UnlockRequest", backref="task", lazy="dynamic",
        order_by="UnlockRequest.created_at.desc()",
        passive_deletes="all",
    )

    def to_dict(self, sla_status=None):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "task_type": self.task_type,
            "title": self.title,
            "description": self.description,
            "notes": self.notes,
            "blocked_reason": self.blocked_reason,
            "assignee_id": self.assignee_id,
            "created_by_id": self.created_by_id,
            "status": self.status,
            "priority": self.priority,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "is_locked": self.is_locked,
            "locked_at": self.locked_at.isoformat() if self.locked_at else None,
            "sla_status": sla_status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        lock = " locked" if self.is_locked else ""
        return f"<Task {self.id}: {self.title[:40]} [{self.status}{lock}]>"


class UnlockRequest(db.Model):
    """
    Request to unlock a locked task.

    At most one ``pending`` row exists per task (partial unique index).
    Approved and rejected rows are terminal and never modified or deleted.
    """

    __tablename__ = "task_unlock_requests"
    __table_args__ = (
        db.Index(
            "uq_unlock_request_one_pending",
            "task_id",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
        db.Index("idx_unlock_request_status", "status", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer,
        db.ForeignKey("project_tasks.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    requested_by_id = db.Column(db.String(150), nullable=False)
    reason = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending", comment="pending | approved | rejected")

    reviewed_by_id = db.Column(db.String(150), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    review_note = db.Column(db.Text, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "requested_by_id": self.requested_by_id,
            "reason": self.reason,
            "status": self.status,
            "reviewed_by_id": self.reviewed_by_id,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "review_note": self.review_note,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<UnlockRequest {self.id}: task={self.task_id} [{self.status}]>"
