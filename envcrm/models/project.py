"""
Environmental Consulting Operations Core
Project domain model.

Models:
    - Project: consulting engagement carrying five status dimensions
    - ChecklistItem: template item assigned to a project; all items must be
      verified before the checklist can be finalized
"""

from datetime import datetime, timezone

from envcrm.models import db
from envcrm.models.status_rules import TRANSITION_GRAPHS, Dimension


# ── Constants ────────────────────────────────────────────────────────────────

CHECKLIST_ITEM_STATUSES = {"assigned", "submitted", "verified", "rejected"}


class Project(db.Model):
    """
    Environmental consulting project.

    Status dimensions are only ever written by ``StatusEngine``; every other
    code path treats them as read-only.
    """

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    project_number = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    client_name = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, nullable=True)

    # ── Status dimensions ──
    status = db.Column(
        db.String(30), nullable=False,
        default=TRANSITION_GRAPHS[Dimension.STATUS].initial,
        comment="planned | checklist_finalized | … | completed",
    )
    verification_status = db.Column(
        db.String(30), nullable=False,
        default=TRANSITION_GRAPHS[Dimension.VERIFICATION].initial,
        comment="pending | under_verification | passed | failed",
    )
    execution_status = db.Column(
        db.String(30), nullable=False,
        default=TRANSITION_GRAPHS[Dimension.EXECUTION].initial,
        comment="not_started | in_progress | complete",
    )
    client_review_status = db.Column(
        db.String(30), nullable=False,
        default=TRANSITION_GRAPHS[Dimension.CLIENT_REVIEW].initial,
        comment="not_started | in_review | changes_requested | revised_shared | client_approved",
    )
    payment_status = db.Column(
        db.String(30), nullable=False,
        default=TRANSITION_GRAPHS[Dimension.PAYMENT].initial,
        comment="pending | partial | paid",
    )

    status_changed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status_changed_by = db.Column(db.String(150), nullable=True)

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

    checklist_items = db.relationship(
        "ChecklistItem", backref="project", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def status_tuple(self) -> dict[Dimension, str]:
        """Current value of every dimension, keyed by ``Dimension``."""
        return {dim: getattr(self, dim.value) for dim in Dimension}

    def to_dict(self):
        return {
            "id": self.id,
            "project_number": self.project_number,
            "name": self.name,
            "client_name": self.client_name,
            "description": self.description,
            "status": self.status,
            "verification_status": self.verification_status,
            "execution_status": self.execution_status,
            "client_review_status": self.client_review_status,
            "payment_status": self.payment_status,
            "status_changed_at": self.status_changed_at.isoformat() if self.status_changed_at else None,
            "status_changed_by": self.status_changed_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.project_number} [{self.status}]>"


class ChecklistItem(db.Model):
    """Checklist template item assigned to a project."""

    __tablename__ = "project_checklist_items"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="assigned",
        comment="assigned | submitted | verified | rejected",
    )
    verified_by = db.Column(db.String(150), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "status": self.status,
            "verified_by": self.verified_by,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
        }

    def __repr__(self):
        return f"<ChecklistItem {self.id}: {self.title[:40]} [{self.status}]>"
