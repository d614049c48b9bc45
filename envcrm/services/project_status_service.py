"""
Project Status Engine.

Validates and applies changes to the five project status dimensions.

Every update runs as one transaction against a row loaded ``FOR UPDATE``:

    1. Checklist gate: while ``status == planned`` the only permitted change is
       ``status → checklist_finalized``.
    2. Edge check: each proposed value must be a declared out-edge of the
       current value.  Unchanged values are skipped.
    3. Constraint check: the full resulting status tuple must satisfy every
       inter-dimension requirement.

All checks run before any write.  On success every changed dimension is
written in one commit with one audit row per dimension.
"""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import select

from envcrm.core.exceptions import NotFoundError, ValidationError
from envcrm.models import db
from envcrm.models.audit import write_audit
from envcrm.models.project import Project
from envcrm.models.status_rules import (
    GATE_EXIT_STATUS,
    GATE_STATUS,
    TRANSITION_GRAPHS,
    Dimension,
    allowed_transitions,
    unmet_requirements,
)
from envcrm.services.notification import NotificationEvent, dispatch_safely
from envcrm.services.sla import utcnow
from envcrm.utils.errors import E

logger = logging.getLogger(__name__)

EVENT_PROJECT_STATUS_CHANGED = "project-status-changed"


class StatusEngine:
    """Owns every write to a project's status dimensions."""

    def __init__(self, dispatcher=None, clock: Callable | None = None, status_recipient: str | None = None):
        self.dispatcher = dispatcher
        self.clock = clock or utcnow
        self.status_recipient = status_recipient

    # ── Lookup ───────────────────────────────────────────────────────────

    @staticmethod
    def _get_project(project_id, *, for_update=False) -> Project:
        stmt = select(Project).where(Project.id == project_id)
        if for_update:
            stmt = stmt.with_for_update()
        project = db.session.execute(stmt).scalar_one_or_none()
        if project is None:
            raise NotFoundError("Project", project_id, code=E.PROJECT_NOT_FOUND)
        return project

    @staticmethod
    def _parse_changes(proposed_changes) -> dict[Dimension, str]:
        if not proposed_changes or not isinstance(proposed_changes, dict):
            raise ValidationError(
                "At least one status dimension must be provided",
                code=E.VALIDATION_REQUIRED,
            )

        parsed: dict[Dimension, str] = {}
        for key, value in proposed_changes.items():
            try:
                dimension = Dimension.parse(key)
            except ValueError:
                raise ValidationError(
                    f"Unknown status dimension '{key}'",
                    code=E.INVALID_STATUS_TRANSITION,
                    details={"dimension": key, "allowed_dimensions": [d.value for d in Dimension]},
                )
            graph = TRANSITION_GRAPHS[dimension]
            if not isinstance(value, str) or value not in graph.values:
                raise ValidationError(
                    f"'{value}' is not a valid value for {dimension.value}",
                    code=E.INVALID_STATUS_TRANSITION,
                    details={"dimension": dimension.value, "new": value, "allowed_values": sorted(graph.values)},
                )
            parsed[dimension] = value
        return parsed

    # ── Validation ───────────────────────────────────────────────────────

    @staticmethod
    def _check_gate(project: Project, changes: dict[Dimension, str]) -> None:
        if project.status != GATE_STATUS:
            return
        for dimension, value in changes.items():
            if dimension is not Dimension.STATUS or value != GATE_EXIT_STATUS:
                raise ValidationError(
                    "Project checklist must be finalized before status updates are allowed. "
                    f"Current status: {GATE_STATUS}",
                    code=E.CHECKLIST_NOT_FINALIZED,
                    details={"dimension": dimension.value, "new": value, "status": project.status},
                )

    @staticmethod
    def _check_edges(current: dict[Dimension, str], changes: dict[Dimension, str]) -> dict[Dimension, str]:
        """Return only the dimensions whose value actually changes."""
        effective = {}
        violations = []
        for dimension, new in changes.items():
            old = current[dimension]
            if new == old:
                continue
            graph = TRANSITION_GRAPHS[dimension]
            if not graph.can_transition(old, new):
                violations.append({
                    "dimension": dimension.value,
                    "old": old,
                    "new": new,
                    "allowed": list(graph.allowed_from(old)),
                })
                continue
            effective[dimension] = new

        if violations:
            summary = ", ".join(
                f"{v['dimension']} '{v['old']}' → '{v['new']}' (allowed: [{', '.join(v['allowed'])}])"
                for v in violations
            )
            raise ValidationError(
                f"Invalid status transition: {summary}",
                code=E.INVALID_STATUS_TRANSITION,
                details={"violations": violations},
            )
        return effective

    @staticmethod
    def _check_constraints(state: dict[Dimension, str]) -> None:
        unmet = unmet_requirements(state)
        if unmet:
            summary = ", ".join(
                f"{u['dimension']}={u['value']} requires {u['requires']} in "
                f"[{', '.join(u['required_values'])}] (actual: {u['actual']})"
                for u in unmet
            )
            raise ValidationError(
                f"Status constraint not met: {summary}",
                code=E.INVALID_STATUS_TRANSITION,
                details={"unmet_requirements": unmet},
            )

    # ── Commands ─────────────────────────────────────────────────────────

    def apply_status_update(self, project_id, proposed_changes, actor_id) -> Project:
        """Validate and apply a batch of dimension changes atomically.

        Raises:
            ValidationError: CHECKLIST_NOT_FINALIZED, INVALID_STATUS_TRANSITION
                or VALIDATION_REQUIRED; nothing is written.
            NotFoundError: PROJECT_NOT_FOUND.
        """
        changes = self._parse_changes(proposed_changes)
        project = self._get_project(project_id, for_update=True)

        self._check_gate(project, changes)
        current = project.status_tuple()
        effective = self._check_edges(current, changes)
        if not effective:
            # Every value already matches; nothing to write.
            db.session.rollback()
            return project

        resulting = {**current, **effective}
        self._check_constraints(resulting)

        now = self.clock()
        for dimension, new in effective.items():
            setattr(project, dimension.value, new)
            write_audit(
                entity_type="project",
                entity_id=project.id,
                action="project.status_change",
                actor=actor_id,
                diff={dimension.value: {"old": current[dimension], "new": new}},
                timestamp=now,
            )
        project.status_changed_at = now
        project.status_changed_by = actor_id
        db.session.commit()

        diff = {d.value: {"old": current[d], "new": v} for d, v in effective.items()}
        logger.info(
            "Project %s status updated by %s: %s",
            project.id, actor_id, diff,
            extra={"project_id": project.id},
        )

        if self.status_recipient:
            dispatch_safely(self.dispatcher, NotificationEvent(
                event_type=EVENT_PROJECT_STATUS_CHANGED,
                recipients=(self.status_recipient,),
                title=f"Project {project.project_number} status updated",
                message=", ".join(f"{k}: {v['old']} → {v['new']}" for k, v in diff.items()),
                entity_type="project",
                entity_id=project.id,
                payload={"changes": diff, "actor_id": actor_id},
            ))
        return project

    def bulk_update_status(self, project_ids, changes, actor_id) -> dict:
        """Apply the same changes to many projects, each in its own transaction."""
        successful = []
        failed = []
        for project_id in project_ids or []:
            try:
                self.apply_status_update(project_id, changes, actor_id)
                successful.append(project_id)
            except (ValidationError, NotFoundError) as exc:
                db.session.rollback()
                failed.append({"id": project_id, "code": exc.code, "error": str(exc)})

        logger.info(
            "Bulk status update by %s: %d successful, %d failed",
            actor_id, len(successful), len(failed),
        )
        return {"successful": successful, "failed": failed}

    # ── Queries ──────────────────────────────────────────────────────────

    def get_valid_transitions(self, project_id) -> dict[str, list[str]]:
        """Out-edges of every dimension's current value.  Read only."""
        project = self._get_project(project_id)
        return {
            dimension.value: allowed_transitions(dimension, value)
            for dimension, value in project.status_tuple().items()
        }

    def is_status_update_allowed(self, project_id) -> dict:
        project = self._get_project(project_id)
        if project.status == GATE_STATUS:
            return {
                "allowed": False,
                "reason": "Project checklist must be finalized before status updates are allowed. "
                          f"Current status: {GATE_STATUS}",
                "can_finalize_checklist": self._all_checklist_verified(project),
            }
        return {"allowed": True, "can_finalize_checklist": False}

    def check_workflow_readiness(self, project_id) -> dict:
        """Report which workflow stages can start and what blocks them."""
        project = self._get_project(project_id)
        blockers = []

        statuses = [item.status for item in project.checklist_items]
        unverified = [s for s in statuses if s != "verified"]
        can_start_verification = project.status == "checklist_finalized" and not unverified
        if project.status == "checklist_finalized" and unverified:
            blockers.append(f"{len(unverified)} checklist items are not verified")

        can_start_execution = project.verification_status == "passed"
        if not can_start_execution and project.status == "verification_passed":
            blockers.append("Verification must pass before starting execution")

        can_start_client_review = (
            project.execution_status == "complete" and project.status == "execution_complete"
        )
        if not can_start_client_review and project.status == "execution_complete":
            blockers.append("Execution must be complete before client review")

        can_complete = (
            project.verification_status == "passed"
            and project.execution_status == "complete"
            and project.client_review_status == "client_approved"
            and project.payment_status == "paid"
        )
        if not can_complete:
            if project.verification_status != "passed":
                blockers.append("Verification not passed")
            if project.execution_status != "complete":
                blockers.append("Execution not complete")
            if project.client_review_status != "client_approved":
                blockers.append("Client approval pending")
            if project.payment_status != "paid":
                blockers.append("Payment not received")

        return {
            "can_start_verification": can_start_verification,
            "can_start_execution": can_start_execution,
            "can_start_client_review": can_start_client_review,
            "can_complete": can_complete,
            "blockers": blockers,
        }

    @staticmethod
    def _all_checklist_verified(project: Project) -> bool:
        statuses = [item.status for item in project.checklist_items]
        return bool(statuses) and all(s == "verified" for s in statuses)
