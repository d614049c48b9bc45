"""
Tests — Project Status Engine (service layer).

Covers:
    1. Checklist gate
    2. Edge and inter-dimension constraint validation
    3. Atomic application, audit rows and status-changed events
    4. Bulk updates
    5. Read-only queries (transitions, gate state, readiness)
    6. Every single-dimension move against the rule table
"""

import pytest

from conftest import make_project

from envcrm.core.exceptions import NotFoundError, ValidationError
from envcrm.models import db
from envcrm.models.audit import AuditLog
from envcrm.models.project import Project
from envcrm.models.status_rules import (
    GATE_EXIT_STATUS,
    GATE_STATUS,
    TRANSITION_GRAPHS,
    Dimension,
    allowed_transitions,
    unmet_requirements,
)
from envcrm.services.project_status_service import EVENT_PROJECT_STATUS_CHANGED


def _engine(services):
    return services.status_engine


def _reload(project_id):
    db.session.expire_all()
    return db.session.get(Project, project_id)


def _status_audits(project_id):
    return AuditLog.query.filter_by(
        entity_type="project", entity_id=str(project_id), action="project.status_change",
    ).order_by(AuditLog.id).all()


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: Checklist gate
# ═══════════════════════════════════════════════════════════════════════════

class TestChecklistGate:

    def test_planned_project_rejects_other_status(self, services):
        project = make_project()
        with pytest.raises(ValidationError) as exc:
            _engine(services).apply_status_update(project.id, {"status": "verification_passed"}, "u-pm")
        assert exc.value.code == "CHECKLIST_NOT_FINALIZED"
        assert _reload(project.id).status == "planned"
        assert _status_audits(project.id) == []

    def test_planned_project_rejects_other_dimensions(self, services):
        project = make_project()
        with pytest.raises(ValidationError) as exc:
            _engine(services).apply_status_update(project.id, {"payment_status": "partial"}, "u-pm")
        assert exc.value.code == "CHECKLIST_NOT_FINALIZED"

    def test_planned_project_rejects_mixed_batch(self, services):
        project = make_project()
        with pytest.raises(ValidationError) as exc:
            _engine(services).apply_status_update(
                project.id, {"status": "checklist_finalized", "payment_status": "partial"}, "u-pm",
            )
        assert exc.value.code == "CHECKLIST_NOT_FINALIZED"
        assert _reload(project.id).payment_status == "pending"

    def test_finalize_checklist_passes_gate(self, services):
        project = make_project()
        updated = _engine(services).apply_status_update(project.id, {"status": "checklist_finalized"}, "u-pm")
        assert updated.status == "checklist_finalized"
        assert updated.status_changed_by == "u-pm"


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: Validation
# ═══════════════════════════════════════════════════════════════════════════

class TestValidation:

    def test_constraint_violation_rejected(self, services):
        project = make_project(status="checklist_finalized")
        with pytest.raises(ValidationError) as exc:
            _engine(services).apply_status_update(project.id, {"status": "verification_passed"}, "u-pm")
        assert exc.value.code == "INVALID_STATUS_TRANSITION"
        unmet = exc.value.details["unmet_requirements"]
        assert unmet[0]["requires"] == "verification_status"
        assert unmet[0]["actual"] == "pending"
        assert _reload(project.id).status == "checklist_finalized"

    def test_batch_satisfies_constraint_together(self, services):
        project = make_project(status="checklist_finalized", verification_status="under_verification")
        updated = _engine(services).apply_status_update(
            project.id, {"verification_status": "passed", "status": "verification_passed"}, "u-pm",
        )
        assert updated.status == "verification_passed"
        assert updated.verification_status == "passed"

    def test_illegal_edge_rejected_with_allowed_values(self, services):
        project = make_project(status="checklist_finalized")
        with pytest.raises(ValidationError) as exc:
            _engine(services).apply_status_update(project.id, {"execution_status": "complete"}, "u-pm")
        assert exc.value.code == "INVALID_STATUS_TRANSITION"
        violation = exc.value.details["violations"][0]
        assert violation == {
            "dimension": "execution_status",
            "old": "not_started",
            "new": "complete",
            "allowed": ["in_progress"],
        }

    def test_unknown_value_rejected(self, services):
        project = make_project(status="checklist_finalized")
        with pytest.raises(ValidationError) as exc:
            _engine(services).apply_status_update(project.id, {"payment_status": "refunded"}, "u-pm")
        assert exc.value.code == "INVALID_STATUS_TRANSITION"

    def test_unknown_dimension_rejected(self, services):
        project = make_project(status="checklist_finalized")
        with pytest.raises(ValidationError) as exc:
            _engine(services).apply_status_update(project.id, {"budget_status": "ok"}, "u-pm")
        assert exc.value.code == "INVALID_STATUS_TRANSITION"

    def test_empty_changes_rejected(self, services):
        project = make_project()
        with pytest.raises(ValidationError) as exc:
            _engine(services).apply_status_update(project.id, {}, "u-pm")
        assert exc.value.code == "ERR_VALIDATION_REQUIRED"

    def test_missing_project(self, services):
        with pytest.raises(NotFoundError) as exc:
            _engine(services).apply_status_update(999, {"status": "checklist_finalized"}, "u-pm")
        assert exc.value.code == "PROJECT_NOT_FOUND"

    def test_completed_is_terminal(self, services):
        project = make_project(
            status="completed", verification_status="passed", execution_status="complete",
            client_review_status="client_approved", payment_status="paid",
        )
        with pytest.raises(ValidationError) as exc:
            _engine(services).apply_status_update(project.id, {"status": "account_closure"}, "u-pm")
        assert exc.value.code == "INVALID_STATUS_TRANSITION"

    def test_payment_reversal_allowed(self, services):
        project = make_project(status="checklist_finalized", payment_status="paid")
        updated = _engine(services).apply_status_update(project.id, {"paymentStatus": "partial"}, "u-pm")
        assert updated.payment_status == "partial"


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 3: Application, audit and events
# ═══════════════════════════════════════════════════════════════════════════

class TestApplyStatusUpdate:

    def test_one_audit_row_per_changed_dimension(self, services):
        project = make_project(status="checklist_finalized", verification_status="under_verification")
        _engine(services).apply_status_update(
            project.id, {"verification_status": "passed", "status": "verification_passed"}, "u-pm",
        )
        audits = _status_audits(project.id)
        assert len(audits) == 2
        diffs = {key: value for a in audits for key, value in a.diff.items()}
        assert diffs["verification_status"] == {"old": "under_verification", "new": "passed"}
        assert diffs["status"] == {"old": "checklist_finalized", "new": "verification_passed"}
        assert {a.actor for a in audits} == {"u-pm"}

    def test_unchanged_values_are_noop(self, services, dispatcher):
        project = make_project(status="checklist_finalized")
        _engine(services).apply_status_update(project.id, {"payment_status": "pending"}, "u-pm")
        assert _status_audits(project.id) == []
        assert _reload(project.id).status_changed_by is None
        assert dispatcher.events == []

    def test_unchanged_values_mixed_with_changes(self, services):
        project = make_project(status="checklist_finalized")
        _engine(services).apply_status_update(
            project.id, {"status": "checklist_finalized", "payment_status": "partial"}, "u-pm",
        )
        audits = _status_audits(project.id)
        assert len(audits) == 1
        assert "payment_status" in audits[0].diff

    def test_status_changed_event_emitted(self, services, dispatcher):
        project = make_project()
        _engine(services).apply_status_update(project.id, {"status": "checklist_finalized"}, "u-pm")
        events = dispatcher.of_type(EVENT_PROJECT_STATUS_CHANGED)
        assert len(events) == 1
        assert events[0].recipients == ("project-managers",)
        assert events[0].payload["changes"]["status"] == {"old": "planned", "new": "checklist_finalized"}

    def test_rejected_update_emits_nothing(self, services, dispatcher):
        project = make_project()
        with pytest.raises(ValidationError):
            _engine(services).apply_status_update(project.id, {"status": "completed"}, "u-pm")
        assert dispatcher.events == []

    def test_full_lifecycle(self, services):
        project = make_project()
        engine = _engine(services)
        steps = [
            {"status": "checklist_finalized"},
            {"verification_status": "under_verification"},
            {"verification_status": "passed", "status": "verification_passed"},
            {"execution_status": "in_progress", "status": "execution_in_progress"},
            {"execution_status": "complete", "status": "execution_complete"},
            {"status": "draft_prepared"},
            {"client_review_status": "in_review", "status": "client_review"},
            {"client_review_status": "client_approved", "status": "account_closure"},
            {"payment_status": "paid", "status": "completed"},
        ]
        for changes in steps:
            engine.apply_status_update(project.id, changes, "u-pm")
        final = _reload(project.id)
        assert final.status == "completed"
        assert final.payment_status == "paid"


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 4: Bulk updates
# ═══════════════════════════════════════════════════════════════════════════

class TestBulkUpdate:

    def test_partial_success(self, services):
        ready = make_project(number="ENV-001")
        gated = make_project(number="ENV-002", status="checklist_finalized")
        result = _engine(services).bulk_update_status(
            [ready.id, gated.id, 999], {"status": "checklist_finalized"}, "u-pm",
        )
        assert result["successful"] == [ready.id, gated.id]
        assert result["failed"] == [{
            "id": 999, "code": "PROJECT_NOT_FOUND", "error": "Project id=999 not found",
        }]

    def test_each_project_validated_independently(self, services):
        ok = make_project(number="ENV-001", status="checklist_finalized", verification_status="passed")
        blocked = make_project(number="ENV-002", status="checklist_finalized")
        result = _engine(services).bulk_update_status(
            [ok.id, blocked.id], {"status": "verification_passed"}, "u-pm",
        )
        assert result["successful"] == [ok.id]
        assert result["failed"][0]["id"] == blocked.id
        assert result["failed"][0]["code"] == "INVALID_STATUS_TRANSITION"
        assert _reload(blocked.id).status == "checklist_finalized"


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 5: Queries
# ═══════════════════════════════════════════════════════════════════════════

class TestQueries:

    def test_valid_transitions(self, services):
        project = make_project(status="checklist_finalized", payment_status="partial")
        transitions = _engine(services).get_valid_transitions(project.id)
        assert transitions["status"] == ["verification_passed", "planned"]
        assert transitions["payment_status"] == ["paid", "pending"]
        assert transitions["execution_status"] == ["in_progress"]

    def test_status_update_allowed_when_planned(self, services):
        project = make_project(checklist=("verified", "verified"))
        result = _engine(services).is_status_update_allowed(project.id)
        assert result["allowed"] is False
        assert result["can_finalize_checklist"] is True

    def test_cannot_finalize_with_unverified_items(self, services):
        project = make_project(checklist=("verified", "submitted"))
        result = _engine(services).is_status_update_allowed(project.id)
        assert result["can_finalize_checklist"] is False

    def test_cannot_finalize_without_items(self, services):
        project = make_project()
        assert _engine(services).is_status_update_allowed(project.id)["can_finalize_checklist"] is False

    def test_status_update_allowed_after_gate(self, services):
        project = make_project(status="checklist_finalized")
        assert _engine(services).is_status_update_allowed(project.id) == {
            "allowed": True, "can_finalize_checklist": False,
        }

    def test_readiness_blockers(self, services):
        project = make_project(status="checklist_finalized", checklist=("verified", "rejected"))
        report = _engine(services).check_workflow_readiness(project.id)
        assert report["can_start_verification"] is False
        assert "1 checklist items are not verified" in report["blockers"]
        assert report["can_complete"] is False
        assert "Payment not received" in report["blockers"]

    def test_readiness_complete(self, services):
        project = make_project(
            status="account_closure", verification_status="passed", execution_status="complete",
            client_review_status="client_approved", payment_status="paid",
        )
        report = _engine(services).check_workflow_readiness(project.id)
        assert report["can_start_execution"] is True
        assert report["can_complete"] is True
        assert report["blockers"] == []


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 6: Exhaustive single-dimension moves
# ═══════════════════════════════════════════════════════════════════════════

_BASES = {
    "fresh": {dim: graph.initial for dim, graph in TRANSITION_GRAPHS.items()} | {
        Dimension.STATUS: GATE_EXIT_STATUS,
    },
    "all_met": {
        Dimension.STATUS: GATE_EXIT_STATUS,
        Dimension.VERIFICATION: "passed",
        Dimension.EXECUTION: "complete",
        Dimension.CLIENT_REVIEW: "client_approved",
        Dimension.PAYMENT: "paid",
    },
}

_MOVES = [
    (base, dim, old, new)
    for base in _BASES
    for dim, graph in TRANSITION_GRAPHS.items()
    for old in sorted(graph.values)
    for new in sorted(graph.values)
    if old != new
]


def _expected_to_pass(start, dim, new):
    if start[Dimension.STATUS] == GATE_STATUS and not (dim is Dimension.STATUS and new == GATE_EXIT_STATUS):
        return False
    if new not in allowed_transitions(dim, start[dim]):
        return False
    return not unmet_requirements({**start, dim: new})


class TestEverySingleMove:

    @pytest.mark.parametrize(
        "base,dim,old,new", _MOVES,
        ids=[f"{b}-{d.value}-{o}-{n}" for b, d, o, n in _MOVES],
    )
    def test_move_succeeds_only_along_edges_with_constraints_met(self, services, base, dim, old, new):
        start = {**_BASES[base], dim: old}
        project = make_project(**{d.value: v for d, v in start.items()})

        if _expected_to_pass(start, dim, new):
            _engine(services).apply_status_update(project.id, {dim.value: new}, "u-pm")
            assert getattr(_reload(project.id), dim.value) == new
            assert len(_status_audits(project.id)) == 1
        else:
            with pytest.raises(ValidationError) as exc:
                _engine(services).apply_status_update(project.id, {dim.value: new}, "u-pm")
            assert exc.value.code in ("INVALID_STATUS_TRANSITION", "CHECKLIST_NOT_FINALIZED")
            assert getattr(_reload(project.id), dim.value) == old
            assert _status_audits(project.id) == []
