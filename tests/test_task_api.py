"""
Tests — task blueprint.

Covers:
    1. Create / read / list with SLA filters
    2. Update rules (lock gate, completed tasks, status graph, blocked reason)
    3. Lock administration endpoints
    4. Unlock request endpoints
"""

from conftest import (
    FIXED_NOW,
    LOCK_ADMIN_PERMS,
    TODAY,
    TOMORROW,
    YESTERDAY,
    actor_headers,
    make_project,
    make_task,
    make_unlock_request,
)

from envcrm.models import db
from envcrm.models.audit import AuditLog
from envcrm.models.task import Task


def _locked_task(**kwargs):
    return make_task(is_locked=True, locked_at=FIXED_NOW, **kwargs)


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: Create / read / list
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateAndRead:

    def test_create_project_task(self, client):
        project = make_project()
        res = client.post("/api/v1/tasks", json={
            "title": "Soil sampling", "assignee_id": "u-field", "project_id": project.id,
            "priority": "high", "due_date": TOMORROW.isoformat(),
        }, headers=actor_headers("u-owner"))
        assert res.status_code == 201
        body = res.get_json()
        assert body["task_type"] == "project"
        assert body["created_by_id"] == "u-owner"
        assert body["status"] == "to_do"
        assert body["is_locked"] is False
        assert body["sla_status"] == "on_track"
        assert AuditLog.query.filter_by(action="task.create", entity_id=str(body["id"])).count() == 1

    def test_create_general_task(self, client):
        res = client.post("/api/v1/tasks", json={"title": "Renew permit", "assignee_id": "u-field"},
                          headers=actor_headers())
        assert res.status_code == 201
        assert res.get_json()["task_type"] == "general"
        assert res.get_json()["project_id"] is None

    def test_create_requires_title_and_assignee(self, client):
        res = client.post("/api/v1/tasks", json={"assignee_id": "u-field"}, headers=actor_headers())
        assert res.status_code == 400
        res = client.post("/api/v1/tasks", json={"title": "Untitled"}, headers=actor_headers())
        assert res.status_code == 400

    def test_create_unknown_project(self, client):
        res = client.post("/api/v1/tasks", json={"title": "x", "assignee_id": "u", "project_id": 999},
                          headers=actor_headers())
        assert res.status_code == 404
        assert res.get_json()["code"] == "PROJECT_NOT_FOUND"

    def test_get_task_includes_unlock_requests(self, client):
        task = _locked_task()
        pending = make_unlock_request(task)
        res = client.get(f"/api/v1/tasks/{task.id}")
        assert res.status_code == 200
        body = res.get_json()
        assert body["pending_unlock_request"]["id"] == pending.id
        assert len(body["unlock_requests"]) == 1

    def test_get_missing_task(self, client):
        res = client.get("/api/v1/tasks/404")
        assert res.status_code == 404
        assert res.get_json()["code"] == "TASK_NOT_FOUND"

    def test_list_filter_by_sla_status(self, client):
        overdue = make_task(title="Overdue", due_date=YESTERDAY)
        due_today = make_task(title="Due today", due_date=TODAY)
        make_task(title="Future", due_date=TOMORROW)
        make_task(title="Finished late", due_date=YESTERDAY, status="done")

        res = client.get("/api/v1/tasks?sla_status=overdue")
        assert [t["id"] for t in res.get_json()["tasks"]] == [overdue.id]

        res = client.get("/api/v1/tasks?sla_status=due_today")
        assert [t["id"] for t in res.get_json()["tasks"]] == [due_today.id]

        res = client.get("/api/v1/tasks?sla_status=on_track")
        assert res.get_json()["total"] == 2

    def test_list_filters_and_pagination(self, client):
        for i in range(3):
            make_task(title=f"Field task {i}", assignee_id="u-field", due_date=TOMORROW)
        make_task(title="Office task", assignee_id="u-office")
        _locked_task(title="Locked task", assignee_id="u-field")

        res = client.get("/api/v1/tasks?assignee_id=u-field&is_locked=false&page=1&page_size=2")
        body = res.get_json()
        assert body["total"] == 3
        assert len(body["tasks"]) == 2

        res = client.get("/api/v1/tasks?is_locked=true")
        assert res.get_json()["total"] == 1

        res = client.get("/api/v1/tasks?search=office")
        assert res.get_json()["total"] == 1

    def test_list_invalid_filter(self, client):
        res = client.get("/api/v1/tasks?sla_status=late")
        assert res.status_code == 400


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: Update rules
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdateRules:

    def test_locked_task_returns_423(self, client):
        task = _locked_task()
        res = client.patch(f"/api/v1/tasks/{task.id}", json={"title": "Renamed"},
                           headers=actor_headers("u-field"))
        assert res.status_code == 423
        assert res.get_json()["code"] == "TASK_LOCKED"
        db.session.expire_all()
        assert db.session.get(Task, task.id).title == "Collect groundwater samples"

    def test_lock_admin_can_edit_locked_task(self, client):
        task = _locked_task()
        res = client.patch(f"/api/v1/tasks/{task.id}", json={"notes": "Extended by admin"},
                           headers=actor_headers("u-admin", LOCK_ADMIN_PERMS))
        assert res.status_code == 200
        assert res.get_json()["notes"] == "Extended by admin"

    def test_locked_task_status_and_reassign_blocked(self, client):
        task = _locked_task()
        res = client.patch(f"/api/v1/tasks/{task.id}/status", json={"status": "doing"},
                           headers=actor_headers())
        assert res.status_code == 423
        res = client.patch(f"/api/v1/tasks/{task.id}/reassign", json={"assignee_id": "u-new"},
                           headers=actor_headers())
        assert res.status_code == 423

    def test_completed_task_only_notes(self, client):
        task = make_task(status="done")
        res = client.patch(f"/api/v1/tasks/{task.id}", json={"title": "New title"}, headers=actor_headers())
        assert res.status_code == 400
        assert res.get_json()["code"] == "TASK_COMPLETED"

        res = client.patch(f"/api/v1/tasks/{task.id}", json={"notes": "Lab report filed"},
                           headers=actor_headers())
        assert res.status_code == 200
        assert res.get_json()["notes"] == "Lab report filed"

    def test_completed_task_can_be_reopened(self, client):
        task = make_task(status="done", completed_at=FIXED_NOW)
        res = client.patch(f"/api/v1/tasks/{task.id}/status", json={"status": "doing"}, headers=actor_headers())
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "doing"
        assert body["completed_at"] is None

    def test_invalid_status_transition(self, client):
        task = make_task(status="to_do")
        res = client.patch(f"/api/v1/tasks/{task.id}/status", json={"status": "done"}, headers=actor_headers())
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "INVALID_STATUS_TRANSITION"
        assert body["details"]["allowed"] == ["doing", "blocked"]

    def test_status_endpoint_requires_status(self, client):
        task = make_task(status="to_do")
        res = client.patch(f"/api/v1/tasks/{task.id}/status", json={}, headers=actor_headers())
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_REQUIRED"
        assert body["details"]["field"] == "status"

    def test_blocked_requires_reason(self, client):
        task = make_task(status="doing")
        res = client.patch(f"/api/v1/tasks/{task.id}/status", json={"status": "blocked"}, headers=actor_headers())
        assert res.status_code == 400
        assert res.get_json()["code"] == "BLOCKED_REASON_REQUIRED"

        res = client.patch(f"/api/v1/tasks/{task.id}/status",
                           json={"status": "blocked", "blocked_reason": "Site access denied"},
                           headers=actor_headers())
        assert res.status_code == 200
        assert res.get_json()["blocked_reason"] == "Site access denied"

    def test_leaving_blocked_clears_reason(self, client):
        task = make_task(status="blocked", blocked_reason="Rain")
        res = client.patch(f"/api/v1/tasks/{task.id}/status", json={"status": "doing"}, headers=actor_headers())
        assert res.status_code == 200
        assert res.get_json()["blocked_reason"] is None

    def test_done_sets_completed_at(self, client):
        task = make_task(status="doing")
        res = client.patch(f"/api/v1/tasks/{task.id}/status", json={"status": "done"}, headers=actor_headers())
        assert res.status_code == 200
        assert res.get_json()["completed_at"] is not None

    def test_reassign(self, client):
        task = make_task()
        res = client.patch(f"/api/v1/tasks/{task.id}/reassign", json={"assignee_id": "u-new"},
                           headers=actor_headers())
        assert res.status_code == 200
        assert res.get_json()["assignee_id"] == "u-new"

    def test_update_requires_actor(self, client):
        task = make_task()
        res = client.patch(f"/api/v1/tasks/{task.id}", json={"notes": "x"})
        assert res.status_code == 401


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 3: Lock administration endpoints
# ═══════════════════════════════════════════════════════════════════════════

class TestLockEndpoints:

    def test_manual_lock(self, client):
        task = make_task()
        res = client.patch(f"/api/v1/tasks/{task.id}/manual-lock",
                           headers=actor_headers("u-admin", LOCK_ADMIN_PERMS))
        assert res.status_code == 200
        assert res.get_json()["is_locked"] is True

    def test_manual_lock_forbidden(self, client):
        task = make_task()
        res = client.patch(f"/api/v1/tasks/{task.id}/manual-lock", headers=actor_headers("u-field"))
        assert res.status_code == 403

    def test_manual_lock_already_locked(self, client):
        task = _locked_task()
        res = client.patch(f"/api/v1/tasks/{task.id}/manual-lock",
                           headers=actor_headers("u-admin", LOCK_ADMIN_PERMS))
        assert res.status_code == 400
        assert res.get_json()["code"] == "TASK_ALREADY_LOCKED"

    def test_direct_unlock(self, client):
        task = _locked_task()
        make_unlock_request(task)
        res = client.patch(f"/api/v1/tasks/{task.id}/direct-unlock",
                           headers=actor_headers("u-admin", LOCK_ADMIN_PERMS))
        assert res.status_code == 200
        assert res.get_json()["is_locked"] is False

        history = client.get(f"/api/v1/tasks/{task.id}/unlock-requests").get_json()
        assert history["requests"][0]["status"] == "approved"
        assert history["requests"][0]["review_note"] == "Directly unlocked by admin"


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 4: Unlock request endpoints
# ═══════════════════════════════════════════════════════════════════════════

class TestUnlockRequestEndpoints:

    def test_request_and_approve(self, client):
        task = _locked_task(created_by_id="u-owner")

        res = client.post(f"/api/v1/tasks/{task.id}/unlock-request", json={"reason": "Lab delay"},
                          headers=actor_headers("u-field"))
        assert res.status_code == 201
        request_id = res.get_json()["id"]

        res = client.post(f"/api/v1/tasks/{task.id}/unlock-request", json={"reason": "Again"},
                          headers=actor_headers("u-field"))
        assert res.status_code == 409
        assert res.get_json()["code"] == "UNLOCK_REQUEST_PENDING"

        res = client.patch(f"/api/v1/tasks/unlock-requests/{request_id}/review",
                           json={"decision": "approved", "review_note": "OK"},
                           headers=actor_headers("u-owner"))
        assert res.status_code == 200
        assert res.get_json()["status"] == "approved"

        assert client.get(f"/api/v1/tasks/{task.id}").get_json()["is_locked"] is False

    def test_request_without_reason(self, client):
        task = _locked_task()
        res = client.post(f"/api/v1/tasks/{task.id}/unlock-request", json={}, headers=actor_headers())
        assert res.status_code == 400
        assert res.get_json()["code"] == "REASON_REQUIRED"

    def test_review_forbidden_for_other_users(self, client):
        task = _locked_task(created_by_id="u-owner")
        pending = make_unlock_request(task)
        res = client.patch(f"/api/v1/tasks/unlock-requests/{pending.id}/review",
                           json={"decision": "approved"}, headers=actor_headers("u-stranger"))
        assert res.status_code == 403

    def test_pending_queue_requires_permission(self, client):
        res = client.get("/api/v1/tasks/unlock-requests/pending", headers=actor_headers("u-field"))
        assert res.status_code == 403

    def test_pending_queue(self, client):
        make_unlock_request(_locked_task(title="A"))
        make_unlock_request(_locked_task(title="B"))
        res = client.get("/api/v1/tasks/unlock-requests/pending",
                         headers=actor_headers("u-admin", LOCK_ADMIN_PERMS))
        assert res.status_code == 200
        assert res.get_json()["total"] == 2
