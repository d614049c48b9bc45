"""
Shared pytest fixtures for the Environmental Consulting Operations Core suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - services: Core services rebuilt per test with a fixed clock and a
      recording notification dispatcher
    - client: Flask test client (function-scoped)
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from envcrm import create_app
from envcrm.models import db as _db
from envcrm.services.core import init_core_services

FIXED_NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
TODAY = date(2024, 6, 15)
YESTERDAY = TODAY - timedelta(days=1)
TOMORROW = TODAY + timedelta(days=1)

LOCK_ADMIN_PERMS = "tasks:manage-locks"
PROJECT_ADMIN_PERMS = "projects:manage"


def actor_headers(user_id="u-owner", permissions=None):
    """Gateway headers for a test request."""
    headers = {"X-User-Id": user_id}
    if permissions:
        headers["X-User-Permissions"] = permissions
    return headers


class RecordingDispatcher:
    """Notification dispatcher double that keeps every event in memory."""

    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.event_type == event_type]


class FailingDispatcher:
    """Notification dispatcher double that always raises."""

    def __init__(self):
        self.calls = 0

    def notify(self, event):
        self.calls += 1
        raise RuntimeError("notification backend unavailable")


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def clock():
    return lambda: FIXED_NOW


@pytest.fixture(autouse=True)
def services(app, dispatcher, clock):
    """Core services wired to the recording dispatcher and fixed clock."""
    installed = init_core_services(app, dispatcher=dispatcher, clock=clock)
    yield installed
    init_core_services(app)


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience builders ─────────────────────────────────────────────────


def make_project(*, number="ENV-001", name="Site Assessment", checklist=(), **status):
    """Create a Project directly in DB.  ``status`` overrides dimension columns."""
    from envcrm.models.project import ChecklistItem, Project
    project = Project(project_number=number, name=name, client_name="Acme Water", **status)
    _db.session.add(project)
    _db.session.flush()
    for i, item_status in enumerate(checklist, start=1):
        _db.session.add(ChecklistItem(project_id=project.id, title=f"Checklist item {i}", status=item_status))
    _db.session.commit()
    return project


def make_task(*, title="Collect groundwater samples", assignee_id="u-field",
              created_by_id="u-owner", status="to_do", due_date=None,
              is_locked=False, locked_at=None, project=None, **extra):
    """Create a Task directly in DB."""
    from envcrm.models.task import Task
    task = Task(
        project_id=project.id if project else None,
        task_type="project" if project else "general",
        title=title,
        assignee_id=assignee_id,
        created_by_id=created_by_id,
        status=status,
        due_date=due_date,
        is_locked=is_locked,
        locked_at=locked_at,
        **extra,
    )
    _db.session.add(task)
    _db.session.commit()
    return task


def make_unlock_request(task, *, requested_by_id="u-field", reason="Waiting on lab results",
                        status="pending", created_at=None):
    """Create an UnlockRequest directly in DB."""
    from envcrm.models.task import UnlockRequest
    req = UnlockRequest(
        task_id=task.id,
        requested_by_id=requested_by_id,
        reason=reason,
        status=status,
    )
    if created_at is not None:
        req.created_at = created_at
        req.updated_at = created_at
    _db.session.add(req)
    _db.session.commit()
    return req
