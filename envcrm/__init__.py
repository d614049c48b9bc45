"""
Environmental Consulting Operations Core
Flask Application Factory.

Usage:
    from envcrm import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from envcrm.config import config
from envcrm.models import db
from envcrm.middleware.actor_context import init_actor_context
from envcrm.middleware.logging_config import configure_logging
from envcrm.middleware.rate_limiter import init_rate_limits
from envcrm.middleware.timing import init_request_timing

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request middleware ───────────────────────────────────────────────
    init_request_timing(app)
    init_actor_context(app)
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    # ── Import all models so Alembic can detect them ─────────────────────
    from envcrm.models import project as _project_models          # noqa: F401
    from envcrm.models import task as _task_models                # noqa: F401
    from envcrm.models import audit as _audit_models              # noqa: F401
    from envcrm.models import notification as _notification_models  # noqa: F401
    from envcrm.models import scheduling as _scheduling_models    # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from envcrm.blueprints.project_status_bp import project_status_bp
    from envcrm.blueprints.task_bp import task_bp
    from envcrm.blueprints.cron_bp import cron_bp
    from envcrm.blueprints.notification_bp import notification_bp
    from envcrm.blueprints.health_bp import health_bp

    app.register_blueprint(project_status_bp)
    app.register_blueprint(task_bp)
    app.register_blueprint(cron_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(health_bp)

    # ── Health check (detailed version at /health/live) ──────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Environmental Consulting Operations Core"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"code": "NOT_FOUND", "message": "Not found", "details": {"path": request.path}}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"code": "ERR_INTERNAL", "message": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"code": "METHOD_NOT_ALLOWED", "message": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"code": "RATE_LIMITED", "message": "Too many requests",
                "details": {"retry_after": e.description}}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Core services (dispatcher + clock injected here) ─────────────────
    from envcrm.services.core import init_core_services
    init_core_services(app)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("envcrm.services.scheduled_jobs")  # registers @register_job handlers
    from envcrm.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("auto-lock-tasks")
    def auto_lock_tasks_cmd():
        """Run the overdue-task auto-lock sweep once."""
        run = _SchedulerSvc.run_job("task_auto_lock", force=True)
        logger.info("auto-lock-tasks: %s %s", run["status"], run.get("result"))

    return app
