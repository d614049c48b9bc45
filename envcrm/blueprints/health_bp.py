"""
Health blueprint.

    GET /api/v1/health/ready  — process is up
    GET /api/v1/health/live   — database round trip plus scheduled job state

A failing database makes ``/live`` answer 503.  A scheduled job whose last
run failed (for example the auto-lock sweep) is reported as ``failing`` but
does not take the instance out of rotation.
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from envcrm.models import db
from envcrm.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


def _database_check():
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Database health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


def _scheduler_check():
    if "scheduler" not in current_app.extensions:
        return {"status": "not_initialized", "jobs": {}}
    jobs = {
        job.job_name: {
            "enabled": job.is_enabled,
            "last_run_status": job.last_run_status,
            "last_run_at": job.last_run_at.isoformat() if job.last_run_at else None,
        }
        for job in ScheduledJob.query.order_by(ScheduledJob.job_name).all()
    }
    failing = sorted(name for name, job in jobs.items() if job["last_run_status"] == "failed")
    check = {"status": "failing" if failing else "ok", "jobs": jobs}
    if failing:
        check["failing_jobs"] = failing
    return check


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    database = _database_check()
    checks = {"database": database}
    if database["status"] == "ok":
        checks["scheduler"] = _scheduler_check()
    healthy = database["status"] == "ok"
    return jsonify({"status": "ok" if healthy else "degraded", "checks": checks}), 200 if healthy else 503
