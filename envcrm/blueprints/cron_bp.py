"""
Cron & scheduler blueprint.

Endpoints:
    POST|GET /api/v1/cron/auto-lock-tasks           — external cron trigger for the sweep
    GET      /api/v1/scheduler/jobs                 — registered jobs with run history
    POST     /api/v1/scheduler/jobs/<name>/run      — run a job now (even if paused)
    PATCH    /api/v1/scheduler/jobs/<name>/toggle   — pause / resume a job

Triggers require ``X-Cron-Secret`` to match ``CRON_SECRET`` when one is
configured.  Without a configured secret they are open (development).
"""

from __future__ import annotations

import hmac
import logging

from flask import Blueprint, current_app, jsonify, request

from envcrm.core.exceptions import DomainError, NotFoundError
from envcrm.services.scheduler_service import SchedulerService, get_registered_jobs
from envcrm.utils.errors import E, api_error, register_domain_error_handlers

logger = logging.getLogger(__name__)

cron_bp = Blueprint("cron", __name__, url_prefix="/api/v1")
register_domain_error_handlers(cron_bp)

CRON_SECRET_HEADER = "X-Cron-Secret"
AUTO_LOCK_JOB = "task_auto_lock"


def _check_cron_secret():
    expected = current_app.config.get("CRON_SECRET")
    if not expected:
        return
    provided = request.headers.get(CRON_SECRET_HEADER, "")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Rejected cron trigger with invalid secret from %s", request.remote_addr)
        raise DomainError("Invalid cron secret", code=E.UNAUTHORIZED, status=401)


def _run_response(run: dict):
    if run["status"] == "failed":
        return api_error(E.INTERNAL, f"Job {run['job_name']} failed", details={"run": run})
    return jsonify(run), 200


@cron_bp.route("/cron/auto-lock-tasks", methods=["POST", "GET"])
def auto_lock_tasks():
    _check_cron_secret()
    run = SchedulerService.run_job(AUTO_LOCK_JOB)
    logger.info("Cron auto-lock run: %s", run["status"])
    return _run_response(run)


@cron_bp.route("/scheduler/jobs", methods=["GET"])
def list_jobs():
    return jsonify({"jobs": SchedulerService.list_jobs()}), 200


@cron_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    _check_cron_secret()
    if job_name not in get_registered_jobs():
        raise NotFoundError("Scheduled job", job_name)
    return _run_response(SchedulerService.run_job(job_name, force=True))


@cron_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job(job_name):
    """Body: {enabled: bool}"""
    _check_cron_secret()
    if job_name not in get_registered_jobs():
        raise NotFoundError("Scheduled job", job_name)
    data = request.get_json(silent=True) or {}
    record = SchedulerService.toggle_job(job_name, bool(data.get("enabled", True)))
    return jsonify(record), 200
