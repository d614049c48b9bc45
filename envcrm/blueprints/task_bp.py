"""
Task blueprint — task CRUD, time-lock administration and unlock requests.

Endpoint groups:
  Task CRUD          POST/GET /api/v1/tasks
                     GET/PATCH /api/v1/tasks/<id>
                     PATCH /api/v1/tasks/<id>/status
                     PATCH /api/v1/tasks/<id>/reassign
  Lock admin         PATCH /api/v1/tasks/<id>/manual-lock
                     PATCH /api/v1/tasks/<id>/direct-unlock
  Unlock requests    POST  /api/v1/tasks/<id>/unlock-request
                     GET   /api/v1/tasks/<id>/unlock-requests
                     GET   /api/v1/tasks/unlock-requests/pending
                     PATCH /api/v1/tasks/unlock-requests/<id>/review

Actor id and permissions come from ``flask.g`` (see actor_context).
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request

from envcrm.blueprints import page_args
from envcrm.middleware.actor_context import require_actor, require_permission
from envcrm.services.core import get_core_services
from envcrm.utils.errors import register_domain_error_handlers

logger = logging.getLogger(__name__)

task_bp = Blueprint("tasks", __name__, url_prefix="/api/v1")
register_domain_error_handlers(task_bp)


def _permissions():
    return getattr(g, "actor_permissions", frozenset())


# ═════════════════════════════════════════════════════════════════════════
# Task CRUD
# ═════════════════════════════════════════════════════════════════════════


@task_bp.route("/tasks", methods=["POST"])
def create_task():
    """Body: {title, assignee_id, project_id?, task_type?, description?,
    notes?, priority?, due_date? (YYYY-MM-DD)}"""
    actor_id = require_actor()
    data = request.get_json(silent=True) or {}
    task = get_core_services().task_service.create_task(data, actor_id)
    return jsonify(task), 201


@task_bp.route("/tasks", methods=["GET"])
def list_tasks():
    """Query params: project_id, assignee_id, status, priority, task_type,
    sla_status, is_locked, search, sort_by, sort_order, page, page_size."""
    args = request.args
    page, page_size = page_args(20)
    is_locked = args.get("is_locked")
    filters = {
        "project_id": args.get("project_id", type=int),
        "assignee_id": args.get("assignee_id"),
        "status": args.get("status"),
        "priority": args.get("priority"),
        "task_type": args.get("task_type"),
        "sla_status": args.get("sla_status"),
        "is_locked": None if is_locked is None else is_locked.lower() in ("1", "true", "yes"),
        "search": args.get("search"),
        "sort_by": args.get("sort_by"),
        "sort_order": args.get("sort_order"),
        "page": page,
        "page_size": page_size,
    }
    return jsonify(get_core_services().task_service.list_tasks(filters)), 200


@task_bp.route("/tasks/<int:task_id>", methods=["GET"])
def get_task(task_id):
    return jsonify(get_core_services().task_service.get_task(task_id)), 200


@task_bp.route("/tasks/<int:task_id>", methods=["PATCH"])
def update_task(task_id):
    actor_id = require_actor()
    data = request.get_json(silent=True) or {}
    task = get_core_services().task_service.update_task(task_id, data, actor_id, _permissions())
    return jsonify(task), 200


@task_bp.route("/tasks/<int:task_id>/status", methods=["PATCH"])
def update_task_status(task_id):
    """Body: {status, blocked_reason?}"""
    actor_id = require_actor()
    data = request.get_json(silent=True) or {}
    task = get_core_services().task_service.update_task_status(
        task_id, data.get("status"), actor_id, _permissions(),
        blocked_reason=data.get("blocked_reason"),
    )
    return jsonify(task), 200


@task_bp.route("/tasks/<int:task_id>/reassign", methods=["PATCH"])
def reassign_task(task_id):
    """Body: {assignee_id}"""
    actor_id = require_actor()
    data = request.get_json(silent=True) or {}
    task = get_core_services().task_service.reassign_task(
        task_id, data.get("assignee_id"), actor_id, _permissions(),
    )
    return jsonify(task), 200


# ═════════════════════════════════════════════════════════════════════════
# Lock administration
# ═════════════════════════════════════════════════════════════════════════


@task_bp.route("/tasks/<int:task_id>/manual-lock", methods=["PATCH"])
def manual_lock(task_id):
    actor_id = require_actor()
    services = get_core_services()
    task = services.lock_controller.manual_lock(task_id, actor_id, _permissions())
    return jsonify(services.task_service.serialize(task)), 200


@task_bp.route("/tasks/<int:task_id>/direct-unlock", methods=["PATCH"])
def direct_unlock(task_id):
    actor_id = require_actor()
    services = get_core_services()
    task = services.lock_controller.direct_unlock(task_id, actor_id, _permissions())
    return jsonify(services.task_service.serialize(task)), 200


# ═════════════════════════════════════════════════════════════════════════
# Unlock requests
# ═════════════════════════════════════════════════════════════════════════


@task_bp.route("/tasks/<int:task_id>/unlock-request", methods=["POST"])
def request_unlock(task_id):
    """Body: {reason}"""
    actor_id = require_actor()
    data = request.get_json(silent=True) or {}
    unlock_request = get_core_services().unlock_workflow.request_unlock(task_id, actor_id, data.get("reason"))
    return jsonify(unlock_request.to_dict()), 201


@task_bp.route("/tasks/<int:task_id>/unlock-requests", methods=["GET"])
def list_unlock_requests(task_id):
    page, page_size = page_args(10)
    result = get_core_services().unlock_workflow.list_requests_for_task(task_id, page, page_size)
    return jsonify(result), 200


@task_bp.route("/tasks/unlock-requests/pending", methods=["GET"])
@require_permission("LOCK_MANAGE_PERMISSION")
def list_pending_unlock_requests():
    page, page_size = page_args(20)
    return jsonify(get_core_services().unlock_workflow.list_pending_requests(page, page_size)), 200


@task_bp.route("/tasks/unlock-requests/<int:request_id>/review", methods=["PATCH"])
def review_unlock_request(request_id):
    """Body: {decision: approved|rejected, review_note?}"""
    actor_id = require_actor()
    data = request.get_json(silent=True) or {}
    unlock_request = get_core_services().unlock_workflow.review_unlock_request(
        request_id,
        data.get("decision"),
        actor_id,
        _permissions(),
        review_note=data.get("review_note"),
    )
    return jsonify(unlock_request.to_dict()), 200
