"""
Project status blueprint.

Endpoints:
    PUT  /api/v1/projects/<id>/status               — apply a batch of dimension changes
    GET  /api/v1/projects/<id>/status/transitions   — valid next values per dimension
    GET  /api/v1/projects/<id>/status/can-update    — checklist gate state
    GET  /api/v1/projects/<id>/status/readiness     — workflow readiness report
    POST /api/v1/projects/status/bulk               — same change over many projects

The service layer owns validation, writes and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from envcrm.core.exceptions import ValidationError
from envcrm.middleware.actor_context import require_actor, require_permission
from envcrm.services.core import get_core_services
from envcrm.utils.errors import E, register_domain_error_handlers

logger = logging.getLogger(__name__)

project_status_bp = Blueprint("project_status", __name__, url_prefix="/api/v1")
register_domain_error_handlers(project_status_bp)


def _engine():
    return get_core_services().status_engine


@project_status_bp.route("/projects/<int:project_id>/status", methods=["PUT"])
def update_project_status(project_id):
    """Apply status dimension changes.

    Body: {status?, verification_status?, execution_status?,
           client_review_status?, payment_status?}
    """
    actor_id = require_actor()
    data = request.get_json(silent=True) or {}
    project = _engine().apply_status_update(project_id, data, actor_id)
    return jsonify(project.to_dict()), 200


@project_status_bp.route("/projects/<int:project_id>/status/transitions", methods=["GET"])
def get_valid_transitions(project_id):
    transitions = _engine().get_valid_transitions(project_id)
    return jsonify({"project_id": project_id, "transitions": transitions}), 200


@project_status_bp.route("/projects/<int:project_id>/status/can-update", methods=["GET"])
def can_update_status(project_id):
    return jsonify(_engine().is_status_update_allowed(project_id)), 200


@project_status_bp.route("/projects/<int:project_id>/status/readiness", methods=["GET"])
def workflow_readiness(project_id):
    return jsonify(_engine().check_workflow_readiness(project_id)), 200


@project_status_bp.route("/projects/status/bulk", methods=["POST"])
@require_permission("PROJECT_MANAGE_PERMISSION")
def bulk_update_status():
    """Body: {project_ids: [int], changes: {dimension: value}}"""
    actor_id = require_actor()
    data = request.get_json(silent=True) or {}
    project_ids = data.get("project_ids")
    if not isinstance(project_ids, list) or not project_ids:
        raise ValidationError("project_ids must be a non-empty list", code=E.VALIDATION_REQUIRED)
    result = _engine().bulk_update_status(project_ids, data.get("changes"), actor_id)
    return jsonify(result), 200
