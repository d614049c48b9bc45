"""Standardised API error responses.

Usage
-----
    from envcrm.utils.errors import api_error, E

    return api_error(E.TASK_NOT_FOUND, "Task not found")
    return api_error(E.VALIDATION_REQUIRED, "reason is required")
    return api_error(E.INVALID_STATUS_TRANSITION, msg, details={"dimension": "status"})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for generic application errors
     • bare UPPER_SNAKE for the project-status / task-lock domain codes
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Project status engine – HTTP 400
    CHECKLIST_NOT_FINALIZED = "CHECKLIST_NOT_FINALIZED"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"

    # Task locking / unlock workflow – HTTP 400
    TASK_ALREADY_LOCKED = "TASK_ALREADY_LOCKED"
    TASK_NOT_LOCKED = "TASK_NOT_LOCKED"
    TASK_COMPLETED = "TASK_COMPLETED"
    REASON_REQUIRED = "REASON_REQUIRED"
    BLOCKED_REASON_REQUIRED = "BLOCKED_REASON_REQUIRED"
    REQUEST_ALREADY_REVIEWED = "REQUEST_ALREADY_REVIEWED"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    UNLOCK_REQUEST_NOT_FOUND = "UNLOCK_REQUEST_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    UNLOCK_REQUEST_PENDING = "UNLOCK_REQUEST_PENDING"

    # Permissions – HTTP 403 / 401
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    UNAUTHORIZED = "UNAUTHORIZED"

    # Locked – HTTP 423
    TASK_LOCKED = "TASK_LOCKED"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.CHECKLIST_NOT_FINALIZED: 400,
    E.INVALID_STATUS_TRANSITION: 400,
    E.TASK_ALREADY_LOCKED: 400,
    E.TASK_NOT_LOCKED: 400,
    E.TASK_COMPLETED: 400,
    E.REASON_REQUIRED: 400,
    E.BLOCKED_REASON_REQUIRED: 400,
    E.REQUEST_ALREADY_REVIEWED: 400,
    E.NOT_FOUND: 404,
    E.PROJECT_NOT_FOUND: 404,
    E.TASK_NOT_FOUND: 404,
    E.UNLOCK_REQUEST_NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.UNLOCK_REQUEST_PENDING: 409,
    E.INSUFFICIENT_PERMISSIONS: 403,
    E.UNAUTHORIZED: 401,
    E.TASK_LOCKED: 423,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (offending dimension, allowed values, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "code": code,
        "message": message,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_domain_error_handlers(bp):
    """Attach the shared DomainError → JSON handlers to a blueprint."""
    import logging

    from envcrm.core.exceptions import DomainError
    from envcrm.models import db

    logger = logging.getLogger(bp.import_name)

    @bp.errorhandler(DomainError)
    def _handle_domain_error(error: DomainError):
        db.session.rollback()
        return api_error(error.code, str(error), status=error.status, details=error.details)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        from werkzeug.exceptions import HTTPException

        if isinstance(error, HTTPException):
            return error
        db.session.rollback()
        logger.exception("Unexpected error in %s", bp.name)
        return api_error(E.INTERNAL, "Internal server error")
