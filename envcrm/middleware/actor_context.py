"""
Actor Context Middleware — places the calling user on ``flask.g``.

Authentication is handled by the upstream gateway, which forwards:

    X-User-Id           — the authenticated user's id
    X-User-Permissions  — comma-separated capability strings

This middleware does NOT reject requests without headers; endpoints that
need an actor call ``require_actor()`` and endpoints that need a capability
use ``@require_permission``.

Chain order:
  timing.py  →  actor_context.py  →  route handler
"""

import functools
import logging

from flask import current_app, g, request

from envcrm.core.exceptions import DomainError
from envcrm.services.permission import check_permission, normalize_permissions
from envcrm.utils.errors import E

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"
PERMISSIONS_HEADER = "X-User-Permissions"


def init_actor_context(app):
    """Register actor context middleware as a before_request hook."""

    @app.before_request
    def _actor_context():
        g.actor_id = None
        g.actor_permissions = frozenset()

        if not request.path.startswith("/api/v1/"):
            return None

        actor_id = (request.headers.get(USER_HEADER) or "").strip()
        g.actor_id = actor_id or None
        g.actor_permissions = normalize_permissions(request.headers.get(PERMISSIONS_HEADER))
        return None

    logger.info("Actor context middleware installed")


def require_actor() -> str:
    """Return the current actor id or raise 401 when the header is missing."""
    actor_id = getattr(g, "actor_id", None)
    if not actor_id:
        raise DomainError(f"{USER_HEADER} header is required", code=E.UNAUTHORIZED, status=401)
    return actor_id


def require_permission(config_key: str):
    """
    Decorator: require the capability named by ``app.config[config_key]``.

    Usage:
        @bp.route("/tasks/unlock-requests/pending")
        @require_permission("LOCK_MANAGE_PERMISSION")
        def pending_requests():
            ...
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            capability = current_app.config[config_key]
            check_permission(getattr(g, "actor_id", None), getattr(g, "actor_permissions", None), capability)
            return f(*args, **kwargs)
        return decorated
    return decorator
