"""
Notification inbox blueprint.

Endpoints:
    GET   /api/v1/notifications?recipient=&unread_only=   — inbox, newest first
    GET   /api/v1/notifications/unread-count?recipient=
    PATCH /api/v1/notifications/<id>/read
    POST  /api/v1/notifications/mark-all-read            — body {recipient}

``recipient`` defaults to the calling actor.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request

from envcrm.core.exceptions import NotFoundError, ValidationError
from envcrm.services.notification import NotificationService
from envcrm.utils.errors import E, register_domain_error_handlers

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notifications", __name__, url_prefix="/api/v1")
register_domain_error_handlers(notification_bp)


def _recipient(value=None):
    recipient = value or getattr(g, "actor_id", None)
    if not recipient:
        raise ValidationError("recipient is required", code=E.VALIDATION_REQUIRED)
    return recipient


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    recipient = _recipient(request.args.get("recipient"))
    unread_only = request.args.get("unread_only", "false").lower() in ("1", "true", "yes")
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)

    items, total = NotificationService.list_for_recipient(
        recipient, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(recipient),
    }), 200


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    recipient = _recipient(request.args.get("recipient"))
    return jsonify({"recipient": recipient, "unread_count": NotificationService.unread_count(recipient)}), 200


@notification_bp.route("/notifications/<int:nid>/read", methods=["PATCH"])
def mark_read(nid):
    notif = NotificationService.mark_read(nid)
    if not notif:
        raise NotFoundError("Notification", nid)
    return jsonify(notif.to_dict()), 200


@notification_bp.route("/notifications/mark-all-read", methods=["POST"])
def mark_all_read():
    data = request.get_json(silent=True) or {}
    recipient = _recipient(data.get("recipient"))
    count = NotificationService.mark_all_read(recipient)
    return jsonify({"recipient": recipient, "marked": count}), 200
