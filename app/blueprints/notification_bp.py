"""
Notification Blueprint — the caller's in-app inbox.

Endpoints:
    GET   /api/v1/notifications                 ?unread=true&limit=&offset=
    GET   /api/v1/notifications/unread-count
    PATCH /api/v1/notifications/<id>/read
    POST  /api/v1/notifications/mark-all-read
"""

from flask import Blueprint, g, jsonify, request

from app.blueprints import arg_flag
from app.services.notification import NotificationService
from app.utils.errors import E, api_error

notification_bp = Blueprint("notifications", __name__, url_prefix="/api/v1/notifications")


@notification_bp.before_request
def _require_tenant():
    if getattr(g, "tenant_id", None) is None:
        return api_error(E.FORBIDDEN, "No tenant selected")
    return None


@notification_bp.route("", methods=["GET"])
def list_notifications():
    limit = min(request.args.get("limit", 50, type=int) or 50, 200)
    offset = max(request.args.get("offset", 0, type=int) or 0, 0)
    items, total = NotificationService.list_for_user(
        g.jwt_user_id, g.tenant_id, unread_only=arg_flag("unread"), limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"unread": NotificationService.unread_count(g.jwt_user_id, g.tenant_id)})


@notification_bp.route("/<notification_id>/read", methods=["PATCH"])
def mark_read(notification_id):
    notif = NotificationService.mark_read(notification_id, g.jwt_user_id, g.tenant_id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/mark-all-read", methods=["POST"])
def mark_all_read():
    return jsonify({"marked": NotificationService.mark_all_read(g.jwt_user_id, g.tenant_id)})
