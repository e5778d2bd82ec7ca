"""
Notification blueprint — the actor's in-app inbox.

Endpoints:
    GET   /api/v1/notifications                 — list (?unreadOnly=true&limit=&offset=)
    POST  /api/v1/notifications/<id>/read       — mark one as read
    POST  /api/v1/notifications/read-all        — mark every unread item as read
"""

import logging

from flask import Blueprint, jsonify, request

from delivery.auth import get_current_actor
from delivery.blueprints import query_flag
from delivery.services.notification import NotificationService

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification", __name__, url_prefix="/api/v1")


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    actor = get_current_actor()
    unread_only = query_flag("unreadOnly") or query_flag("unread_only")
    limit = min(max(request.args.get("limit", 50, type=int), 1), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)

    items, total = NotificationService.list_for_user(
        actor.id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread": NotificationService.unread_count(actor.id),
    })


@notification_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_notification_read(notification_id):
    actor = get_current_actor()
    notif = NotificationService.mark_read(notification_id, actor.id)
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_notifications_read():
    actor = get_current_actor()
    count = NotificationService.mark_all_read(actor.id)
    logger.info("Marked %d notification(s) read", count, extra={"actor_id": actor.id})
    return jsonify({"marked_read": count})
