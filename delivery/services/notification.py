"""
Notification Service.

Creates and queries in-app notification rows for workflow and package
events. Writes only ``flush`` so they commit (or roll back) together with
the transition that produced them.
"""

import logging
from datetime import datetime, timezone

from delivery.core.exceptions import AuthorizationError, NotFoundError
from delivery.models import db
from delivery.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def broadcast(*, recipients, title, message="", category="workflow_action",
                  severity="info", entity_type="", entity_id=None, exclude=None):
        """
        Queue one notification per recipient user id.

        Args:
            recipients: iterable of user ids; duplicates are collapsed.
            exclude: user id that should not be notified (usually the actor).

        Returns:
            List of created Notification instances (flushed, not committed).
        """
        targets = sorted({int(r) for r in recipients if r} - ({exclude} if exclude else set()))
        notifications = []
        for user_id in targets:
            notif = Notification(
                recipient_user_id=user_id,
                title=title,
                message=message,
                category=category,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        if notifications:
            db.session.flush()
            logger.debug(
                "Queued %d notification(s) category=%s %s/%s",
                len(notifications), category, entity_type, entity_id,
            )
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a user, newest first."""
        q = Notification.query.filter_by(recipient_user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(user_id):
        return Notification.query.filter_by(recipient_user_id=user_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, user_id):
        """Mark a single notification as read. Only its recipient may do so."""
        notif = db.session.get(Notification, notification_id)
        if notif is None:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        if notif.recipient_user_id != user_id:
            raise AuthorizationError("Notification belongs to another user.")
        if not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(user_id):
        q = Notification.query.filter_by(recipient_user_id=user_id, is_read=False)
        count = q.update(
            {"is_read": True, "read_at": datetime.now(timezone.utc)},
            synchronize_session="fetch",
        )
        db.session.commit()
        return count
