"""
Project Workspace Platform
Notification Service.

Central service for creating, broadcasting and querying in-app
notifications.  Domain events reach it through the outbox publishers
(``app.services.outbox_publishers``), never directly from a write path.
"""

from datetime import datetime, timezone

from app.models import db
from app.models.notification import Notification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, tenant_id, user_id, title, message="", category="system",
               severity="info", project_id=None, entity_type="", entity_id=None,
               source_event_id=None, commit=True):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (committed unless ``commit=False``).
        """
        notif = Notification(
            tenant_id=tenant_id,
            user_id=user_id,
            project_id=project_id,
            title=title[:300],
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
            source_event_id=source_event_id,
        )
        db.session.add(notif)
        if commit:
            db.session.commit()
        return notif

    @staticmethod
    def broadcast(*, tenant_id, user_ids, title, message="", category="system",
                  severity="info", project_id=None, entity_type="", entity_id=None,
                  source_event_id=None, commit=True):
        """
        Send the same notification to several users (duplicates collapsed).

        Returns:
            List of created Notification instances.
        """
        notifications = []
        for uid in dict.fromkeys(u for u in user_ids if u):
            notifications.append(NotificationService.create(
                tenant_id=tenant_id,
                user_id=uid,
                title=title,
                message=message,
                category=category,
                severity=severity,
                project_id=project_id,
                entity_type=entity_type,
                entity_id=entity_id,
                source_event_id=source_event_id,
                commit=False,
            ))
        if commit:
            db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, tenant_id, unread_only=False, limit=50, offset=0):
        """Retrieve a user's notifications, newest first."""
        q = Notification.query.filter_by(user_id=user_id, tenant_id=tenant_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(user_id, tenant_id):
        return Notification.query.filter_by(
            user_id=user_id, tenant_id=tenant_id, is_read=False
        ).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, user_id, tenant_id):
        """Mark one of the user's notifications as read.  None if not theirs."""
        notif = Notification.query.filter_by(
            id=notification_id, user_id=user_id, tenant_id=tenant_id
        ).first()
        if notif and not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(user_id, tenant_id):
        """Mark all of a user's notifications as read.  Returns the count."""
        now = datetime.now(timezone.utc)
        count = Notification.query.filter_by(
            user_id=user_id, tenant_id=tenant_id, is_read=False
        ).update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count
