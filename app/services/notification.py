"""
Legal Workflow Engine
Notification Service.

Creates and queries in-app notifications.  Writers only ``flush`` so that
notifications raised from inside a workflow transition commit (or roll
back) together with it.
"""

from app.models import db
from app.models.notification import Notification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, recipient_id, title, message="", category="system", severity="info",
               entity_type="", entity_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (flushed, not committed).
        """
        notif = Notification(
            recipient_id=recipient_id,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.flush()
        return notif

    @staticmethod
    def broadcast(*, recipient_ids, title, message="", category="system", severity="info",
                  entity_type="", entity_id=None):
        """
        Send the same notification to several users (duplicates collapsed).

        Returns:
            List of created Notification instances.
        """
        notifications = []
        for recipient_id in dict.fromkeys(recipient_ids):
            notif = Notification(
                recipient_id=recipient_id,
                title=title,
                message=message,
                category=category,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.flush()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.
        """
        q = Notification.query.filter_by(recipient_id=recipient_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def unread_count(recipient_id):
        """Return count of unread notifications."""
        return Notification.query.filter_by(recipient_id=recipient_id, is_read=False).count()
