"""
NOTIFICATION SERVICE
====================

Handles:
- Recording notifications for one or more users
- The post-commit outbox ledger operations queue notifications on
- Listing / reading / deleting a user's notifications

Notifications never block or roll back the ledger change that produced them.
"""

import logging
import math
from dataclasses import dataclass, field

from app.exceptions import NotFoundError, ValidationError
from app.extensions import db
from app.models import Notification, NotificationType, UserNotification

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a notification cannot be recorded"""
    pass


def _type_value(notification_type):
    if isinstance(notification_type, NotificationType):
        return notification_type.value
    return notification_type


# ============================================================
# CREATE NOTIFICATION
# ============================================================

def create_notification(type, message, user_ids, payload=None,
                        loan_id=None, group_id=None, invite_id=None):
    """
    Record a notification and fan it out to every distinct user id.
    Null ids (unregistered parties) are dropped.

    Returns: Notification
    """
    recipients = []
    for user_id in user_ids or []:
        if user_id is not None and user_id not in recipients:
            recipients.append(user_id)

    try:
        notification = Notification(
            type=_type_value(type),
            message=message,
            payload=payload,
            loan_id=loan_id,
            group_id=group_id,
            invite_id=invite_id
        )
        db.session.add(notification)
        db.session.flush()

        for user_id in recipients:
            db.session.add(UserNotification(
                user_id=user_id,
                notification_id=notification.id
            ))

        db.session.commit()

        return notification

    except Exception as e:
        db.session.rollback()
        raise NotificationError(f"Failed to create notification: {str(e)}") from e


# ============================================================
# OUTBOX (POST-COMMIT DELIVERY)
# ============================================================

@dataclass
class PendingNotification:
    type: NotificationType
    message: str
    user_ids: list
    payload: dict = field(default_factory=dict)
    loan_id: int = None
    group_id: int = None


class NotificationOutbox:
    """
    Notifications queued during a unit of work.

    Only dispatched once the unit of work has committed; dropped if it
    rolls back. Each entry is delivered on its own so one failure does not
    stop the rest.
    """

    def __init__(self):
        self._pending = []

    def add(self, type, message, user_ids, payload=None, loan_id=None, group_id=None):
        user_ids = [uid for uid in user_ids if uid is not None]
        if not user_ids:
            return None
        item = PendingNotification(
            type=type,
            message=message,
            user_ids=user_ids,
            payload=payload or {},
            loan_id=loan_id,
            group_id=group_id
        )
        self._pending.append(item)
        return item

    @property
    def pending(self):
        return list(self._pending)

    def __len__(self):
        return len(self._pending)

    def discard(self):
        self._pending.clear()

    def dispatch(self):
        """Deliver every queued notification. Returns the number delivered."""
        delivered = 0
        pending, self._pending = self._pending, []

        for item in pending:
            try:
                create_notification(
                    type=item.type,
                    message=item.message,
                    user_ids=item.user_ids,
                    payload=item.payload,
                    loan_id=item.loan_id,
                    group_id=item.group_id
                )
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Failed to create {_type_value(item.type)} notification: {e}",
                    extra={'loan_id': item.loan_id, 'user_ids': item.user_ids}
                )

        return delivered


# ============================================================
# READ SIDE
# ============================================================

def _user_notifications_query(user_id):
    return Notification.query.join(UserNotification).filter(
        UserNotification.user_id == user_id,
        Notification.is_deleted.is_(False)
    )


def get_notifications(user_id, page=1, limit=10, type=None, is_read=None, group_id=None):
    """Paginated notifications for a user, newest first."""
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be at least 1")

    query = _user_notifications_query(user_id)
    if is_read is not None:
        query = query.filter(UserNotification.is_read.is_(is_read))
    if type:
        query = query.filter(Notification.type == _type_value(type))
    if group_id:
        query = query.filter(Notification.group_id == group_id)

    total_count = query.count()
    notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()

    return {
        'notifications': [n.to_dict(for_user_id=user_id) for n in notifications],
        'page': page,
        'limit': limit,
        'total_pages': math.ceil(total_count / limit),
        'total_count': total_count
    }


def mark_as_read(user_id, notification_id):
    recipient = UserNotification.query.join(Notification).filter(
        UserNotification.user_id == user_id,
        UserNotification.notification_id == notification_id,
        Notification.is_deleted.is_(False)
    ).first()

    if not recipient:
        raise NotFoundError("Notification not found")

    recipient.is_read = True
    db.session.commit()
    return recipient


def mark_all_as_read(user_id):
    """Mark every unread notification of a user as read. Returns the count."""
    unread = UserNotification.query.join(Notification).filter(
        UserNotification.user_id == user_id,
        UserNotification.is_read.is_(False),
        Notification.is_deleted.is_(False)
    ).all()

    if not unread:
        raise NotFoundError("No unread notifications found")

    for recipient in unread:
        recipient.is_read = True
    db.session.commit()
    return len(unread)


def delete_notification(user_id, notification_id):
    notification = _user_notifications_query(user_id).filter(
        Notification.id == notification_id
    ).first()

    if not notification:
        raise NotFoundError("Notification not found")

    notification.is_deleted = True
    db.session.commit()
    return notification
