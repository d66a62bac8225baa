"""
NOTIFICATION ROUTES
===================

The acting user's notification feed.
"""

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from app.exceptions import ValidationError
from app.services.notification_service import (
    delete_notification, get_notifications, mark_all_as_read, mark_as_read
)

notifications_bp = Blueprint('notifications', __name__, url_prefix='/notifications')


def _int_arg(name, default=None):
    value = request.args.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _bool_arg(name):
    value = request.args.get(name)
    if value is None:
        return None
    if value.lower() in ('true', '1'):
        return True
    if value.lower() in ('false', '0'):
        return False
    raise ValidationError(f"{name} must be true or false")


@notifications_bp.route('', methods=['GET'])
@login_required
def list_notifications():
    result = get_notifications(
        current_user.id,
        page=_int_arg('page', 1),
        limit=_int_arg('limit', current_app.config.get('DEFAULT_PAGE_SIZE', 10)),
        type=request.args.get('type'),
        is_read=_bool_arg('isRead'),
        group_id=_int_arg('groupId')
    )
    return jsonify({
        'notifications': result['notifications'],
        'page': result['page'],
        'limit': result['limit'],
        'totalPages': result['total_pages'],
        'totalCount': result['total_count'],
    })


@notifications_bp.route('/<int:notification_id>/read', methods=['PATCH'])
@login_required
def read_notification(notification_id):
    mark_as_read(current_user.id, notification_id)
    return jsonify({'id': notification_id, 'isRead': True})


@notifications_bp.route('/read-all', methods=['PATCH'])
@login_required
def read_all_notifications():
    count = mark_all_as_read(current_user.id)
    return jsonify({'message': f'{count} notifications marked as read', 'count': count})


@notifications_bp.route('/<int:notification_id>/delete', methods=['PATCH'])
@login_required
def remove_notification(notification_id):
    delete_notification(current_user.id, notification_id)
    return jsonify({'id': notification_id, 'isDeleted': True})
