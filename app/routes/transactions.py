"""
TRANSACTION ROUTES
==================

The acting user's loan legs: a filtered, paged listing and IN/OUT totals.
"""

from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from app.exceptions import ValidationError
from app.services.transaction_service import get_transactions, get_user_loan_summary

transactions_bp = Blueprint('transactions', __name__, url_prefix='/transactions')


def _int_arg(name, default=None):
    value = request.args.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _bool_arg(name, default=False):
    value = request.args.get(name)
    if value is None:
        return default
    if value.lower() in ('true', '1'):
        return True
    if value.lower() in ('false', '0'):
        return False
    raise ValidationError(f"{name} must be true or false")


def _date_arg(name):
    value = request.args.get(name)
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f"Invalid date: {value}")
    # stored timestamps are naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _totals(totals):
    return {'in': totals['in'], 'out': totals['out'], 'net': totals['net']}


@transactions_bp.route('', methods=['GET'])
@login_required
def list_transactions():
    result = get_transactions(
        current_user.id,
        category=request.args.get('category'),
        direction=request.args.get('direction'),
        group_id=_int_arg('groupId'),
        start_date=_date_arg('startDate'),
        end_date=_date_arg('endDate'),
        loan_filter=request.args.get('loanFilter', 'ALL'),
        loan_status=request.args.get('loanStatus'),
        filter_by_payer=_bool_arg('filterByPayer'),
        page=_int_arg('page', 1),
        page_size=_int_arg('pageSize', current_app.config.get('DEFAULT_PAGE_SIZE', 10))
    )
    return jsonify({
        'transactions': result['transactions'],
        'total': _totals(result['totals']),
        'transactionCount': result['count'],
        'page': result['page'],
        'pageSize': result['page_size'],
        'totalPages': result['total_pages'],
    })


@transactions_bp.route('/summary', methods=['GET'])
@login_required
def loan_summary():
    summary = get_user_loan_summary(current_user.id, group_id=_int_arg('groupId'))
    return jsonify({
        'total': _totals(summary),
        'transactionCount': summary['count'],
    })
