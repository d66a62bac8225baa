"""
LOAN ROUTES
===========

Thin JSON layer over loan_service and split_loan_service.
Parses request bodies, resolves emails to users, and returns hydrated loans.
Errors are LedgerErrors, rendered by the app-wide error handler.
"""

from datetime import date, datetime, timezone

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from app.exceptions import NotFoundError, ValidationError
from app.services.loan_service import (
    create_loan, delete_loan, get_loan_details, link_pending_loans,
    resolve_counterparty, transfer_loan, update_loan
)
from app.services.reminder_service import run_loan_reminders, run_overdue_scan
from app.services.split_loan_service import (
    MemberSplit, create_split_loan, delete_split_loan, get_child_loans, update_split_loan
)
from app.services.user_service import find_user_by_email, find_users_by_emails

loans_bp = Blueprint('loans', __name__, url_prefix='/loans')

# request body key -> service patch key
PATCH_FIELDS = {
    'amount': 'amount',
    'description': 'description',
    'dueDate': 'due_date',
    'status': 'status',
    'isAcknowledged': 'is_acknowledged',
    'groupId': 'group_id',
}


# ============== REQUEST HELPERS ==============

def _json_body():
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _parse_date(value):
    if value is None or isinstance(value, (date, datetime)):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f"Invalid date: {value}")
    # stored timestamps are naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_bool(value):
    if isinstance(value, bool):
        return value
    if value in ('true', 'True', '1', 1):
        return True
    if value in ('false', 'False', '0', 0):
        return False
    raise ValidationError(f"Invalid boolean: {value}")


def _parse_int(value, name):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _loan_patch(body):
    patch = {}
    for key, field in PATCH_FIELDS.items():
        if key not in body:
            continue
        value = body[key]
        if field == 'due_date':
            value = _parse_date(value)
        elif field == 'is_acknowledged':
            value = _parse_bool(value)
        elif field == 'group_id' and value is not None:
            value = _parse_int(value, 'groupId')
        patch[field] = value
    return patch


def _member_splits(raw_splits):
    """Map [{email, amount, status}] to MemberSplits via registered users."""
    if not isinstance(raw_splits, list):
        raise ValidationError("memberSplits must be a list")

    emails = [split.get('email') for split in raw_splits]
    if any(not email for email in emails):
        raise ValidationError("Every member split needs an email")

    users_by_email = find_users_by_emails(emails)
    return [
        MemberSplit(
            user_id=users_by_email[split['email']].id,
            amount=split.get('amount'),
            status=split.get('status')
        )
        for split in raw_splits
    ]


# ============== INDIVIDUAL LOANS ==============

@loans_bp.route('', methods=['POST'])
@login_required
def create_individual_loan():
    body = _json_body()

    email = body.get('otherPartyEmail') or body.get('borrower')
    counterparty = resolve_counterparty(email)

    group_id = body.get('groupId')
    loan = create_loan(
        amount=body.get('amount'),
        description=body.get('description', ''),
        due_date=_parse_date(body.get('dueDate')),
        direction=body.get('direction'),
        acting_user_id=current_user.id,
        counterparty=counterparty,
        group_id=_parse_int(group_id, 'groupId') if group_id is not None else None,
        status=body.get('status')
    )
    return jsonify(loan.to_dict()), 201


@loans_bp.route('/<int:loan_id>', methods=['GET'])
@login_required
def view_loan(loan_id):
    view_type = request.args.get('type', 'single')
    return jsonify(get_loan_details(loan_id, view_type))


@loans_bp.route('/<int:loan_id>', methods=['PATCH'])
@login_required
def update_individual_loan(loan_id):
    loan = update_loan(loan_id, _loan_patch(_json_body()), current_user.id)
    return jsonify(loan.to_dict())


@loans_bp.route('/<int:loan_id>/transfer', methods=['PATCH'])
@login_required
def transfer_individual_loan(loan_id):
    body = _json_body()

    new_borrower_id = body.get('newBorrowerId')
    if new_borrower_id is not None:
        new_borrower_id = _parse_int(new_borrower_id, 'newBorrowerId')

    if body.get('newBorrowerEmail'):
        if new_borrower_id is not None:
            raise ValidationError("Give either newBorrowerId or newBorrowerEmail, not both")
        borrower = find_user_by_email(body['newBorrowerEmail'])
        if not borrower:
            raise NotFoundError(f"User with email {body['newBorrowerEmail']} not found")
        new_borrower_id = borrower.id

    loan = transfer_loan(
        loan_id,
        current_user.id,
        new_borrower_id=new_borrower_id,
        new_party_email=body.get('newPartyEmail')
    )
    return jsonify(loan.to_dict())


@loans_bp.route('/<int:loan_id>/delete', methods=['PATCH'])
@login_required
def delete_individual_loan(loan_id):
    loan = delete_loan(loan_id, current_user.id)
    return jsonify({'id': loan.id, 'isDeleted': loan.is_deleted})


@loans_bp.route('/link-pending', methods=['POST'])
@login_required
def link_pending():
    loans = link_pending_loans(current_user.id)
    return jsonify({'linked': [loan.to_dict() for loan in loans], 'count': len(loans)})


# ============== SPLIT LOANS ==============

@loans_bp.route('/splits', methods=['POST'])
@login_required
def create_split():
    body = _json_body()
    if body.get('groupId') is None:
        raise ValidationError("groupId is required")

    result = create_split_loan(
        group_id=_parse_int(body['groupId'], 'groupId'),
        description=body.get('description', ''),
        due_date=_parse_date(body.get('dueDate')),
        member_splits=_member_splits(body.get('memberSplits') or []),
        creator_id=current_user.id,
        status=body.get('status')
    )
    return jsonify(result), 201


@loans_bp.route('/<int:loan_id>/splits', methods=['PATCH'])
@login_required
def update_split(loan_id):
    body = _json_body()
    patch = _loan_patch(body)
    if body.get('memberSplits'):
        patch['member_splits'] = _member_splits(body['memberSplits'])

    return jsonify(update_split_loan(loan_id, patch, current_user.id))


@loans_bp.route('/<int:loan_id>/splits/delete', methods=['PATCH'])
@login_required
def delete_split(loan_id):
    loan = delete_split_loan(loan_id, current_user.id)
    return jsonify({'id': loan.id, 'isDeleted': loan.is_deleted})


@loans_bp.route('/<int:parent_id>/child-loans', methods=['GET'])
@login_required
def list_child_loans(parent_id):
    page = _parse_int(request.args.get('page', 1), 'page')
    page_size = _parse_int(
        request.args.get('pageSize', current_app.config.get('DEFAULT_PAGE_SIZE', 10)),
        'pageSize'
    )
    result = get_child_loans(
        parent_id,
        search_query=request.args.get('searchQuery'),
        page=page,
        page_size=page_size
    )
    return jsonify({
        'childLoans': result['child_loans'],
        'totalAmount': result['total_amount'],
        'count': result['count'],
    })


# ============== SCANS (MANUAL TRIGGER) ==============

@loans_bp.route('/reminders', methods=['POST'])
@login_required
def trigger_loan_reminders():
    processed = run_loan_reminders()
    return jsonify({'message': 'Loan reminders processed successfully', 'processed': processed})


@loans_bp.route('/overdue', methods=['POST'])
@login_required
def trigger_overdue_scan():
    processed = run_overdue_scan()
    return jsonify({'message': 'Overdue loans processed successfully', 'processed': processed})
