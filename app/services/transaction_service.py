"""
TRANSACTION SERVICE
===================

Builds and maintains the IN/OUT legs behind every loan.

CRITICAL RULES:
1. A fully registered loan has exactly one live OUT (lender) and one live IN (borrower) leg
2. Leg amount always equals the loan amount
3. Legs are never re-pointed: stale legs are soft-deleted and replaced
"""

import math
from decimal import Decimal

from sqlalchemy import func, or_

from app.exceptions import ValidationError
from app.extensions import db
from app.models import (
    Loan, LoanStatus, Transaction, TransactionCategory, TransactionDirection, utcnow
)


def leg_description(direction, description):
    """OUT legs read "Loan given: ...", IN legs read "Loan received: ..."."""
    direction = TransactionDirection(direction)
    if direction == TransactionDirection.OUT:
        return f"Loan given: {description}"
    return f"Loan received: {description}"


# ============================================================
# CREATE LEG
# ============================================================

def build_leg(loan, direction, payer_id, title, group_id=None):
    """Create (and add to the session) one leg for a loan."""
    direction = TransactionDirection(direction)
    leg = Transaction(
        amount=loan.amount,
        description=leg_description(direction, loan.description),
        category=TransactionCategory.LOAN.value,
        direction=direction.value,
        date=utcnow(),
        payer_id=payer_id,
        group_id=group_id,
        title=title,
        loan=loan
    )
    db.session.add(leg)
    return leg


def build_party_legs(loan, title):
    """
    One leg per registered side: OUT for the lender, IN for the borrower.
    The group is stamped only when both sides are registered.
    """
    group_id = loan.group_id if loan.is_fully_registered() else None
    legs = []
    if loan.lender_id is not None:
        legs.append(build_leg(loan, TransactionDirection.OUT, loan.lender_id, title, group_id))
    if loan.borrower_id is not None:
        legs.append(build_leg(loan, TransactionDirection.IN, loan.borrower_id, title, group_id))
    return legs


# ============================================================
# UPDATE / RETIRE LEGS
# ============================================================

def cascade_to_legs(loan, amount=None, description=None):
    """Copy an amount and/or description change onto every live leg."""
    legs = loan.live_transactions()
    for leg in legs:
        if amount is not None:
            leg.amount = amount
        if description is not None:
            leg.description = leg_description(leg.direction, description)
    return legs


def retire_legs(loan):
    """Soft-delete every live leg of a loan. Returns the retired legs."""
    legs = loan.live_transactions()
    for leg in legs:
        leg.is_deleted = True
    return legs


def retire_legs_for_loans(loan_ids):
    """Bulk soft-delete of the live legs of several loans."""
    if not loan_ids:
        return 0
    return Transaction.query.filter(
        Transaction.loan_id.in_(loan_ids),
        Transaction.is_deleted.is_(False)
    ).update({Transaction.is_deleted: True}, synchronize_session='fetch')


# ============================================================
# SUMMARY
# ============================================================

def get_user_loan_summary(user_id, group_id=None):
    """
    Totals of a user's live loan legs.

    Returns: {'in', 'out', 'net', 'count'}
    """
    query = db.session.query(
        Transaction.direction,
        func.coalesce(func.sum(Transaction.amount), 0),
        func.count(Transaction.id)
    ).join(Loan, Transaction.loan_id == Loan.id).filter(
        Transaction.payer_id == user_id,
        Transaction.category == TransactionCategory.LOAN.value,
        Transaction.is_deleted.is_(False),
        Loan.is_deleted.is_(False)
    )
    if group_id is not None:
        query = query.filter(Transaction.group_id == group_id)

    totals = {TransactionDirection.IN.value: Decimal('0'), TransactionDirection.OUT.value: Decimal('0')}
    count = 0
    for direction, total, rows in query.group_by(Transaction.direction).all():
        totals[direction] = Decimal(str(total))
        count += rows

    return {
        'in': totals[TransactionDirection.IN.value],
        'out': totals[TransactionDirection.OUT.value],
        'net': totals[TransactionDirection.OUT.value] - totals[TransactionDirection.IN.value],
        'count': count
    }


# ============================================================
# LISTING
# ============================================================

LOAN_FILTERS = ('ALL', 'SPLIT_ONLY', 'REGULAR')
OVERDUE = 'OVERDUE'


def _enum_value(enum_cls, value, label):
    try:
        return enum_cls(value.value if isinstance(value, enum_cls) else value).value
    except ValueError:
        raise ValidationError(f"Invalid {label}: {value}")


def _leg_with_loan(leg):
    data = leg.to_dict()
    data['loan'] = leg.loan.to_dict(include_transactions=False)
    return data


def get_transactions(user_id, category=None, direction=None, group_id=None,
                     start_date=None, end_date=None, loan_filter='ALL',
                     loan_status=None, filter_by_payer=False, page=1, page_size=10):
    """
    One page of live legs, newest first.

    Outside a group only the user's own legs are listed. Inside a group
    every member's legs are, unless filter_by_payer narrows them to the user.

    - loan_filter: ALL, SPLIT_ONLY (group totals and their shares) or
      REGULAR (plain individual loans)
    - loan_status: a LoanStatus, or OVERDUE for active loans past due

    totals and count cover the whole filtered set, not just the page.
    """
    if page < 1 or page_size < 1:
        raise ValidationError("page and page_size must be at least 1")

    loan_filter = (loan_filter or 'ALL').upper()
    if loan_filter not in LOAN_FILTERS:
        raise ValidationError(f"Invalid loan filter: {loan_filter}")

    query = Transaction.query.join(Loan, Transaction.loan_id == Loan.id).filter(
        Transaction.is_deleted.is_(False),
        Loan.is_deleted.is_(False)
    )

    if category:
        query = query.filter(
            Transaction.category == _enum_value(TransactionCategory, category, 'category')
        )
    if direction:
        query = query.filter(
            Transaction.direction == _enum_value(TransactionDirection, direction, 'direction')
        )
    if start_date is not None:
        query = query.filter(Transaction.date >= start_date)
    if end_date is not None:
        query = query.filter(Transaction.date <= end_date)

    if group_id is not None:
        query = query.filter(Transaction.group_id == group_id)
    if group_id is None or filter_by_payer:
        query = query.filter(Transaction.payer_id == user_id)

    if loan_filter == 'SPLIT_ONLY':
        query = query.filter(or_(Loan.is_group_total.is_(True), Loan.parent_id.isnot(None)))
    elif loan_filter == 'REGULAR':
        query = query.filter(Loan.is_group_total.is_(False), Loan.parent_id.is_(None))

    if loan_status:
        if str(loan_status).upper() == OVERDUE:
            query = query.filter(
                Loan.status == LoanStatus.ACTIVE.value,
                Loan.due_date.isnot(None),
                Loan.due_date < utcnow()
            )
        else:
            query = query.filter(Loan.status == _enum_value(LoanStatus, loan_status, 'loan status'))

    totals = {TransactionDirection.IN.value: Decimal('0.00'), TransactionDirection.OUT.value: Decimal('0.00')}
    count = 0
    grouped = query.with_entities(
        Transaction.direction,
        func.coalesce(func.sum(Transaction.amount), 0),
        func.count(Transaction.id)
    ).group_by(Transaction.direction).all()
    for leg_direction, total, rows in grouped:
        totals[leg_direction] = Decimal(str(total)).quantize(Decimal('0.01'))
        count += rows

    legs = query.order_by(Transaction.date.desc(), Transaction.id.desc()) \
        .offset((page - 1) * page_size).limit(page_size).all()

    return {
        'transactions': [_leg_with_loan(leg) for leg in legs],
        'totals': {
            'in': totals[TransactionDirection.IN.value],
            'out': totals[TransactionDirection.OUT.value],
            'net': totals[TransactionDirection.OUT.value] - totals[TransactionDirection.IN.value]
        },
        'count': count,
        'page': page,
        'page_size': page_size,
        'total_pages': math.ceil(count / page_size)
    }
