"""
LOAN SERVICE
============

Handles:
- Creating individual loans
- Loan details (single / split view)
- Updating loans and cascading changes to their legs
- Transferring a side of a loan to another user or an email
- Linking loans recorded against an email once its owner registers
- Deleting loans (soft delete)
"""

import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import func, or_

from app.exceptions import (
    ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
)
from app.extensions import db
from app.models import (
    Loan, LoanStatus, NotificationType, TransactionDirection
)
from app.parties import ExternalParty, RegisteredParty
from app.services.authorization_service import (
    can_acknowledge_loan, can_update_loan, get_active_group, require_authorization
)
from app.services.transaction_service import (
    build_leg, build_party_legs, cascade_to_legs, retire_legs, retire_legs_for_loans
)
from app.services.unit_of_work import unit_of_work
from app.services.user_service import find_user_by_email, get_active_user, get_first_name

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ('amount', 'description', 'due_date', 'status', 'is_acknowledged', 'group_id')


# ============================================================
# INPUT HELPERS
# ============================================================

def parse_amount(value):
    """Positive Decimal with two places, or ValidationError."""
    if isinstance(value, bool):
        raise ValidationError("Loan amount must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Loan amount must be a number")

    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Loan amount must be greater than 0")

    return amount.quantize(Decimal('0.01'))


def parse_status(value):
    try:
        return LoanStatus(value.value if isinstance(value, LoanStatus) else value).value
    except ValueError:
        raise ValidationError(f"Invalid loan status: {value}")


def parse_direction(value):
    try:
        return TransactionDirection(
            value.value if isinstance(value, TransactionDirection) else value
        )
    except ValueError:
        raise ValidationError(f"Invalid loan direction: {value}")


def parse_due_date(value):
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raise ValidationError("Due date must be a date")


def money(amount):
    """Amount as it appears in messages and JSON payloads."""
    return format(Decimal(amount).quantize(Decimal('0.01')), 'f')


# ============================================================
# PARTIES & TITLES
# ============================================================

def display_name(party, fallback='Unknown'):
    """First name of a registered party, local part of an email otherwise."""
    if isinstance(party, RegisteredParty):
        return get_first_name(party.user_id) or fallback
    if isinstance(party, ExternalParty):
        return party.display_name
    return fallback


def loan_title(lender_name, borrower_name):
    return f"Loan from {lender_name} to {borrower_name}"


def resolve_counterparty(email):
    """
    A registered party when the email belongs to a user,
    an external party otherwise.
    """
    if not email or not email.strip():
        raise ValidationError("Counterparty email is required")

    user = find_user_by_email(email)
    if user:
        return RegisteredParty(user.id)
    return ExternalParty(email.strip())


def _coerce_party(counterparty):
    if isinstance(counterparty, (RegisteredParty, ExternalParty)):
        return counterparty
    if isinstance(counterparty, int) and not isinstance(counterparty, bool):
        return RegisteredParty(counterparty)
    if isinstance(counterparty, str) and counterparty.strip():
        return ExternalParty(counterparty.strip())
    raise ValidationError("A counterparty (registered user or email) is required")


def get_live_loan(loan_id):
    """Non-deleted loan by id, or NotFoundError."""
    loan = Loan.query.filter_by(id=loan_id, is_deleted=False).first()
    if not loan:
        raise NotFoundError(f"Loan with ID {loan_id} not found")
    return loan


# ============================================================
# CREATE LOAN
# ============================================================

def create_loan(amount, description, due_date, direction, acting_user_id,
                counterparty, group_id=None, status=None):
    """
    Create an individual loan between the acting user and a counterparty.

    direction OUT: acting user lends. direction IN: acting user borrows.
    The counterparty is a Party (see resolve_counterparty), a user id or an email.

    ATOMIC: loan + one leg per registered side.
    Returns: Loan
    """
    amount = parse_amount(amount)
    direction = parse_direction(direction)
    status = parse_status(status or LoanStatus.ACTIVE)
    due_date = parse_due_date(due_date)
    counterparty = _coerce_party(counterparty)

    if not get_active_user(acting_user_id):
        raise NotFoundError(f"User with ID {acting_user_id} not found")

    if isinstance(counterparty, RegisteredParty):
        if not get_active_user(counterparty.user_id):
            raise NotFoundError(f"User with ID {counterparty.user_id} not found")
        if counterparty.user_id == acting_user_id:
            raise ValidationError("You cannot create a loan with yourself")

    actor = RegisteredParty(acting_user_id)
    is_user_lender = direction == TransactionDirection.OUT
    lender, borrower = (actor, counterparty) if is_user_lender else (counterparty, actor)

    both_registered = isinstance(lender, RegisteredParty) and isinstance(borrower, RegisteredParty)
    if group_id is not None:
        if not both_registered:
            raise ValidationError(
                "Cannot link a loan to a group when the other party is not a registered user"
            )
        if not get_active_group(group_id):
            raise NotFoundError(f"Group with ID {group_id} not found")

    lender_name = display_name(lender)
    borrower_name = display_name(borrower)
    title = loan_title(lender_name, borrower_name)

    with unit_of_work('create loan', user_id=acting_user_id, amount=str(amount)) as outbox:
        loan = Loan(
            amount=amount,
            description=description or '',
            due_date=due_date,
            status=status,
            is_acknowledged=both_registered,
            group_id=group_id
        )
        loan.assign_parties(lender, borrower)
        loan.check_invariants()

        db.session.add(loan)
        db.session.flush()

        build_party_legs(loan, title)
        db.session.flush()

        outbox.add(
            NotificationType.LOAN_CREATED,
            f"A new loan has been created between {lender_name} and {borrower_name}",
            loan.registered_user_ids(),
            payload={
                'loanId': loan.id,
                'amount': money(loan.amount),
                'lenderEmail': loan.lender_email,
                'borrowerEmail': loan.borrower_email
            },
            loan_id=loan.id,
            group_id=loan.group_id
        )

    logger.info(f"Loan #{loan.id} created: {title} ({money(loan.amount)})")
    return loan


# ============================================================
# GET LOAN DETAILS
# ============================================================

def get_loan_details(loan_id, view_type='single'):
    """
    Hydrated loan: parties, group and live legs.
    The split view adds the live children and the parent (if any).
    """
    if view_type not in ('single', 'split'):
        raise ValidationError(f"Unknown view type: {view_type}")

    loan = get_live_loan(loan_id)
    details = loan.to_dict()

    if view_type == 'split':
        details['splits'] = [child.to_dict() for child in loan.live_children()]
        parent = loan.parent
        details['parent'] = parent.to_dict(include_transactions=False) \
            if parent is not None and not parent.is_deleted else None

    return details


# ============================================================
# UPDATE LOAN
# ============================================================

def _notify_status_change(outbox, loan, old_status, lender_name, borrower_name):
    recipients = loan.registered_user_ids()

    if loan.status == LoanStatus.REPAID.value:
        # Perspective-specific wording, one notification per registered side
        if loan.lender_id:
            outbox.add(
                NotificationType.LOAN_REPAID,
                f"{borrower_name} has repaid the loan of {money(loan.amount)}",
                [loan.lender_id],
                payload={'loanId': loan.id, 'amount': money(loan.amount),
                         'status': loan.status, 'perspective': 'lender'},
                loan_id=loan.id,
                group_id=loan.group_id
            )
        if loan.borrower_id:
            outbox.add(
                NotificationType.LOAN_REPAID,
                f"You have repaid the loan of {money(loan.amount)} to {lender_name}",
                [loan.borrower_id],
                payload={'loanId': loan.id, 'amount': money(loan.amount),
                         'status': loan.status, 'perspective': 'borrower'},
                loan_id=loan.id,
                group_id=loan.group_id
            )
    else:
        outbox.add(
            NotificationType.LOAN_STATUS_UPDATE,
            f"Loan status updated from {old_status} to {loan.status}",
            recipients,
            payload={'loanId': loan.id, 'oldStatus': old_status, 'newStatus': loan.status},
            loan_id=loan.id,
            group_id=loan.group_id
        )


def _notify_amount_change(outbox, loan, old_amount):
    outbox.add(
        NotificationType.BALANCE_UPDATE,
        f"Loan amount updated from {money(old_amount)} to {money(loan.amount)}",
        loan.registered_user_ids(),
        payload={
            'loanId': loan.id,
            'oldAmount': money(old_amount),
            'newAmount': money(loan.amount),
            'amountDifference': money(abs(Decimal(old_amount) - Decimal(loan.amount)))
        },
        loan_id=loan.id,
        group_id=loan.group_id
    )


def update_loan(loan_id, patch, acting_user_id):
    """
    Apply the fields present in ``patch`` to a loan.

    - amount / description changes cascade to every live leg
    - is_acknowledged is only taken from a side allowed to acknowledge
    - group_id is only honoured when both sides are registered

    ATOMIC. Notifications are sent after commit.
    Returns: Loan
    """
    patch = dict(patch or {})
    unknown = sorted(set(patch) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown loan fields: {', '.join(unknown)}")

    new_amount = parse_amount(patch['amount']) if 'amount' in patch else None
    new_status = parse_status(patch['status']) if 'status' in patch else None
    new_due_date = parse_due_date(patch['due_date']) if 'due_date' in patch else None
    if 'description' in patch and patch['description'] is None:
        raise ValidationError("Description cannot be null")

    with unit_of_work('update loan', loan_id=loan_id, user_id=acting_user_id) as outbox:
        loan = get_live_loan(loan_id)
        require_authorization(can_update_loan, acting_user_id, loan)

        if loan.is_group_total and new_amount is not None:
            raise ValidationError("Change a split loan's amount through its member splits")

        old_amount = Decimal(loan.amount)
        old_status = loan.status
        lender_name = display_name(loan.lender_party)
        borrower_name = display_name(loan.borrower_party, fallback='Group')

        if new_amount is not None:
            loan.amount = new_amount
        if 'description' in patch:
            loan.description = patch['description']
        if 'due_date' in patch:
            loan.due_date = new_due_date
        if new_status is not None:
            loan.status = new_status

        if 'is_acknowledged' in patch:
            allowed, _ = can_acknowledge_loan(acting_user_id, loan)
            if allowed:
                loan.is_acknowledged = bool(patch['is_acknowledged'])

        if 'group_id' in patch and loan.is_fully_registered():
            group_id = patch['group_id']
            if group_id is not None and not get_active_group(group_id):
                raise NotFoundError(f"Group with ID {group_id} not found")
            loan.group_id = group_id
            for leg in loan.live_transactions():
                leg.group_id = group_id

        amount_changed = new_amount is not None and new_amount != old_amount
        if new_amount is not None or 'description' in patch:
            cascade_to_legs(loan, amount=new_amount, description=patch.get('description'))

        loan.check_invariants()
        db.session.flush()

        if new_status is not None and new_status != old_status:
            _notify_status_change(outbox, loan, old_status, lender_name, borrower_name)
        if amount_changed:
            _notify_amount_change(outbox, loan, old_amount)

    return loan


# ============================================================
# TRANSFER LOAN
# ============================================================

def transfer_loan(loan_id, acting_user_id, new_borrower_id=None, new_party_email=None):
    """
    Move one side of a loan.

    - new_borrower_id: the lender hands the loan to another registered borrower
    - new_party_email: the lender or borrower points their counterpart at an email

    Stale legs are soft-deleted and replaced, never re-pointed.
    Returns: Loan
    """
    if new_borrower_id is not None and new_party_email:
        raise ValidationError(
            "Cannot transfer loan to both a registered user and an email simultaneously. "
            "Please choose one transfer method."
        )
    if new_borrower_id is None and not new_party_email:
        raise ValidationError("Must provide either a new borrower ID or a new party email")
    if new_party_email is not None and '@' not in new_party_email:
        raise ValidationError(f"Invalid email: {new_party_email}")

    with unit_of_work('transfer loan', loan_id=loan_id, user_id=acting_user_id):
        loan = get_live_loan(loan_id)

        if loan.is_group_total:
            raise ValidationError("A split loan total cannot be transferred")
        if loan.parent_id is not None:
            raise ValidationError(
                "A split loan share cannot be transferred; update the split instead"
            )

        if loan.status == LoanStatus.REPAID.value:
            raise ForbiddenError(
                "You can not transfer an already paid loan, please create a new loan"
            )

        if new_borrower_id is not None:
            _transfer_to_registered(loan, acting_user_id, new_borrower_id)
        else:
            _transfer_to_email(loan, acting_user_id, new_party_email.strip())

        loan.check_invariants()
        db.session.flush()

    logger.info(f"Loan #{loan.id} transferred by user {acting_user_id}")
    return loan


def _transfer_to_registered(loan, acting_user_id, new_borrower_id):
    if loan.lender_id is None or loan.lender_id != acting_user_id:
        raise UnauthorizedError("Only the lender can transfer the loan to a registered borrower")

    new_borrower = get_active_user(new_borrower_id)
    if not new_borrower:
        raise NotFoundError(f"User with ID {new_borrower_id} not found")

    if loan.borrower_id == new_borrower_id:
        raise ValidationError("Loan is already assigned to this borrower")
    if loan.lender_id == new_borrower_id:
        raise ValidationError("The lender cannot become the borrower")

    lender_name = display_name(loan.lender_party)

    retire_legs(loan)
    loan.assign_parties(RegisteredParty(loan.lender_id), RegisteredParty(new_borrower_id))
    loan.is_acknowledged = True

    build_leg(loan, TransactionDirection.OUT, loan.lender_id,
              f"Loan given to {new_borrower.first_name}", loan.group_id)
    build_leg(loan, TransactionDirection.IN, new_borrower_id,
              f"Loan received from {lender_name}", loan.group_id)


def _transfer_to_email(loan, acting_user_id, email):
    if not loan.is_party(acting_user_id):
        raise UnauthorizedError("Only the lender or current borrower can transfer the loan")

    actor = RegisteredParty(acting_user_id)
    contact = ExternalParty(email)
    is_user_lender = loan.lender_id == acting_user_id

    retire_legs(loan)
    # An external side can never sit in a group
    loan.group_id = None
    loan.is_acknowledged = False

    if is_user_lender:
        loan.assign_parties(actor, contact)
        build_leg(loan, TransactionDirection.OUT, acting_user_id,
                  f"Loan given to {contact.display_name}")
    else:
        loan.assign_parties(contact, actor)
        build_leg(loan, TransactionDirection.IN, acting_user_id,
                  f"Loan received from {contact.display_name}")


# ============================================================
# LINK PENDING LOANS
# ============================================================

def _pending_for_email(email_column, id_column, other_id_column, email, user_id):
    return Loan.query.filter(
        func.lower(email_column) == email,
        id_column.is_(None),
        Loan.is_deleted.is_(False),
        or_(other_id_column.is_(None), other_id_column != user_id)
    ).order_by(Loan.id).all()


def link_pending_loans(user_id):
    """
    Attach loans recorded against a user's email before they had an account.

    Each matching side is pointed at the user and gets the user's leg.
    The loan counts as acknowledged once both sides are registered, and
    a registered counterpart is told the user has joined.

    ATOMIC. Returns: list of linked Loans
    """
    user = get_active_user(user_id)
    if not user:
        raise NotFoundError(f"User with ID {user_id} not found")

    email = (user.email or '').strip().lower()
    if not email:
        return []

    user_name = display_name(RegisteredParty(user.id))
    full_name = ' '.join(part for part in (user.first_name, user.last_name) if part)
    linked = []

    with unit_of_work('link pending loans', user_id=user_id) as outbox:
        as_borrower = _pending_for_email(
            Loan.borrower_email, Loan.borrower_id, Loan.lender_id, email, user.id
        )
        as_lender = _pending_for_email(
            Loan.lender_email, Loan.lender_id, Loan.borrower_id, email, user.id
        )

        for loan in as_borrower:
            lender_name = display_name(loan.lender_party, fallback='Someone')
            loan.assign_parties(loan.lender_party, RegisteredParty(user.id))
            build_leg(loan, TransactionDirection.IN, user.id, loan_title(lender_name, user_name))
            linked.append((loan, loan.lender_id))

        for loan in as_lender:
            borrower_name = display_name(loan.borrower_party, fallback='Someone')
            loan.assign_parties(RegisteredParty(user.id), loan.borrower_party)
            build_leg(loan, TransactionDirection.OUT, user.id, loan_title(user_name, borrower_name))
            linked.append((loan, loan.borrower_id))

        for loan, counterpart_id in linked:
            loan.is_acknowledged = loan.is_fully_registered()
            loan.check_invariants()
            outbox.add(
                NotificationType.LOAN_CREATED,
                f"{full_name} has joined and is now linked to your loan.",
                [counterpart_id],
                payload={'loanId': loan.id, 'amount': money(loan.amount)},
                loan_id=loan.id
            )

        db.session.flush()

    if linked:
        logger.info(f"Linked {len(linked)} pending loan(s) to user {user_id}")
    return [loan for loan, _ in linked]


# ============================================================
# DELETE LOAN
# ============================================================

def soft_delete_loan_tree(loan):
    """
    Tombstone a loan and its legs; for a split total, its live children
    and their legs first. Must run inside a unit of work.
    """
    children = loan.live_children() if loan.is_group_total else []
    if children:
        retire_legs_for_loans([child.id for child in children])
        for child in children:
            child.is_deleted = True

    retire_legs(loan)
    loan.is_deleted = True
    return children


def delete_loan(loan_id, acting_user_id):
    """
    Soft-delete a loan. Only the lender can delete; anyone else,
    and any already-deleted loan, gets NotFoundError.
    """
    with unit_of_work('delete loan', loan_id=loan_id, user_id=acting_user_id):
        loan = Loan.query.filter_by(
            id=loan_id,
            is_deleted=False,
            lender_id=acting_user_id
        ).first()

        if not loan:
            raise NotFoundError(f"Loan with ID {loan_id} not found")

        soft_delete_loan_tree(loan)
        db.session.flush()

    logger.info(f"Loan #{loan_id} deleted by user {acting_user_id}")
    return loan
