"""
SPLIT LOAN SERVICE
==================

A split loan is a "group total" parent loan (creator -> group) plus one
child loan per member share (creator -> member).

CRITICAL RULES:
1. Parent amount is the sum of every submitted share
2. The creator's own share counts toward the total but never gets a child loan
3. On update, a child whose borrower is missing from the new split list is soft-deleted
4. Deleting a split removes children first, then the parent
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import func, or_
from sqlalchemy.orm import aliased

from app.exceptions import NotFoundError, ValidationError
from app.extensions import db
from app.models import Loan, LoanStatus, NotificationType, TransactionDirection, User
from app.parties import RegisteredParty
from app.services.authorization_service import (
    active_member_ids, can_manage_split, get_active_group, require_authorization
)
from app.services.loan_service import (
    display_name, get_loan_details, loan_title, money, parse_amount,
    parse_due_date, parse_status, soft_delete_loan_tree, update_loan
)
from app.services.transaction_service import build_leg, cascade_to_legs, retire_legs
from app.services.unit_of_work import unit_of_work
from app.services.user_service import get_active_user

logger = logging.getLogger(__name__)

GROUP_TOTAL_SUFFIX = ' (Group Total)'
SPLIT_UPDATE_FIELDS = ('description', 'due_date', 'status', 'is_acknowledged', 'member_splits')


@dataclass
class MemberSplit:
    user_id: int
    amount: Decimal
    status: str = None


@dataclass
class SplitReconciliation:
    """What an update does to the existing children, decided up front."""
    to_update: list = field(default_factory=list)   # [(child Loan, MemberSplit)]
    to_create: list = field(default_factory=list)   # [MemberSplit]
    to_delete: list = field(default_factory=list)   # [child Loan]


# ============================================================
# HELPERS
# ============================================================

def parse_member_splits(member_splits):
    """
    Normalize splits given as MemberSplit or dicts with
    ``user_id``/``userId``, ``amount`` and optional ``status``.
    """
    if not member_splits:
        raise ValidationError("At least one member split is required")

    splits = []
    seen = set()
    for raw in member_splits:
        if isinstance(raw, MemberSplit):
            user_id, amount, status = raw.user_id, raw.amount, raw.status
        else:
            user_id = raw.get('user_id', raw.get('userId'))
            amount = raw.get('amount')
            status = raw.get('status')

        if user_id is None:
            raise ValidationError("Every member split needs a user")
        if user_id in seen:
            raise ValidationError(f"User {user_id} appears more than once in the split")
        seen.add(user_id)

        splits.append(MemberSplit(
            user_id=user_id,
            amount=parse_amount(amount),
            status=parse_status(status) if status is not None else None
        ))

    return splits


def plan_reconciliation(existing_children, splits):
    """
    Diff the live children against the submitted splits.

    - to_update: borrower present in both
    - to_create: submitted borrower with no child yet
    - to_delete: every other child, including ones with no registered
      borrower or a second child for the same borrower
    """
    submitted = {split.user_id: split for split in splits}

    plan = SplitReconciliation()
    matched = {}
    for child in sorted(existing_children, key=lambda c: c.id):
        borrower_id = child.borrower_id
        if borrower_id is not None and borrower_id in submitted and borrower_id not in matched:
            matched[borrower_id] = child
        else:
            plan.to_delete.append(child)

    for user_id, split in submitted.items():
        if user_id in matched:
            plan.to_update.append((matched[user_id], split))
        else:
            plan.to_create.append(split)

    return plan


def _base_description(parent):
    description = parent.description or ''
    if description.endswith(GROUP_TOTAL_SUFFIX):
        return description[:-len(GROUP_TOTAL_SUFFIX)]
    return description


def _invalid_members(splits, group_id, exclude_user_id=None):
    member_ids = active_member_ids(group_id)
    return [
        split.user_id for split in splits
        if split.user_id not in member_ids or split.user_id == exclude_user_id
    ]


def _create_child(parent, split, creator_id, creator_name, description):
    child = Loan(
        amount=split.amount,
        description=description,
        due_date=parent.due_date,
        status=split.status or LoanStatus.ACTIVE.value,
        is_acknowledged=False,
        group_id=parent.group_id,
        parent=parent
    )
    child.assign_parties(RegisteredParty(creator_id), RegisteredParty(split.user_id))
    child.check_invariants()

    db.session.add(child)
    db.session.flush()

    borrower_name = display_name(RegisteredParty(split.user_id))
    build_leg(child, TransactionDirection.IN, split.user_id,
              loan_title(creator_name, borrower_name), parent.group_id)
    return child, borrower_name


def _queue_child_created(outbox, child, parent, creator_id, creator_name, borrower_name):
    outbox.add(
        NotificationType.LOAN_CREATED,
        f"A new loan of {money(child.amount)} has been created between "
        f"{creator_name} and {borrower_name}",
        [creator_id, child.borrower_id],
        payload={'loanId': child.id, 'amount': money(child.amount), 'parentLoanId': parent.id},
        loan_id=child.id,
        group_id=parent.group_id
    )


# ============================================================
# CREATE SPLIT LOAN
# ============================================================

def create_split_loan(group_id, description, due_date, member_splits, creator_id, status=None):
    """
    Create a group total loan and one child loan per member share.

    ATOMIC: parent + OUT leg, children + IN legs.
    Notifications go out after commit, one per child.
    Returns: split view of the parent (see get_loan_details)
    """
    splits = parse_member_splits(member_splits)
    status = parse_status(status or LoanStatus.ACTIVE)
    due_date = parse_due_date(due_date)
    description = description or ''

    if not get_active_group(group_id):
        raise NotFoundError(f"Group with ID {group_id} not found")
    if not get_active_user(creator_id):
        raise NotFoundError(f"User with ID {creator_id} not found")

    invalid = _invalid_members(splits, group_id)
    if invalid:
        raise NotFoundError(
            f"The following users are not active members of this group: "
            f"{', '.join(str(uid) for uid in invalid)}",
            details={'userIds': invalid}
        )

    total_amount = sum((split.amount for split in splits), Decimal('0'))
    creator_name = display_name(RegisteredParty(creator_id))

    with unit_of_work('create split loan', group_id=group_id, user_id=creator_id) as outbox:
        parent = Loan(
            amount=total_amount,
            description=f"{description}{GROUP_TOTAL_SUFFIX}",
            due_date=due_date,
            status=status,
            is_acknowledged=False,
            group_id=group_id,
            is_group_total=True
        )
        parent.assign_parties(RegisteredParty(creator_id), None)
        parent.check_invariants()

        db.session.add(parent)
        db.session.flush()

        build_leg(parent, TransactionDirection.OUT, creator_id,
                  f"Loan from {creator_name} to Group", group_id)

        for split in splits:
            if split.user_id == creator_id:
                continue
            child, borrower_name = _create_child(parent, split, creator_id, creator_name, description)
            _queue_child_created(outbox, child, parent, creator_id, creator_name, borrower_name)

        db.session.flush()
        parent_id = parent.id

    logger.info(f"Split loan #{parent_id} created in group {group_id} ({money(total_amount)})")
    return get_loan_details(parent_id, 'split')


# ============================================================
# UPDATE SPLIT LOAN
# ============================================================

def update_split_loan(loan_id, patch, creator_id):
    """
    Update a split loan.

    Without member_splits this is a plain update_loan. With them the
    children are reconciled against the new list: matching borrowers are
    updated, new borrowers get a child, missing borrowers are soft-deleted.

    ATOMIC. Returns: split view of the parent
    """
    patch = dict(patch or {})
    member_splits = patch.pop('member_splits', None)

    if not member_splits:
        update_loan(loan_id, patch, creator_id)
        return get_loan_details(loan_id, 'split')

    unknown = sorted(set(patch) - set(SPLIT_UPDATE_FIELDS))
    if unknown:
        raise ValidationError(
            f"Cannot update {', '.join(unknown)} on a split loan; "
            f"the amount is derived from member splits"
        )

    splits = parse_member_splits(member_splits)
    new_status = parse_status(patch['status']) if 'status' in patch else None
    new_due_date = parse_due_date(patch['due_date']) if 'due_date' in patch else None

    with unit_of_work('update split loan', loan_id=loan_id, user_id=creator_id) as outbox:
        parent = Loan.query.filter_by(
            id=loan_id,
            is_deleted=False,
            lender_id=creator_id
        ).first()

        if not parent:
            raise NotFoundError(f"Loan with ID {loan_id} not found")
        if not parent.is_group_total:
            raise ValidationError(f"Loan with ID {loan_id} is not a split loan")

        invalid = _invalid_members(splits, parent.group_id, exclude_user_id=creator_id)
        if invalid:
            raise NotFoundError(
                f"The following users are not valid borrowers: "
                f"{', '.join(str(uid) for uid in invalid)}",
                details={'userIds': invalid}
            )

        description = patch['description'] if patch.get('description') is not None \
            else _base_description(parent)
        total_amount = sum((split.amount for split in splits), Decimal('0'))
        creator_name = display_name(RegisteredParty(creator_id))

        # 1. Parent and its leg
        parent.amount = total_amount
        parent.description = f"{description}{GROUP_TOTAL_SUFFIX}"
        if 'due_date' in patch:
            parent.due_date = new_due_date
        if new_status is not None:
            parent.status = new_status
        if 'is_acknowledged' in patch:
            parent.is_acknowledged = bool(patch['is_acknowledged'])
        cascade_to_legs(parent, amount=total_amount, description=parent.description)

        # 2. Reconcile children
        plan = plan_reconciliation(parent.live_children(), splits)

        for child, split in plan.to_update:
            old_amount = Decimal(child.amount)
            child.amount = split.amount
            child.description = description
            child.due_date = parent.due_date
            if split.status is not None:
                child.status = split.status
            if 'is_acknowledged' in patch:
                child.is_acknowledged = bool(patch['is_acknowledged'])
            cascade_to_legs(child, amount=split.amount, description=description)
            child.check_invariants()

            if old_amount != split.amount:
                outbox.add(
                    NotificationType.BALANCE_UPDATE,
                    f"Loan amount updated from {money(old_amount)} to {money(split.amount)}",
                    [creator_id, child.borrower_id],
                    payload={
                        'loanId': child.id,
                        'oldAmount': money(old_amount),
                        'newAmount': money(split.amount),
                        'amountDifference': money(abs(old_amount - split.amount)),
                        'parentLoanId': parent.id
                    },
                    loan_id=child.id,
                    group_id=parent.group_id
                )

        for split in plan.to_create:
            child, borrower_name = _create_child(parent, split, creator_id, creator_name, description)
            _queue_child_created(outbox, child, parent, creator_id, creator_name, borrower_name)

        for child in plan.to_delete:
            retire_legs(child)
            child.is_deleted = True

        parent.check_invariants()
        db.session.flush()

    logger.info(
        f"Split loan #{loan_id} updated: {len(plan.to_update)} updated, "
        f"{len(plan.to_create)} created, {len(plan.to_delete)} removed"
    )
    return get_loan_details(loan_id, 'split')


# ============================================================
# DELETE SPLIT LOAN
# ============================================================

def delete_split_loan(loan_id, acting_user_id):
    """
    Soft-delete a split loan: live children and their legs,
    then the parent and its legs. Only the creator can delete.
    """
    with unit_of_work('delete split loan', loan_id=loan_id, user_id=acting_user_id):
        loan = Loan.query.filter_by(
            id=loan_id,
            is_deleted=False,
            lender_id=acting_user_id
        ).first()

        if not loan:
            raise NotFoundError(f"Loan with ID {loan_id} not found")
        require_authorization(can_manage_split, acting_user_id, loan)

        children = soft_delete_loan_tree(loan)
        db.session.flush()

    logger.info(f"Split loan #{loan_id} deleted with {len(children)} child loan(s)")
    return loan


# ============================================================
# CHILD LOANS LISTING
# ============================================================

def get_child_loans(parent_id, search_query=None, page=1, page_size=10):
    """
    One page of a split loan's live children, optionally filtered by
    borrower first name, last name or email (case-insensitive substring).

    total_amount and count cover the whole filtered set, not just the page.
    """
    if page < 1 or page_size < 1:
        raise ValidationError("page and page_size must be at least 1")

    if not Loan.query.filter_by(id=parent_id, is_deleted=False).first():
        raise NotFoundError(f"Loan with ID {parent_id} not found")

    query = Loan.query.filter(
        Loan.parent_id == parent_id,
        Loan.is_deleted.is_(False)
    )

    if search_query and search_query.strip():
        pattern = f"%{search_query.strip().lower()}%"
        borrower = aliased(User)
        query = query.join(borrower, Loan.borrower_id == borrower.id).filter(
            or_(
                func.lower(borrower.first_name).like(pattern),
                func.lower(borrower.last_name).like(pattern),
                func.lower(borrower.email).like(pattern)
            )
        )

    count = query.count()
    total = query.with_entities(func.coalesce(func.sum(Loan.amount), 0)).scalar()
    child_loans = query.order_by(Loan.id).offset((page - 1) * page_size).limit(page_size).all()

    return {
        'child_loans': [child.to_dict() for child in child_loans],
        'total_amount': Decimal(str(total)).quantize(Decimal('0.01')),
        'count': count
    }
