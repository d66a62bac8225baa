"""
CENTRALIZED AUTHORIZATION SERVICE
==================================

All permission checks for ledger operations live here.
Membership is owned by the group side; these are read-only lookups.
"""

from app.exceptions import ForbiddenError
from app.extensions import db
from app.models import Group, GroupMember, MemberRole


# ============================================================
# GROUP MEMBERSHIP CHECKS
# ============================================================

def get_active_group(group_id):
    """Non-deleted group by id, or None"""
    if group_id is None:
        return None
    group = db.session.get(Group, group_id)
    if not group or group.is_deleted:
        return None
    return group


def get_membership(user_id, group_id):
    """Get active membership record"""
    return GroupMember.query.filter_by(
        user_id=user_id,
        group_id=group_id,
        is_deleted=False
    ).first()


def is_active_member(group_id, user_id):
    """Check if user is an active member of group"""
    return get_membership(user_id, group_id) is not None


def is_admin(group_id, user_id):
    """Check if user is an active admin of group"""
    membership = get_membership(user_id, group_id)
    return membership is not None and membership.role == MemberRole.ADMIN.value


def list_active_members(group_id):
    """Active members of a group as [{'user_id', 'role'}]"""
    members = GroupMember.query.filter_by(
        group_id=group_id,
        is_deleted=False
    ).order_by(GroupMember.id).all()
    return [{'user_id': m.user_id, 'role': m.role} for m in members]


def active_member_ids(group_id):
    return {m['user_id'] for m in list_active_members(group_id)}


# ============================================================
# LOAN AUTHORIZATION
# ============================================================

def can_update_loan(user_id, loan):
    """
    Check if user can update a loan.

    Requirements:
    - User must be the lender or the borrower
    """
    if not loan.is_party(user_id):
        return False, "You are not authorized to update this loan"
    return True, None


def can_acknowledge_loan(user_id, loan):
    """
    Check if user can set the acknowledgement flag.

    Requirements:
    - Both sides registered: either side may
    - One side external: only the registered side may
    """
    if loan.lender_id and loan.borrower_id:
        return loan.is_party(user_id), None

    is_lender = loan.lender_id is not None and loan.lender_id == user_id
    is_borrower = loan.borrower_id is not None and loan.borrower_id == user_id
    if (is_lender and not loan.borrower_id) or (is_borrower and not loan.lender_id):
        return True, None

    return False, "Only the registered party can acknowledge this loan"


def can_manage_split(user_id, loan):
    """
    Check if user can change or delete a split loan.

    Requirements:
    - Loan must be a group total
    - User must be its lender (the creator)
    """
    if not loan.is_group_total:
        return False, "Loan is not a split loan"
    if loan.lender_id != user_id:
        return False, "Only the creator can change a split loan"
    return True, None


# ============================================================
# HELPER FUNCTION: REQUIRE AUTHORIZATION
# ============================================================

def require_authorization(check_func, *args, error_class=ForbiddenError):
    """
    Wrapper to raise exception if authorization fails.

    Usage:
        require_authorization(can_update_loan, user_id, loan)
    """
    allowed, reason = check_func(*args)
    if not allowed:
        raise error_class(reason or "Not authorized")
