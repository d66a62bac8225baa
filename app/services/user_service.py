"""
USER SERVICE
============

Read-only lookups the ledger needs from the identity side:
- Resolving an auth subject to an internal user id
- Finding users by email
- Display names for loan titles
"""

from sqlalchemy import func

from app.exceptions import NotFoundError
from app.extensions import db
from app.models import User


def get_active_user(user_id):
    """Non-deleted user by id, or None."""
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    if not user or user.is_deleted:
        return None
    return user


def resolve_acting_user(auth_subject):
    """Map an external auth subject to an internal user id."""
    if not auth_subject:
        raise NotFoundError("User not found")

    user = User.query.filter_by(auth_subject=auth_subject, is_deleted=False).first()
    if not user:
        raise NotFoundError("User not found")

    return user.id


def find_user_by_email(email):
    """Non-deleted user with this email (case-insensitive), or None."""
    if not email:
        return None
    return User.query.filter(
        func.lower(User.email) == email.strip().lower(),
        User.is_deleted.is_(False)
    ).first()


def find_users_by_emails(emails):
    """
    Map every email to its registered user.

    Raises NotFoundError listing each email with no registered user.
    Returns: dict of email (as given) -> User
    """
    wanted = {email.strip().lower(): email for email in emails if email}
    if not wanted:
        return {}

    users = User.query.filter(
        func.lower(User.email).in_(list(wanted.keys())),
        User.is_deleted.is_(False)
    ).all()
    found = {user.email.lower(): user for user in users}

    missing = [original for lowered, original in wanted.items() if lowered not in found]
    if missing:
        raise NotFoundError(
            f"Users not found for email(s): {', '.join(missing)}",
            details={'emails': missing}
        )

    return {original: found[lowered] for lowered, original in wanted.items()}


def get_first_name(user_id):
    user = db.session.get(User, user_id) if user_id is not None else None
    return user.first_name if user else None
