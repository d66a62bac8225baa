import enum
from datetime import datetime, timezone
from decimal import Decimal

from flask_login import UserMixin

from app.exceptions import ValidationError
from app.extensions import db
from app.parties import (
    ExternalParty, RegisteredParty, party_columns, party_from_columns
)


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================
# ENUMS
# ============================================================
class LoanStatus(enum.Enum):
    ACTIVE = 'ACTIVE'
    REPAID = 'REPAID'
    # Reserved: stored as given, no behaviour attached
    DEFAULTED = 'DEFAULTED'
    CANCELLED = 'CANCELLED'


class TransactionDirection(enum.Enum):
    IN = 'IN'
    OUT = 'OUT'


class TransactionCategory(enum.Enum):
    LOAN = 'LOAN'


class MemberRole(enum.Enum):
    ADMIN = 'ADMIN'
    MEMBER = 'MEMBER'


class NotificationType(enum.Enum):
    LOAN_CREATED = 'LOAN_CREATED'
    LOAN_REPAID = 'LOAN_REPAID'
    LOAN_STATUS_UPDATE = 'LOAN_STATUS_UPDATE'
    BALANCE_UPDATE = 'BALANCE_UPDATE'
    LOAN_REMINDER = 'LOAN_REMINDER'
    OVERDUE_ALERT = 'OVERDUE_ALERT'
    ADMIN_ALERT = 'ADMIN_ALERT'
    INVITATION_RECEIVED = 'INVITATION_RECEIVED'
    INVITATION_ACCEPTED = 'INVITATION_ACCEPTED'


# ============================================================
# USER MODEL
# ============================================================
class User(UserMixin, db.Model):
    """
    A registered user. Identity is owned by the auth provider;
    the ledger only references users and reads their names.
    """
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    auth_subject = db.Column(db.String(128), unique=True, nullable=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=True)
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    # Relationships
    memberships = db.relationship('GroupMember', backref='user', lazy='dynamic')

    @property
    def is_active(self):
        return not self.is_deleted

    def to_summary(self):
        return {
            'id': self.id,
            'firstName': self.first_name,
            'lastName': self.last_name,
            'email': self.email,
        }

    def __repr__(self):
        return f'<User {self.email}>'


# ============================================================
# GROUP MODEL
# ============================================================
class Group(db.Model):
    """
    A group of users that loans can be scoped to and split across.
    Membership itself is managed outside the ledger.
    """
    __tablename__ = 'groups'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500))
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    # Relationships
    creator = db.relationship('User', foreign_keys=[created_by])
    members = db.relationship('GroupMember', backref='group', lazy='dynamic',
                              cascade='all, delete-orphan')

    def active_members(self):
        return self.members.filter_by(is_deleted=False)

    def is_member(self, user_id):
        """Check if a user is an active member of this group."""
        return self.active_members().filter_by(user_id=user_id).first() is not None

    def is_admin(self, user_id):
        """Check if a user is an active admin of this group."""
        membership = self.active_members().filter_by(user_id=user_id).first()
        return membership is not None and membership.role == MemberRole.ADMIN.value

    def to_summary(self):
        return {'id': self.id, 'name': self.name, 'description': self.description}

    def __repr__(self):
        return f'<Group {self.name}>'


# ============================================================
# GROUP MEMBER MODEL
# ============================================================
class GroupMember(db.Model):
    """
    Membership of a user in a group, with role (ADMIN/MEMBER).
    Leaving a group soft-deletes the row.
    """
    __tablename__ = 'group_members'

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    role = db.Column(db.String(20), default=MemberRole.MEMBER.value, nullable=False)
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    joined_at = db.Column(db.DateTime, default=utcnow)

    # Prevent duplicate memberships
    __table_args__ = (
        db.UniqueConstraint('group_id', 'user_id', name='unique_group_member'),
    )

    def __repr__(self):
        return f'<GroupMember user={self.user_id} group={self.group_id}>'


# ============================================================
# LOAN MODEL
# ============================================================
class Loan(db.Model):
    """
    Money owed by a borrower to a lender.

    Each side is a registered user (``*_id``) or an external email
    (``*_email``), never both. A split parent ("group total") has a lender
    and a group but no borrower; its children point back via ``parent_id``.

    Rows are never removed: ``is_deleted`` hides them from every read.
    """
    __tablename__ = 'loans'

    id = db.Column(db.Integer, primary_key=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    description = db.Column(db.String(500), nullable=False, default='')
    due_date = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), default=LoanStatus.ACTIVE.value, nullable=False)
    is_acknowledged = db.Column(db.Boolean, default=False, nullable=False)

    lender_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    lender_email = db.Column(db.String(120), nullable=True)
    borrower_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    borrower_email = db.Column(db.String(120), nullable=True)

    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('loans.id'), nullable=True)
    is_group_total = db.Column(db.Boolean, default=False, nullable=False)

    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    lender = db.relationship('User', foreign_keys=[lender_id])
    borrower = db.relationship('User', foreign_keys=[borrower_id])
    group = db.relationship('Group')
    parent = db.relationship('Loan', remote_side=[id], backref=db.backref('children', lazy='dynamic'))
    transactions = db.relationship('Transaction', backref='loan', lazy='dynamic')

    # ---------- parties ----------

    @property
    def lender_party(self):
        return party_from_columns(self.lender_id, self.lender_email)

    @property
    def borrower_party(self):
        return party_from_columns(self.borrower_id, self.borrower_email)

    def assign_parties(self, lender, borrower):
        """Write both sides from Party values."""
        self.lender_id, self.lender_email = party_columns(lender)
        self.borrower_id, self.borrower_email = party_columns(borrower)

    def is_fully_registered(self):
        return isinstance(self.lender_party, RegisteredParty) and \
            isinstance(self.borrower_party, RegisteredParty)

    def is_party(self, user_id):
        return user_id is not None and user_id in (self.lender_id, self.borrower_id)

    def registered_user_ids(self):
        return [uid for uid in (self.lender_id, self.borrower_id) if uid is not None]

    # ---------- reads ----------

    def live_transactions(self):
        return self.transactions.filter_by(is_deleted=False).order_by(Transaction.id).all()

    def live_children(self):
        return self.children.filter_by(is_deleted=False).order_by(Loan.id).all()

    # ---------- invariants ----------

    def check_invariants(self):
        """
        Raise ValidationError if this loan breaks a party, group or
        parent rule. Called before every flush of a new or changed loan.
        """
        lender = self.lender_party
        borrower = self.borrower_party

        if self.amount is None or Decimal(self.amount) <= 0:
            raise ValidationError("Loan amount must be greater than 0")

        if self.is_group_total:
            if not isinstance(lender, RegisteredParty):
                raise ValidationError("A group total loan needs a registered lender")
            if borrower is not None:
                raise ValidationError("A group total loan cannot have a borrower")
            if self.group_id is None:
                raise ValidationError("A group total loan must belong to a group")
            if self.parent_id is not None:
                raise ValidationError("A group total loan cannot have a parent")
            return

        if lender is None or borrower is None:
            raise ValidationError("Both lender and borrower must be identified")

        if isinstance(lender, ExternalParty) and isinstance(borrower, ExternalParty):
            raise ValidationError("At least one party must be a registered user")

        if self.group_id is not None and not self.is_fully_registered():
            raise ValidationError(
                "Cannot link a loan to a group when the other party is not a registered user"
            )

        if isinstance(lender, RegisteredParty) and isinstance(borrower, RegisteredParty) \
                and lender.user_id == borrower.user_id:
            raise ValidationError("Lender and borrower must be different users")

        self._check_parent()

    def _check_parent(self):
        if self.parent_id is None and self.parent is None:
            return

        parent = self.parent
        if parent is None:
            raise ValidationError(f"Parent loan {self.parent_id} not found")
        if self.id is not None and parent.id == self.id:
            raise ValidationError("A loan cannot be its own parent")
        if not parent.is_group_total or parent.parent_id is not None:
            raise ValidationError("Split loans can only hang off a group total loan")

        # Walk upwards; the domain never nests deeper than one level
        seen = {self.id} if self.id is not None else set()
        node = parent
        while node is not None:
            if node.id in seen:
                raise ValidationError("Loan parent chain contains a cycle")
            seen.add(node.id)
            node = node.parent

    # ---------- serialization ----------

    def to_dict(self, include_transactions=True):
        data = {
            'id': self.id,
            'amount': self.amount,
            'description': self.description,
            'dueDate': self.due_date.isoformat() if self.due_date else None,
            'status': self.status,
            'isAcknowledged': self.is_acknowledged,
            'lenderId': self.lender_id,
            'lenderEmail': self.lender_email,
            'borrowerId': self.borrower_id,
            'borrowerEmail': self.borrower_email,
            'groupId': self.group_id,
            'parentId': self.parent_id,
            'isGroupTotal': self.is_group_total,
            'lender': self.lender.to_summary() if self.lender else None,
            'borrower': self.borrower.to_summary() if self.borrower else None,
            'group': self.group.to_summary() if self.group else None,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }
        if include_transactions:
            data['transactions'] = [t.to_dict() for t in self.live_transactions()]
        return data

    def __repr__(self):
        return f'<Loan {self.id} amount={self.amount} status={self.status}>'


# ============================================================
# TRANSACTION MODEL (LEDGER LEG)
# ============================================================
class Transaction(db.Model):
    """
    One directional leg backing a loan.

    - OUT: attributed to the lender (money given)
    - IN:  attributed to the borrower (money received)

    Legs are re-derived, never re-pointed: a transfer soft-deletes the
    stale leg and creates a new one, keeping who held which side when.
    """
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    description = db.Column(db.String(600), nullable=False, default='')
    category = db.Column(db.String(20), default=TransactionCategory.LOAN.value, nullable=False)
    direction = db.Column(db.String(3), nullable=False)
    date = db.Column(db.DateTime, default=utcnow, nullable=False)
    payer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=True)
    title = db.Column(db.String(255), nullable=False)
    loan_id = db.Column(db.Integer, db.ForeignKey('loans.id'), nullable=False)
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    payer = db.relationship('User', foreign_keys=[payer_id])

    def to_dict(self):
        return {
            'id': self.id,
            'amount': self.amount,
            'description': self.description,
            'category': self.category,
            'direction': self.direction,
            'date': self.date.isoformat() if self.date else None,
            'payerId': self.payer_id,
            'groupId': self.group_id,
            'title': self.title,
            'loanId': self.loan_id,
        }

    def __repr__(self):
        return f'<Transaction {self.direction} amount={self.amount} loan={self.loan_id}>'


# ============================================================
# NOTIFICATION MODELS
# ============================================================
class Notification(db.Model):
    """
    A ledger event addressed to one or more users.
    Recipients and their read state live in UserNotification.
    """
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(40), nullable=False)
    message = db.Column(db.String(500), nullable=False)
    payload = db.Column(db.JSON, nullable=True)
    loan_id = db.Column(db.Integer, db.ForeignKey('loans.id'), nullable=True)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=True)
    invite_id = db.Column(db.Integer, nullable=True)
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    recipients = db.relationship('UserNotification', backref='notification', lazy='dynamic',
                                 cascade='all, delete-orphan')

    def to_dict(self, for_user_id=None):
        recipients = self.recipients.all()
        is_read = False
        if for_user_id is not None:
            is_read = any(r.is_read for r in recipients if r.user_id == for_user_id)
        return {
            'id': self.id,
            'type': self.type,
            'message': self.message,
            'payload': self.payload,
            'loanId': self.loan_id,
            'groupId': self.group_id,
            'inviteId': self.invite_id,
            'isRead': is_read,
            'userIds': [r.user_id for r in recipients],
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<Notification {self.type} id={self.id}>'


class UserNotification(db.Model):
    __tablename__ = 'user_notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    notification_id = db.Column(db.Integer, db.ForeignKey('notifications.id'), nullable=False)
    is_read = db.Column(db.Boolean, default=False, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'notification_id', name='unique_user_notification'),
    )

    def __repr__(self):
        return f'<UserNotification user={self.user_id} notification={self.notification_id}>'
