"""
Services Package
================

Business logic layer for the loan ledger.

All ledger and authorization operations are handled here.
Routes should call these services, not manipulate models directly.
"""

from app.services.loan_service import (
    create_loan,
    get_loan_details,
    update_loan,
    transfer_loan,
    delete_loan,
    link_pending_loans,
    resolve_counterparty
)

from app.services.split_loan_service import (
    MemberSplit,
    create_split_loan,
    update_split_loan,
    delete_split_loan,
    get_child_loans,
    plan_reconciliation
)

from app.services.authorization_service import (
    can_update_loan,
    can_acknowledge_loan,
    can_manage_split,
    is_active_member,
    is_admin,
    list_active_members,
    require_authorization
)

from app.services.notification_service import (
    create_notification,
    get_notifications,
    mark_as_read,
    mark_all_as_read,
    delete_notification,
    NotificationOutbox,
    NotificationError
)

from app.services.reminder_service import (
    run_loan_reminders,
    run_overdue_scan
)

from app.services.transaction_service import get_transactions, get_user_loan_summary

from app.services.unit_of_work import unit_of_work
