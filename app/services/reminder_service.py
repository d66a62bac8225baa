"""
REMINDER SERVICE
================

Daily scans over active loans:
- Upcoming due dates (today .. today + REMINDER_WINDOW_DAYS) -> LOAN_REMINDER
- Past due dates -> OVERDUE_ALERT

One loan failing to notify never stops the rest of the scan.
"""

import logging
from datetime import datetime, time, timedelta
from decimal import Decimal

from flask import current_app

from app.models import Loan, LoanStatus, NotificationType, utcnow
from app.services.notification_service import create_notification

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_WINDOW_DAYS = 3


def start_of_day(moment):
    return datetime.combine(moment.date(), time.min)


def end_of_day(moment):
    return datetime.combine(moment.date(), time.max)


def whole_days_between(earlier, later):
    """Full 24h periods from ``earlier`` to ``later``, truncated toward zero."""
    return int((later - earlier) / timedelta(days=1))


def _plural(count):
    return '' if count == 1 else 's'


def generate_reminder_message(days_until_due, amount):
    amount = Decimal(amount)
    if days_until_due == 0:
        return f"Loan payment of ${amount:.2f} is due today!"
    return (
        f"Reminder: Loan payment of ${amount:.2f} is due in "
        f"{days_until_due} day{_plural(days_until_due)}."
    )


def generate_overdue_message(days_overdue, amount):
    amount = Decimal(amount)
    return (
        f"OVERDUE ALERT: Loan payment of ${amount:.2f} is "
        f"{days_overdue} day{_plural(days_overdue)} past due."
    )


def _active_loans():
    return Loan.query.filter(
        Loan.status == LoanStatus.ACTIVE.value,
        Loan.is_deleted.is_(False),
        Loan.is_group_total.is_(False),
        Loan.due_date.isnot(None)
    )


def _reminder_window_days():
    return current_app.config.get('REMINDER_WINDOW_DAYS', DEFAULT_REMINDER_WINDOW_DAYS)


def _notify_each(loans, build_notification, scan_name):
    processed = 0
    for loan in loans:
        try:
            notification_type, message = build_notification(loan)
            create_notification(
                type=notification_type,
                message=message,
                user_ids=[loan.borrower_id, loan.lender_id],
                payload={'loanId': loan.id, 'amount': format(Decimal(loan.amount), 'f')},
                loan_id=loan.id,
                group_id=loan.group_id
            )
            processed += 1
        except Exception as e:
            logger.error(f"{scan_name}: failed to notify for loan #{loan.id}: {e}",
                         extra={'loan_id': loan.id})
    return processed


# ============================================================
# UPCOMING DUE DATES
# ============================================================

def find_upcoming_loans(now=None):
    now = now or utcnow()
    window_end = end_of_day(now + timedelta(days=_reminder_window_days()))
    return _active_loans().filter(
        Loan.due_date >= start_of_day(now),
        Loan.due_date <= window_end
    ).order_by(Loan.due_date, Loan.id).all()


def run_loan_reminders(now=None):
    """Notify both registered parties of every loan due soon. Returns the count notified."""
    now = now or utcnow()
    loans = find_upcoming_loans(now)

    def build(loan):
        days_until_due = max(whole_days_between(now, loan.due_date), 0)
        return NotificationType.LOAN_REMINDER, generate_reminder_message(days_until_due, loan.amount)

    processed = _notify_each(loans, build, 'Loan reminders')
    logger.info(f"Processed {processed} of {len(loans)} loan reminders")
    return processed


# ============================================================
# OVERDUE LOANS
# ============================================================

def find_overdue_loans(now=None):
    now = now or utcnow()
    return _active_loans().filter(
        Loan.due_date < start_of_day(now)
    ).order_by(Loan.due_date, Loan.id).all()


def run_overdue_scan(now=None):
    """Alert both registered parties of every overdue loan. Returns the count notified."""
    now = now or utcnow()
    loans = find_overdue_loans(now)

    def build(loan):
        days_overdue = whole_days_between(loan.due_date, now)
        return NotificationType.OVERDUE_ALERT, generate_overdue_message(days_overdue, loan.amount)

    processed = _notify_each(loans, build, 'Overdue scan')
    logger.info(f"Processed {processed} of {len(loans)} overdue loans")
    return processed
