"""
UNIT OF WORK
============

Wraps every multi-row ledger mutation in one database transaction.

    with unit_of_work('create loan', user_id=user_id) as outbox:
        ...add / update rows...
        outbox.add(NotificationType.LOAN_CREATED, ...)

On success the session commits and only then is the outbox dispatched,
so notifications sit outside the transaction boundary. On any failure
the session rolls back, the outbox is dropped and the error is raised
as a LedgerError.
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.exceptions import ConflictError, InternalError, LedgerError
from app.extensions import db
from app.services.notification_service import NotificationOutbox

logger = logging.getLogger(__name__)


def _conflict_message(error):
    text = str(getattr(error, 'orig', error)).lower()
    if 'foreign key' in text:
        return "A foreign key constraint was violated."
    return "A unique constraint was violated."


@contextmanager
def unit_of_work(operation, **context):
    outbox = NotificationOutbox()
    try:
        yield outbox
        db.session.commit()
    except LedgerError:
        db.session.rollback()
        outbox.discard()
        raise
    except IntegrityError as e:
        db.session.rollback()
        outbox.discard()
        logger.warning(f"Failed to {operation}: integrity error", extra=context)
        raise ConflictError(_conflict_message(e)) from e
    except SQLAlchemyError as e:
        db.session.rollback()
        outbox.discard()
        logger.error(f"Failed to {operation}: {e}", extra=context, exc_info=True)
        raise InternalError(f"Failed to {operation}. Please try again later.") from e
    except Exception as e:
        db.session.rollback()
        outbox.discard()
        logger.error(f"Failed to {operation}: {e}", extra=context, exc_info=True)
        raise InternalError(f"Failed to {operation}. Please try again later.") from e

    outbox.dispatch()
