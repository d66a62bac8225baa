"""
LEDGER EXCEPTIONS
=================

Every error a ledger operation can surface to its caller.
Each class carries the HTTP status the request layer answers with.
"""


class LedgerError(Exception):
    """Base exception for all ledger errors"""
    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self):
        body = {'error': type(self).__name__, 'message': self.message}
        if self.details:
            body['details'] = self.details
        return body


class ValidationError(LedgerError):
    """Raised when input is malformed or an invalid combination"""
    status_code = 400


class ConflictError(ValidationError):
    """Raised when the store rejects a write (unique / foreign key)"""


class NotFoundError(LedgerError):
    """Raised when a loan, user or group is missing or soft-deleted"""
    status_code = 404


class ForbiddenError(LedgerError):
    """Raised when the actor does not hold the role the action requires"""
    status_code = 403


class UnauthorizedError(LedgerError):
    """Raised when the actor holds neither side of a loan, or is unknown"""
    status_code = 401


class InternalError(LedgerError):
    """Raised when the store fails unexpectedly"""
    status_code = 500
