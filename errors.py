"""
Domain errors for the streak ledger.
Raised by the core before any state is touched and turned into JSON
responses by the error handler registered in app.py.
"""


class DomainError(Exception):
    status_code = 400

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'error': self.message}
        payload.update(self.details)
        return payload


class Conflict(DomainError):
    """Upload already verified, date already covered, and similar."""
    status_code = 409


class NotFound(DomainError):
    status_code = 404


class ValidationFailure(DomainError):
    status_code = 400


class RestDayUnavailable(Conflict):
    """No allowance left, or the date is already covered by an upload or rest day."""
