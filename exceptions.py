# ==========================================================
#                  LEDGER EXCEPTIONS
# ==========================================================


class LedgerError(Exception):
    """Base ledger exception. Carries the HTTP status the API layer should use."""
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"success": False, "error": self.message}


class ValidationError(LedgerError):
    """Bad amount, bad address format, missing fields. Nothing was changed."""
    status_code = 400


class NotFoundError(ValidationError):
    status_code = 404


class PermissionDeniedError(LedgerError):
    status_code = 403


class InsufficientFundsError(LedgerError):
    """Rejected before any hold was placed."""
    status_code = 400


class ConflictError(LedgerError):
    """Acting on a resolved withdrawal, a claimed milestone, or an already processed deposit."""
    status_code = 409


class ExternalServiceError(LedgerError):
    status_code = 502


class IntegrityError(LedgerError):
    """A wallet or user row that a ledger entry depends on is missing."""
    status_code = 500


class PayoutTimeoutError(ExternalServiceError):
    """The payout call ran out of time, so whether funds left is unknown."""
    status_code = 504
