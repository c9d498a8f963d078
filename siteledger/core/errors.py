"""
Ledger error taxonomy.

Every engine failure is raised synchronously at the operation boundary as a
LedgerError subclass. The API layer maps `status_code` to the HTTP response;
no error is fatal to the process.
"""


class ErrorCode:
    VALIDATION = "VALIDATION"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    PLAN_LIMIT = "PLAN_LIMIT"


class LedgerError(Exception):
    """Base class for errors raised by the ledger engine."""

    code: str = ErrorCode.VALIDATION
    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(LedgerError):
    """Malformed or out-of-range input, caught before any write."""
    code = ErrorCode.VALIDATION
    status_code = 400


class ForbiddenError(LedgerError):
    """Role or ownership check failed."""
    code = ErrorCode.FORBIDDEN
    status_code = 403


class NotFoundError(LedgerError):
    """Referenced entity is missing or belongs to another company."""
    code = ErrorCode.NOT_FOUND
    status_code = 404


class ConflictError(LedgerError):
    """Edit would desynchronize a linked transaction pair."""
    code = ErrorCode.CONFLICT
    status_code = 409


class InsufficientFundsError(LedgerError):
    """Transfer or return exceeds the live balance of the debited source."""
    code = ErrorCode.INSUFFICIENT_FUNDS
    status_code = 422

    def __init__(self, message: str, available_cents: int = 0, requested_cents: int = 0):
        super().__init__(message)
        self.available_cents = available_cents
        self.requested_cents = requested_cents


class PlanLimitError(LedgerError):
    """Raised by the plan-limit collaborator; passed through unchanged."""
    code = ErrorCode.PLAN_LIMIT
    status_code = 403
