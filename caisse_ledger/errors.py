"""
Ledger Error Hierarchy

Business-rule rejections carry a ``context`` dict (remaining advance,
installment totals, ...) so callers can explain the rejection to end users.
"""

from typing import Any, Dict


class LedgerError(Exception):
    """Base exception for all ledger errors"""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class ValidationError(LedgerError):
    """Bad input; surfaced to the caller and never retried."""


class OutOfBoundsError(ValidationError):
    """Amount outside the contract-configured bounds."""


class ScheduleError(ValidationError):
    """Schedule does not amortize within the family's duration cap."""


class InvalidTransitionError(ValidationError):
    """Status transition not allowed by the state machine."""


class NotFoundError(LedgerError):
    """Referenced contract, installment or request does not exist."""


class NotEligibleError(LedgerError):
    """Operation refused by a business rule."""


class ContractClosedError(NotEligibleError):
    """Contract is not ACTIVE; no further ledger mutation is accepted."""


class ContractDefaultedError(NotEligibleError):
    """Payment arrived past the default threshold and the contract defaulted."""


class AdvanceOutstandingError(LedgerError):
    """Payment smaller than the outstanding support advance."""


class DuplicateRequestError(LedgerError):
    """A non-archived request of the same type already exists."""


class PersistenceError(LedgerError):
    """Record store read/write failed or timed out; nothing was applied."""


class NotificationError(LedgerError):
    """Notification sink failed. Always swallowed after logging."""
