"""Exception hierarchy for loan servicing operations."""


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors."""


class InvalidScheduleInput(LoanServicingError, ValueError):
    """Raised when a loan amount or term cannot produce a repayment schedule."""


class NotFound(LoanServicingError):
    """Raised when a referenced record does not exist."""


class LoanNotFound(NotFound):
    """Raised when a loan does not exist."""

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found")
        self.loan_id = loan_id


class SettlementError(LoanServicingError):
    """Raised when a repayment cannot be settled."""


class RepaymentNotFound(SettlementError):
    """Raised when no pending repayment matches the loan and date."""


class InsufficientAmount(SettlementError):
    """Raised when the paid amount is below the scheduled amount."""


class AmountTooHigh(SettlementError):
    """Raised when the paid amount exceeds the scheduled amount."""


class Forbidden(LoanServicingError):
    """Raised when the caller lacks the permission for an operation."""


class InvalidLoanState(LoanServicingError):
    """Raised when a loan is in the wrong status for the operation."""


class PersistenceError(LoanServicingError):
    """Raised when the storage backend fails."""
