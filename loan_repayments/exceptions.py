"""Exception hierarchy for loan repayments."""


class RepaymentError(Exception):
    """Base exception for all loan repayment errors."""


class LoanNotFoundError(RepaymentError):
    """Raised when a referenced loan does not exist."""


class InvalidAmountError(RepaymentError, ValueError):
    """Raised when a principal, term count or payment amount is not a positive integer."""


class ScheduleExhaustedError(RepaymentError):
    """Raised when an overpayment has no next installment to spill into."""
