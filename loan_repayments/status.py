"""Loan status derived from the aggregate outstanding amount."""

from .loans import Loan, LoanStatus


def resolve_loan_status(outstanding_amount: int) -> LoanStatus:
    return LoanStatus.REPAID if outstanding_amount == 0 else LoanStatus.DUE


def recompute_loan_status(loan: Loan) -> LoanStatus:
    """Set and return the loan's status: REPAID when nothing is outstanding, DUE otherwise"""
    loan.status = resolve_loan_status(loan.outstanding_amount)
    return loan.status
