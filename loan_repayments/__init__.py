"""
Loan Repayments

Loan amortization and repayment reconciliation: builds installment schedules
in integer minor units and applies received payments against them, keeping
loan and installment balances consistent through to full repayment.
"""

__version__ = "1.0.0"
