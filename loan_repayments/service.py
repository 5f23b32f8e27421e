"""
Loan Service Module

Entry point used by the enclosing request-handling layer: validates numeric
preconditions, then delegates to the schedule builder and the reconciliation
engine.
"""

from datetime import date
from typing import Any, Dict, List, Optional, Union

from .audit import AuditTrail
from .config import RepaymentsConfig, get_config
from .currency import validate_minor_units
from .dates import parse_date
from .exceptions import InvalidAmountError, LoanNotFoundError
from .loans import (
    Loan, LoanRepository, ReceivedRepayment,
    ScheduledInstallment, InstallmentStatus
)
from .logging_config import get_logger, setup_logging
from .reconciliation import ReconciliationEngine
from .repayments import RepaymentRecorder
from .schedule import ScheduleBuilder
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage


logger = get_logger("loan_repayments.service")


def create_storage(config: RepaymentsConfig) -> StorageInterface:
    """Build the storage backend selected by configuration"""
    backend = config.storage_backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(config.sqlite_path)
    raise ValueError(f"Unknown storage backend '{config.storage_backend}'")


class LoanService:
    """
    Creates loans and reconciles repayments against their schedules
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        default_currency: str = "VND"
    ):
        self.storage = storage
        self.default_currency = default_currency
        self.audit_trail = audit_trail
        self.repository = LoanRepository(storage)
        self.schedule_builder = ScheduleBuilder(self.repository, audit_trail)
        self.recorder = RepaymentRecorder(self.repository, audit_trail)
        self.engine = ReconciliationEngine(self.repository, self.recorder, audit_trail)

    @classmethod
    def from_config(cls, config: Optional[RepaymentsConfig] = None) -> 'LoanService':
        """
        Wire a service from configuration (global configuration by default)

        Also configures the package logger from the log_* settings.
        """
        config = config or get_config()
        setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
        storage = create_storage(config)
        audit_trail = AuditTrail(storage) if config.enable_audit_logging else None
        logger.debug("Loan service using %s storage, audit %s",
                     config.storage_backend, "on" if audit_trail else "off")
        return cls(storage, audit_trail, default_currency=config.default_currency)

    def create_loan(
        self,
        user_id: str,
        amount: int,
        currency_code: Optional[str],
        terms: int,
        processed_at: Union[date, str]
    ) -> Loan:
        """
        Create a loan with a monthly repayment schedule

        A missing currency code falls back to the configured default currency.

        Raises:
            InvalidAmountError: If amount or terms is not a positive integer
        """
        validate_minor_units(amount, "amount")
        if isinstance(terms, bool) or not isinstance(terms, int) or terms < 1:
            raise InvalidAmountError(f"terms must be an integer >= 1, got {terms!r}")

        return self.schedule_builder.create_loan(
            user_id=user_id,
            amount=amount,
            currency_code=currency_code or self.default_currency,
            terms=terms,
            processed_at=parse_date(processed_at)
        )

    def repay_loan(
        self,
        loan_id: str,
        amount: int,
        currency_code: str,
        received_at: Union[date, str]
    ) -> ReceivedRepayment:
        """
        Apply a received payment to a loan

        Raises:
            InvalidAmountError: If amount is not a positive integer
            LoanNotFoundError: If the loan does not exist
            ScheduleExhaustedError: If an overpayment cannot spill into a next installment
        """
        validate_minor_units(amount, "amount")
        return self.engine.apply_payment(loan_id, amount, currency_code, parse_date(received_at))

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by ID"""
        loan = self.repository.get_loan(loan_id)
        if not loan:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    def get_user_loans(self, user_id: str) -> List[Loan]:
        return self.repository.find_loans_for_user(user_id)

    def get_installments(self, loan_id: str) -> List[ScheduledInstallment]:
        return self.repository.get_installments(loan_id)

    def get_repayments(self, loan_id: str) -> List[ReceivedRepayment]:
        return self.repository.get_repayments(loan_id)

    def loan_summary(self, loan_id: str) -> Dict[str, Any]:
        """
        Summarize a loan's repayment position

        Returns:
            Dictionary with the loan's amounts and status, the total received,
            and installment counts per status
        """
        loan = self.get_loan(loan_id)
        installments = self.repository.get_installments(loan_id)
        repayments = self.repository.get_repayments(loan_id)

        counts = {status.value: 0 for status in InstallmentStatus}
        for installment in installments:
            counts[installment.status.value] += 1

        return {
            "loan_id": loan.id,
            "user_id": loan.user_id,
            "currency_code": loan.currency_code,
            "amount": loan.amount,
            "outstanding_amount": loan.outstanding_amount,
            "status": loan.status.value,
            "total_received": sum(r.amount for r in repayments),
            "repayment_count": len(repayments),
            "installments": counts
        }
