"""
Schedule Builder Module

Splits a principal into equal monthly installments, the last one absorbing
the integer remainder, and persists the loan together with its schedule.
"""

from datetime import datetime, timezone, date
from typing import List, Optional
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import format_minor_units
from .dates import add_months
from .loans import Loan, LoanRepository, LoanStatus, ScheduledInstallment, InstallmentStatus


logger = logging.getLogger("loan_repayments.schedule")


def build_installment_amounts(amount: int, terms: int) -> List[int]:
    """
    Split a principal into per-installment amounts

    Every installment gets ``amount // terms``; the last one gets whatever is
    left so the amounts always sum to the principal exactly.

    >>> build_installment_amounts(10000, 3)
    [3333, 3333, 3334]
    """
    base = amount // terms
    return [base] * (terms - 1) + [amount - base * (terms - 1)]


def build_due_dates(processed_at: date, terms: int) -> List[date]:
    """Due date of term k is ``processed_at`` plus k calendar months"""
    return [add_months(processed_at, term) for term in range(1, terms + 1)]


class ScheduleBuilder:
    """
    Creates loans and their repayment schedules
    """

    def __init__(self, repository: LoanRepository, audit_trail: Optional[AuditTrail] = None):
        self.repository = repository
        self.storage = repository.storage
        self.audit_trail = audit_trail

    def create_loan(
        self,
        user_id: str,
        amount: int,
        currency_code: str,
        terms: int,
        processed_at: date
    ) -> Loan:
        """
        Create a loan and its full installment schedule

        Args:
            user_id: Owning user
            amount: Principal in minor units, > 0
            currency_code: ISO currency code of the loan
            terms: Number of monthly installments, >= 1
            processed_at: Disbursement date the schedule is anchored on

        Returns:
            Created Loan object
        """
        now = datetime.now(timezone.utc)

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            amount=amount,
            currency_code=currency_code,
            terms=terms,
            processed_at=processed_at,
            outstanding_amount=amount,
            status=LoanStatus.DUE
        )

        amounts = build_installment_amounts(amount, terms)
        due_dates = build_due_dates(processed_at, terms)

        with self.storage.atomic():
            self.repository.save_loan(loan)

            for term, (amount_term, due_date) in enumerate(zip(amounts, due_dates), start=1):
                self.repository.save_installment(ScheduledInstallment(
                    id=LoanRepository.installment_id(loan.id, term),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    term=term,
                    amount=amount_term,
                    outstanding_amount=amount_term,
                    currency_code=currency_code,
                    due_date=due_date,
                    status=InstallmentStatus.DUE
                ))

            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_CREATED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "user_id": user_id,
                        "amount": amount,
                        "currency_code": currency_code,
                        "terms": terms,
                        "processed_at": processed_at.isoformat(),
                        "installment_amounts": amounts
                    }
                )

        logger.info(
            "Created loan %s for user %s: %s over %d terms",
            loan.id, user_id, format_minor_units(amount, currency_code), terms,
            extra={"loan_id": loan.id, "action": "create_loan"}
        )
        return loan
