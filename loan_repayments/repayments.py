"""
Repayment Recorder Module

Appends an immutable record of each payment received against a loan.
"""

from datetime import datetime, timezone, date
from typing import Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .loans import Loan, LoanRepository, ReceivedRepayment


class RepaymentRecorder:
    """Records received repayments without touching loan or installment state"""

    def __init__(self, repository: LoanRepository, audit_trail: Optional[AuditTrail] = None):
        self.repository = repository
        self.audit_trail = audit_trail

    def record_payment(
        self,
        loan: Loan,
        amount: int,
        currency_code: str,
        received_at: date
    ) -> ReceivedRepayment:
        """Create and persist a ReceivedRepayment for the loan"""
        now = datetime.now(timezone.utc)
        repayment = ReceivedRepayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            amount=amount,
            currency_code=currency_code,
            received_at=received_at
        )
        self.repository.save_repayment(repayment)

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.REPAYMENT_RECEIVED,
                entity_type="repayment",
                entity_id=repayment.id,
                metadata={
                    "loan_id": loan.id,
                    "amount": amount,
                    "currency_code": currency_code,
                    "received_at": received_at.isoformat()
                }
            )

        return repayment
