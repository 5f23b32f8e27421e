"""
Reconciliation Engine Module

Matches a received payment to the installment due on the payment date and
distributes it: closing the whole loan on the final due date, settling an
installment paid exactly, or spilling an overpayment into the next
installment. Loan status is recomputed after every outstanding-amount change.

Each payment is applied under a per-loan lock and inside a single storage
transaction, so a failure at any step leaves no trace, not even the
received repayment record.
"""

from datetime import datetime, timezone, date
from typing import Dict, List, Optional
import threading
import weakref

from .audit import AuditTrail, AuditEventType
from .dates import add_months
from .exceptions import LoanNotFoundError, ScheduleExhaustedError
from .loans import (
    Loan, LoanRepository, LoanStatus, ReceivedRepayment,
    ScheduledInstallment, InstallmentStatus
)
from .logging_config import get_logger, log_action
from .repayments import RepaymentRecorder
from .status import recompute_loan_status


logger = get_logger("loan_repayments.reconciliation")


class InstallmentSchedule:
    """
    A loan's installments in creation order, indexed by due date

    When several installments share a due date the earliest-created one wins,
    matching ``LoanRepository.find_installment_by_due_date``.
    """

    def __init__(self, loan: Loan, installments: List[ScheduledInstallment]):
        self.loan = loan
        self.installments = sorted(installments, key=lambda i: i.term)
        self._by_due_date: Dict[date, ScheduledInstallment] = {}
        for installment in self.installments:
            self._by_due_date.setdefault(installment.due_date, installment)

    @property
    def first(self) -> Optional[ScheduledInstallment]:
        return self.installments[0] if self.installments else None

    @property
    def last(self) -> Optional[ScheduledInstallment]:
        return self.installments[-1] if self.installments else None

    def find_by_due_date(self, due_date: date) -> Optional[ScheduledInstallment]:
        return self._by_due_date.get(due_date)

    def is_last(self, installment: ScheduledInstallment) -> bool:
        """Whether the installment falls on the final installment's due date"""
        return self.last is not None and installment.due_date == self.last.due_date

    def next_after(self, installment: ScheduledInstallment) -> Optional[ScheduledInstallment]:
        """
        Installment due one calendar month after the given one

        The date is counted from the given installment's own due date, so after
        month-end clamping (Jan 31 -> Feb 29) the lookup lands on Mar 29 and a
        Mar 31 installment is not found.
        """
        return self.find_by_due_date(add_months(installment.due_date, 1))


class ReconciliationEngine:
    """
    Applies received payments to a loan's repayment schedule
    """

    def __init__(
        self,
        repository: LoanRepository,
        recorder: Optional[RepaymentRecorder] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.repository = repository
        self.storage = repository.storage
        self.recorder = recorder or RepaymentRecorder(repository, audit_trail)
        self.audit_trail = audit_trail

        # Entries disappear once no payment holds the lock
        self._loan_locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _loan_lock(self, loan_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._loan_locks.get(loan_id)
            if lock is None:
                lock = self._loan_locks[loan_id] = threading.RLock()
            return lock

    def apply_payment(
        self,
        loan_id: str,
        amount: int,
        currency_code: str,
        received_at: date
    ) -> ReceivedRepayment:
        """
        Record a payment and reconcile it against the loan's schedule

        Args:
            loan_id: Loan being repaid
            amount: Amount received in minor units, > 0
            currency_code: Currency of the payment (not checked against the loan)
            received_at: Date the payment was received

        Returns:
            The recorded ReceivedRepayment, whether or not it matched an installment

        Raises:
            LoanNotFoundError: If the loan does not exist
            ScheduleExhaustedError: If an overpayment has no next installment;
                nothing is persisted in that case
        """
        lock = self._loan_lock(loan_id)
        with lock:
            try:
                with self.storage.atomic():
                    return self._apply(loan_id, amount, currency_code, received_at)
            except ScheduleExhaustedError as e:
                log_action(
                    logger, "error", f"Payment rolled back: {e}",
                    loan_id=loan_id, action="apply_payment",
                    extra={"amount": amount, "received_at": received_at.isoformat()}
                )
                raise

    def _apply(
        self,
        loan_id: str,
        amount: int,
        currency_code: str,
        received_at: date
    ) -> ReceivedRepayment:
        loan = self.repository.get_loan(loan_id)
        if not loan:
            raise LoanNotFoundError(f"Loan {loan_id} not found")

        schedule = InstallmentSchedule(loan, self.repository.get_installments(loan_id))

        # Fully paid but still due: a new repayment cycle starts on the same schedule
        if loan.outstanding_amount == 0 and loan.status == LoanStatus.DUE:
            self._reset_cycle(loan, schedule)

        repayment = self.recorder.record_payment(loan, amount, currency_code, received_at)

        installment = schedule.find_by_due_date(received_at)
        if installment is None:
            self._log_event(AuditEventType.REPAYMENT_UNAPPLIED, "repayment", repayment.id, {
                "loan_id": loan.id,
                "received_at": received_at.isoformat()
            })
            log_action(logger, "info", "No installment due on payment date, payment left unapplied",
                       loan_id=loan.id, action="apply_payment",
                       extra={"repayment_id": repayment.id, "received_at": received_at.isoformat()})
            return repayment

        if schedule.is_last(installment):
            self._close_loan(loan, schedule, installment, repayment)
        elif installment.amount == repayment.amount:
            self._settle_installment(loan, installment, repayment)
        elif installment.amount < repayment.amount:
            self._spill_over(loan, schedule, installment, repayment)
        else:
            log_action(logger, "info", "Payment below installment amount, recorded only",
                       loan_id=loan.id, action="apply_payment",
                       extra={"repayment_id": repayment.id, "term": installment.term,
                              "installment_amount": installment.amount, "amount": repayment.amount})

        return repayment

    def _reset_cycle(self, loan: Loan, schedule: InstallmentSchedule) -> None:
        """Restore the loan and every installment to their full amounts"""
        loan.outstanding_amount = loan.amount
        self._save_loan(loan)

        for installment in schedule.installments:
            installment.outstanding_amount = installment.amount
            self._save_installment(installment)

        self._log_event(AuditEventType.LOAN_CYCLE_RESET, "loan", loan.id, {
            "outstanding_amount": loan.outstanding_amount
        })
        log_action(logger, "info", "Repayment cycle reset", loan_id=loan.id, action="reset_cycle")

    def _close_loan(
        self,
        loan: Loan,
        schedule: InstallmentSchedule,
        closing: ScheduledInstallment,
        repayment: ReceivedRepayment
    ) -> None:
        """Payment on the final due date closes every installment and the loan"""
        first_due_date = schedule.first.due_date

        for installment in schedule.installments:
            installment.status = InstallmentStatus.REPAID
            installment.outstanding_amount = 0
        # The closing installment takes the first due date as a terminal marker
        closing.due_date = first_due_date
        for installment in schedule.installments:
            self._save_installment(installment)

        loan.outstanding_amount = 0
        loan.status = LoanStatus.REPAID
        self._save_loan(loan)

        self._log_event(AuditEventType.LOAN_REPAID, "loan", loan.id, {
            "repayment_id": repayment.id,
            "closing_term": closing.term
        })
        log_action(logger, "info", "Loan closed by payment on final due date",
                   loan_id=loan.id, action="close_loan",
                   extra={"repayment_id": repayment.id, "amount": repayment.amount})

    def _settle_installment(
        self,
        loan: Loan,
        installment: ScheduledInstallment,
        repayment: ReceivedRepayment
    ) -> None:
        """Payment equal to the installment amount settles that installment"""
        installment.status = InstallmentStatus.REPAID
        installment.outstanding_amount = 0
        self._save_installment(installment)

        loan.outstanding_amount -= installment.amount
        recompute_loan_status(loan)
        self._save_loan(loan)

        self._log_event(AuditEventType.INSTALLMENT_REPAID, "installment", installment.id, {
            "loan_id": loan.id,
            "repayment_id": repayment.id,
            "amount": installment.amount
        })
        self._log_loan_repaid(loan, repayment)
        log_action(logger, "info", f"Installment {installment.term} repaid",
                   loan_id=loan.id, action="settle_installment",
                   extra={"repayment_id": repayment.id, "outstanding_amount": loan.outstanding_amount})

    def _spill_over(
        self,
        loan: Loan,
        schedule: InstallmentSchedule,
        matched: ScheduledInstallment,
        repayment: ReceivedRepayment
    ) -> None:
        """Payment above the installment amount settles it and prepays the next one"""
        next_installment = schedule.next_after(matched)
        if next_installment is None:
            raise ScheduleExhaustedError(
                f"Loan {loan.id} has no installment after term {matched.term} "
                f"to take the excess of a {repayment.amount} payment"
            )

        # TODO: confirm with the lending product owner whether the one-unit bump is intended
        matched.amount += 1
        matched.status = InstallmentStatus.REPAID
        matched.outstanding_amount = 0
        self._save_installment(matched)

        remaining = repayment.amount - matched.amount

        next_installment.amount = matched.amount
        next_installment.status = InstallmentStatus.PARTIAL
        next_installment.outstanding_amount = remaining
        self._save_installment(next_installment)

        loan.outstanding_amount -= repayment.amount
        recompute_loan_status(loan)
        self._save_loan(loan)

        if loan.outstanding_amount < 0:
            log_action(logger, "warning", "Loan outstanding amount went negative after spillover",
                       loan_id=loan.id, action="spill_over",
                       extra={"outstanding_amount": loan.outstanding_amount})

        self._log_event(AuditEventType.INSTALLMENT_REPAID, "installment", matched.id, {
            "loan_id": loan.id,
            "repayment_id": repayment.id,
            "amount": matched.amount
        })
        self._log_event(AuditEventType.INSTALLMENT_PREPAID, "installment", next_installment.id, {
            "loan_id": loan.id,
            "repayment_id": repayment.id,
            "outstanding_amount": remaining
        })
        self._log_loan_repaid(loan, repayment)
        log_action(logger, "info", f"Installment {matched.term} repaid, excess spilled into term {next_installment.term}",
                   loan_id=loan.id, action="spill_over",
                   extra={"repayment_id": repayment.id, "remaining": remaining,
                          "outstanding_amount": loan.outstanding_amount})

    def _log_loan_repaid(self, loan: Loan, repayment: ReceivedRepayment) -> None:
        if loan.status == LoanStatus.REPAID:
            self._log_event(AuditEventType.LOAN_REPAID, "loan", loan.id, {
                "repayment_id": repayment.id
            })

    def _log_event(self, event_type: AuditEventType, entity_type: str, entity_id: str, metadata: Dict) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata
            )

    def _save_loan(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.repository.save_loan(loan)

    def _save_installment(self, installment: ScheduledInstallment) -> None:
        installment.updated_at = datetime.now(timezone.utc)
        self.repository.save_installment(installment)
