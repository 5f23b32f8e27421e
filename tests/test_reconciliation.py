"""
Test suite for the reconciliation engine

Covers every distribution branch: unmatched dates, the closing payment on the
final due date, exact payments, overpayment spillover and underpayment, plus
the cycle reset and atomic rollback on a failed spillover.
"""

import gc
import logging
import threading

import pytest
from datetime import date

from loan_repayments.storage import InMemoryStorage
from loan_repayments.audit import AuditTrail, AuditEventType
from loan_repayments.exceptions import LoanNotFoundError, ScheduleExhaustedError
from loan_repayments.loans import LoanRepository, LoanStatus, InstallmentStatus
from loan_repayments.reconciliation import ReconciliationEngine, InstallmentSchedule
from loan_repayments.repayments import RepaymentRecorder
from loan_repayments.schedule import ScheduleBuilder


class ReconciliationTestCase:
    """Shared fixtures: a 10000 VND loan over 3 terms disbursed 2024-01-15"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.repository = LoanRepository(self.storage)
        self.builder = ScheduleBuilder(self.repository, self.audit_trail)
        self.engine = ReconciliationEngine(
            self.repository, RepaymentRecorder(self.repository, self.audit_trail), self.audit_trail
        )
        self.loan = self.builder.create_loan("user_1", 10000, "VND", 3, date(2024, 1, 15))

    def installments(self):
        return self.repository.get_installments(self.loan.id)

    def current_loan(self):
        return self.repository.get_loan(self.loan.id)

    def pay(self, amount, received_at, loan_id=None):
        return self.engine.apply_payment(loan_id or self.loan.id, amount, "VND", received_at)


class TestInstallmentSchedule(ReconciliationTestCase):
    """Test the due-date index"""

    def test_first_last_and_lookup(self):
        schedule = InstallmentSchedule(self.loan, self.installments())
        assert schedule.first.term == 1
        assert schedule.last.term == 3
        assert schedule.find_by_due_date(date(2024, 3, 15)).term == 2
        assert schedule.find_by_due_date(date(2024, 3, 16)) is None
        assert schedule.is_last(schedule.last)
        assert not schedule.is_last(schedule.first)

    def test_next_after(self):
        schedule = InstallmentSchedule(self.loan, self.installments())
        assert schedule.next_after(schedule.first).term == 2
        assert schedule.next_after(schedule.last) is None

    def test_next_after_counts_from_matched_due_date(self):
        loan = self.builder.create_loan("user_1", 9000, "VND", 3, date(2024, 1, 31))
        schedule = InstallmentSchedule(loan, self.repository.get_installments(loan.id))
        # Feb 29 -> Mar 29, not the Mar 31 installment
        assert schedule.next_after(schedule.first) is None
        # Mar 31 -> Apr 30
        assert schedule.next_after(schedule.installments[1]).term == 3

    def test_duplicate_due_dates_prefer_first_created(self):
        installments = self.installments()
        installments[2].due_date = installments[0].due_date
        schedule = InstallmentSchedule(self.loan, installments)
        assert schedule.find_by_due_date(date(2024, 2, 15)).term == 1

    def test_empty_schedule(self):
        schedule = InstallmentSchedule(self.loan, [])
        assert schedule.first is None
        assert schedule.last is None
        assert schedule.find_by_due_date(date(2024, 2, 15)) is None


class TestUnmatchedPayment(ReconciliationTestCase):
    """Payments on a date with no installment are recorded only"""

    def test_payment_recorded_without_state_change(self):
        before_installments = self.installments()

        repayment = self.pay(3333, date(2024, 2, 10))

        assert repayment.loan_id == self.loan.id
        assert repayment.amount == 3333
        assert repayment.currency_code == "VND"
        assert repayment.received_at == date(2024, 2, 10)
        assert self.repository.get_repayments(self.loan.id) == [repayment]

        loan = self.current_loan()
        assert loan.outstanding_amount == 10000
        assert loan.status == LoanStatus.DUE
        assert [(i.amount, i.outstanding_amount, i.status) for i in self.installments()] == \
            [(i.amount, i.outstanding_amount, i.status) for i in before_installments]

    def test_unapplied_payment_is_audited(self):
        repayment = self.pay(100, date(2024, 2, 10))
        events = self.audit_trail.get_events_for_entity("repayment", repayment.id)
        assert [e.event_type for e in events] == [
            AuditEventType.REPAYMENT_RECEIVED, AuditEventType.REPAYMENT_UNAPPLIED
        ]

    def test_currency_is_passed_through(self):
        """The payment currency is not checked against the loan currency"""
        repayment = self.engine.apply_payment(self.loan.id, 50, "SGD", date(2024, 2, 10))
        assert repayment.currency_code == "SGD"


class TestExactPayment(ReconciliationTestCase):
    """Paying exactly an installment's amount on its due date"""

    def test_first_installment_repaid(self):
        self.pay(3333, date(2024, 2, 15))

        first, second, third = self.installments()
        assert first.status == InstallmentStatus.REPAID
        assert first.outstanding_amount == 0
        assert first.amount == 3333
        assert second.status == InstallmentStatus.DUE
        assert second.outstanding_amount == 3333
        assert third.status == InstallmentStatus.DUE

        loan = self.current_loan()
        assert loan.outstanding_amount == 6667
        assert loan.status == LoanStatus.DUE

    def test_two_exact_payments(self):
        self.pay(3333, date(2024, 2, 15))
        self.pay(3333, date(2024, 3, 15))

        statuses = [i.status for i in self.installments()]
        assert statuses == [InstallmentStatus.REPAID, InstallmentStatus.REPAID, InstallmentStatus.DUE]
        assert self.current_loan().outstanding_amount == 3334
        assert self.current_loan().status == LoanStatus.DUE

    def test_exact_payment_clearing_outstanding_repays_loan(self):
        """Loan flips to REPAID when the exact payment brings outstanding to zero"""
        loan = self.builder.create_loan("user_1", 1000, "VND", 2, date(2024, 1, 15))
        stored = self.repository.get_loan(loan.id)
        stored.outstanding_amount = 500
        self.repository.save_loan(stored)

        self.pay(500, date(2024, 2, 15), loan_id=loan.id)

        loan = self.repository.get_loan(loan.id)
        assert loan.outstanding_amount == 0
        assert loan.status == LoanStatus.REPAID
        loan_events = [e.event_type for e in self.audit_trail.get_events_for_entity("loan", loan.id)]
        assert AuditEventType.LOAN_REPAID in loan_events


class TestClosingPayment(ReconciliationTestCase):
    """Any payment on the final due date closes the whole loan"""

    def test_exact_final_payment_closes_loan(self):
        self.pay(3334, date(2024, 4, 15))

        installments = self.installments()
        assert all(i.status == InstallmentStatus.REPAID for i in installments)
        assert all(i.outstanding_amount == 0 for i in installments)

        loan = self.current_loan()
        assert loan.outstanding_amount == 0
        assert loan.status == LoanStatus.REPAID

    def test_final_payment_closes_loan_with_earlier_installments_unpaid(self):
        """Earlier installments are closed even though nothing was paid on them"""
        self.pay(1, date(2024, 4, 15))

        assert all(i.status == InstallmentStatus.REPAID for i in self.installments())
        assert self.current_loan().status == LoanStatus.REPAID
        assert self.current_loan().outstanding_amount == 0

    def test_closing_installment_takes_first_due_date(self):
        self.pay(3334, date(2024, 4, 15))

        first, second, third = self.installments()
        assert third.due_date == first.due_date == date(2024, 2, 15)
        assert second.due_date == date(2024, 3, 15)
        # Amounts are left as scheduled
        assert [i.amount for i in (first, second, third)] == [3333, 3333, 3334]

    def test_single_term_loan(self):
        loan = self.builder.create_loan("user_1", 5000, "VND", 1, date(2024, 1, 31))
        self.pay(5000, date(2024, 2, 29), loan_id=loan.id)

        (installment,) = self.repository.get_installments(loan.id)
        assert installment.status == InstallmentStatus.REPAID
        assert installment.due_date == date(2024, 2, 29)
        assert self.repository.get_loan(loan.id).status == LoanStatus.REPAID

    def test_payment_on_first_date_after_close_closes_again(self):
        """The terminal marker makes the first due date count as the final one"""
        self.pay(3334, date(2024, 4, 15))
        self.pay(10, date(2024, 2, 15))

        first, second, third = self.installments()
        assert first.amount == 3333
        assert all(i.status == InstallmentStatus.REPAID for i in (first, second, third))
        assert self.current_loan().status == LoanStatus.REPAID

    def test_close_is_audited(self):
        repayment = self.pay(3334, date(2024, 4, 15))
        events = self.audit_trail.get_events_for_entity("loan", self.loan.id)
        assert events[-1].event_type == AuditEventType.LOAN_REPAID
        assert events[-1].metadata["repayment_id"] == repayment.id
        assert events[-1].metadata["closing_term"] == 3


class TestSpillover(ReconciliationTestCase):
    """Overpayment settles the installment and prepays the next one"""

    def test_overpayment_spills_into_next_installment(self):
        self.pay(5000, date(2024, 2, 15))

        first, second, third = self.installments()
        assert first.status == InstallmentStatus.REPAID
        assert first.outstanding_amount == 0
        assert first.amount == 3334

        assert second.status == InstallmentStatus.PARTIAL
        assert second.amount == 3334
        assert second.outstanding_amount == 5000 - 3334

        assert third.status == InstallmentStatus.DUE
        assert third.amount == 3334
        assert third.outstanding_amount == 3334

        loan = self.current_loan()
        assert loan.outstanding_amount == 5000
        assert loan.status == LoanStatus.DUE

    def test_one_unit_adjustment_is_pinned(self):
        """Overpaying by exactly one unit leaves nothing to spill after the +1 adjustment"""
        self.pay(3334, date(2024, 2, 15))

        first, second, _ = self.installments()
        assert first.amount == 3334
        assert second.amount == 3334
        assert second.outstanding_amount == 0
        assert second.status == InstallmentStatus.PARTIAL
        assert self.current_loan().outstanding_amount == 10000 - 3334

    def test_spillover_into_last_installment(self):
        self.pay(4000, date(2024, 3, 15))

        first, second, third = self.installments()
        assert first.status == InstallmentStatus.DUE
        assert second.status == InstallmentStatus.REPAID
        assert second.amount == 3334
        assert third.status == InstallmentStatus.PARTIAL
        assert third.amount == 3334
        assert third.outstanding_amount == 666
        assert self.current_loan().outstanding_amount == 6000

    def test_spillover_across_month_end_finds_no_next_installment(self):
        """Feb 29 + 1 month is Mar 29, and the second installment is due Mar 31"""
        loan = self.builder.create_loan("user_1", 9000, "VND", 3, date(2024, 1, 31))
        assert [i.due_date for i in self.repository.get_installments(loan.id)] == [
            date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)
        ]
        before = self.storage.get_all_data()

        with pytest.raises(ScheduleExhaustedError, match="no installment after term 1"):
            self.pay(4000, date(2024, 2, 29), loan_id=loan.id)

        assert self.storage.get_all_data() == before
        first, second, _ = self.repository.get_installments(loan.id)
        assert first.amount == 3000
        assert first.status == InstallmentStatus.DUE
        assert second.status == InstallmentStatus.DUE
        assert second.outstanding_amount == 3000
        assert self.repository.get_repayments(loan.id) == []
        assert self.repository.get_loan(loan.id).outstanding_amount == 9000

    def test_spillover_is_audited(self):
        repayment = self.pay(5000, date(2024, 2, 15))
        first, second, _ = self.installments()

        first_events = self.audit_trail.get_events_for_entity("installment", first.id)
        assert [e.event_type for e in first_events] == [AuditEventType.INSTALLMENT_REPAID]
        second_events = self.audit_trail.get_events_for_entity("installment", second.id)
        assert [e.event_type for e in second_events] == [AuditEventType.INSTALLMENT_PREPAID]
        assert second_events[0].metadata == {
            "loan_id": self.loan.id,
            "repayment_id": repayment.id,
            "outstanding_amount": 1666
        }


class TestUnderpayment(ReconciliationTestCase):
    """Payment smaller than the installment is recorded only"""

    def test_underpayment_changes_nothing(self):
        repayment = self.pay(1000, date(2024, 2, 15))

        assert self.repository.get_repayments(self.loan.id) == [repayment]
        first, _, _ = self.installments()
        assert first.status == InstallmentStatus.DUE
        assert first.outstanding_amount == 3333
        assert self.current_loan().outstanding_amount == 10000
        assert self.current_loan().status == LoanStatus.DUE


class TestCycleReset(ReconciliationTestCase):
    """A loan with nothing outstanding but still DUE starts a new cycle"""

    def settle_everything_but_keep_due(self):
        loan = self.current_loan()
        loan.outstanding_amount = 0
        self.repository.save_loan(loan)
        for installment in self.installments():
            installment.outstanding_amount = 0
            installment.status = InstallmentStatus.REPAID
            self.repository.save_installment(installment)

    def test_reset_restores_outstanding_amounts(self):
        self.settle_everything_but_keep_due()

        self.pay(100, date(2024, 2, 10))

        loan = self.current_loan()
        assert loan.outstanding_amount == 10000
        assert loan.status == LoanStatus.DUE
        installments = self.installments()
        assert [i.outstanding_amount for i in installments] == [3333, 3333, 3334]
        # Statuses are not part of the reset
        assert all(i.status == InstallmentStatus.REPAID for i in installments)

    def test_reset_happens_before_payment_is_applied(self):
        self.settle_everything_but_keep_due()

        self.pay(3333, date(2024, 2, 15))

        assert self.current_loan().outstanding_amount == 6667
        assert [i.outstanding_amount for i in self.installments()] == [0, 3333, 3334]

    def test_repaid_loan_is_not_reset(self):
        self.pay(3334, date(2024, 4, 15))
        self.pay(100, date(2024, 2, 10))

        assert self.current_loan().outstanding_amount == 0
        assert all(i.outstanding_amount == 0 for i in self.installments())

    def test_reset_is_audited(self):
        self.settle_everything_but_keep_due()
        self.pay(100, date(2024, 2, 10))
        events = self.audit_trail.get_events_for_entity("loan", self.loan.id)
        assert AuditEventType.LOAN_CYCLE_RESET in [e.event_type for e in events]


class TestFailedSpillover(ReconciliationTestCase):
    """A spillover with no next installment rolls the whole payment back"""

    def break_second_installment(self):
        second = self.installments()[1]
        second.due_date = date(2030, 1, 1)
        self.repository.save_installment(second)

    def test_missing_next_installment_raises(self):
        self.break_second_installment()

        with pytest.raises(ScheduleExhaustedError, match="no installment after term 1"):
            self.pay(5000, date(2024, 2, 15))

    def test_nothing_is_persisted(self):
        self.break_second_installment()
        before = self.storage.get_all_data()

        with pytest.raises(ScheduleExhaustedError):
            self.pay(5000, date(2024, 2, 15))

        assert self.storage.get_all_data() == before
        assert self.repository.get_repayments(self.loan.id) == []
        assert self.audit_trail.verify_integrity()["valid"]

    def test_cycle_reset_is_rolled_back_too(self):
        self.break_second_installment()
        loan = self.current_loan()
        loan.outstanding_amount = 0
        self.repository.save_loan(loan)

        with pytest.raises(ScheduleExhaustedError):
            self.pay(5000, date(2024, 2, 15))

        assert self.current_loan().outstanding_amount == 0

    def test_failure_is_logged(self, caplog):
        self.break_second_installment()

        with caplog.at_level(logging.ERROR, logger="loan_repayments.reconciliation"):
            with pytest.raises(ScheduleExhaustedError):
                self.pay(5000, date(2024, 2, 15))

        assert any("Payment rolled back" in r.getMessage() for r in caplog.records)

    def test_engine_usable_after_failure(self):
        self.break_second_installment()
        with pytest.raises(ScheduleExhaustedError):
            self.pay(5000, date(2024, 2, 15))

        self.pay(3333, date(2024, 2, 15))
        assert self.current_loan().outstanding_amount == 6667


class TestEngineErrors(ReconciliationTestCase):

    def test_unknown_loan(self):
        with pytest.raises(LoanNotFoundError):
            self.pay(100, date(2024, 2, 15), loan_id="missing")
        assert self.storage.count(self.repository.repayments_table) == 0

    def test_unknown_loan_leaves_no_lock_behind(self):
        with pytest.raises(LoanNotFoundError):
            self.pay(100, date(2024, 2, 15), loan_id="missing")
        gc.collect()
        assert "missing" not in self.engine._loan_locks

    def test_lock_released_after_payment(self):
        self.pay(3333, date(2024, 2, 15))
        gc.collect()
        assert len(self.engine._loan_locks) == 0


class TestConcurrentPayments(ReconciliationTestCase):
    """Concurrent payments against the same loan are serialized"""

    def test_concurrent_exact_payments(self):
        loan = self.builder.create_loan("user_1", 12000, "VND", 12, date(2024, 1, 10))
        due_dates = [i.due_date for i in self.repository.get_installments(loan.id)][:-1]
        errors = []

        def worker(received_at):
            try:
                self.pay(1000, received_at, loan_id=loan.id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(d,)) for d in due_dates]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        stored = self.repository.get_loan(loan.id)
        assert stored.outstanding_amount == 1000
        assert stored.status == LoanStatus.DUE
        statuses = [i.status for i in self.repository.get_installments(loan.id)]
        assert statuses == [InstallmentStatus.REPAID] * 11 + [InstallmentStatus.DUE]
        assert len(self.repository.get_repayments(loan.id)) == 11
        assert self.audit_trail.verify_integrity()["valid"]
