"""
Test suite for loans module

Tests the loan lifecycle through LoanManager: origination, approval,
disbursement, payment recording and reversal, delinquency updates with
penalties, batch delinquency runs, and audit coverage.
"""

import re
import threading
import time
import pytest
from decimal import Decimal
from datetime import date

from lending_core.config import LendingConfig
from lending_core.currency import Money
from lending_core.storage import InMemoryStorage, SQLiteStorage
from lending_core.audit import AuditTrail, AuditEventType
from lending_core.schedule import LoanTerms, TermUnit, InstallmentStatus, InvalidTermsError, schedule_totals
from lending_core.allocation import LoanStatus, InvalidPaymentError
from lending_core.delinquency import (
    DelinquencyStatus, PenaltyRules, PenaltyType, calculate_penalty, overdue_amount
)
from lending_core.loans import (
    LoanManager, LoanFees, PaymentMethod, PaymentStatus, RequestContext,
    RecordNotFoundError, LOCK_STRIPES
)


def make_terms(**overrides) -> LoanTerms:
    params = dict(
        principal=Decimal('120000'),
        annual_rate_percent=Decimal('15'),
        term_value=12,
        term_unit=TermUnit.MONTHS,
        start_date=date(2024, 1, 15),
    )
    params.update(overrides)
    return LoanTerms(**params)


class LoanManagerTestCase:
    """Shared fixtures"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.loan_manager = LoanManager(self.storage, self.audit_trail, LendingConfig())
        self.ctx = RequestContext(user_id="officer-1", branch="Nairobi CBD", correlation_id="req-1")

    def create_active_loan(self, customer_id="CUST001", **kwargs):
        loan = self.loan_manager.originate_loan(customer_id, kwargs.pop("terms", make_terms()), self.ctx, **kwargs)
        self.loan_manager.approve_loan(loan.id, self.ctx)
        return self.loan_manager.disburse_loan(loan.id, self.ctx)


class TestOrigination(LoanManagerTestCase):
    """Test loan creation"""

    def test_originate_loan(self):
        loan = self.loan_manager.originate_loan(
            "CUST001", make_terms(), self.ctx,
            fees=LoanFees(processing_fee=Decimal('1500'), insurance_fee=Decimal('600'))
        )
        totals = schedule_totals(loan.schedule)

        assert loan.status == LoanStatus.PENDING
        assert re.fullmatch(r"LN\d{4}00001", loan.loan_number)
        assert len(loan.schedule) == 12
        assert loan.balances.principal_balance == Decimal('120000')
        assert loan.balances.interest_balance == totals['interest']
        assert loan.balances.fees_balance == Decimal('2100')
        assert loan.balances.penalty_balance == Decimal('0')
        assert loan.balances.total_balance == totals['total'] + Decimal('2100')
        assert loan.total_amount == totals['total']
        assert loan.maturity_date == loan.schedule[-1].due_date
        assert loan.created_by == "officer-1"
        assert loan.branch == "Nairobi CBD"
        assert loan.product_name == "Personal Loan"

    def test_loan_persisted(self):
        loan = self.loan_manager.originate_loan("CUST001", make_terms(), self.ctx)
        stored = self.loan_manager.get_loan(loan.id)

        assert stored.loan_number == loan.loan_number
        assert stored.terms == loan.terms
        assert stored.schedule == loan.schedule
        assert stored.balances == loan.balances
        assert self.loan_manager.get_loan_by_number(loan.loan_number).id == loan.id

    def test_loan_numbers_sequential(self):
        first = self.loan_manager.originate_loan("CUST001", make_terms(), self.ctx)
        second = self.loan_manager.originate_loan("CUST002", make_terms(), self.ctx)
        assert first.loan_number.endswith("00001")
        assert second.loan_number.endswith("00002")

    def test_invalid_terms_store_nothing(self):
        with pytest.raises(InvalidTermsError):
            self.loan_manager.originate_loan("CUST001", make_terms(principal=Decimal('0')), self.ctx)
        assert self.storage.count("loans") == 0

    def test_customer_required(self):
        with pytest.raises(ValueError):
            self.loan_manager.originate_loan("", make_terms(), self.ctx)

    def test_creation_audited(self):
        loan = self.loan_manager.originate_loan("CUST001", make_terms(), self.ctx)
        events = self.audit_trail.get_events_for_entity("loan", loan.id)

        assert events[0].event_type == AuditEventType.LOAN_CREATED
        assert events[0].user_id == "officer-1"
        assert events[0].correlation_id == "req-1"
        assert events[0].metadata["principal"] == "KES 120,000.00"

    def test_customer_loans(self):
        self.loan_manager.originate_loan("CUST001", make_terms(), self.ctx)
        self.loan_manager.originate_loan("CUST001", make_terms(term_value=6), self.ctx)
        self.loan_manager.originate_loan("CUST002", make_terms(), self.ctx)
        assert len(self.loan_manager.get_customer_loans("CUST001")) == 2


class TestLifecycle(LoanManagerTestCase):
    """Test approval, rejection and disbursement rules"""

    def test_approve_then_disburse(self):
        loan = self.loan_manager.originate_loan("CUST001", make_terms(), self.ctx)
        approved = self.loan_manager.approve_loan(loan.id, self.ctx, comments="Good history")
        assert approved.status == LoanStatus.APPROVED
        assert approved.approved_date == date.today()

        disbursed = self.loan_manager.disburse_loan(loan.id, self.ctx, PaymentMethod.MOBILE_MONEY, "QWE123")
        assert disbursed.status == LoanStatus.DISBURSED
        assert disbursed.disbursed_date == date.today()

        event_types = [e.event_type for e in self.audit_trail.get_events_for_entity("loan", loan.id)]
        assert event_types == [
            AuditEventType.LOAN_CREATED, AuditEventType.LOAN_APPROVED, AuditEventType.LOAN_DISBURSED
        ]

    def test_reject_pending(self):
        loan = self.loan_manager.originate_loan("CUST001", make_terms(), self.ctx)
        assert self.loan_manager.reject_loan(loan.id, self.ctx, "Insufficient income").status == LoanStatus.REJECTED

    def test_disburse_requires_approval(self):
        loan = self.loan_manager.originate_loan("CUST001", make_terms(), self.ctx)
        with pytest.raises(ValueError, match="approved"):
            self.loan_manager.disburse_loan(loan.id, self.ctx)

    def test_approve_only_once(self):
        loan = self.loan_manager.originate_loan("CUST001", make_terms(), self.ctx)
        self.loan_manager.approve_loan(loan.id, self.ctx)
        with pytest.raises(ValueError):
            self.loan_manager.approve_loan(loan.id, self.ctx)

    def test_rejected_loan_cannot_be_approved(self):
        loan = self.loan_manager.originate_loan("CUST001", make_terms(), self.ctx)
        self.loan_manager.reject_loan(loan.id, self.ctx)
        with pytest.raises(ValueError):
            self.loan_manager.approve_loan(loan.id, self.ctx)

    def test_missing_loan(self):
        assert self.loan_manager.get_loan("nope") is None
        with pytest.raises(RecordNotFoundError):
            self.loan_manager.approve_loan("nope", self.ctx)
        assert issubclass(RecordNotFoundError, ValueError)


class TestPayments(LoanManagerTestCase):
    """Test payment recording"""

    def test_first_payment(self):
        loan = self.create_active_loan()
        payment = self.loan_manager.record_payment(
            loan.id, Decimal('7000'), self.ctx,
            method=PaymentMethod.MOBILE_MONEY, payment_date=date(2024, 2, 10),
            transaction_reference="SBK2X9"
        )
        updated = self.loan_manager.get_loan(loan.id)

        assert payment.payment_number == "PAY240200001"
        assert payment.receipt_number == "RCP240200001"
        assert payment.status == PaymentStatus.CLEARED
        assert payment.recorded_by == "officer-1"
        # Outstanding interest over the whole term comes before principal
        assert payment.allocation.interest == Decimal('7000')
        assert payment.allocation.principal == Decimal('0')
        assert updated.status == LoanStatus.ACTIVE
        assert updated.balances.interest_balance == loan.balances.interest_balance - Decimal('7000')
        assert updated.schedule[0].interest_paid == Decimal('1500.00')
        assert updated.schedule[0].principal_paid == Decimal('5500.00')
        assert updated.schedule[0].status == InstallmentStatus.PARTIAL

    def test_fees_paid_before_interest(self):
        loan = self.create_active_loan(fees=LoanFees(processing_fee=Decimal('1000')))
        payment = self.loan_manager.record_payment(loan.id, Decimal('1200'), self.ctx)
        assert payment.allocation.fees == Decimal('1000')
        assert payment.allocation.interest == Decimal('200')

    def test_payment_numbers_sequential(self):
        loan = self.create_active_loan()
        first = self.loan_manager.record_payment(loan.id, Decimal('100'), self.ctx, payment_date=date(2024, 2, 1))
        second = self.loan_manager.record_payment(loan.id, Decimal('100'), self.ctx, payment_date=date(2024, 2, 2))
        assert first.payment_number == "PAY240200001"
        assert second.payment_number == "PAY240200002"

    def test_payoff_closes_loan(self):
        loan = self.create_active_loan()
        payment = self.loan_manager.record_payment(
            loan.id, loan.balances.total_balance, self.ctx, payment_date=date(2024, 6, 1)
        )
        closed = self.loan_manager.get_loan(loan.id)

        assert closed.status == LoanStatus.CLOSED
        assert closed.closed_date == date(2024, 6, 1)
        assert closed.balances.total_balance == Decimal('0')
        assert all(i.status == InstallmentStatus.PAID for i in closed.schedule)
        assert payment.allocation.unallocated == Decimal('0')

        event_types = [e.event_type for e in self.audit_trail.get_events_for_entity("loan", loan.id)]
        assert AuditEventType.LOAN_CLOSED in event_types

    def test_overpayment_reported_not_credited(self):
        loan = self.create_active_loan()
        payment = self.loan_manager.record_payment(loan.id, loan.balances.total_balance + Decimal('500'), self.ctx)
        closed = self.loan_manager.get_loan(loan.id)

        assert payment.allocation.unallocated == Decimal('500')
        assert payment.schedule_amount == schedule_totals(loan.schedule)['total']
        assert closed.balances.total_balance == Decimal('0')

        recorded = self.audit_trail.get_events_for_entity("payment", payment.id)[0]
        assert recorded.metadata["settled"] == loan.outstanding.to_string()
        assert recorded.metadata["amount"] == Money(loan.balances.total_balance + Decimal('500'), loan.currency).to_string()

    def test_closed_loan_rejects_payment(self):
        loan = self.create_active_loan()
        self.loan_manager.record_payment(loan.id, loan.balances.total_balance, self.ctx)
        with pytest.raises(ValueError, match="closed"):
            self.loan_manager.record_payment(loan.id, Decimal('10'), self.ctx)

    @pytest.mark.parametrize("stage", ["pending", "approved", "rejected"])
    def test_undisbursed_loan_rejects_payment(self, stage):
        loan = self.loan_manager.originate_loan("CUST001", make_terms(), self.ctx)
        if stage == "approved":
            self.loan_manager.approve_loan(loan.id, self.ctx)
        elif stage == "rejected":
            self.loan_manager.reject_loan(loan.id, self.ctx)
        with pytest.raises(ValueError):
            self.loan_manager.record_payment(loan.id, Decimal('100'), self.ctx)

    @pytest.mark.parametrize("amount", [Decimal('0'), Decimal('-50')])
    def test_non_positive_amount_rejected(self, amount):
        loan = self.create_active_loan()
        with pytest.raises(InvalidPaymentError):
            self.loan_manager.record_payment(loan.id, amount, self.ctx)
        assert self.loan_manager.get_loan_payments(loan.id) == []

    def test_payment_history(self):
        loan = self.create_active_loan()
        self.loan_manager.record_payment(loan.id, Decimal('300'), self.ctx, payment_date=date(2024, 3, 1))
        self.loan_manager.record_payment(loan.id, Decimal('200'), self.ctx, payment_date=date(2024, 2, 1))

        history = self.loan_manager.get_loan_payments(loan.id)
        assert [p.amount for p in history] == [Decimal('200'), Decimal('300')]

    def test_loan_locks_bounded(self):
        """Touching many loans does not grow the lock pool"""
        for n in range(LOCK_STRIPES * 4):
            with self.loan_manager._loan_lock(f"loan-{n}"):
                pass
        assert len(self.loan_manager._locks) == LOCK_STRIPES

    def test_concurrent_payments_serialised(self):
        loan = self.create_active_loan()
        errors = []

        def pay():
            try:
                self.loan_manager.record_payment(loan.id, Decimal('100'), self.ctx)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=pay) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        updated = self.loan_manager.get_loan(loan.id)
        payments = self.loan_manager.get_loan_payments(loan.id)
        assert errors == []
        assert len({p.payment_number for p in payments}) == 10
        assert updated.balances.total_balance == loan.balances.total_balance - Decimal('1000')
        assert sum(i.total_paid for i in updated.schedule) == Decimal('1000')


class TestReversal(LoanManagerTestCase):
    """Test payment reversal"""

    def test_reverse_restores_balances_and_schedule(self):
        loan = self.create_active_loan()
        payment = self.loan_manager.record_payment(loan.id, Decimal('12000'), self.ctx)
        reversed_payment = self.loan_manager.reverse_payment(payment.id, self.ctx, "Bounced cheque")
        restored = self.loan_manager.get_loan(loan.id)

        assert reversed_payment.status == PaymentStatus.REVERSED
        assert reversed_payment.reversed_by == "officer-1"
        assert reversed_payment.reversal_reason == "Bounced cheque"
        assert restored.balances == loan.balances
        assert all(i.total_paid == Decimal('0') for i in restored.schedule)
        assert all(i.status == InstallmentStatus.PENDING for i in restored.schedule)

    def test_reverse_twice_rejected(self):
        loan = self.create_active_loan()
        payment = self.loan_manager.record_payment(loan.id, Decimal('500'), self.ctx)
        self.loan_manager.reverse_payment(payment.id, self.ctx)
        with pytest.raises(ValueError, match="already reversed"):
            self.loan_manager.reverse_payment(payment.id, self.ctx)

    def test_reversing_payoff_reopens_loan(self):
        loan = self.create_active_loan()
        payment = self.loan_manager.record_payment(loan.id, loan.balances.total_balance, self.ctx)
        self.loan_manager.reverse_payment(payment.id, self.ctx)
        reopened = self.loan_manager.get_loan(loan.id)

        assert reopened.status == LoanStatus.ACTIVE
        assert reopened.closed_date is None
        assert reopened.balances.total_balance == loan.balances.total_balance
        event_types = [e.event_type for e in self.audit_trail.get_events_for_entity("loan", loan.id)]
        assert AuditEventType.LOAN_REOPENED in event_types

    def test_reverse_overpayment_unwinds_only_applied_amount(self):
        loan = self.create_active_loan()
        first = self.loan_manager.record_payment(loan.id, Decimal('1000'), self.ctx)
        payoff = self.loan_manager.record_payment(
            loan.id, loan.balances.total_balance + Decimal('250'), self.ctx
        )
        self.loan_manager.reverse_payment(payoff.id, self.ctx)
        restored = self.loan_manager.get_loan(loan.id)

        assert sum(i.total_paid for i in restored.schedule) == first.amount
        assert restored.balances.total_balance == loan.balances.total_balance - first.amount

    def test_missing_payment(self):
        with pytest.raises(RecordNotFoundError):
            self.loan_manager.reverse_payment("nope", self.ctx)


class TestListing(LoanManagerTestCase):
    """Test back-office loan and payment listings"""

    def test_list_loans_by_status(self):
        active = self.create_active_loan("CUST001")
        self.loan_manager.record_payment(active.id, Decimal('500'), self.ctx)
        self.loan_manager.originate_loan("CUST002", make_terms(), self.ctx)
        rejected = self.loan_manager.originate_loan("CUST003", make_terms(), self.ctx)
        self.loan_manager.reject_loan(rejected.id, self.ctx)

        loans, total = self.loan_manager.list_loans(status=LoanStatus.ACTIVE)
        assert total == 1
        assert loans[0].id == active.id

        loans, total = self.loan_manager.list_loans(status=LoanStatus.REJECTED, customer_id="CUST003")
        assert [loan.id for loan in loans] == [rejected.id]
        assert self.loan_manager.list_loans(status=LoanStatus.DEFAULTED) == ([], 0)

    def test_search_by_loan_number(self):
        first = self.loan_manager.originate_loan("CUST001", make_terms(), self.ctx)
        self.loan_manager.originate_loan("CUST002", make_terms(), self.ctx)

        loans, total = self.loan_manager.list_loans(search=first.loan_number.lower())
        assert total == 1
        assert loans[0].loan_number == first.loan_number

    def test_pagination_reports_total(self):
        for n in range(5):
            self.loan_manager.originate_loan(f"CUST{n}", make_terms(), self.ctx)

        page, total = self.loan_manager.list_loans(offset=3, limit=2)
        everything, _ = self.loan_manager.list_loans(limit=10)
        assert total == 5
        assert [loan.id for loan in page] == [loan.id for loan in everything[3:5]]
        assert self.loan_manager.list_loans(offset=10)[0] == []

    def test_list_payments_by_date_range(self):
        loan = self.create_active_loan()
        for day in (date(2024, 2, 10), date(2024, 3, 10), date(2024, 4, 10)):
            self.loan_manager.record_payment(loan.id, Decimal('1000'), self.ctx, payment_date=day)

        payments, total = self.loan_manager.list_payments(start_date=date(2024, 3, 10), end_date=date(2024, 4, 10))
        assert total == 2
        assert [p.payment_date for p in payments] == [date(2024, 4, 10), date(2024, 3, 10)]

        payments, _ = self.loan_manager.list_payments(start_date=date(2024, 3, 10), end_date=date(2024, 3, 10))
        assert [p.payment_date for p in payments] == [date(2024, 3, 10)]

    def test_list_payments_by_status_and_customer(self):
        first = self.create_active_loan("CUST001")
        second = self.create_active_loan("CUST002")
        reversed_payment = self.loan_manager.record_payment(first.id, Decimal('300'), self.ctx)
        self.loan_manager.record_payment(first.id, Decimal('200'), self.ctx)
        self.loan_manager.record_payment(second.id, Decimal('400'), self.ctx)
        self.loan_manager.reverse_payment(reversed_payment.id, self.ctx, reason="Bounced cheque")

        payments, total = self.loan_manager.list_payments(status=PaymentStatus.REVERSED)
        assert total == 1
        assert payments[0].id == reversed_payment.id

        payments, total = self.loan_manager.list_payments(customer_id="CUST001", status=PaymentStatus.CLEARED)
        assert [p.amount for p in payments] == [Decimal('200')]
        assert self.loan_manager.list_payments(loan_id=second.id)[1] == 1

    def test_inverted_date_range_rejected(self):
        with pytest.raises(ValueError):
            self.loan_manager.list_payments(start_date=date(2024, 5, 1), end_date=date(2024, 4, 1))


class TestDelinquency(LoanManagerTestCase):
    """Test arrears updates and penalties"""

    def setup_method(self):
        super().setup_method()
        self.rules = PenaltyRules(rate=Decimal('5'), type=PenaltyType.PERCENTAGE_OF_OVERDUE)

    def test_classifies_from_schedule(self):
        loan = self.create_active_loan()
        # First installment due 2024-02-15, second 2024-03-15
        state = self.loan_manager.update_delinquency(loan.id, self.ctx, as_of=date(2024, 3, 20))
        updated = self.loan_manager.get_loan(loan.id)

        assert state.days_past_due == 34
        assert state.status == DelinquencyStatus.LATE_ARREARS
        assert state.missed_payments == 2
        assert updated.delinquency == state
        assert updated.schedule[0].status == InstallmentStatus.OVERDUE
        assert updated.schedule[1].days_past_due == 5
        assert updated.schedule[2].status == InstallmentStatus.PENDING

    def test_current_loan(self):
        loan = self.create_active_loan()
        state = self.loan_manager.update_delinquency(loan.id, self.ctx, as_of=date(2024, 2, 15))
        assert state.status == DelinquencyStatus.CURRENT

    def test_penalty_charged_to_penalty_bucket(self):
        loan = self.create_active_loan(penalty_rules=self.rules)
        as_of = date(2024, 3, 20)
        expected = calculate_penalty(overdue_amount(loan.schedule, as_of), 34, self.rules)

        self.loan_manager.update_delinquency(loan.id, self.ctx, as_of=as_of)
        updated = self.loan_manager.get_loan(loan.id)

        assert expected > Decimal('0')
        assert updated.balances.penalty_balance == expected
        assert updated.last_penalty_date == as_of
        assert [i.total_due for i in updated.schedule] == [i.total_due for i in loan.schedule]

    def test_penalty_at_most_once_per_month(self):
        loan = self.create_active_loan(penalty_rules=self.rules)
        self.loan_manager.update_delinquency(loan.id, self.ctx, as_of=date(2024, 3, 20))
        first = self.loan_manager.get_loan(loan.id).balances.penalty_balance

        self.loan_manager.update_delinquency(loan.id, self.ctx, as_of=date(2024, 3, 28))
        assert self.loan_manager.get_loan(loan.id).balances.penalty_balance == first

        self.loan_manager.update_delinquency(loan.id, self.ctx, as_of=date(2024, 4, 2))
        assert self.loan_manager.get_loan(loan.id).balances.penalty_balance > first

    def test_penalty_paid_first(self):
        loan = self.create_active_loan(penalty_rules=self.rules)
        self.loan_manager.update_delinquency(loan.id, self.ctx, as_of=date(2024, 3, 20))
        penalty = self.loan_manager.get_loan(loan.id).balances.penalty_balance

        payment = self.loan_manager.record_payment(loan.id, penalty + Decimal('10'), self.ctx)
        assert payment.allocation.penalty == penalty
        assert payment.allocation.interest == Decimal('10')

    def test_state_overwritten_after_catch_up(self):
        loan = self.create_active_loan()
        self.loan_manager.update_delinquency(loan.id, self.ctx, as_of=date(2024, 3, 20))
        arrears = loan.schedule[0].total_due + loan.schedule[1].total_due
        self.loan_manager.record_payment(loan.id, arrears, self.ctx, payment_date=date(2024, 3, 21))

        state = self.loan_manager.update_delinquency(loan.id, self.ctx, as_of=date(2024, 3, 22))
        assert state.status == DelinquencyStatus.CURRENT
        assert state.missed_payments == 0

    def test_pending_loan_rejected(self):
        loan = self.loan_manager.originate_loan("CUST001", make_terms(), self.ctx)
        with pytest.raises(ValueError):
            self.loan_manager.update_delinquency(loan.id, self.ctx, as_of=date(2024, 3, 20))


class TestDelinquencyRun(LoanManagerTestCase):
    """Test the batch delinquency run"""

    def test_processes_loans_in_repayment(self):
        rules = PenaltyRules(rate=Decimal('2'))
        self.create_active_loan("CUST001", penalty_rules=rules)
        self.create_active_loan("CUST002", terms=make_terms(start_date=date(2024, 3, 1)))
        self.loan_manager.originate_loan("CUST003", make_terms(), self.ctx)

        results = self.loan_manager.process_delinquencies(self.ctx, as_of=date(2024, 3, 20))

        assert results == {"loans_processed": 2, "loans_in_arrears": 1, "penalties_charged": 1, "failed": 0}

    def test_failure_does_not_stop_run(self):
        self.create_active_loan("CUST001")
        self.storage.save("loans", "broken", {"id": "broken", "status": "active"})

        results = self.loan_manager.process_delinquencies(self.ctx, as_of=date(2024, 3, 20))

        assert results["loans_processed"] == 1
        assert results["failed"] == 1
        failures = self.audit_trail.get_events_for_entity("loan", "broken")
        assert failures[0].event_type == AuditEventType.DELINQUENCY_RUN_FAILED

    def test_failing_run_alongside_concurrent_requests(self, monkeypatch):
        """A failure audited by the run must not block loan requests on other threads"""
        self.storage.save("loans", "broken", {"id": "broken", "status": "active"})
        last_hash = AuditTrail._last_hash

        def slow_last_hash(trail):
            if threading.current_thread().name == "batch":
                time.sleep(0.3)
            return last_hash(trail)

        monkeypatch.setattr(AuditTrail, "_last_hash", slow_last_hash)
        errors = []

        def run_batch():
            self.loan_manager.process_delinquencies(self.ctx, as_of=date(2024, 3, 20))

        def handle_requests():
            try:
                for n in range(3):
                    loan = self.loan_manager.originate_loan(f"CUST{n}", make_terms(), self.ctx)
                    self.loan_manager.approve_loan(loan.id, self.ctx)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=run_batch, name="batch", daemon=True),
            threading.Thread(target=handle_requests, name="req", daemon=True),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert not any(thread.is_alive() for thread in threads)
        assert errors == []
        assert self.audit_trail.verify_integrity()["valid"]


class TestAuditAndPersistence(LoanManagerTestCase):
    """Test audit chain and storage backends"""

    def test_audit_chain_intact_after_full_lifecycle(self):
        loan = self.create_active_loan()
        payment = self.loan_manager.record_payment(loan.id, Decimal('5000'), self.ctx)
        self.loan_manager.reverse_payment(payment.id, self.ctx)
        self.loan_manager.update_delinquency(loan.id, self.ctx, as_of=date(2024, 5, 1))

        assert self.audit_trail.verify_integrity()["valid"]

    def test_audit_can_be_disabled(self):
        manager = LoanManager(self.storage, self.audit_trail, LendingConfig(enable_audit_logging=False))
        manager.originate_loan("CUST001", make_terms(), self.ctx)
        assert self.audit_trail.get_all_events() == []

    def test_sqlite_round_trip(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "lending.db")
        manager = LoanManager(storage, AuditTrail(storage), LendingConfig())
        loan = manager.originate_loan("CUST001", make_terms(), self.ctx)
        manager.approve_loan(loan.id, self.ctx)
        manager.disburse_loan(loan.id, self.ctx)
        manager.record_payment(loan.id, Decimal('15000'), self.ctx)
        storage.close()

        reopened = SQLiteStorage(tmp_path / "lending.db")
        stored = LoanManager(reopened, AuditTrail(reopened), LendingConfig()).get_loan(loan.id)
        assert stored.status == LoanStatus.ACTIVE
        assert stored.balances.total_balance == loan.balances.total_balance - Decimal('15000')
        assert stored.schedule[0].status == InstallmentStatus.PAID
        reopened.close()
