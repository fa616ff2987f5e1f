"""
Loan Module

Loan servicing on top of the pure schedule, allocation and delinquency
functions: origination, approval, disbursement, payment recording and
reversal, and delinquency updates with penalty charging.

Every mutating operation takes an explicit RequestContext identifying who
acts, and runs under a per-loan lock inside a storage transaction.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
from contextlib import contextmanager
import threading
import uuid

from .currency import Currency, Money, ZERO, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .logging_config import get_logger, log_action
from .schedule import LoanTerms, Installment, generate_schedule, schedule_totals
from .allocation import (
    LoanStatus, LoanBalances, PaymentAllocation, InvalidPaymentError,
    allocate, apply_allocation, apply_to_schedule, reverse_allocation,
    reverse_on_schedule, next_loan_status, payment_decimal
)
from .delinquency import (
    DelinquencyState, PenaltyRules, PenaltyType, classify, days_past_due,
    overdue_installments, refresh_installment_statuses, calculate_penalty
)


# Loans that can take repayments
SERVICING_STATUSES = (LoanStatus.DISBURSED, LoanStatus.ACTIVE, LoanStatus.DEFAULTED)

# Per-loan locks are striped over a fixed pool
LOCK_STRIPES = 64


class RecordNotFoundError(ValueError):
    """Loan or payment does not exist"""


class PaymentMethod(Enum):
    """How money moved"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    CHEQUE = "cheque"


class PaymentStatus(Enum):
    CLEARED = "cleared"
    REVERSED = "reversed"


@dataclass(frozen=True)
class RequestContext:
    """Who is acting, supplied by the caller for every mutating operation"""
    user_id: str = "system"
    branch: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass(frozen=True)
class LoanFees:
    """One-off fees charged at origination"""
    processing_fee: Decimal = ZERO
    insurance_fee: Decimal = ZERO
    legal_fee: Decimal = ZERO
    other_fees: Decimal = ZERO

    def __post_init__(self):
        for name in ('processing_fee', 'insurance_fee', 'legal_fee', 'other_fees'):
            value = to_decimal(getattr(self, name))
            if value < ZERO:
                raise ValueError(f"{name} cannot be negative, got {value}")
            object.__setattr__(self, name, value)

    @property
    def total(self) -> Decimal:
        return self.processing_fee + self.insurance_fee + self.legal_fee + self.other_fees

    def to_dict(self) -> Dict[str, str]:
        return {
            'processing_fee': str(self.processing_fee),
            'insurance_fee': str(self.insurance_fee),
            'legal_fee': str(self.legal_fee),
            'other_fees': str(self.other_fees),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanFees':
        return cls(**{key: Decimal(value) for key, value in data.items()})


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


@dataclass
class Loan(StorageRecord):
    """Loan aggregate: terms, schedule, balances and arrears position"""
    loan_number: str
    customer_id: str
    terms: LoanTerms
    currency: Currency
    schedule: List[Installment]
    balances: LoanBalances
    fees: LoanFees = field(default_factory=LoanFees)
    penalty_rules: PenaltyRules = field(default_factory=PenaltyRules)
    product_name: str = "Personal Loan"
    status: LoanStatus = LoanStatus.PENDING
    delinquency: DelinquencyState = field(default_factory=DelinquencyState)
    total_interest: Decimal = ZERO
    total_amount: Decimal = ZERO
    maturity_date: Optional[date] = None
    approved_date: Optional[date] = None
    disbursed_date: Optional[date] = None
    closed_date: Optional[date] = None
    last_penalty_date: Optional[date] = None
    created_by: Optional[str] = None
    branch: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.status == LoanStatus.CLOSED

    @property
    def outstanding(self) -> Money:
        return Money(self.balances.total_balance, self.currency)

    def to_dict(self) -> Dict[str, Any]:
        result = self._base_dict()
        result.update({
            'loan_number': self.loan_number,
            'customer_id': self.customer_id,
            'terms': self.terms.to_dict(),
            'currency': self.currency.code,
            'schedule': [installment.to_dict() for installment in self.schedule],
            'balances': self.balances.to_dict(),
            'fees': self.fees.to_dict(),
            'penalty_rules': self.penalty_rules.to_dict(),
            'product_name': self.product_name,
            'status': self.status.value,
            'delinquency': self.delinquency.to_dict(),
            'total_interest': str(self.total_interest),
            'total_amount': str(self.total_amount),
            'maturity_date': _iso(self.maturity_date),
            'approved_date': _iso(self.approved_date),
            'disbursed_date': _iso(self.disbursed_date),
            'closed_date': _iso(self.closed_date),
            'last_penalty_date': _iso(self.last_penalty_date),
            'created_by': self.created_by,
            'branch': self.branch,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            customer_id=data['customer_id'],
            terms=LoanTerms.from_dict(data['terms']),
            currency=Currency[data['currency']],
            schedule=[Installment.from_dict(item) for item in data['schedule']],
            balances=LoanBalances.from_dict(data['balances']),
            fees=LoanFees.from_dict(data['fees']),
            penalty_rules=PenaltyRules.from_dict(data['penalty_rules']),
            product_name=data['product_name'],
            status=LoanStatus(data['status']),
            delinquency=DelinquencyState.from_dict(data['delinquency']),
            total_interest=Decimal(data['total_interest']),
            total_amount=Decimal(data['total_amount']),
            maturity_date=_from_iso(data.get('maturity_date')),
            approved_date=_from_iso(data.get('approved_date')),
            disbursed_date=_from_iso(data.get('disbursed_date')),
            closed_date=_from_iso(data.get('closed_date')),
            last_penalty_date=_from_iso(data.get('last_penalty_date')),
            created_by=data.get('created_by'),
            branch=data.get('branch')
        )


@dataclass
class LoanPayment(StorageRecord):
    """Record of a repayment and how it was allocated"""
    payment_number: str
    receipt_number: str
    loan_id: str
    customer_id: str
    amount: Decimal
    allocation: PaymentAllocation
    payment_date: date
    method: PaymentMethod = PaymentMethod.CASH
    schedule_amount: Decimal = ZERO      # Portion walked onto installments
    transaction_reference: Optional[str] = None
    notes: Optional[str] = None
    status: PaymentStatus = PaymentStatus.CLEARED
    recorded_by: Optional[str] = None
    branch: Optional[str] = None
    reversed_by: Optional[str] = None
    reversed_date: Optional[date] = None
    reversal_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = self._base_dict()
        result.update({
            'payment_number': self.payment_number,
            'receipt_number': self.receipt_number,
            'loan_id': self.loan_id,
            'customer_id': self.customer_id,
            'amount': str(self.amount),
            'allocation': self.allocation.to_dict(),
            'payment_date': self.payment_date.isoformat(),
            'method': self.method.value,
            'schedule_amount': str(self.schedule_amount),
            'transaction_reference': self.transaction_reference,
            'notes': self.notes,
            'status': self.status.value,
            'recorded_by': self.recorded_by,
            'branch': self.branch,
            'reversed_by': self.reversed_by,
            'reversed_date': _iso(self.reversed_date),
            'reversal_reason': self.reversal_reason,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPayment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            payment_number=data['payment_number'],
            receipt_number=data['receipt_number'],
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            amount=Decimal(data['amount']),
            allocation=PaymentAllocation.from_dict(data['allocation']),
            payment_date=date.fromisoformat(data['payment_date']),
            method=PaymentMethod(data['method']),
            schedule_amount=Decimal(data['schedule_amount']),
            transaction_reference=data.get('transaction_reference'),
            notes=data.get('notes'),
            status=PaymentStatus(data['status']),
            recorded_by=data.get('recorded_by'),
            branch=data.get('branch'),
            reversed_by=data.get('reversed_by'),
            reversed_date=_from_iso(data.get('reversed_date')),
            reversal_reason=data.get('reversal_reason')
        )


def _total_paid(schedule: List[Installment]) -> Decimal:
    return sum((installment.total_paid for installment in schedule), ZERO)


class LoanManager:
    """
    Manages loan lifecycle from origination through closure
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.logger = get_logger("lending.loans")

        self.loans_table = "loans"
        self.payments_table = "loan_payments"

        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    @contextmanager
    def _loan_lock(self, loan_id: str):
        """Serialise mutations of a single loan; unrelated loans may share a stripe"""
        with self._locks[hash(loan_id) % LOCK_STRIPES]:
            yield

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               ctx: RequestContext, metadata: Dict[str, Any]) -> None:
        if not self.config.enable_audit_logging:
            return
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
            user_id=ctx.user_id,
            correlation_id=ctx.correlation_id
        )

    def _log(self, ctx: RequestContext, message: str, action: str, resource: str,
             extra: Optional[Dict[str, Any]] = None, level: str = "info") -> None:
        log_action(
            self.logger, level, message,
            user_id=ctx.user_id, action=action, resource=resource,
            correlation_id=ctx.correlation_id, extra=extra, branch=ctx.branch
        )

    def _next_number(self, prefix: str, table: str, number_field: str, on: date) -> str:
        """Sequential number per month, e.g. PAY250300012"""
        stamp = f"{prefix}{on:%y%m}"
        used = sum(
            1 for record in self.storage.load_all(table)
            if str(record.get(number_field, "")).startswith(stamp)
        )
        return f"{stamp}{used + 1:05d}"

    def originate_loan(
        self,
        customer_id: str,
        terms: LoanTerms,
        ctx: RequestContext,
        fees: Optional[LoanFees] = None,
        penalty_rules: Optional[PenaltyRules] = None,
        currency: Optional[Currency] = None,
        product_name: Optional[str] = None
    ) -> Loan:
        """
        Create a pending loan with its repayment schedule and opening balances

        Args:
            customer_id: Borrower
            terms: Validated loan terms
            ctx: Acting user
            fees: Origination fees, owed on top of principal and interest
            penalty_rules: Late-payment penalty configuration
            currency: Loan currency (defaults to configured currency)
            product_name: Loan product label

        Returns:
            Created Loan
        """
        if not customer_id:
            raise ValueError("Customer is required")

        fees = fees or LoanFees()
        currency = currency or Currency[self.config.default_currency]
        schedule = generate_schedule(terms)
        totals = schedule_totals(schedule)
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=self._next_number(
                    self.config.loan_number_prefix, self.loans_table, 'loan_number', now.date()
                ),
                customer_id=customer_id,
                terms=terms,
                currency=currency,
                schedule=schedule,
                balances=LoanBalances.from_schedule(schedule, fees.total),
                fees=fees,
                penalty_rules=penalty_rules or PenaltyRules(),
                product_name=product_name or self.config.default_product_name,
                total_interest=totals['interest'],
                total_amount=totals['total'],
                maturity_date=schedule[-1].due_date,
                created_by=ctx.user_id,
                branch=ctx.branch
            )
            self._save_loan(loan)

            self._audit(AuditEventType.LOAN_CREATED, "loan", loan.id, ctx, {
                "loan_number": loan.loan_number,
                "customer_id": customer_id,
                "principal": Money(terms.principal, currency).to_string(),
                "annual_rate_percent": terms.annual_rate_percent,
                "installments": len(schedule),
                "total_balance": loan.balances.total_balance
            })

        self._log(ctx, f"Loan created: {loan.loan_number}", "loan_created", f"loan:{loan.id}",
                  {"installments": len(schedule), "total_amount": str(loan.total_amount)})
        return loan

    def approve_loan(self, loan_id: str, ctx: RequestContext, comments: Optional[str] = None) -> Loan:
        """Approve a pending loan"""
        return self._transition(
            loan_id, ctx, LoanStatus.PENDING, LoanStatus.APPROVED,
            AuditEventType.LOAN_APPROVED, {"comments": comments},
            lambda loan: setattr(loan, 'approved_date', date.today())
        )

    def reject_loan(self, loan_id: str, ctx: RequestContext, reason: Optional[str] = None) -> Loan:
        """Reject a pending loan"""
        return self._transition(
            loan_id, ctx, LoanStatus.PENDING, LoanStatus.REJECTED,
            AuditEventType.LOAN_REJECTED, {"reason": reason}
        )

    def disburse_loan(
        self,
        loan_id: str,
        ctx: RequestContext,
        method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
        reference: Optional[str] = None
    ) -> Loan:
        """Release funds of an approved loan"""
        return self._transition(
            loan_id, ctx, LoanStatus.APPROVED, LoanStatus.DISBURSED,
            AuditEventType.LOAN_DISBURSED, {"method": method.value, "reference": reference},
            lambda loan: setattr(loan, 'disbursed_date', date.today())
        )

    def _transition(self, loan_id, ctx, required, target, event_type, metadata, mutate=None) -> Loan:
        with self._loan_lock(loan_id), self.storage.atomic():
            loan = self._require_loan(loan_id)
            if loan.status != required:
                raise ValueError(
                    f"Only {required.value} loans can become {target.value}; "
                    f"loan {loan.loan_number} is {loan.status.value}"
                )
            loan.status = target
            loan.updated_at = datetime.now(timezone.utc)
            if mutate:
                mutate(loan)
            self._save_loan(loan)
            self._audit(event_type, "loan", loan.id, ctx, {"loan_number": loan.loan_number, **metadata})

        self._log(ctx, f"Loan {loan.loan_number} is now {target.value}", event_type.value, f"loan:{loan.id}")
        return loan

    def record_payment(
        self,
        loan_id: str,
        amount: Decimal,
        ctx: RequestContext,
        method: PaymentMethod = PaymentMethod.CASH,
        payment_date: Optional[date] = None,
        transaction_reference: Optional[str] = None,
        notes: Optional[str] = None
    ) -> LoanPayment:
        """
        Record a repayment: allocate it, apply it to balances and schedule, persist both

        Args:
            loan_id: Loan being repaid
            amount: Amount received
            ctx: Acting user
            method: Payment channel
            payment_date: Value date (defaults to today)
            transaction_reference: External reference (M-Pesa code, cheque number)
            notes: Free text

        Returns:
            LoanPayment record
        """
        amount = payment_decimal(amount)
        if amount <= ZERO:
            raise InvalidPaymentError(f"Payment amount must be positive, got {amount}")
        payment_date = payment_date or date.today()
        now = datetime.now(timezone.utc)

        with self._loan_lock(loan_id), self.storage.atomic():
            loan = self._require_loan(loan_id)
            if loan.status not in SERVICING_STATUSES:
                raise ValueError(
                    f"Cannot record payment for {loan.status.value} loan {loan.loan_number}"
                )

            received = Money(amount, loan.currency)
            outstanding_before = loan.outstanding
            allocation = allocate(amount, loan.balances)
            loan.balances = apply_allocation(loan.balances, allocation)
            settled = outstanding_before - loan.outstanding

            paid_before = _total_paid(loan.schedule)
            apply_to_schedule(loan.schedule, amount)
            schedule_amount = _total_paid(loan.schedule) - paid_before

            previous_status = loan.status
            loan.status = next_loan_status(loan.status, loan.balances, allocation)
            if loan.is_closed:
                loan.closed_date = payment_date
            loan.updated_at = now

            payment = LoanPayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                payment_number=self._next_number(
                    self.config.payment_number_prefix, self.payments_table, 'payment_number', payment_date
                ),
                receipt_number=self._next_number(
                    self.config.receipt_number_prefix, self.payments_table, 'receipt_number', payment_date
                ),
                loan_id=loan.id,
                customer_id=loan.customer_id,
                amount=amount,
                allocation=allocation,
                payment_date=payment_date,
                method=method,
                schedule_amount=schedule_amount,
                transaction_reference=transaction_reference,
                notes=notes,
                recorded_by=ctx.user_id,
                branch=ctx.branch
            )

            self._save_payment(payment)
            self._save_loan(loan)

            self._audit(AuditEventType.PAYMENT_RECORDED, "payment", payment.id, ctx, {
                "payment_number": payment.payment_number,
                "loan_id": loan.id,
                "amount": received.to_string(),
                "settled": settled.to_string(),
                "allocation": allocation.to_dict(),
                "remaining_balance": loan.balances.total_balance
            })
            if loan.status == LoanStatus.CLOSED and previous_status != LoanStatus.CLOSED:
                self._audit(AuditEventType.LOAN_CLOSED, "loan", loan.id, ctx, {
                    "loan_number": loan.loan_number,
                    "closed_date": loan.closed_date
                })

        self._log(ctx, f"Payment recorded: {payment.payment_number} - {received.to_string()}",
                  "payment_recorded", f"loan:{loan.id}",
                  {"allocation": allocation.to_dict(), "outstanding": loan.outstanding.to_string()})
        overpaid = received - settled
        if overpaid.is_positive():
            self._log(ctx, f"Overpayment of {overpaid.to_string()} on {loan.loan_number} left unallocated",
                      "payment_overpaid", f"loan:{loan.id}", level="warning")
        return payment

    def reverse_payment(self, payment_id: str, ctx: RequestContext, reason: Optional[str] = None) -> LoanPayment:
        """
        Reverse a cleared payment, restoring loan balances and unwinding the schedule
        """
        payment = self.get_payment(payment_id)
        if not payment:
            raise RecordNotFoundError(f"Payment {payment_id} not found")

        with self._loan_lock(payment.loan_id), self.storage.atomic():
            # Re-read under the lock so two reversals cannot both pass the check
            payment = self.get_payment(payment_id)
            if payment.status == PaymentStatus.REVERSED:
                raise ValueError(f"Payment {payment.payment_number} already reversed")

            loan = self._require_loan(payment.loan_id)
            loan.balances = reverse_allocation(loan.balances, payment.allocation)
            reverse_on_schedule(loan.schedule, payment.schedule_amount)

            reopened = loan.is_closed and loan.balances.total_balance > ZERO
            if reopened:
                loan.status = LoanStatus.ACTIVE
                loan.closed_date = None
            loan.updated_at = datetime.now(timezone.utc)

            payment.status = PaymentStatus.REVERSED
            payment.reversed_by = ctx.user_id
            payment.reversed_date = date.today()
            payment.reversal_reason = reason
            payment.updated_at = loan.updated_at

            self._save_payment(payment)
            self._save_loan(loan)

            self._audit(AuditEventType.PAYMENT_REVERSED, "payment", payment.id, ctx, {
                "payment_number": payment.payment_number,
                "loan_id": loan.id,
                "reason": reason,
                "restored_balance": loan.balances.total_balance
            })
            if reopened:
                self._audit(AuditEventType.LOAN_REOPENED, "loan", loan.id, ctx, {
                    "loan_number": loan.loan_number
                })

        self._log(ctx, f"Payment reversed: {payment.payment_number}", "payment_reversed", f"loan:{loan.id}")
        return payment

    def update_delinquency(self, loan_id: str, ctx: RequestContext,
                           as_of: Optional[date] = None) -> DelinquencyState:
        """
        Recompute a loan's arrears position and charge any penalty due

        The stored delinquency state is overwritten, never merged.
        """
        as_of = as_of or date.today()
        with self._loan_lock(loan_id), self.storage.atomic():
            loan = self._require_loan(loan_id)
            state, _ = self._update_delinquency(loan, ctx, as_of)
        return state

    def _update_delinquency(self, loan: Loan, ctx: RequestContext, as_of: date) -> Tuple[DelinquencyState, Decimal]:
        if loan.status not in SERVICING_STATUSES:
            raise ValueError(f"Loan {loan.loan_number} is {loan.status.value}, not in repayment")

        refresh_installment_statuses(loan.schedule, as_of)
        previous = loan.delinquency
        state = classify(days_past_due(loan.schedule, as_of))
        loan.delinquency = state

        penalty = self._charge_penalty(loan, state, as_of)
        loan.updated_at = datetime.now(timezone.utc)
        self._save_loan(loan)

        if state != previous:
            self._audit(AuditEventType.DELINQUENCY_UPDATED, "loan", loan.id, ctx, {
                "loan_number": loan.loan_number,
                "previous": previous.to_dict(),
                "current": state.to_dict()
            })
        if penalty > ZERO:
            self._audit(AuditEventType.PENALTY_CHARGED, "loan", loan.id, ctx, {
                "loan_number": loan.loan_number,
                "penalty": penalty,
                "days_past_due": state.days_past_due
            })
            self._log(ctx, f"Penalty of {penalty} charged on {loan.loan_number}",
                      "penalty_charged", f"loan:{loan.id}")

        return state, penalty

    def _charge_penalty(self, loan: Loan, state: DelinquencyState, as_of: date) -> Decimal:
        """At most one penalty per calendar month, added to the penalty bucket"""
        if state.days_past_due == 0:
            return ZERO
        last = loan.last_penalty_date
        if last and (last.year, last.month) == (as_of.year, as_of.month):
            return ZERO

        overdue = overdue_installments(loan.schedule, as_of)
        if loan.penalty_rules.type == PenaltyType.PERCENTAGE_OF_PRINCIPAL:
            base = sum((i.principal_outstanding for i in overdue), ZERO)
        else:
            base = sum((i.outstanding for i in overdue), ZERO)

        penalty = calculate_penalty(base, state.days_past_due, loan.penalty_rules)
        if penalty > ZERO:
            loan.balances = replace(loan.balances, penalty_balance=loan.balances.penalty_balance + penalty)
            loan.last_penalty_date = as_of
        return penalty

    def process_delinquencies(self, ctx: RequestContext, as_of: Optional[date] = None) -> Dict[str, int]:
        """Refresh arrears on every loan in repayment; one failing loan does not stop the run"""
        as_of = as_of or date.today()
        results = {"loans_processed": 0, "loans_in_arrears": 0, "penalties_charged": 0, "failed": 0}

        loan_ids = [
            record['id'] for record in self.storage.load_all(self.loans_table)
            if record.get('status') in {status.value for status in SERVICING_STATUSES}
        ]

        for loan_id in loan_ids:
            try:
                with self._loan_lock(loan_id), self.storage.atomic():
                    loan = self._require_loan(loan_id)
                    state, penalty = self._update_delinquency(loan, ctx, as_of)
            except Exception as e:
                results["failed"] += 1
                self._log(ctx, f"Delinquency update failed for loan {loan_id}: {e}",
                          "delinquency_run_failed", f"loan:{loan_id}", level="error")
                with self.storage.atomic():
                    self._audit(AuditEventType.DELINQUENCY_RUN_FAILED, "loan", loan_id, ctx, {"error": str(e)})
                continue

            results["loans_processed"] += 1
            if state.days_past_due > 0:
                results["loans_in_arrears"] += 1
            if penalty > ZERO:
                results["penalties_charged"] += 1

        self._log(ctx, "Delinquency run complete", "delinquency_run", "loans", results)
        return results

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def get_loan_by_number(self, loan_number: str) -> Optional[Loan]:
        matches = self.storage.find(self.loans_table, {"loan_number": loan_number})
        return Loan.from_dict(matches[0]) if matches else None

    def get_customer_loans(self, customer_id: str) -> List[Loan]:
        """Get all loans for a customer"""
        return [Loan.from_dict(data) for data in self.storage.find(self.loans_table, {"customer_id": customer_id})]

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        customer_id: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[Loan], int]:
        """
        Filtered page of loans, newest first

        Args:
            status: Only loans in this status
            customer_id: Only loans of this customer
            search: Case-insensitive fragment of the loan number
            offset: Number of matching loans to skip
            limit: Maximum number of loans returned

        Returns:
            Tuple of (page of loans, total matching)
        """
        needle = search.lower() if search else None
        matches = []
        for data in self.storage.load_all(self.loans_table):
            if status and data.get('status') != status.value:
                continue
            if customer_id and data.get('customer_id') != customer_id:
                continue
            if needle and needle not in str(data.get('loan_number', '')).lower():
                continue
            matches.append(data)

        matches.sort(key=lambda data: data['created_at'], reverse=True)
        return [Loan.from_dict(data) for data in matches[offset:offset + limit]], len(matches)

    def list_payments(
        self,
        loan_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[LoanPayment], int]:
        """Filtered page of payments, latest payment date first; date bounds are inclusive"""
        if start_date and end_date and start_date > end_date:
            raise ValueError("start date cannot be after end date")

        matches = []
        for data in self.storage.load_all(self.payments_table):
            payment = LoanPayment.from_dict(data)
            if loan_id and payment.loan_id != loan_id:
                continue
            if customer_id and payment.customer_id != customer_id:
                continue
            if status and payment.status != status:
                continue
            if start_date and payment.payment_date < start_date:
                continue
            if end_date and payment.payment_date > end_date:
                continue
            matches.append(payment)

        matches.sort(key=lambda p: (p.payment_date, p.created_at), reverse=True)
        return matches[offset:offset + limit], len(matches)

    def get_payment(self, payment_id: str) -> Optional[LoanPayment]:
        data = self.storage.load(self.payments_table, payment_id)
        return LoanPayment.from_dict(data) if data else None

    def get_loan_payments(self, loan_id: str) -> List[LoanPayment]:
        """Payment history for a loan, oldest first"""
        payments = [
            LoanPayment.from_dict(data)
            for data in self.storage.find(self.payments_table, {"loan_id": loan_id})
        ]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise RecordNotFoundError(f"Loan {loan_id} not found")
        return loan

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _save_payment(self, payment: LoanPayment) -> None:
        self.storage.save(self.payments_table, payment.id, payment.to_dict())
