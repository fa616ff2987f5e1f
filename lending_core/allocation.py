"""
Payment Allocation Module

Splits an incoming payment across a loan's outstanding buckets in strict
waterfall order (penalty -> fees -> interest -> principal), then applies the
split to the loan balances and installment ledger as a separate step.

The split itself is a pure function over a balance snapshot; callers persist
the result and must serialise concurrent payments against the same loan.
"""

from decimal import Decimal
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional
from enum import Enum

from .currency import ZERO, to_decimal
from .schedule import Installment, InstallmentStatus


class InvalidPaymentError(ValueError):
    """Payment amount cannot be allocated"""


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"            # Created, awaiting approval
    APPROVED = "approved"          # Approved, awaiting disbursement
    REJECTED = "rejected"          # Declined at approval
    DISBURSED = "disbursed"        # Funds released, no repayment yet
    ACTIVE = "active"              # In repayment
    CLOSED = "closed"              # Fully repaid
    DEFAULTED = "defaulted"
    WRITTEN_OFF = "written_off"


@dataclass(frozen=True)
class LoanBalances:
    """Outstanding amounts of a loan, by bucket"""
    principal_balance: Decimal = ZERO
    interest_balance: Decimal = ZERO
    fees_balance: Decimal = ZERO
    penalty_balance: Decimal = ZERO

    def __post_init__(self):
        for name in ('principal_balance', 'interest_balance', 'fees_balance', 'penalty_balance'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))

    @property
    def total_balance(self) -> Decimal:
        return self.principal_balance + self.interest_balance + self.fees_balance + self.penalty_balance

    @classmethod
    def from_schedule(cls, schedule: List[Installment], fees: Decimal = ZERO) -> 'LoanBalances':
        """Opening balances of a new loan from its schedule totals"""
        return cls(
            principal_balance=sum((i.principal_due for i in schedule), ZERO),
            interest_balance=sum((i.interest_due for i in schedule), ZERO),
            fees_balance=fees,
            penalty_balance=ZERO
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            'principal_balance': str(self.principal_balance),
            'interest_balance': str(self.interest_balance),
            'fees_balance': str(self.fees_balance),
            'penalty_balance': str(self.penalty_balance),
            'total_balance': str(self.total_balance),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanBalances':
        return cls(
            principal_balance=Decimal(data['principal_balance']),
            interest_balance=Decimal(data['interest_balance']),
            fees_balance=Decimal(data['fees_balance']),
            penalty_balance=Decimal(data['penalty_balance'])
        )


@dataclass(frozen=True)
class PaymentAllocation:
    """How one payment was split across the loan buckets"""
    penalty: Decimal = ZERO
    fees: Decimal = ZERO
    interest: Decimal = ZERO
    principal: Decimal = ZERO
    unallocated: Decimal = ZERO    # Overpayment; reported, never credited

    @property
    def total_allocated(self) -> Decimal:
        return self.penalty + self.fees + self.interest + self.principal

    def to_dict(self) -> Dict[str, str]:
        return {
            'penalty': str(self.penalty),
            'fees': str(self.fees),
            'interest': str(self.interest),
            'principal': str(self.principal),
            'unallocated': str(self.unallocated),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentAllocation':
        return cls(
            penalty=Decimal(data['penalty']),
            fees=Decimal(data['fees']),
            interest=Decimal(data['interest']),
            principal=Decimal(data['principal']),
            unallocated=Decimal(data.get('unallocated', '0'))
        )


def payment_decimal(value) -> Decimal:
    """Parse a payment amount, reporting bad input as InvalidPaymentError"""
    try:
        return to_decimal(value)
    except ValueError as e:
        raise InvalidPaymentError(str(e))


def allocate(payment_amount: Decimal, balances: LoanBalances) -> PaymentAllocation:
    """
    Split a payment across penalty, fees, interest and principal in that order

    Each bucket is filled completely before the next receives anything. Any
    amount left after principal is reported as unallocated.

    Args:
        payment_amount: Amount received, >= 0
        balances: Snapshot of the loan balances; not modified

    Returns:
        PaymentAllocation

    Raises:
        InvalidPaymentError: If payment_amount is negative or not a finite number
    """
    remaining = payment_decimal(payment_amount)
    if remaining < ZERO:
        raise InvalidPaymentError(f"Payment amount cannot be negative, got {remaining}")

    penalty = min(remaining, max(ZERO, balances.penalty_balance))
    remaining -= penalty

    fees = min(remaining, max(ZERO, balances.fees_balance))
    remaining -= fees

    interest = min(remaining, max(ZERO, balances.interest_balance))
    remaining -= interest

    principal = min(remaining, max(ZERO, balances.principal_balance))
    remaining -= principal

    return PaymentAllocation(
        penalty=penalty,
        fees=fees,
        interest=interest,
        principal=principal,
        unallocated=remaining
    )


def apply_allocation(balances: LoanBalances, allocation: PaymentAllocation) -> LoanBalances:
    """Balances after an allocation, each bucket floored at zero"""
    return LoanBalances(
        principal_balance=max(ZERO, balances.principal_balance - allocation.principal),
        interest_balance=max(ZERO, balances.interest_balance - allocation.interest),
        fees_balance=max(ZERO, balances.fees_balance - allocation.fees),
        penalty_balance=max(ZERO, balances.penalty_balance - allocation.penalty)
    )


def reverse_allocation(balances: LoanBalances, allocation: PaymentAllocation) -> LoanBalances:
    """Balances with a previously applied allocation put back"""
    return replace(
        balances,
        principal_balance=balances.principal_balance + allocation.principal,
        interest_balance=balances.interest_balance + allocation.interest,
        fees_balance=balances.fees_balance + allocation.fees,
        penalty_balance=balances.penalty_balance + allocation.penalty
    )


def _refresh_paid_status(installment: Installment) -> None:
    if installment.total_paid >= installment.total_due:
        installment.status = InstallmentStatus.PAID
        installment.days_past_due = 0
    elif installment.total_paid > ZERO:
        installment.status = InstallmentStatus.PARTIAL


def apply_to_schedule(schedule: List[Installment], payment_amount: Decimal) -> List[int]:
    """
    Walk the schedule in order, paying down each unpaid installment

    Within an installment, outstanding interest is cleared before principal.
    Installments are mutated in place.

    Returns:
        Numbers of the installments that received part of the payment
    """
    remaining = to_decimal(payment_amount)
    touched = []

    for installment in schedule:
        if remaining <= ZERO:
            break
        if installment.is_paid:
            continue

        to_installment = min(remaining, installment.outstanding)
        if to_installment <= ZERO:
            continue

        interest_part = min(to_installment, max(ZERO, installment.interest_outstanding))
        principal_part = to_installment - interest_part

        installment.interest_paid += interest_part
        installment.principal_paid += principal_part
        installment.total_paid += to_installment
        remaining -= to_installment

        _refresh_paid_status(installment)
        touched.append(installment.installment_number)

    return touched


def reverse_on_schedule(schedule: List[Installment], payment_amount: Decimal) -> List[int]:
    """
    Unwind a payment from the most recently paid installments backwards

    Principal is taken back before interest, the mirror image of apply_to_schedule.
    """
    remaining = to_decimal(payment_amount)
    touched = []

    for installment in reversed(schedule):
        if remaining <= ZERO:
            break
        if installment.total_paid <= ZERO:
            continue

        from_installment = min(remaining, installment.total_paid)
        principal_part = min(from_installment, installment.principal_paid)
        interest_part = from_installment - principal_part

        installment.principal_paid -= principal_part
        installment.interest_paid -= interest_part
        installment.total_paid -= from_installment
        remaining -= from_installment

        if installment.total_paid <= ZERO:
            installment.status = InstallmentStatus.PENDING
        elif installment.total_paid < installment.total_due:
            installment.status = InstallmentStatus.PARTIAL
        touched.append(installment.installment_number)

    return touched


def next_loan_status(current: LoanStatus, balances: LoanBalances,
                     allocation: Optional[PaymentAllocation] = None) -> LoanStatus:
    """
    Loan status after a payment has been applied

    A loan with nothing left outstanding closes; a disbursed loan becomes
    active on its first allocation; anything else keeps its status.
    """
    if balances.total_balance <= ZERO:
        return LoanStatus.CLOSED
    if current == LoanStatus.DISBURSED and (allocation is None or allocation.total_allocated > ZERO):
        return LoanStatus.ACTIVE
    return current
