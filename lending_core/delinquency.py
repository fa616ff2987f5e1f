"""
Delinquency Module

Classifies loans into arrears buckets by days past due, derives days past due
from the installment schedule, and computes late-payment penalties.

Classification has no memory: it is recomputed from the current days past due
every time and callers overwrite whatever state they stored before.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Any, Dict, List
from enum import Enum
import math

from .currency import ZERO, round_money, to_decimal
from .schedule import Installment, InstallmentStatus


DAYS_PER_MISSED_PAYMENT = 30


class DelinquencyStatus(Enum):
    """Delinquency buckets, in increasing order of risk"""
    CURRENT = "current"                 # 0 days past due
    EARLY_ARREARS = "early_arrears"     # 1-30 days past due
    LATE_ARREARS = "late_arrears"       # 31-90 days past due
    DEFAULT = "default"                 # 90+ days past due


class PenaltyType(Enum):
    """How a late-payment penalty is computed"""
    PERCENTAGE_OF_OVERDUE = "percentage_of_overdue"      # rate% of overdue per 30 days
    FIXED_AMOUNT = "fixed_amount"                        # rate per started 30 days
    PERCENTAGE_OF_PRINCIPAL = "percentage_of_principal"  # rate% of overdue, once


@dataclass(frozen=True)
class DelinquencyState:
    """Arrears position of a loan at a point in time"""
    days_past_due: int = 0
    status: DelinquencyStatus = DelinquencyStatus.CURRENT
    missed_payments: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'days_past_due': self.days_past_due,
            'status': self.status.value,
            'missed_payments': self.missed_payments,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DelinquencyState':
        return cls(
            days_past_due=data['days_past_due'],
            status=DelinquencyStatus(data['status']),
            missed_payments=data['missed_payments']
        )


@dataclass(frozen=True)
class PenaltyRules:
    """Late-payment penalty configuration of a loan"""
    enabled: bool = True
    rate: Decimal = ZERO
    type: PenaltyType = PenaltyType.PERCENTAGE_OF_OVERDUE
    grace_days: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'rate', to_decimal(self.rate))
        if not isinstance(self.type, PenaltyType):
            object.__setattr__(self, 'type', PenaltyType(self.type))
        if self.rate < ZERO:
            raise ValueError(f"Penalty rate cannot be negative, got {self.rate}")
        if self.grace_days < 0:
            raise ValueError(f"Penalty grace days cannot be negative, got {self.grace_days}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'rate': str(self.rate),
            'type': self.type.value,
            'grace_days': self.grace_days,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PenaltyRules':
        return cls(
            enabled=data['enabled'],
            rate=Decimal(data['rate']),
            type=PenaltyType(data['type']),
            grace_days=data['grace_days']
        )


def classify(days_past_due: int) -> DelinquencyState:
    """
    Map days past due to a delinquency bucket

    0 is current; 1-30 early arrears (one missed payment); 31-90 late arrears
    and 91+ default, both with ceil(days / 30) missed payments.

    Raises:
        ValueError: If days_past_due is negative
    """
    if days_past_due < 0:
        raise ValueError(f"Days past due cannot be negative, got {days_past_due}")

    if days_past_due == 0:
        return DelinquencyState(0, DelinquencyStatus.CURRENT, 0)
    if days_past_due <= 30:
        return DelinquencyState(days_past_due, DelinquencyStatus.EARLY_ARREARS, 1)

    missed = math.ceil(days_past_due / DAYS_PER_MISSED_PAYMENT)
    if days_past_due <= 90:
        return DelinquencyState(days_past_due, DelinquencyStatus.LATE_ARREARS, missed)
    return DelinquencyState(days_past_due, DelinquencyStatus.DEFAULT, missed)


def overdue_installments(schedule: List[Installment], as_of: date) -> List[Installment]:
    """Unpaid installments whose due date has passed"""
    return [
        i for i in schedule
        if not i.is_paid and i.due_date < as_of and i.outstanding > ZERO
    ]


def days_past_due(schedule: List[Installment], as_of: date) -> int:
    """Days since the earliest unpaid installment fell due, 0 if none is overdue"""
    overdue = overdue_installments(schedule, as_of)
    if not overdue:
        return 0
    oldest = min(i.due_date for i in overdue)
    return (as_of - oldest).days


def overdue_amount(schedule: List[Installment], as_of: date) -> Decimal:
    """Total outstanding on installments that are past due"""
    return sum((i.outstanding for i in overdue_installments(schedule, as_of)), ZERO)


def refresh_installment_statuses(schedule: List[Installment], as_of: date) -> List[int]:
    """
    Mark unpaid past-due installments overdue and record their days past due

    Returns:
        Numbers of installments that are overdue as of the given date
    """
    overdue_numbers = []
    for installment in schedule:
        if installment.is_paid:
            installment.days_past_due = 0
            continue
        if installment.due_date < as_of:
            installment.status = InstallmentStatus.OVERDUE
            installment.days_past_due = (as_of - installment.due_date).days
            overdue_numbers.append(installment.installment_number)
        else:
            installment.days_past_due = 0
            if installment.status == InstallmentStatus.OVERDUE:
                installment.status = (InstallmentStatus.PARTIAL if installment.total_paid > ZERO
                                      else InstallmentStatus.PENDING)
    return overdue_numbers


def calculate_penalty(overdue: Decimal, days_overdue: int, rules: PenaltyRules) -> Decimal:
    """
    Late-payment penalty for an overdue amount

    Nothing is charged while penalties are disabled or the loan is within
    the penalty grace days; only days beyond the grace count.
    """
    if not rules.enabled or days_overdue <= rules.grace_days:
        return ZERO

    effective_days = days_overdue - rules.grace_days
    overdue = to_decimal(overdue)

    if rules.type == PenaltyType.PERCENTAGE_OF_OVERDUE:
        penalty = overdue * rules.rate / Decimal('100') * Decimal(effective_days) / Decimal(DAYS_PER_MISSED_PAYMENT)
    elif rules.type == PenaltyType.FIXED_AMOUNT:
        penalty = rules.rate * math.ceil(effective_days / DAYS_PER_MISSED_PAYMENT)
    elif rules.type == PenaltyType.PERCENTAGE_OF_PRINCIPAL:
        penalty = overdue * rules.rate / Decimal('100')
    else:
        raise ValueError(f"Unsupported penalty type: {rules.type}")

    return round_money(penalty)
