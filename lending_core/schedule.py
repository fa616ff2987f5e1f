"""
Repayment Schedule Module

Turns loan terms into an ordered installment schedule. Supports equal
installments (level EMI for reducing balance, even split for flat and
compound interest), equal principal, and bullet amortization.

Every monetary figure is rounded to cents at the point it is computed so the
schedule accumulates exactly like the ledger that later consumes it.
"""

from decimal import Decimal, ROUND_CEILING
from datetime import date, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum

from dateutil.relativedelta import relativedelta

from .currency import ZERO, round_money, to_decimal
from .logging_config import get_logger


logger = get_logger("lending.schedule")

HUNDRED = Decimal('100')


class InvalidTermsError(ValueError):
    """Loan terms are structurally invalid; nothing was computed"""


class InterestType(Enum):
    """How interest is charged over the life of the loan"""
    FLAT = "flat"                            # On original principal
    REDUCING_BALANCE = "reducing_balance"    # On outstanding principal
    COMPOUND = "compound"                    # Annual compounding on principal


class TermUnit(Enum):
    """Unit the loan term is expressed in"""
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


class RepaymentFrequency(Enum):
    """How often installments fall due"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    BULLET = "bullet"          # Single repayment at term end


class AmortizationMethod(Enum):
    """Methods for splitting principal across installments"""
    EQUAL_INSTALLMENTS = "equal_installments"  # Level total per installment
    EQUAL_PRINCIPAL = "equal_principal"        # Fixed principal, declining interest
    BULLET = "bullet"                          # Everything at term end


class InstallmentStatus(Enum):
    """Repayment state of a single installment"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


PERIODS_PER_YEAR = {
    RepaymentFrequency.DAILY: 365,
    RepaymentFrequency.WEEKLY: 52,
    RepaymentFrequency.BIWEEKLY: 26,
    RepaymentFrequency.MONTHLY: 12,
    RepaymentFrequency.QUARTERLY: 4,
}

TERM_UNITS_PER_YEAR = {
    TermUnit.DAYS: 365,
    TermUnit.WEEKS: 52,
    TermUnit.MONTHS: 12,
    TermUnit.YEARS: 1,
}

# Repayment periods in one unit of term, as (numerator, denominator).
# A month is 30 days or 4.33 weeks; a quarter is 90 days or 13 weeks.
PERIODS_PER_TERM_UNIT = {
    TermUnit.DAYS: {
        RepaymentFrequency.DAILY: (1, 1),
        RepaymentFrequency.WEEKLY: (1, 7),
        RepaymentFrequency.BIWEEKLY: (1, 14),
        RepaymentFrequency.MONTHLY: (1, 30),
        RepaymentFrequency.QUARTERLY: (1, 90),
    },
    TermUnit.WEEKS: {
        RepaymentFrequency.DAILY: (7, 1),
        RepaymentFrequency.WEEKLY: (1, 1),
        RepaymentFrequency.BIWEEKLY: (1, 2),
        RepaymentFrequency.MONTHLY: (100, 433),
        RepaymentFrequency.QUARTERLY: (1, 13),
    },
    TermUnit.MONTHS: {
        RepaymentFrequency.DAILY: (30, 1),
        RepaymentFrequency.WEEKLY: (433, 100),
        RepaymentFrequency.BIWEEKLY: (433, 200),
        RepaymentFrequency.MONTHLY: (1, 1),
        RepaymentFrequency.QUARTERLY: (1, 3),
    },
    TermUnit.YEARS: {
        RepaymentFrequency.DAILY: (365, 1),
        RepaymentFrequency.WEEKLY: (52, 1),
        RepaymentFrequency.BIWEEKLY: (26, 1),
        RepaymentFrequency.MONTHLY: (12, 1),
        RepaymentFrequency.QUARTERLY: (4, 1),
    },
}

# relativedelta keyword and step size for one repayment period
PERIOD_STEPS = {
    RepaymentFrequency.DAILY: ("days", 1),
    RepaymentFrequency.WEEKLY: ("weeks", 1),
    RepaymentFrequency.BIWEEKLY: ("weeks", 2),
    RepaymentFrequency.MONTHLY: ("months", 1),
    RepaymentFrequency.QUARTERLY: ("months", 3),
}


def _coerce_enum(enum_cls, value, field_name: str):
    if value is None:
        raise InvalidTermsError(f"{field_name} is required")
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidTermsError(f"Invalid {field_name} '{value}'; expected one of: {allowed}")


@dataclass(frozen=True)
class LoanTerms:
    """Loan terms; immutable once a loan is created"""
    principal: Decimal
    annual_rate_percent: Decimal          # e.g. 15 for 15% p.a.
    term_value: Optional[int]
    term_unit: Optional[TermUnit]
    start_date: date
    interest_type: InterestType = InterestType.REDUCING_BALANCE
    repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    amortization_method: AmortizationMethod = AmortizationMethod.EQUAL_INSTALLMENTS
    grace_period_days: int = 0

    def __post_init__(self):
        # Normalise plain strings and numbers coming from forms
        try:
            object.__setattr__(self, 'principal', to_decimal(self.principal))
            object.__setattr__(self, 'annual_rate_percent', to_decimal(self.annual_rate_percent))
        except ValueError as e:
            raise InvalidTermsError(str(e))

        if self.term_value is None:
            raise InvalidTermsError("term value is required")
        object.__setattr__(self, 'term_unit', _coerce_enum(TermUnit, self.term_unit, "term unit"))
        object.__setattr__(self, 'interest_type',
                           _coerce_enum(InterestType, self.interest_type, "interest type"))
        object.__setattr__(self, 'repayment_frequency',
                           _coerce_enum(RepaymentFrequency, self.repayment_frequency, "repayment frequency"))
        object.__setattr__(self, 'amortization_method',
                           _coerce_enum(AmortizationMethod, self.amortization_method, "amortization method"))

        self._validate()

    def _validate(self) -> None:
        if isinstance(self.term_value, bool) or not isinstance(self.term_value, int):
            raise InvalidTermsError(f"term value must be an integer, got {self.term_value!r}")
        if self.term_value < 1:
            raise InvalidTermsError(f"term value must be at least 1, got {self.term_value}")
        if self.principal <= ZERO:
            raise InvalidTermsError(f"principal must be positive, got {self.principal}")
        if not ZERO <= self.annual_rate_percent <= HUNDRED:
            raise InvalidTermsError(
                f"annual rate must be between 0 and 100 percent, got {self.annual_rate_percent}"
            )
        if not isinstance(self.start_date, date):
            raise InvalidTermsError("start date is required")
        if self.grace_period_days is None or self.grace_period_days < 0:
            raise InvalidTermsError(f"grace period cannot be negative, got {self.grace_period_days}")
        if self.number_of_installments < 1:
            raise InvalidTermsError(
                f"{self.term_value} {self.term_unit.value} at {self.repayment_frequency.value} "
                f"frequency yields no installments"
            )

    @property
    def annual_rate(self) -> Decimal:
        """Annual rate as a fraction (15% -> 0.15)"""
        return self.annual_rate_percent / HUNDRED

    @property
    def term_years(self) -> Decimal:
        return Decimal(self.term_value) / Decimal(TERM_UNITS_PER_YEAR[self.term_unit])

    @property
    def term_months(self) -> Decimal:
        return self.term_years * 12

    @property
    def number_of_installments(self) -> int:
        """Installment count reconciled from term unit and repayment frequency"""
        if self.repayment_frequency == RepaymentFrequency.BULLET:
            return 1
        numerator, denominator = PERIODS_PER_TERM_UNIT[self.term_unit][self.repayment_frequency]
        periods = round_money(Decimal(self.term_value * numerator) / Decimal(denominator))
        return int(periods.to_integral_value(rounding=ROUND_CEILING))

    @property
    def periodic_rate(self) -> Decimal:
        """Interest rate per repayment period"""
        if self.repayment_frequency == RepaymentFrequency.BULLET:
            return self.annual_rate * self.term_years
        return self.annual_rate / Decimal(PERIODS_PER_YEAR[self.repayment_frequency])

    @property
    def anchor_date(self) -> date:
        """Start date pushed out by the grace period; installments count from here"""
        return self.start_date + timedelta(days=self.grace_period_days)

    @property
    def maturity_date(self) -> date:
        """Anchor date advanced by the full term"""
        return self.anchor_date + relativedelta(**{self.term_unit.value: self.term_value})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': str(self.principal),
            'annual_rate_percent': str(self.annual_rate_percent),
            'term_value': self.term_value,
            'term_unit': self.term_unit.value,
            'start_date': self.start_date.isoformat(),
            'interest_type': self.interest_type.value,
            'repayment_frequency': self.repayment_frequency.value,
            'amortization_method': self.amortization_method.value,
            'grace_period_days': self.grace_period_days,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        return cls(
            principal=Decimal(data['principal']),
            annual_rate_percent=Decimal(data['annual_rate_percent']),
            term_value=data['term_value'],
            term_unit=data['term_unit'],
            start_date=date.fromisoformat(data['start_date']),
            interest_type=data['interest_type'],
            repayment_frequency=data['repayment_frequency'],
            amortization_method=data['amortization_method'],
            grace_period_days=data.get('grace_period_days', 0),
        )


@dataclass
class Installment:
    """Single scheduled installment; paid amounts only ever grow through the allocator"""
    installment_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    balance: Decimal                       # Scheduled principal left after this installment
    total_due: Optional[Decimal] = None
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    total_paid: Decimal = ZERO
    status: InstallmentStatus = InstallmentStatus.PENDING
    days_past_due: int = 0

    def __post_init__(self):
        expected = self.principal_due + self.interest_due
        if self.total_due is None:
            self.total_due = expected
        elif self.total_due != expected:
            raise ValueError(
                f"Installment {self.installment_number}: total due {self.total_due} does not equal "
                f"principal {self.principal_due} + interest {self.interest_due}"
            )

    @property
    def outstanding(self) -> Decimal:
        return self.total_due - self.total_paid

    @property
    def interest_outstanding(self) -> Decimal:
        return self.interest_due - self.interest_paid

    @property
    def principal_outstanding(self) -> Decimal:
        return self.principal_due - self.principal_paid

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'principal_due': str(self.principal_due),
            'interest_due': str(self.interest_due),
            'total_due': str(self.total_due),
            'principal_paid': str(self.principal_paid),
            'interest_paid': str(self.interest_paid),
            'total_paid': str(self.total_paid),
            'balance': str(self.balance),
            'status': self.status.value,
            'days_past_due': self.days_past_due,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_due=Decimal(data['principal_due']),
            interest_due=Decimal(data['interest_due']),
            total_due=Decimal(data['total_due']),
            principal_paid=Decimal(data['principal_paid']),
            interest_paid=Decimal(data['interest_paid']),
            total_paid=Decimal(data['total_paid']),
            balance=Decimal(data['balance']),
            status=InstallmentStatus(data['status']),
            days_past_due=data.get('days_past_due', 0),
        )


def calculate_emi(principal: Decimal, periodic_rate: Decimal, installments: int) -> Decimal:
    """
    Level periodic payment for a reducing balance loan

    Standard annuity formula: P * r * (1+r)^n / ((1+r)^n - 1)
    """
    if periodic_rate == ZERO:
        return round_money(principal / Decimal(installments))

    factor = (Decimal('1') + periodic_rate) ** installments
    return round_money(principal * periodic_rate * factor / (factor - Decimal('1')))


def calculate_total_interest(terms: LoanTerms) -> Decimal:
    """Interest over the whole term for flat, compound and bullet repayment"""
    if terms.interest_type == InterestType.COMPOUND:
        growth = (Decimal('1') + terms.annual_rate) ** terms.term_years
        return round_money(terms.principal * (growth - Decimal('1')))
    return round_money(terms.principal * terms.annual_rate * terms.term_years)


def calculate_due_date(anchor: date, installment_number: int, frequency: RepaymentFrequency) -> date:
    """
    Due date of an installment, counted from the anchor date

    Always computed from the anchor rather than the previous due date so
    month-end dates clamp per month (Jan 31 -> Feb 29 -> Mar 31) instead of drifting.
    """
    if frequency not in PERIOD_STEPS:
        raise ValueError(f"{frequency.value} repayments fall due at term end, not per period")
    unit, step = PERIOD_STEPS[frequency]
    return anchor + relativedelta(**{unit: step * installment_number})


def _reducing_balance_rows(terms: LoanTerms, count: int) -> List[Tuple[Decimal, Decimal]]:
    rate = terms.periodic_rate
    emi = calculate_emi(terms.principal, rate, count)
    balance = terms.principal
    rows = []

    for number in range(1, count + 1):
        interest = round_money(balance * rate)
        if number == count:
            principal = balance
        else:
            principal = max(ZERO, min(emi - interest, balance))
        balance -= principal
        rows.append((principal, interest))

    return rows


def _even_split_rows(terms: LoanTerms, count: int) -> List[Tuple[Decimal, Decimal]]:
    total_interest = calculate_total_interest(terms)
    principal_each = round_money(terms.principal / Decimal(count))
    interest_each = round_money(total_interest / Decimal(count))
    principal_left = terms.principal
    interest_left = total_interest
    rows = []

    for number in range(1, count + 1):
        if number == count:
            principal, interest = principal_left, interest_left
        else:
            principal = min(principal_each, principal_left)
            interest = min(interest_each, interest_left)
        principal_left -= principal
        interest_left -= interest
        rows.append((principal, interest))

    return rows


def _equal_principal_rows(terms: LoanTerms, count: int) -> List[Tuple[Decimal, Decimal]]:
    rate = terms.periodic_rate
    principal_each = round_money(terms.principal / Decimal(count))
    balance = terms.principal
    rows = []

    for number in range(1, count + 1):
        interest = round_money(balance * rate)
        principal = balance if number == count else min(principal_each, balance)
        balance -= principal
        rows.append((principal, interest))

    return rows


def _due_dates(terms: LoanTerms, count: int) -> List[date]:
    if count == 1 and (terms.repayment_frequency == RepaymentFrequency.BULLET
                       or terms.amortization_method == AmortizationMethod.BULLET):
        return [terms.maturity_date]
    return [
        calculate_due_date(terms.anchor_date, number, terms.repayment_frequency)
        for number in range(1, count + 1)
    ]


def generate_schedule(terms: LoanTerms) -> List[Installment]:
    """
    Generate the repayment schedule for a set of loan terms

    Pure and deterministic: identical terms (including start date) always
    produce an identical schedule.

    Args:
        terms: Validated loan terms

    Returns:
        Installments ordered by installment number, starting at 1
    """
    method = terms.amortization_method

    if method == AmortizationMethod.BULLET:
        count = 1
        rows = [(terms.principal, calculate_total_interest(terms))]
    elif method == AmortizationMethod.EQUAL_INSTALLMENTS:
        count = terms.number_of_installments
        if terms.interest_type == InterestType.REDUCING_BALANCE:
            rows = _reducing_balance_rows(terms, count)
        else:
            rows = _even_split_rows(terms, count)
    elif method == AmortizationMethod.EQUAL_PRINCIPAL:
        count = terms.number_of_installments
        rows = _equal_principal_rows(terms, count)
    else:
        raise InvalidTermsError(f"Unsupported amortization method: {method}")

    schedule = []
    balance = terms.principal
    for number, ((principal, interest), due_date) in enumerate(zip(rows, _due_dates(terms, count)), start=1):
        balance = max(ZERO, balance - principal)
        schedule.append(Installment(
            installment_number=number,
            due_date=due_date,
            principal_due=principal,
            interest_due=interest,
            balance=balance
        ))

    logger.debug(
        "Generated %d installment schedule (%s, %s, %s)",
        len(schedule), method.value, terms.interest_type.value, terms.repayment_frequency.value
    )
    return schedule


def schedule_totals(schedule: List[Installment]) -> Dict[str, Decimal]:
    """Sum principal, interest and total due across a schedule"""
    principal = sum((i.principal_due for i in schedule), ZERO)
    interest = sum((i.interest_due for i in schedule), ZERO)
    return {
        'principal': principal,
        'interest': interest,
        'total': principal + interest,
    }
