"""
Pydantic schemas for API requests and responses
"""

from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..currency import Currency
from ..schedule import LoanTerms, Installment
from ..allocation import LoanBalances
from ..delinquency import PenaltyRules
from ..loans import Loan, LoanFees, LoanPayment


def parse_currency(code: Optional[str]) -> Optional[Currency]:
    if code is None:
        return None
    try:
        return Currency[code.upper()]
    except KeyError:
        raise ValueError(f"Unsupported currency: {code}")


def parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


class LoanTermsModel(BaseModel):
    principal: str = Field(..., description="Decimal amount as string")
    annual_rate_percent: str = Field(..., description="Annual rate in percent, e.g. '15'")
    term_value: int
    term_unit: str = Field("months", description="days, weeks, months or years")
    start_date: str  # ISO date string
    interest_type: str = "reducing_balance"
    repayment_frequency: str = "monthly"
    amortization_method: str = "equal_installments"
    grace_period_days: int = 0

    def to_loan_terms(self) -> LoanTerms:
        return LoanTerms(
            principal=self.principal,
            annual_rate_percent=self.annual_rate_percent,
            term_value=self.term_value,
            term_unit=self.term_unit,
            start_date=date.fromisoformat(self.start_date),
            interest_type=self.interest_type,
            repayment_frequency=self.repayment_frequency,
            amortization_method=self.amortization_method,
            grace_period_days=self.grace_period_days
        )


class LoanFeesModel(BaseModel):
    processing_fee: str = "0"
    insurance_fee: str = "0"
    legal_fee: str = "0"
    other_fees: str = "0"

    def to_fees(self) -> LoanFees:
        return LoanFees(
            processing_fee=self.processing_fee,
            insurance_fee=self.insurance_fee,
            legal_fee=self.legal_fee,
            other_fees=self.other_fees
        )


class PenaltyRulesModel(BaseModel):
    enabled: bool = True
    rate: str = "0"
    type: str = Field("percentage_of_overdue",
                      description="percentage_of_overdue, fixed_amount or percentage_of_principal")
    grace_days: int = 0

    def to_rules(self) -> PenaltyRules:
        return PenaltyRules(enabled=self.enabled, rate=self.rate, type=self.type, grace_days=self.grace_days)


# Loan schemas
class CreateLoanRequest(BaseModel):
    customer_id: str
    terms: LoanTermsModel
    fees: Optional[LoanFeesModel] = None
    penalty_rules: Optional[PenaltyRulesModel] = None
    currency: Optional[str] = None
    product_name: Optional[str] = None


class ApproveLoanRequest(BaseModel):
    comments: Optional[str] = None


class RejectLoanRequest(BaseModel):
    reason: Optional[str] = None


class DisburseLoanRequest(BaseModel):
    method: str = "bank_transfer"
    reference: Optional[str] = None


class DelinquencyRequest(BaseModel):
    as_of: Optional[str] = None  # ISO date string, defaults to today


# Payment schemas
class RecordPaymentRequest(BaseModel):
    loan_id: str
    amount: str = Field(..., description="Decimal amount as string")
    method: str = "cash"
    payment_date: Optional[str] = None
    transaction_reference: Optional[str] = None
    notes: Optional[str] = None


class ReversePaymentRequest(BaseModel):
    reason: Optional[str] = None


# Calculator schemas
class AllocationPreviewRequest(BaseModel):
    amount: str
    principal_balance: str = "0"
    interest_balance: str = "0"
    fees_balance: str = "0"
    penalty_balance: str = "0"

    def to_balances(self) -> LoanBalances:
        return LoanBalances(
            principal_balance=self.principal_balance,
            interest_balance=self.interest_balance,
            fees_balance=self.fees_balance,
            penalty_balance=self.penalty_balance
        )


# Response builders
def schedule_response(schedule: List[Installment]) -> List[Dict[str, Any]]:
    return [installment.to_dict() for installment in schedule]


def loan_response(loan: Loan) -> Dict[str, Any]:
    """Loan without its schedule, which has its own endpoint"""
    data = loan.to_dict()
    data.pop('schedule')
    data['installments'] = len(loan.schedule)
    return data


def payment_response(payment: LoanPayment) -> Dict[str, Any]:
    return payment.to_dict()
