"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Query, status

from .deps import LendingSystem, get_lending_system, get_request_context
from .schemas import (
    CreateLoanRequest, ApproveLoanRequest, RejectLoanRequest, DisburseLoanRequest,
    DelinquencyRequest, parse_currency, parse_date, loan_response, payment_response,
    schedule_response
)
from ..allocation import LoanStatus
from ..loans import PaymentMethod, RecordNotFoundError, RequestContext


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: LendingSystem = Depends(get_lending_system)
):
    """Originate a new loan with its repayment schedule"""
    try:
        loan = system.loan_manager.originate_loan(
            customer_id=request.customer_id,
            terms=request.terms.to_loan_terms(),
            ctx=ctx,
            fees=request.fees.to_fees() if request.fees else None,
            penalty_rules=request.penalty_rules.to_rules() if request.penalty_rules else None,
            currency=parse_currency(request.currency),
            product_name=request.product_name
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "loan_id": loan.id,
        "loan_number": loan.loan_number,
        "status": loan.status.value,
        "installments": len(loan.schedule),
        "total_balance": str(loan.balances.total_balance),
        "message": "Loan created successfully"
    }


@router.get("")
async def list_loans(
    status_filter: Optional[str] = Query(None, alias="status"),
    customer_id: Optional[str] = None,
    search: Optional[str] = Query(None, description="Fragment of the loan number"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans filtered by status, customer or loan number, with pagination"""
    try:
        loan_status = LoanStatus(status_filter) if status_filter else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown loan status: {status_filter}")

    loans, total = system.loan_manager.list_loans(
        status=loan_status, customer_id=customer_id, search=search, offset=skip, limit=limit
    )
    return {
        "loans": [loan_response(loan) for loan in loans],
        "total": total,
        "skip": skip,
        "limit": limit
    }


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan_response(loan)


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan repayment schedule with paid amounts"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return {"loan_id": loan.id, "schedule": schedule_response(loan.schedule)}


@router.get("/{loan_id}/payments")
async def get_loan_payments(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Payment history of a loan"""
    if not system.loan_manager.get_loan(loan_id):
        raise HTTPException(status_code=404, detail="Loan not found")
    payments = system.loan_manager.get_loan_payments(loan_id)
    return {"payments": [payment_response(payment) for payment in payments]}


@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: LendingSystem = Depends(get_lending_system)
):
    """Approve a pending loan"""
    try:
        loan = system.loan_manager.approve_loan(loan_id, ctx, comments=request.comments)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"loan_id": loan.id, "status": loan.status.value, "message": "Loan approved successfully"}


@router.post("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: LendingSystem = Depends(get_lending_system)
):
    """Reject a pending loan"""
    try:
        loan = system.loan_manager.reject_loan(loan_id, ctx, reason=request.reason)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"loan_id": loan.id, "status": loan.status.value, "message": "Loan rejected"}


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: LendingSystem = Depends(get_lending_system)
):
    """Disburse an approved loan"""
    try:
        loan = system.loan_manager.disburse_loan(
            loan_id, ctx,
            method=PaymentMethod(request.method),
            reference=request.reference
        )
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "loan_id": loan.id,
        "status": loan.status.value,
        "disbursed_date": loan.disbursed_date.isoformat(),
        "message": "Loan disbursed successfully"
    }


@router.post("/{loan_id}/delinquency")
async def update_delinquency(
    loan_id: str,
    request: DelinquencyRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: LendingSystem = Depends(get_lending_system)
):
    """Recompute arrears and charge any penalty due"""
    try:
        state = system.loan_manager.update_delinquency(loan_id, ctx, as_of=parse_date(request.as_of))
        loan = system.loan_manager.get_loan(loan_id)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "loan_id": loan_id,
        "delinquency": state.to_dict(),
        "balances": loan.balances.to_dict()
    }
