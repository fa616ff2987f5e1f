"""
Calculator endpoints: stateless previews, nothing is persisted
"""

from fastapi import APIRouter, HTTPException

from .schemas import LoanTermsModel, AllocationPreviewRequest, schedule_response
from ..schedule import generate_schedule, schedule_totals, calculate_total_interest
from ..allocation import allocate, apply_allocation
from ..delinquency import classify


router = APIRouter()


@router.post("/schedule")
async def preview_schedule(request: LoanTermsModel):
    """Generate a repayment schedule without creating a loan"""
    try:
        terms = request.to_loan_terms()
        schedule = generate_schedule(terms)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    totals = schedule_totals(schedule)
    return {
        "number_of_installments": len(schedule),
        "maturity_date": schedule[-1].due_date.isoformat(),
        "total_principal": str(totals['principal']),
        "total_interest": str(totals['interest']),
        "total_amount": str(totals['total']),
        "quoted_interest": str(calculate_total_interest(terms)),
        "schedule": schedule_response(schedule)
    }


@router.post("/allocation")
async def preview_allocation(request: AllocationPreviewRequest):
    """Show how a payment would be split across balances"""
    try:
        balances = request.to_balances()
        allocation = allocate(request.amount, balances)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "allocation": allocation.to_dict(),
        "balances_after": apply_allocation(balances, allocation).to_dict()
    }


@router.get("/delinquency/{days_past_due}")
async def preview_delinquency(days_past_due: int):
    """Classify a days-past-due figure"""
    try:
        state = classify(days_past_due)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return state.to_dict()
