"""
Payment endpoints
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Query, status

from .deps import LendingSystem, get_lending_system, get_request_context
from .schemas import RecordPaymentRequest, ReversePaymentRequest, parse_date, payment_response
from ..currency import decimal_from_string
from ..loans import PaymentMethod, PaymentStatus, RecordNotFoundError, RequestContext


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def record_payment(
    request: RecordPaymentRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a loan repayment and allocate it"""
    try:
        payment = system.loan_manager.record_payment(
            loan_id=request.loan_id,
            amount=decimal_from_string(request.amount),
            ctx=ctx,
            method=PaymentMethod(request.method),
            payment_date=parse_date(request.payment_date),
            transaction_reference=request.transaction_reference,
            notes=request.notes
        )
        loan = system.loan_manager.get_loan(payment.loan_id)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "payment_id": payment.id,
        "payment_number": payment.payment_number,
        "receipt_number": payment.receipt_number,
        "allocation": payment.allocation.to_dict(),
        "loan_status": loan.status.value,
        "balances": loan.balances.to_dict(),
        "message": "Payment recorded successfully"
    }


@router.get("")
async def list_payments(
    loan_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    start_date: Optional[str] = Query(None, description="ISO date, inclusive"),
    end_date: Optional[str] = Query(None, description="ISO date, inclusive"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    system: LendingSystem = Depends(get_lending_system)
):
    """List payments filtered by loan, customer, status and payment date, with pagination"""
    try:
        payments, total = system.loan_manager.list_payments(
            loan_id=loan_id,
            customer_id=customer_id,
            status=PaymentStatus(status_filter) if status_filter else None,
            start_date=parse_date(start_date),
            end_date=parse_date(end_date),
            offset=skip,
            limit=limit
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "payments": [payment_response(payment) for payment in payments],
        "total": total,
        "skip": skip,
        "limit": limit
    }


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get payment details"""
    payment = system.loan_manager.get_payment(payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment_response(payment)


@router.post("/{payment_id}/reverse")
async def reverse_payment(
    payment_id: str,
    request: ReversePaymentRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: LendingSystem = Depends(get_lending_system)
):
    """Reverse a payment and restore the loan balances"""
    try:
        payment = system.loan_manager.reverse_payment(payment_id, ctx, reason=request.reason)
        loan = system.loan_manager.get_loan(payment.loan_id)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "payment_id": payment.id,
        "status": payment.status.value,
        "loan_status": loan.status.value,
        "balances": loan.balances.to_dict(),
        "message": "Payment reversed successfully"
    }
