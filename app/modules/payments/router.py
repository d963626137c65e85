from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from app.core.database import get_db
from app.core.dependencies import get_current_active_user
from app.modules.users.models import User
from app.modules.payments.models import PaymentMethod
from app.modules.payments.schemas import (
    PaymentCreate, PaymentResponse, PendingPaymentsResponse, PaymentLinkResponse
)
from app.modules.payments.services import PaymentService

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post("/loans/{loan_id}", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def record_payment(
    loan_id: int,
    payment: PaymentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """
    Record a payment made outside the app.

    The payment stays pending until the other party confirms it.
    """
    service = PaymentService(db)
    return await service.record_payment(
        loan_id,
        current_user.id,
        payment.amount,
        payment.payment_method,
        payment.notes,
        payment.payment_date
    )


@router.get("/loans/{loan_id}", response_model=List[PaymentResponse])
async def read_loan_payments(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = PaymentService(db)
    return await service.get_loan_payments(loan_id, current_user.id)


@router.get("/loans/{loan_id}/pay-link", response_model=PaymentLinkResponse)
async def read_payment_link(
    loan_id: int,
    method: PaymentMethod,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Deep link into the lender's payment app, when the rail supports one"""
    service = PaymentService(db)
    return await service.get_payment_link(loan_id, current_user.id, method)


@router.get("/pending", response_model=PendingPaymentsResponse)
async def read_pending_payments(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = PaymentService(db)
    return await service.get_pending_for_user(current_user.id)


@router.post("/{payment_id}/confirm", response_model=PaymentResponse)
async def confirm_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = PaymentService(db)
    return await service.confirm_payment(payment_id, current_user.id)


@router.post("/{payment_id}/deny", response_model=PaymentResponse)
async def deny_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = PaymentService(db)
    return await service.deny_payment(payment_id, current_user.id)


@router.delete("/{payment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_pending_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = PaymentService(db)
    await service.cancel_pending_payment(payment_id, current_user.id)
