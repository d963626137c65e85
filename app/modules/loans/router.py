from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from app.core.database import get_db
from app.core.dependencies import get_current_active_user
from app.modules.users.models import User
from app.modules.loans import calculator
from app.modules.loans.schemas import (
    LoanCalculatorRequest, LoanCalculatorResponse, LoanOfferCreate, LoanResponse,
    LoanAgreementResponse, SignatureRequest, CancelLoanRequest
)
from app.modules.loans.services import LoanAgreementService

router = APIRouter(prefix="/api/v1/loans", tags=["loans"])


@router.post("/calculate", response_model=LoanCalculatorResponse)
async def calculate_terms(request: LoanCalculatorRequest):
    """Preview total, installment and due date for draft terms"""
    terms = calculator.amortize(
        request.amount,
        request.interest_rate,
        request.repayment_period,
        request.repayment_unit,
        request.payment_frequency,
        custom_due_date=request.custom_due_date,
    )
    due_date = None
    if terms.total_amount > 0:
        due_date = calculator.compute_due_date(
            request.repayment_period, request.repayment_unit, request.custom_due_date
        )
    return LoanCalculatorResponse(
        total_amount=terms.total_amount,
        payment_amount=terms.installment_amount,
        total_interest=terms.total_interest,
        due_date=due_date
    )


@router.post("/", response_model=LoanResponse, status_code=status.HTTP_201_CREATED)
async def create_offer(
    offer: LoanOfferCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """
    Send a loan offer.

    - Borrower is chosen by id or username
    - The lender signs by typing their full name
    """
    service = LoanAgreementService(db)
    return await service.create_offer(current_user.id, offer)


@router.get("/offers/sent", response_model=List[LoanResponse])
async def read_sent_offers(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = LoanAgreementService(db)
    return await service.get_sent_offers(current_user.id)


@router.get("/offers/received", response_model=List[LoanResponse])
async def read_received_offers(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = LoanAgreementService(db)
    return await service.get_received_offers(current_user.id)


@router.get("/agreements", response_model=List[LoanAgreementResponse])
async def read_agreements(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """All agreements the current user is a party to, newest first"""
    service = LoanAgreementService(db)
    return await service.get_user_agreements(current_user.id)


@router.get("/{loan_id}", response_model=LoanResponse)
async def read_loan(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = LoanAgreementService(db)
    return await service.get_loan_for_party(loan_id, current_user.id)


@router.get("/{loan_id}/agreement", response_model=LoanAgreementResponse)
async def read_loan_agreement(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = LoanAgreementService(db)
    return await service.get_agreement_for_party(loan_id, current_user.id)


@router.post("/{loan_id}/sign", response_model=LoanResponse)
async def sign_offer(
    loan_id: int,
    request: SignatureRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Borrower accepts the offer by typing their full name"""
    service = LoanAgreementService(db)
    return await service.sign(loan_id, current_user.id, request.signature)


@router.post("/{loan_id}/decline", response_model=LoanResponse)
async def decline_offer(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = LoanAgreementService(db)
    return await service.decline(loan_id, current_user.id)


@router.delete("/{loan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def withdraw_offer(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Lender withdraws a pending offer"""
    service = LoanAgreementService(db)
    await service.withdraw(loan_id, current_user.id)


@router.post("/{loan_id}/cancel", response_model=LoanResponse)
async def cancel_loan(
    loan_id: int,
    request: CancelLoanRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Lender cancels an active loan"""
    service = LoanAgreementService(db)
    return await service.cancel(loan_id, current_user.id, request.note)
