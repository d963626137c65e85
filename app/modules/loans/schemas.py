from pydantic import BaseModel, Field
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

from app.modules.loans.models import LoanStatus, PaymentFrequency, RepaymentUnit


# ============ Calculator ============

class LoanCalculatorRequest(BaseModel):
    """Preview request; incomplete terms yield a zero result"""
    amount: Optional[Decimal] = None
    interest_rate: Optional[Decimal] = None
    repayment_period: Optional[int] = None
    repayment_unit: RepaymentUnit = RepaymentUnit.MONTHS
    payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    custom_due_date: Optional[date] = None


class LoanCalculatorResponse(BaseModel):
    total_amount: Decimal
    payment_amount: Decimal
    total_interest: Decimal
    due_date: Optional[date] = None


# ============ Offers ============

class LoanTerms(BaseModel):
    amount: Decimal
    interest_rate: Decimal = Decimal("0")
    repayment_period: Optional[int] = None
    repayment_unit: RepaymentUnit = RepaymentUnit.MONTHS
    payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    custom_due_date: Optional[date] = None
    purpose: Optional[str] = Field(None, max_length=1000)


class LoanOfferCreate(LoanTerms):
    """Lender's offer: borrower by id or username, plus the lender's typed signature"""
    borrower_id: Optional[int] = None
    borrower_username: Optional[str] = None
    lender_signature: str


class SignatureRequest(BaseModel):
    signature: str


class CancelLoanRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=1000)


class LoanResponse(BaseModel):
    id: int
    lender_id: int
    borrower_id: int
    amount: Decimal
    interest_rate: Decimal
    repayment_period: Optional[int] = None
    repayment_unit: RepaymentUnit
    payment_frequency: PaymentFrequency
    purpose: Optional[str] = None
    total_amount: Decimal
    payment_amount: Decimal
    due_date: date
    status: LoanStatus
    amount_paid: Decimal
    remaining_balance: Decimal
    next_payment_date: Optional[date] = None
    version: int
    created_at: datetime

    class Config:
        from_attributes = True


class LoanAgreementResponse(BaseModel):
    id: int
    loan_id: int
    lender_id: int
    borrower_id: int
    amount: Decimal
    interest_rate: Decimal
    repayment_period: Optional[int] = None
    repayment_unit: RepaymentUnit
    payment_frequency: PaymentFrequency
    purpose: Optional[str] = None
    due_date: date
    total_amount: Decimal
    payment_amount: Decimal
    lender_name: str
    lender_signed_at: datetime
    borrower_name: Optional[str] = None
    borrower_signed_at: Optional[datetime] = None
    is_fully_signed: bool
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_note: Optional[str] = None

    class Config:
        from_attributes = True
