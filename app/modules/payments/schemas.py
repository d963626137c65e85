from pydantic import BaseModel, Field
from datetime import datetime, date
from decimal import Decimal
from typing import List, Optional

from app.modules.payments.models import PaymentMethod, PaymentStatus


class PaymentCreate(BaseModel):
    amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.OTHER
    payment_date: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=1000)


class PaymentResponse(BaseModel):
    id: int
    loan_id: int
    amount: Decimal
    payment_date: date
    payment_method: PaymentMethod
    notes: Optional[str] = None
    recorded_by: int
    status: PaymentStatus
    confirmed_by: Optional[int] = None
    confirmed_at: Optional[datetime] = None
    denied_by: Optional[int] = None
    denied_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PendingPaymentsResponse(BaseModel):
    """Pending payments split by who has to act next"""
    to_confirm: List[PaymentResponse] = []
    awaiting_confirmation: List[PaymentResponse] = []


class PaymentLinkResponse(BaseModel):
    method: PaymentMethod
    amount: Decimal
    url: Optional[str] = None
