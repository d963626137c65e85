from pydantic import BaseModel
from datetime import datetime, date
from decimal import Decimal
from typing import Dict, List, Optional

from app.modules.loans.models import LoanStatus, PaymentFrequency


class CounterpartyProfile(BaseModel):
    user_id: int
    name: str
    handle: str
    avatar_url: Optional[str] = None
    is_placeholder: bool = False

    class Config:
        from_attributes = True


class LoanSummary(BaseModel):
    """One loan as seen by one of its parties"""
    id: int
    role: str  # "lender" or "borrower"
    counterparty: CounterpartyProfile
    status: LoanStatus
    amount: Decimal
    interest_rate: Decimal
    total_amount: Decimal
    payment_amount: Decimal
    payment_frequency: PaymentFrequency
    amount_paid: Decimal
    remaining_balance: Decimal
    pending_amount: Decimal
    progress_percentage: float
    due_date: date
    next_payment_date: Optional[date] = None
    days_until_due: Optional[int] = None
    is_overdue: bool = False
    purpose: Optional[str] = None


class NextPayment(BaseModel):
    loan_id: int
    amount: Decimal
    payment_date: date
    days_until: int
    lender: CounterpartyProfile


class DashboardStats(BaseModel):
    total_lent: Decimal
    total_borrowed: Decimal
    active_loans: int
    pending_offers_received: int
    pending_offers_sent: int
    pending_confirmations: int
    next_payment: Optional[NextPayment] = None


class DashboardResponse(BaseModel):
    lent: Dict[str, List[LoanSummary]]
    borrowed: Dict[str, List[LoanSummary]]
    stats: DashboardStats


class ActivityItem(BaseModel):
    type: str  # "loan" or "payment"
    id: int
    loan_id: int
    status: str
    amount: Decimal
    direction: str  # "sent" or "received", from the user's side of the money flow
    counterparty: CounterpartyProfile
    description: str
    timestamp: datetime
