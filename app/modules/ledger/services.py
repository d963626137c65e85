from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_
from dataclasses import asdict
from datetime import datetime, date, time, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional
import math
import logging

from app.modules.loans.models import Loan, LoanStatus
from app.modules.loans.services import LoanAgreementService
from app.modules.payments.models import Payment, PaymentStatus
from app.modules.users.services import UserService, DisplayProfile
from app.modules.ledger.schemas import (
    CounterpartyProfile, LoanSummary, NextPayment, DashboardStats,
    DashboardResponse, ActivityItem
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
ZERO = Decimal("0")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC"""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def days_until(target: Optional[date], now: datetime) -> Optional[int]:
    """Whole days from ``now`` to the start of ``target``, rounded up; negative when overdue"""
    if target is None:
        return None
    start_of_day = datetime.combine(target, time.min, tzinfo=timezone.utc)
    return math.ceil((start_of_day - as_utc(now)).total_seconds() / SECONDS_PER_DAY)


def progress_percentage(amount_paid: Decimal, total_amount: Decimal) -> float:
    if not total_amount:
        return 0.0
    pct = (Decimal(amount_paid) / Decimal(total_amount) * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return float(pct)


def installment_due(loan: Loan) -> Decimal:
    """Next amount to pay: the installment, capped at what is left"""
    remaining = loan.remaining_balance
    if loan.payment_amount and loan.payment_amount > 0:
        return min(loan.payment_amount, remaining)
    return remaining


def _profile(profiles: Dict[int, DisplayProfile], user_id: int) -> CounterpartyProfile:
    profile = profiles.get(user_id) or DisplayProfile.placeholder(user_id)
    return CounterpartyProfile(**asdict(profile))


class LedgerService:
    """
    Read-only projection over loans and payments for one user.

    Missing counterparty profiles render as placeholders; nothing here writes.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _user_loans(self, user_id: int) -> List[Loan]:
        return await LoanAgreementService(self.db).get_user_loans(user_id)

    async def _pending_totals(self, loan_ids: List[int]) -> Dict[int, Decimal]:
        if not loan_ids:
            return {}
        result = await self.db.execute(
            select(Payment.loan_id, func.sum(Payment.amount))
            .where(
                Payment.loan_id.in_(loan_ids),
                Payment.status == PaymentStatus.PENDING_CONFIRMATION
            )
            .group_by(Payment.loan_id)
        )
        return {loan_id: Decimal(str(total or 0)) for loan_id, total in result.all()}

    def _summarize(self, loan: Loan, user_id: int, profiles, pending: Dict[int, Decimal], now: datetime) -> LoanSummary:
        days = days_until(loan.next_payment_date, now) if loan.status == LoanStatus.ACTIVE else None
        return LoanSummary(
            id=loan.id,
            role="lender" if loan.lender_id == user_id else "borrower",
            counterparty=_profile(profiles, loan.counterparty_of(user_id)),
            status=loan.status,
            amount=loan.amount,
            interest_rate=loan.interest_rate,
            total_amount=loan.total_amount,
            payment_amount=loan.payment_amount,
            payment_frequency=loan.payment_frequency,
            amount_paid=loan.amount_paid,
            remaining_balance=loan.remaining_balance,
            pending_amount=pending.get(loan.id, ZERO),
            progress_percentage=progress_percentage(loan.amount_paid, loan.total_amount),
            due_date=loan.due_date,
            next_payment_date=loan.next_payment_date,
            days_until_due=days,
            is_overdue=days is not None and days < 0,
            purpose=loan.purpose
        )

    async def get_dashboard(self, user_id: int, now: Optional[datetime] = None) -> DashboardResponse:
        """Loans grouped by side and status, with aggregate stats"""
        now = as_utc(now) or datetime.now(timezone.utc)
        loans = await self._user_loans(user_id)
        profiles = await UserService.resolve_display_profiles(
            self.db, [loan.counterparty_of(user_id) for loan in loans]
        )
        pending = await self._pending_totals([loan.id for loan in loans])

        lent = {s.value: [] for s in LoanStatus}
        borrowed = {s.value: [] for s in LoanStatus}
        for loan in loans:
            side = lent if loan.lender_id == user_id else borrowed
            side[loan.status.value].append(self._summarize(loan, user_id, profiles, pending, now))

        active_lent = [loan for loan in loans if loan.lender_id == user_id and loan.status == LoanStatus.ACTIVE]
        active_borrowed = [loan for loan in loans if loan.borrower_id == user_id and loan.status == LoanStatus.ACTIVE]

        next_payment = None
        scheduled = [loan for loan in active_borrowed if loan.next_payment_date is not None]
        if scheduled:
            upcoming = min(scheduled, key=lambda loan: (loan.next_payment_date, loan.id))
            next_payment = NextPayment(
                loan_id=upcoming.id,
                amount=installment_due(upcoming),
                payment_date=upcoming.next_payment_date,
                days_until=days_until(upcoming.next_payment_date, now),
                lender=_profile(profiles, upcoming.lender_id)
            )

        pending_inbox = await self.db.execute(
            select(func.count(Payment.id))
            .join(Loan, Loan.id == Payment.loan_id)
            .where(
                Payment.status == PaymentStatus.PENDING_CONFIRMATION,
                Payment.recorded_by != user_id,
                or_(Loan.lender_id == user_id, Loan.borrower_id == user_id)
            )
        )

        stats = DashboardStats(
            total_lent=sum((loan.amount for loan in active_lent), ZERO),
            total_borrowed=sum((loan.amount for loan in active_borrowed), ZERO),
            active_loans=len(active_lent) + len(active_borrowed),
            pending_offers_received=sum(
                1 for loan in loans if loan.borrower_id == user_id and loan.status == LoanStatus.PENDING
            ),
            pending_offers_sent=sum(
                1 for loan in loans if loan.lender_id == user_id and loan.status == LoanStatus.PENDING
            ),
            pending_confirmations=pending_inbox.scalar_one(),
            next_payment=next_payment
        )
        return DashboardResponse(lent=lent, borrowed=borrowed, stats=stats)

    async def get_activity(
        self,
        user_id: int,
        activity_type: Optional[str] = None,
        status: Optional[str] = None,
        direction: Optional[str] = None,
        limit: int = 50
    ) -> List[ActivityItem]:
        """
        Recent loans and payments touching the user, newest first.

        Direction follows the money: a lender sends the loan and receives
        the payments, the borrower the other way round.
        """
        loans = await self._user_loans(user_id)
        loans_by_id = {loan.id: loan for loan in loans}
        profiles = await UserService.resolve_display_profiles(
            self.db, [loan.counterparty_of(user_id) for loan in loans]
        )

        items: List[ActivityItem] = []
        if activity_type in (None, "loan"):
            for loan in loans:
                is_lender = loan.lender_id == user_id
                counterparty = _profile(profiles, loan.counterparty_of(user_id))
                verb = "Lent to" if is_lender else "Borrowed from"
                items.append(ActivityItem(
                    type="loan",
                    id=loan.id,
                    loan_id=loan.id,
                    status=loan.status.value,
                    amount=loan.amount,
                    direction="sent" if is_lender else "received",
                    counterparty=counterparty,
                    description=f"{verb} {counterparty.name}",
                    timestamp=as_utc(loan.updated_at or loan.created_at)
                ))

        if activity_type in (None, "payment") and loans_by_id:
            result = await self.db.execute(
                select(Payment)
                .where(Payment.loan_id.in_(list(loans_by_id)))
                .execution_options(populate_existing=True)
            )
            for payment in result.scalars().all():
                loan = loans_by_id[payment.loan_id]
                is_borrower = loan.borrower_id == user_id
                counterparty = _profile(profiles, loan.counterparty_of(user_id))
                items.append(ActivityItem(
                    type="payment",
                    id=payment.id,
                    loan_id=loan.id,
                    status=payment.status.value,
                    amount=payment.amount,
                    direction="sent" if is_borrower else "received",
                    counterparty=counterparty,
                    description=payment.notes or f"Payment of ${payment.amount}",
                    timestamp=as_utc(payment.confirmed_at or payment.denied_at or payment.created_at)
                ))

        if status:
            items = [item for item in items if item.status == status]
        if direction:
            items = [item for item in items if item.direction == direction]

        items.sort(key=lambda item: (item.timestamp, item.type == "payment", item.id), reverse=True)
        return items[:limit]
