from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, or_
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import List, Optional
import logging

from app.core.config import settings
from app.core.database import run_with_conflict_retry
from app.core.exceptions import (
    ValidationError, SelfLoanError, CounterpartyNotFoundError, NotFoundError,
    UnauthorizedPartyError, InvalidStateError, SignatureMismatchError,
    ConcurrencyConflictError
)
from app.modules.loans import calculator
from app.modules.loans.models import (
    Loan, LoanAgreement, LoanStatus, PaymentFrequency, RepaymentUnit
)
from app.modules.loans.schemas import LoanOfferCreate, LoanTerms
from app.modules.users.models import User
from app.modules.users.services import UserService

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def load_loan(db: AsyncSession, loan_id: int, lock: bool = False) -> Loan:
    """Read a loan fresh from the store, optionally taking a row lock"""
    query = select(Loan).where(Loan.id == loan_id).execution_options(populate_existing=True)
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    loan = result.scalar_one_or_none()
    if loan is None:
        raise NotFoundError(f"Loan {loan_id} not found")
    return loan


async def update_loan_if_unchanged(db: AsyncSession, loan: Loan, **values) -> None:
    """
    Conditionally write a loan, keyed on the id, status and version it was
    read with. Every write bumps the version, so a lost race matches zero
    rows and surfaces as ConcurrencyConflictError.
    """
    target = values.get("status", loan.status)
    if target != loan.status and not loan.status.can_transition_to(target):
        raise InvalidStateError(f"Loan cannot move from {loan.status.value} to {target.value}")

    stmt = (
        update(Loan)
        .where(Loan.id == loan.id, Loan.status == loan.status, Loan.version == loan.version)
        .values(version=loan.version + 1, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount != 1:
        raise ConcurrencyConflictError(f"Loan {loan.id} was modified concurrently")


class LoanAgreementService:
    """Offer, signature, decline, withdrawal and cancellation of loans"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ============ Reads ============

    async def get_loan(self, loan_id: int) -> Loan:
        return await load_loan(self.db, loan_id)

    async def get_loan_for_party(self, loan_id: int, user_id: int) -> Loan:
        loan = await load_loan(self.db, loan_id)
        if not loan.is_party(user_id):
            raise UnauthorizedPartyError("You are not a party to this loan")
        return loan

    async def get_agreement(self, loan_id: int) -> LoanAgreement:
        result = await self.db.execute(
            select(LoanAgreement)
            .where(LoanAgreement.loan_id == loan_id)
            .execution_options(populate_existing=True)
        )
        agreement = result.scalar_one_or_none()
        if agreement is None:
            raise NotFoundError(f"Agreement for loan {loan_id} not found")
        return agreement

    async def get_agreement_for_party(self, loan_id: int, user_id: int) -> LoanAgreement:
        await self.get_loan_for_party(loan_id, user_id)
        return await self.get_agreement(loan_id)

    async def get_user_agreements(self, user_id: int) -> List[LoanAgreement]:
        result = await self.db.execute(
            select(LoanAgreement)
            .where(or_(LoanAgreement.lender_id == user_id, LoanAgreement.borrower_id == user_id))
            .order_by(LoanAgreement.created_at.desc(), LoanAgreement.id.desc())
        )
        return list(result.scalars().all())

    async def get_user_loans(self, user_id: int, status: Optional[LoanStatus] = None) -> List[Loan]:
        query = select(Loan).where(or_(Loan.lender_id == user_id, Loan.borrower_id == user_id))
        if status is not None:
            query = query.where(Loan.status == status)
        query = query.order_by(Loan.created_at.desc(), Loan.id.desc()).execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_sent_offers(self, lender_id: int) -> List[Loan]:
        result = await self.db.execute(
            select(Loan)
            .where(Loan.lender_id == lender_id, Loan.status == LoanStatus.PENDING)
            .order_by(Loan.created_at.desc(), Loan.id.desc())
        )
        return list(result.scalars().all())

    async def get_received_offers(self, borrower_id: int) -> List[Loan]:
        result = await self.db.execute(
            select(Loan)
            .where(Loan.borrower_id == borrower_id, Loan.status == LoanStatus.PENDING)
            .order_by(Loan.created_at.desc(), Loan.id.desc())
        )
        return list(result.scalars().all())

    # ============ Validation ============

    @staticmethod
    def validate_terms(terms: LoanTerms, today: date) -> None:
        """Raise ValidationError unless the terms describe a lendable offer"""
        max_rate = Decimal(str(settings.MAX_INTEREST_RATE))
        max_amount = Decimal(str(settings.MAX_LOAN_AMOUNT))

        if terms.amount is None or terms.amount <= 0:
            raise ValidationError("Loan amount must be greater than zero")
        if terms.amount > max_amount:
            raise ValidationError(f"Loan amount cannot exceed {max_amount}")
        if terms.interest_rate is None or not (0 <= terms.interest_rate <= max_rate):
            raise ValidationError(f"Interest rate must be between 0% and {max_rate}%")

        try:
            unit = RepaymentUnit(terms.repayment_unit)
            PaymentFrequency(terms.payment_frequency)
        except ValueError:
            raise ValidationError("Unknown repayment unit or payment frequency")

        if unit == RepaymentUnit.CUSTOM:
            if terms.custom_due_date is None or terms.custom_due_date <= today:
                raise ValidationError("Custom due date must be in the future")
        elif terms.repayment_period is None or terms.repayment_period <= 0:
            raise ValidationError("Repayment period must be greater than zero")

    @staticmethod
    def check_signature(signature: Optional[str], full_name: Optional[str]) -> str:
        """Typed signature must equal the signer's full name, ignoring case"""
        typed = (signature or "").strip()
        if not typed:
            raise SignatureMismatchError("Please type your full name to sign")
        if typed.lower() != (full_name or "").strip().lower():
            raise SignatureMismatchError("Signature must match your full name")
        return typed

    @staticmethod
    def _require_status(loan: Loan, expected: LoanStatus, action: str) -> None:
        if loan.status != expected:
            raise InvalidStateError(f"Cannot {action} a loan that is {loan.status.value}")

    async def _resolve_borrower(self, offer: LoanOfferCreate) -> User:
        if offer.borrower_id is not None:
            borrower = await UserService.get_user(self.db, offer.borrower_id)
            label = f"#{offer.borrower_id}"
        elif offer.borrower_username and offer.borrower_username.strip():
            borrower = await UserService.find_by_username(self.db, offer.borrower_username)
            label = offer.borrower_username.strip()
        else:
            raise ValidationError("Please select or enter a borrower's username")

        if borrower is None or not borrower.is_active:
            raise CounterpartyNotFoundError(f"User \"{label}\" could not be found")
        return borrower

    # ============ Transitions ============

    async def create_offer(self, lender_id: int, offer: LoanOfferCreate, today: Optional[date] = None) -> Loan:
        """
        Create a pending loan and its agreement carrying the lender's signature.

        Terms are validated, stamped with the computed total, installment and
        due date, and copied into the agreement in the same transaction.
        """
        now = utcnow()
        today = today or now.date()
        self.validate_terms(offer, today)

        if offer.borrower_id is not None and offer.borrower_id == lender_id:
            raise SelfLoanError("You cannot create a loan offer to yourself")
        borrower = await self._resolve_borrower(offer)
        if borrower.id == lender_id:
            raise SelfLoanError("You cannot create a loan offer to yourself")

        lender = await UserService.get_user(self.db, lender_id)
        if lender is None:
            raise NotFoundError("Lender not found")
        lender_name = self.check_signature(offer.lender_signature, lender.full_name)

        terms = calculator.amortize(
            offer.amount,
            offer.interest_rate,
            offer.repayment_period,
            offer.repayment_unit,
            offer.payment_frequency,
            custom_due_date=offer.custom_due_date,
            today=today,
        )
        due_date = calculator.compute_due_date(
            offer.repayment_period, offer.repayment_unit, offer.custom_due_date, today
        )
        if terms.total_amount <= 0 or due_date is None:
            raise ValidationError("Loan terms do not produce a repayable amount")

        repayment_period = None if offer.repayment_unit == RepaymentUnit.CUSTOM else offer.repayment_period
        purpose = (offer.purpose or "").strip() or None

        loan = Loan(
            lender_id=lender_id,
            borrower_id=borrower.id,
            amount=calculator.to_money(offer.amount),
            interest_rate=offer.interest_rate,
            repayment_period=repayment_period,
            repayment_unit=offer.repayment_unit,
            payment_frequency=offer.payment_frequency,
            purpose=purpose,
            total_amount=terms.total_amount,
            payment_amount=terms.installment_amount,
            due_date=due_date,
            status=LoanStatus.PENDING,
            amount_paid=Decimal("0.00"),
            next_payment_date=None,
            version=1
        )
        self.db.add(loan)
        await self.db.flush()

        agreement = LoanAgreement(
            loan_id=loan.id,
            lender_id=lender_id,
            borrower_id=borrower.id,
            amount=loan.amount,
            interest_rate=loan.interest_rate,
            repayment_period=repayment_period,
            repayment_unit=loan.repayment_unit,
            payment_frequency=loan.payment_frequency,
            purpose=purpose,
            due_date=due_date,
            total_amount=terms.total_amount,
            payment_amount=terms.installment_amount,
            lender_name=lender_name,
            lender_signed_at=now
        )
        self.db.add(agreement)
        await self.db.commit()

        logger.info(
            f"Loan {loan.id} offered by user {lender_id} to user {borrower.id}: "
            f"{loan.amount} at {loan.interest_rate}% -> {terms.total_amount}"
        )
        return await load_loan(self.db, loan.id)

    async def sign(self, loan_id: int, actor_id: int, signature: str, now: Optional[datetime] = None) -> Loan:
        """Borrower accepts a pending offer; the loan becomes active"""
        return await run_with_conflict_retry(self.db, self._sign, loan_id, actor_id, signature, now)

    async def _sign(self, loan_id: int, actor_id: int, signature: str, now: Optional[datetime]) -> Loan:
        now = now or utcnow()
        loan = await load_loan(self.db, loan_id, lock=True)
        if actor_id != loan.borrower_id:
            raise UnauthorizedPartyError("Only the borrower can sign this offer")
        self._require_status(loan, LoanStatus.PENDING, "sign")

        borrower = await UserService.get_user(self.db, loan.borrower_id)
        if borrower is None:
            raise CounterpartyNotFoundError("Borrower profile not found")
        borrower_name = self.check_signature(signature, borrower.full_name)

        agreement = await self.get_agreement(loan.id)
        if agreement.borrower_signed_at is not None:
            raise InvalidStateError("This agreement has already been signed by the borrower")

        next_date = calculator.next_payment_date_after(now.date(), loan.payment_frequency, loan.due_date)
        await update_loan_if_unchanged(
            self.db, loan, status=LoanStatus.ACTIVE, next_payment_date=next_date
        )

        result = await self.db.execute(
            update(LoanAgreement)
            .where(LoanAgreement.id == agreement.id, LoanAgreement.borrower_signed_at.is_(None))
            .values(borrower_name=borrower_name, borrower_signed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError(f"Agreement for loan {loan.id} was signed concurrently")

        await self.db.commit()
        logger.info(f"Loan {loan.id} signed by borrower {actor_id}; now active")
        return await load_loan(self.db, loan.id)

    async def decline(self, loan_id: int, actor_id: int) -> Loan:
        """Borrower refuses a pending offer"""
        return await run_with_conflict_retry(self.db, self._decline, loan_id, actor_id)

    async def _decline(self, loan_id: int, actor_id: int) -> Loan:
        loan = await load_loan(self.db, loan_id, lock=True)
        if actor_id != loan.borrower_id:
            raise UnauthorizedPartyError("Only the borrower can decline this offer")
        self._require_status(loan, LoanStatus.PENDING, "decline")

        await update_loan_if_unchanged(self.db, loan, status=LoanStatus.DECLINED)
        await self.db.commit()

        logger.info(f"Loan {loan.id} declined by borrower {actor_id}")
        return await load_loan(self.db, loan.id)

    async def withdraw(self, loan_id: int, actor_id: int) -> None:
        """Lender deletes an offer that was never accepted"""
        await run_with_conflict_retry(self.db, self._withdraw, loan_id, actor_id)

    async def _withdraw(self, loan_id: int, actor_id: int) -> None:
        loan = await load_loan(self.db, loan_id, lock=True)
        if actor_id != loan.lender_id:
            raise UnauthorizedPartyError("Only the lender can withdraw this offer")
        self._require_status(loan, LoanStatus.PENDING, "withdraw")

        await self.db.execute(
            delete(LoanAgreement)
            .where(LoanAgreement.loan_id == loan.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(
            delete(Loan)
            .where(Loan.id == loan.id, Loan.status == LoanStatus.PENDING, Loan.version == loan.version)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError(f"Loan {loan.id} was modified concurrently")

        await self.db.commit()
        self.db.expunge(loan)
        logger.info(f"Loan offer {loan_id} withdrawn by lender {actor_id}")

    async def cancel(self, loan_id: int, actor_id: int, note: Optional[str] = None, now: Optional[datetime] = None) -> Loan:
        """Lender cancels an active loan; confirmed payments stay applied"""
        return await run_with_conflict_retry(self.db, self._cancel, loan_id, actor_id, note, now)

    async def _cancel(self, loan_id: int, actor_id: int, note: Optional[str], now: Optional[datetime]) -> Loan:
        now = now or utcnow()
        loan = await load_loan(self.db, loan_id, lock=True)
        if actor_id != loan.lender_id:
            raise UnauthorizedPartyError("Only the lender can cancel this loan")
        self._require_status(loan, LoanStatus.ACTIVE, "cancel")

        lender = await UserService.resolve_display_profile(self.db, loan.lender_id)
        note = (note or "").strip() or f"Loan cancelled by {lender.name} (@{lender.handle})"

        await update_loan_if_unchanged(
            self.db, loan, status=LoanStatus.CANCELLED, next_payment_date=None
        )
        result = await self.db.execute(
            update(LoanAgreement)
            .where(LoanAgreement.loan_id == loan.id, LoanAgreement.cancelled_at.is_(None))
            .values(cancelled_by=lender.name, cancelled_at=now, cancellation_note=note)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError(f"Agreement for loan {loan.id} was modified concurrently")

        await self.db.commit()
        logger.info(f"Loan {loan.id} cancelled by lender {actor_id} with {loan.amount_paid} repaid")
        return await load_loan(self.db, loan.id)
