from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, or_
from datetime import datetime, date
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Union
import logging

from app.core.config import settings
from app.core.database import run_with_conflict_retry
from app.core.exceptions import (
    ValidationError, NotFoundError, UnauthorizedPartyError, InvalidStateError,
    AmountOutOfRangeError
)
from app.modules.loans import calculator
from app.modules.loans.models import Loan, LoanStatus
from app.modules.loans.services import load_loan, update_loan_if_unchanged, utcnow
from app.modules.payments.models import Payment, PaymentMethod, PaymentStatus
from app.modules.payments import rails
from app.modules.users.services import UserService

logger = logging.getLogger(__name__)


def balance_epsilon() -> Decimal:
    return Decimal(str(settings.BALANCE_EPSILON))


class PaymentService:
    """
    Two-party payment reconciliation.

    A payment is recorded by one party and resolved by the other. The move out
    of pending_confirmation is a conditional UPDATE on the payment's current
    status, so duplicate or racing confirmations credit the loan once.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load_loan(self, loan_id: int, lock: bool = True) -> Loan:
        return await load_loan(self.db, loan_id, lock=lock)

    async def get_payment(self, payment_id: int) -> Payment:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    async def get_loan_payments(self, loan_id: int, user_id: int) -> List[Payment]:
        """Payments of a loan, newest first; parties only"""
        loan = await self._load_loan(loan_id, lock=False)
        if not loan.is_party(user_id):
            raise UnauthorizedPartyError("You are not a party to this loan")

        result = await self.db.execute(
            select(Payment)
            .where(Payment.loan_id == loan_id)
            .order_by(Payment.payment_date.desc(), Payment.id.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_pending_for_user(self, user_id: int) -> Dict[str, List[Payment]]:
        """Pending payments on the user's loans, split by whose turn it is"""
        result = await self.db.execute(
            select(Payment)
            .join(Loan, Loan.id == Payment.loan_id)
            .where(
                Payment.status == PaymentStatus.PENDING_CONFIRMATION,
                or_(Loan.lender_id == user_id, Loan.borrower_id == user_id)
            )
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .execution_options(populate_existing=True)
        )
        payments = list(result.scalars().all())
        return {
            "to_confirm": [p for p in payments if p.recorded_by != user_id],
            "awaiting_confirmation": [p for p in payments if p.recorded_by == user_id],
        }

    async def get_payment_link(self, loan_id: int, user_id: int, method: Union[PaymentMethod, str]) -> dict:
        """Deep link for paying the lender the next installment"""
        loan = await self._load_loan(loan_id, lock=False)
        if not loan.is_party(user_id):
            raise UnauthorizedPartyError("You are not a party to this loan")
        if loan.status != LoanStatus.ACTIVE:
            raise InvalidStateError(f"Cannot pay a loan that is {loan.status.value}")

        remaining = loan.remaining_balance
        amount = min(loan.payment_amount, remaining) if loan.payment_amount > 0 else remaining
        lender = await UserService.get_user(self.db, loan.lender_id)
        url = rails.build_payment_link(
            method,
            rails.lender_handle_for(method, lender),
            amount,
            note=f"Loan #{loan.id} repayment"
        )
        return {"method": method, "amount": amount, "url": url}

    @staticmethod
    def _require_resolver(payment: Payment, loan: Loan, actor_id: int, action: str) -> None:
        if not loan.is_party(actor_id):
            raise UnauthorizedPartyError("You are not a party to this loan")
        if actor_id == payment.recorded_by:
            raise UnauthorizedPartyError(f"You cannot {action} a payment you recorded")

    @staticmethod
    def _require_pending(payment: Payment) -> None:
        if payment.status.is_terminal:
            raise InvalidStateError(f"Payment has already been {payment.status.value}")

    # ============ Commands ============

    async def record_payment(
        self,
        loan_id: int,
        recorded_by: int,
        amount: Union[Decimal, float, int, str],
        payment_method: Union[PaymentMethod, str] = PaymentMethod.OTHER,
        notes: Optional[str] = None,
        payment_date: Optional[date] = None
    ) -> Payment:
        """Record a payment awaiting the counterparty's confirmation"""
        return await run_with_conflict_retry(
            self.db, self._record_payment,
            loan_id, recorded_by, amount, payment_method, notes, payment_date
        )

    async def _record_payment(self, loan_id, recorded_by, amount, payment_method, notes, payment_date) -> Payment:
        try:
            amount = Decimal(str(amount))
            if not amount.is_finite():
                raise AmountOutOfRangeError("Payment amount must be a finite number")
            amount = calculator.to_money(amount)
        except (InvalidOperation, ValueError):
            raise AmountOutOfRangeError("Payment amount must be a number")
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {payment_method}")

        loan = await self._load_loan(loan_id)
        if not loan.is_party(recorded_by):
            raise UnauthorizedPartyError("Only the lender or borrower can record a payment")
        if loan.status != LoanStatus.ACTIVE:
            raise InvalidStateError(f"Cannot record a payment on a loan that is {loan.status.value}")

        remaining = loan.remaining_balance
        if amount <= 0 or amount > remaining + balance_epsilon():
            raise AmountOutOfRangeError(f"Payment amount must be between $0.01 and ${remaining}")

        notes = (notes or "").strip() or f"{method.label} payment of ${amount}"
        payment = Payment(
            loan_id=loan.id,
            amount=amount,
            payment_date=payment_date or utcnow().date(),
            payment_method=method,
            notes=notes,
            recorded_by=recorded_by,
            status=PaymentStatus.PENDING_CONFIRMATION
        )
        self.db.add(payment)
        await self.db.commit()
        await self.db.refresh(payment)

        logger.info(f"Payment {payment.id} of {amount} recorded on loan {loan.id} by user {recorded_by}")
        return payment

    async def confirm_payment(self, payment_id: int, actor_id: int, now: Optional[datetime] = None) -> Payment:
        """
        Counterparty confirms a pending payment and it is applied to the loan.

        Payment flip and loan balance write commit together. A retry after a
        lost race re-reads the payment, so an already confirmed payment fails
        with InvalidStateError instead of being credited again.
        """
        return await run_with_conflict_retry(self.db, self._confirm_payment, payment_id, actor_id, now)

    async def _confirm_payment(self, payment_id: int, actor_id: int, now: Optional[datetime]) -> Payment:
        now = now or utcnow()
        payment = await self.get_payment(payment_id)
        loan = await self._load_loan(payment.loan_id)
        self._require_resolver(payment, loan, actor_id, "confirm")
        self._require_pending(payment)

        if loan.status not in (LoanStatus.ACTIVE, LoanStatus.CANCELLED):
            raise InvalidStateError(f"Cannot apply a payment to a loan that is {loan.status.value}")

        epsilon = balance_epsilon()
        new_paid = loan.amount_paid + payment.amount
        if new_paid > loan.total_amount + epsilon:
            raise AmountOutOfRangeError(
                f"Payment of ${payment.amount} exceeds the remaining balance of ${loan.remaining_balance}"
            )

        if loan.status == LoanStatus.ACTIVE and new_paid >= loan.total_amount - epsilon:
            loan_values = dict(
                status=LoanStatus.COMPLETED,
                amount_paid=loan.total_amount,
                next_payment_date=None
            )
        elif loan.status == LoanStatus.ACTIVE:
            loan_values = dict(
                amount_paid=new_paid,
                next_payment_date=calculator.next_payment_date_after(
                    now.date(), loan.payment_frequency, loan.due_date
                )
            )
        else:
            # Cancelled loans keep crediting but never complete
            loan_values = dict(amount_paid=min(new_paid, loan.total_amount))

        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING_CONFIRMATION)
            .values(status=PaymentStatus.COMPLETED, confirmed_by=actor_id, confirmed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError("Payment has already been resolved")

        await update_loan_if_unchanged(self.db, loan, **loan_values)
        await self.db.commit()

        logger.info(
            f"Payment {payment.id} confirmed by user {actor_id}; loan {loan.id} paid "
            f"{loan_values['amount_paid']}/{loan.total_amount}"
        )
        if loan_values.get("status") == LoanStatus.COMPLETED:
            logger.info(f"Loan {loan.id} completed")
        return await self.get_payment(payment.id)

    async def deny_payment(self, payment_id: int, actor_id: int, now: Optional[datetime] = None) -> Payment:
        """Counterparty rejects a pending payment; the balance is untouched"""
        return await run_with_conflict_retry(self.db, self._deny_payment, payment_id, actor_id, now)

    async def _deny_payment(self, payment_id: int, actor_id: int, now: Optional[datetime]) -> Payment:
        now = now or utcnow()
        payment = await self.get_payment(payment_id)
        loan = await self._load_loan(payment.loan_id)
        self._require_resolver(payment, loan, actor_id, "deny")
        self._require_pending(payment)

        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING_CONFIRMATION)
            .values(status=PaymentStatus.DENIED, denied_by=actor_id, denied_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError("Payment has already been resolved")
        await self.db.commit()

        logger.info(f"Payment {payment.id} denied by user {actor_id}")
        return await self.get_payment(payment.id)

    async def cancel_pending_payment(self, payment_id: int, actor_id: int) -> None:
        """Recorder deletes their own payment before it is resolved"""
        await run_with_conflict_retry(self.db, self._cancel_pending_payment, payment_id, actor_id)

    async def _cancel_pending_payment(self, payment_id: int, actor_id: int) -> None:
        payment = await self.get_payment(payment_id)
        if actor_id != payment.recorded_by:
            raise UnauthorizedPartyError("Only the user who recorded a payment can cancel it")
        self._require_pending(payment)

        result = await self.db.execute(
            delete(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING_CONFIRMATION)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError("Payment has already been resolved")
        await self.db.commit()
        self.db.expunge(payment)

        logger.info(f"Pending payment {payment_id} cancelled by user {actor_id}")
