"""
Tests for two-party payment reconciliation.
"""
import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from sqlalchemy import update

from app.core.exceptions import (
    UnauthorizedPartyError, InvalidStateError, AmountOutOfRangeError,
    ConcurrencyConflictError, ValidationError, NotFoundError
)
from app.modules.loans.models import Loan, LoanStatus
from app.modules.loans.services import LoanAgreementService, update_loan_if_unchanged
from app.modules.payments.models import PaymentMethod, PaymentStatus
from app.modules.payments.services import PaymentService


async def loan_state(db_session, loan_id):
    return await LoanAgreementService(db_session).get_loan(loan_id)


async def assert_balance_invariant(db_session, loan_id):
    loan = await loan_state(db_session, loan_id)
    assert Decimal("0") <= loan.amount_paid <= loan.total_amount


@pytest.mark.unit
@pytest.mark.asyncio
class TestRecordPayment:
    """Recording a payment leaves the balance alone"""

    async def test_record_creates_pending_payment(self, db_session, active_loan_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(
            active_loan_id, borrower_id, Decimal("90"), PaymentMethod.VENMO,
            payment_date=date(2026, 2, 1)
        )

        assert payment.status == PaymentStatus.PENDING_CONFIRMATION
        assert payment.amount == Decimal("90.00")
        assert payment.recorded_by == borrower_id
        assert payment.payment_date == date(2026, 2, 1)
        assert payment.notes == "Venmo payment of $90.00"

        loan = await loan_state(db_session, active_loan_id)
        assert loan.amount_paid == Decimal("0")

    async def test_lender_can_record_too(self, db_session, active_loan_id, lender_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, lender_id, "20", "cash", notes="Handed over at lunch")
        assert payment.recorded_by == lender_id
        assert payment.notes == "Handed over at lunch"

    async def test_outsider_cannot_record(self, db_session, active_loan_id, outsider_id):
        service = PaymentService(db_session)
        with pytest.raises(UnauthorizedPartyError):
            await service.record_payment(active_loan_id, outsider_id, Decimal("10"))

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), Decimal("512.52"), Decimal("10000")])
    async def test_amount_out_of_range(self, db_session, active_loan_id, borrower_id, amount):
        service = PaymentService(db_session)
        with pytest.raises(AmountOutOfRangeError):
            await service.record_payment(active_loan_id, borrower_id, amount)

    async def test_amount_within_epsilon_of_balance_is_accepted(self, db_session, active_loan_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("512.51"))
        assert payment.amount == Decimal("512.51")

    @pytest.mark.parametrize("amount", ["NaN", "Infinity", "-Infinity", "ten"])
    async def test_non_numeric_amount(self, db_session, active_loan_id, borrower_id, amount):
        service = PaymentService(db_session)
        with pytest.raises(AmountOutOfRangeError):
            await service.record_payment(active_loan_id, borrower_id, amount)

    async def test_unknown_method(self, db_session, active_loan_id, borrower_id):
        service = PaymentService(db_session)
        with pytest.raises(ValidationError):
            await service.record_payment(active_loan_id, borrower_id, Decimal("10"), "bitcoin")

    async def test_pending_loan_rejects_payments(self, db_session, pending_loan_id, borrower_id):
        service = PaymentService(db_session)
        with pytest.raises(InvalidStateError):
            await service.record_payment(pending_loan_id, borrower_id, Decimal("10"))


@pytest.mark.unit
@pytest.mark.asyncio
class TestConfirmPayment:
    """Confirmation applies a payment exactly once"""

    async def test_partial_payment_advances_schedule(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("90"))
        payment_id = payment.id

        confirmed_at = datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc)
        payment = await service.confirm_payment(payment_id, lender_id, now=confirmed_at)

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.confirmed_by == lender_id
        assert payment.confirmed_at is not None

        loan = await loan_state(db_session, active_loan_id)
        assert loan.amount_paid == Decimal("90.00")
        assert loan.status == LoanStatus.ACTIVE
        assert loan.next_payment_date == date(2026, 4, 10)
        assert loan.remaining_balance == Decimal("422.50")

    async def test_confirming_twice_credits_once(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("90"))
        payment_id = payment.id

        await service.confirm_payment(payment_id, lender_id)
        with pytest.raises(InvalidStateError):
            await service.confirm_payment(payment_id, lender_id)

        loan = await loan_state(db_session, active_loan_id)
        assert loan.amount_paid == Decimal("90.00")

    async def test_recorder_cannot_confirm_or_deny(self, db_session, active_loan_id, borrower_id, lender_id):
        service = PaymentService(db_session)
        by_borrower = await service.record_payment(active_loan_id, borrower_id, Decimal("50"))
        by_lender = await service.record_payment(active_loan_id, lender_id, Decimal("50"))

        with pytest.raises(UnauthorizedPartyError):
            await service.confirm_payment(by_borrower.id, borrower_id)
        with pytest.raises(UnauthorizedPartyError):
            await service.deny_payment(by_borrower.id, borrower_id)
        with pytest.raises(UnauthorizedPartyError):
            await service.confirm_payment(by_lender.id, lender_id)

        loan = await loan_state(db_session, active_loan_id)
        assert loan.amount_paid == Decimal("0")

    async def test_outsider_cannot_confirm(self, db_session, active_loan_id, borrower_id, outsider_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("50"))
        with pytest.raises(UnauthorizedPartyError):
            await service.confirm_payment(payment.id, outsider_id)

    async def test_final_payment_completes_loan(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        first = await service.record_payment(active_loan_id, borrower_id, Decimal("90"))
        await service.confirm_payment(first.id, lender_id)

        last = await service.record_payment(active_loan_id, borrower_id, Decimal("422.50"))
        await service.confirm_payment(last.id, lender_id)

        loan = await loan_state(db_session, active_loan_id)
        assert loan.status == LoanStatus.COMPLETED
        assert loan.amount_paid == Decimal("512.50")
        assert loan.next_payment_date is None

    async def test_payment_within_epsilon_completes_loan(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("512.49"))
        await service.confirm_payment(payment.id, lender_id)

        loan = await loan_state(db_session, active_loan_id)
        assert loan.status == LoanStatus.COMPLETED
        assert loan.amount_paid == loan.total_amount

    async def test_overshooting_confirmation_rejected(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        first = await service.record_payment(active_loan_id, borrower_id, Decimal("300"))
        second = await service.record_payment(active_loan_id, borrower_id, Decimal("300"))
        second_id = second.id

        await service.confirm_payment(first.id, lender_id)
        with pytest.raises(AmountOutOfRangeError):
            await service.confirm_payment(second_id, lender_id)

        payment = await service.get_payment(second_id)
        assert payment.status == PaymentStatus.PENDING_CONFIRMATION
        loan = await loan_state(db_session, active_loan_id)
        assert loan.amount_paid == Decimal("300.00")

    async def test_missing_payment(self, db_session, lender_id):
        service = PaymentService(db_session)
        with pytest.raises(NotFoundError):
            await service.confirm_payment(4242, lender_id)


@pytest.mark.unit
@pytest.mark.asyncio
class TestDenyAndCancel:
    """Denial and recorder cancellation"""

    async def test_deny_has_no_balance_effect(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("90"))
        payment = await service.deny_payment(payment.id, lender_id)

        assert payment.status == PaymentStatus.DENIED
        assert payment.denied_by == lender_id
        assert payment.denied_at is not None
        loan = await loan_state(db_session, active_loan_id)
        assert loan.amount_paid == Decimal("0")

    async def test_confirm_after_deny_fails(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("90"))
        payment_id = payment.id

        await service.deny_payment(payment_id, lender_id)
        with pytest.raises(InvalidStateError):
            await service.confirm_payment(payment_id, lender_id)

        loan = await loan_state(db_session, active_loan_id)
        assert loan.amount_paid == Decimal("0")

    async def test_deny_after_confirm_fails(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("90"))
        payment_id = payment.id

        await service.confirm_payment(payment_id, lender_id)
        with pytest.raises(InvalidStateError):
            await service.deny_payment(payment_id, lender_id)

        payment = await service.get_payment(payment_id)
        assert payment.status == PaymentStatus.COMPLETED

    async def test_recorder_cancels_pending_payment(self, db_session, active_loan_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("90"))
        payment_id = payment.id

        await service.cancel_pending_payment(payment_id, borrower_id)
        with pytest.raises(NotFoundError):
            await service.get_payment(payment_id)

    async def test_only_recorder_can_cancel(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("90"))
        with pytest.raises(UnauthorizedPartyError):
            await service.cancel_pending_payment(payment.id, lender_id)

    async def test_resolved_payment_cannot_be_cancelled(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("90"))
        payment_id = payment.id
        await service.confirm_payment(payment_id, lender_id)

        with pytest.raises(InvalidStateError):
            await service.cancel_pending_payment(payment_id, borrower_id)


@pytest.mark.unit
@pytest.mark.asyncio
class TestCancelledLoanPayments:
    """Pending payments outlive a cancellation"""

    async def test_pending_payment_confirmed_after_cancel(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("90"))
        payment_id = payment.id

        await LoanAgreementService(db_session).cancel(active_loan_id, lender_id)
        await service.confirm_payment(payment_id, lender_id)

        loan = await loan_state(db_session, active_loan_id)
        assert loan.status == LoanStatus.CANCELLED
        assert loan.amount_paid == Decimal("90.00")
        assert loan.next_payment_date is None

    async def test_cancelled_loan_never_completes(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("512.50"))
        payment_id = payment.id

        await LoanAgreementService(db_session).cancel(active_loan_id, lender_id)
        await service.confirm_payment(payment_id, lender_id)

        loan = await loan_state(db_session, active_loan_id)
        assert loan.status == LoanStatus.CANCELLED
        assert loan.amount_paid == Decimal("512.50")

    async def test_no_new_payments_on_cancelled_loan(self, db_session, active_loan_id, lender_id, borrower_id):
        await LoanAgreementService(db_session).cancel(active_loan_id, lender_id)
        with pytest.raises(InvalidStateError):
            await PaymentService(db_session).record_payment(active_loan_id, borrower_id, Decimal("10"))


@pytest.mark.unit
@pytest.mark.asyncio
class TestPaymentLink:
    """Pay links for the next installment"""

    async def test_link_for_active_loan(self, db_session, active_loan_id, borrower_id):
        link = await PaymentService(db_session).get_payment_link(active_loan_id, borrower_id, "cashapp")
        assert link["amount"] == Decimal("85.42")
        assert link["url"] == "https://cash.app/$alexcash/85.42"

    async def test_no_link_for_pending_offer(self, db_session, pending_loan_id, borrower_id):
        with pytest.raises(InvalidStateError):
            await PaymentService(db_session).get_payment_link(pending_loan_id, borrower_id, "venmo")

    async def test_no_link_for_completed_loan(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("512.50"))
        await service.confirm_payment(payment.id, lender_id)

        with pytest.raises(InvalidStateError):
            await service.get_payment_link(active_loan_id, borrower_id, "venmo")


@pytest.mark.unit
@pytest.mark.asyncio
class TestConcurrency:
    """Lost optimistic writes are retried or surfaced"""

    @staticmethod
    def race_loan_writes(service, db_session, times):
        """Bump the loan version behind the service's back after it reads the loan"""
        real_load = service._load_loan
        state = {"remaining": times}

        async def racing_load(loan_id, lock=True):
            loan = await real_load(loan_id, lock)
            if state["remaining"] > 0:
                state["remaining"] -= 1
                await db_session.execute(
                    update(Loan)
                    .where(Loan.id == loan_id)
                    .values(version=Loan.version + 1)
                    .execution_options(synchronize_session=False)
                )
            return loan

        service._load_loan = racing_load

    async def test_confirm_retries_after_lost_race(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("90"))
        payment_id = payment.id

        self.race_loan_writes(service, db_session, times=1)
        payment = await service.confirm_payment(payment_id, lender_id)

        assert payment.status == PaymentStatus.COMPLETED
        loan = await loan_state(db_session, active_loan_id)
        assert loan.amount_paid == Decimal("90.00")

    async def test_conflict_surfaces_after_retries(self, db_session, active_loan_id, lender_id, borrower_id):
        service = PaymentService(db_session)
        payment = await service.record_payment(active_loan_id, borrower_id, Decimal("90"))
        payment_id = payment.id

        self.race_loan_writes(service, db_session, times=100)
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await service.confirm_payment(payment_id, lender_id)
        assert exc_info.value.retryable is True

        payment = await PaymentService(db_session).get_payment(payment_id)
        assert payment.status == PaymentStatus.PENDING_CONFIRMATION
        loan = await loan_state(db_session, active_loan_id)
        assert loan.amount_paid == Decimal("0")

    async def test_stale_loan_write_conflicts(self, db_session, active_loan_id):
        loan = await loan_state(db_session, active_loan_id)

        await db_session.execute(
            update(Loan)
            .where(Loan.id == active_loan_id)
            .values(version=Loan.version + 1)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(ConcurrencyConflictError):
            await update_loan_if_unchanged(db_session, loan, status=LoanStatus.CANCELLED)
        await db_session.rollback()

        loan = await loan_state(db_session, active_loan_id)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.version == 2

    @staticmethod
    async def pin_stale_read(service, payment_id):
        """Keep serving the pending payment this session read before the other one resolved it"""
        stale = await service.get_payment(payment_id)
        assert stale.status == PaymentStatus.PENDING_CONFIRMATION

        async def stale_get_payment(requested_id):
            return stale

        service.get_payment = stale_get_payment

    async def test_second_session_confirm_credits_once(self, file_sessions, shared_pending_payment):
        ids = shared_pending_payment
        async with file_sessions() as session_a, file_sessions() as session_b:
            service_a = PaymentService(session_a)
            await self.pin_stale_read(service_a, ids["payment_id"])

            await PaymentService(session_b).confirm_payment(ids["payment_id"], ids["lender_id"])

            with pytest.raises(InvalidStateError):
                await service_a.confirm_payment(ids["payment_id"], ids["lender_id"])

        async with file_sessions() as session:
            loan = await loan_state(session, ids["loan_id"])
            assert loan.amount_paid == Decimal("90.00")
            payment = await PaymentService(session).get_payment(ids["payment_id"])
            assert payment.status == PaymentStatus.COMPLETED

    @pytest.mark.parametrize("winner, loser, outcome, paid", [
        ("deny_payment", "confirm_payment", PaymentStatus.DENIED, Decimal("0")),
        ("confirm_payment", "deny_payment", PaymentStatus.COMPLETED, Decimal("90.00")),
    ])
    async def test_confirm_and_deny_race_has_one_winner(
        self, file_sessions, shared_pending_payment, winner, loser, outcome, paid
    ):
        ids = shared_pending_payment
        async with file_sessions() as session_a, file_sessions() as session_b:
            service_a = PaymentService(session_a)
            await self.pin_stale_read(service_a, ids["payment_id"])

            await getattr(PaymentService(session_b), winner)(ids["payment_id"], ids["lender_id"])

            with pytest.raises(InvalidStateError):
                await getattr(service_a, loser)(ids["payment_id"], ids["lender_id"])

        async with file_sessions() as session:
            payment = await PaymentService(session).get_payment(ids["payment_id"])
            assert payment.status == outcome
            loan = await loan_state(session, ids["loan_id"])
            assert loan.amount_paid == paid


@pytest.mark.unit
@pytest.mark.asyncio
async def test_balance_invariant_over_interleaved_history(db_session, active_loan_id, lender_id, borrower_id):
    payments = PaymentService(db_session)
    await assert_balance_invariant(db_session, active_loan_id)

    a = (await payments.record_payment(active_loan_id, borrower_id, Decimal("100"))).id
    b = (await payments.record_payment(active_loan_id, lender_id, Decimal("200"))).id
    c = (await payments.record_payment(active_loan_id, borrower_id, Decimal("250"))).id
    await assert_balance_invariant(db_session, active_loan_id)

    await payments.confirm_payment(a, lender_id)
    await assert_balance_invariant(db_session, active_loan_id)

    await payments.deny_payment(b, borrower_id)
    await assert_balance_invariant(db_session, active_loan_id)

    with pytest.raises(InvalidStateError):
        await payments.confirm_payment(a, lender_id)
    await assert_balance_invariant(db_session, active_loan_id)

    await LoanAgreementService(db_session).cancel(active_loan_id, lender_id)
    await payments.confirm_payment(c, lender_id)
    await assert_balance_invariant(db_session, active_loan_id)

    loan = await loan_state(db_session, active_loan_id)
    assert loan.amount_paid == Decimal("350.00")
    assert loan.status == LoanStatus.CANCELLED
