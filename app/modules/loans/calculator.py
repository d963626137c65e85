"""
Simple-interest amortization for informal personal loans.

Everything here is pure: no database access and no clock reads unless the
caller omits ``today``. ``amortize`` never raises on incomplete input because
it is also used to preview terms while an offer is still being filled in.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from app.modules.loans.models import PaymentFrequency, RepaymentUnit

Number = Union[Decimal, float, int, str]

CENT = Decimal("0.01")
ZERO = Decimal("0")
DAYS_PER_MONTH = Decimal(30)
MONTHS_PER_YEAR = Decimal(12)

# Installment periods per month of term
PERIODS_PER_MONTH = {
    PaymentFrequency.WEEKLY: Decimal(52) / MONTHS_PER_YEAR,
    PaymentFrequency.BIWEEKLY: Decimal(26) / MONTHS_PER_YEAR,
    PaymentFrequency.MONTHLY: Decimal(1),
}


@dataclass(frozen=True)
class Amortization:
    total_amount: Decimal
    installment_amount: Decimal
    total_interest: Decimal
    months: Decimal

    @classmethod
    def zero(cls) -> "Amortization":
        return cls(ZERO, ZERO, ZERO, ZERO)


def to_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _to_decimal(value: Optional[Number]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    return result if result.is_finite() else None


def _coerce(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return None


def term_in_months(
    term_value: Optional[Number],
    term_unit: Union[RepaymentUnit, str],
    custom_due_date: Optional[date] = None,
    today: Optional[date] = None,
) -> Decimal:
    """Month-equivalent duration of a repayment term (0 when undeterminable)"""
    unit = _coerce(RepaymentUnit, term_unit)
    if unit is None:
        return ZERO

    if unit == RepaymentUnit.CUSTOM:
        if custom_due_date is None:
            return ZERO
        days = (custom_due_date - (today or date.today())).days
        return Decimal(days) / DAYS_PER_MONTH if days > 0 else ZERO

    value = _to_decimal(term_value)
    if value is None or value <= 0:
        return ZERO
    if unit == RepaymentUnit.DAYS:
        return value / DAYS_PER_MONTH
    if unit == RepaymentUnit.WEEKS:
        return value * Decimal(7) / DAYS_PER_MONTH
    return value


def amortize(
    principal: Optional[Number],
    annual_rate_percent: Optional[Number],
    term_value: Optional[Number],
    term_unit: Union[RepaymentUnit, str],
    cadence: Union[PaymentFrequency, str],
    custom_due_date: Optional[date] = None,
    today: Optional[date] = None,
) -> Amortization:
    """
    Compute the total repayable amount and per-installment amount.

    total = principal * (1 + rate/100 * months/12), non-compounding. The
    installment splits the total over the number of cadence periods in the
    term; cadence "none" means a single payment at the due date and an
    installment of 0. Degenerate input yields an all-zero result.
    """
    amount = _to_decimal(principal)
    rate = _to_decimal(annual_rate_percent)
    frequency = _coerce(PaymentFrequency, cadence)
    months = term_in_months(term_value, term_unit, custom_due_date, today)

    if amount is None or amount <= 0 or months <= 0 or frequency is None:
        return Amortization.zero()
    if rate is None or rate < 0:
        return Amortization.zero()

    total = amount * (1 + (rate / 100) * (months / MONTHS_PER_YEAR))

    if frequency == PaymentFrequency.NONE:
        installment = ZERO
    else:
        periods = months * PERIODS_PER_MONTH[frequency]
        installment = total / periods

    total_amount = to_money(total)
    return Amortization(
        total_amount=total_amount,
        installment_amount=to_money(installment),
        total_interest=total_amount - to_money(amount),
        months=months,
    )


def compute_due_date(
    term_value: Optional[int],
    term_unit: Union[RepaymentUnit, str],
    custom_due_date: Optional[date] = None,
    today: Optional[date] = None,
) -> Optional[date]:
    """Final due date implied by a repayment term"""
    today = today or date.today()
    unit = _coerce(RepaymentUnit, term_unit)
    if unit == RepaymentUnit.CUSTOM:
        return custom_due_date
    if unit is None or term_value is None or int(term_value) <= 0:
        return None

    n = int(term_value)
    if unit == RepaymentUnit.DAYS:
        return today + timedelta(days=n)
    if unit == RepaymentUnit.WEEKS:
        return today + timedelta(weeks=n)
    return today + relativedelta(months=n)


def add_cadence_period(start: date, cadence: Union[PaymentFrequency, str]) -> Optional[date]:
    """One repayment period after ``start``; None for cadence "none"."""
    frequency = _coerce(PaymentFrequency, cadence)
    if frequency == PaymentFrequency.WEEKLY:
        return start + timedelta(weeks=1)
    if frequency == PaymentFrequency.BIWEEKLY:
        return start + timedelta(weeks=2)
    if frequency == PaymentFrequency.MONTHLY:
        return start + relativedelta(months=1)
    return None


def next_payment_date_after(start: date, cadence: Union[PaymentFrequency, str], due_date: Optional[date]) -> Optional[date]:
    """Next installment date; loans without a cadence are due in full at the due date."""
    return add_cadence_period(start, cadence) or due_date
