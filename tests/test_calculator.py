"""
Tests for the amortization calculator and date helpers.
"""
import pytest
from decimal import Decimal
from datetime import date

from app.modules.loans import calculator
from app.modules.loans.models import PaymentFrequency, RepaymentUnit


TODAY = date(2026, 1, 1)


@pytest.mark.unit
class TestAmortize:
    """Totals and installments"""

    def test_zero_interest_monthly(self):
        result = calculator.amortize(1000, 0, 12, RepaymentUnit.MONTHS, PaymentFrequency.MONTHLY)
        assert result.total_amount == Decimal("1000.00")
        assert result.installment_amount == Decimal("83.33")
        assert result.total_interest == Decimal("0.00")

    def test_simple_interest_over_a_year(self):
        result = calculator.amortize(1000, 6, 12, RepaymentUnit.MONTHS, PaymentFrequency.MONTHLY)
        assert result.total_amount == Decimal("1060.00")
        assert result.installment_amount == Decimal("88.33")
        assert result.total_interest == Decimal("60.00")

    def test_six_month_offer(self):
        result = calculator.amortize("500", "5", 6, "months", "monthly")
        assert result.total_amount == Decimal("512.50")
        assert result.installment_amount == Decimal("85.42")

    def test_weekly_cadence_splits_into_weeks(self):
        result = calculator.amortize(1000, 0, 3, RepaymentUnit.MONTHS, PaymentFrequency.WEEKLY)
        # 3 months * 52 / 12 = 13 weekly installments
        assert result.installment_amount == Decimal("76.92")

    def test_biweekly_cadence(self):
        result = calculator.amortize(1300, 0, 6, RepaymentUnit.MONTHS, PaymentFrequency.BIWEEKLY)
        assert result.installment_amount == Decimal("100.00")

    def test_days_term(self):
        result = calculator.amortize(1000, 12, 30, RepaymentUnit.DAYS, PaymentFrequency.MONTHLY)
        assert result.total_amount == Decimal("1010.00")
        assert result.installment_amount == Decimal("1010.00")

    def test_weeks_term(self):
        result = calculator.amortize(1000, 6, 6, RepaymentUnit.WEEKS, PaymentFrequency.NONE)
        # 42 days = 1.4 months
        assert result.total_amount == Decimal("1007.00")

    def test_custom_due_date(self):
        result = calculator.amortize(
            1000, 6, None, RepaymentUnit.CUSTOM, PaymentFrequency.MONTHLY,
            custom_due_date=date(2026, 3, 2), today=TODAY
        )
        assert result.months == Decimal(2)
        assert result.total_amount == Decimal("1010.00")
        assert result.installment_amount == Decimal("505.00")

    def test_no_cadence_has_no_installment(self):
        result = calculator.amortize(1000, 6, 12, RepaymentUnit.MONTHS, PaymentFrequency.NONE)
        assert result.total_amount == Decimal("1060.00")
        assert result.installment_amount == Decimal("0.00")

    @pytest.mark.parametrize("args", [
        (0, 5, 6, "months", "monthly"),
        (-10, 5, 6, "months", "monthly"),
        (None, 5, 6, "months", "monthly"),
        (500, 5, 0, "months", "monthly"),
        (500, 5, None, "months", "monthly"),
        (500, -1, 6, "months", "monthly"),
        (500, 5, 6, "fortnights", "monthly"),
        (500, 5, 6, "months", "daily"),
        ("abc", 5, 6, "months", "monthly"),
    ])
    def test_degenerate_input_yields_zero(self, args):
        result = calculator.amortize(*args)
        assert result == calculator.Amortization.zero()

    def test_custom_date_in_the_past_yields_zero(self):
        result = calculator.amortize(
            500, 5, None, RepaymentUnit.CUSTOM, PaymentFrequency.MONTHLY,
            custom_due_date=date(2025, 12, 1), today=TODAY
        )
        assert result.total_amount == Decimal("0")


@pytest.mark.unit
class TestDates:
    """Due dates and cadence periods"""

    def test_due_date_in_days(self):
        assert calculator.compute_due_date(10, RepaymentUnit.DAYS, today=TODAY) == date(2026, 1, 11)

    def test_due_date_in_weeks(self):
        assert calculator.compute_due_date(2, RepaymentUnit.WEEKS, today=TODAY) == date(2026, 1, 15)

    def test_due_date_in_months_clamps_to_month_end(self):
        assert calculator.compute_due_date(1, RepaymentUnit.MONTHS, today=date(2026, 1, 31)) == date(2026, 2, 28)

    def test_custom_due_date_is_used_as_given(self):
        target = date(2026, 7, 4)
        assert calculator.compute_due_date(None, RepaymentUnit.CUSTOM, target, today=TODAY) == target

    def test_missing_term_has_no_due_date(self):
        assert calculator.compute_due_date(None, RepaymentUnit.MONTHS, today=TODAY) is None

    @pytest.mark.parametrize("cadence,expected", [
        (PaymentFrequency.WEEKLY, date(2026, 1, 8)),
        (PaymentFrequency.BIWEEKLY, date(2026, 1, 15)),
        (PaymentFrequency.MONTHLY, date(2026, 2, 1)),
        (PaymentFrequency.NONE, None),
    ])
    def test_add_cadence_period(self, cadence, expected):
        assert calculator.add_cadence_period(TODAY, cadence) == expected

    def test_next_payment_falls_back_to_due_date(self):
        due = date(2026, 6, 1)
        assert calculator.next_payment_date_after(TODAY, PaymentFrequency.NONE, due) == due
        assert calculator.next_payment_date_after(TODAY, PaymentFrequency.MONTHLY, due) == date(2026, 2, 1)
