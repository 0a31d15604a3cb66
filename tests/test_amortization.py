"""
Test suite for amortization module

The equal-installment formula is the only source of monthly payment and
total repayment figures, so its precision is checked here against known
EMI values.
"""

import pytest
from decimal import Decimal
from datetime import date

from core_lending.amortization import (
    add_months, compute_monthly_payment, compute_total_repayment, generate_schedule, summarize
)
from core_lending.currency import Money
from core_lending.errors import ValidationError


class TestMonthlyPayment:
    """Test equal monthly installment calculation"""

    def test_known_emi(self):
        """1 lakh at 12% over 12 months is the textbook ₹8,884.88 EMI"""
        payment = compute_monthly_payment(Decimal("100000"), Decimal("12"), 12)
        assert Money(payment) == Money(Decimal("8884.88"))

    def test_zero_rate_is_flat_division(self):
        assert compute_monthly_payment("12000", "0", 12) == Decimal("1000")

    def test_accepts_formatted_input(self):
        assert Money(compute_monthly_payment("₹1,00,000", 12, 12)) == Money(Decimal("8884.88"))

    def test_rejects_invalid_terms(self):
        with pytest.raises(ValidationError):
            compute_monthly_payment(0, 12, 12)
        with pytest.raises(ValidationError):
            compute_monthly_payment(1000, -1, 12)
        with pytest.raises(ValidationError):
            compute_monthly_payment(1000, 12, 0)


class TestTotalRepayment:

    def test_total_is_payment_times_months(self):
        total = compute_total_repayment(Decimal("100000"), Decimal("12"), 12)
        assert Money(total) == Money(Decimal("106618.55"))

    def test_zero_rate_total_equals_principal(self):
        assert compute_total_repayment("50000", "0", 10) == Decimal("50000")

    def test_total_exceeds_principal_with_interest(self):
        assert compute_total_repayment(10000, 10, 6) > Decimal("10000")


class TestSchedule:
    """Test schedule generation"""

    def test_schedule_pays_off_principal(self):
        schedule = generate_schedule(Decimal("100000"), Decimal("12"), 12, date(2024, 1, 15))

        assert len(schedule) == 12
        assert schedule[-1].remaining_balance.is_zero()
        total_principal = sum((e.principal_amount.amount for e in schedule), Decimal("0"))
        assert total_principal == Decimal("100000.00")

    def test_installments_are_level(self):
        schedule = generate_schedule(Decimal("100000"), Decimal("12"), 12, date(2024, 1, 15))
        for entry in schedule[:-1]:
            assert entry.payment_amount == Money(Decimal("8884.88"))
        # Final installment absorbs rounding
        assert abs(schedule[-1].payment_amount.amount - Decimal("8884.88")) <= Decimal("0.05")

    def test_first_month_interest(self):
        schedule = generate_schedule(Decimal("100000"), Decimal("12"), 12, date(2024, 1, 15))
        assert schedule[0].interest_amount == Money(Decimal("1000.00"))
        assert schedule[0].principal_amount == Money(Decimal("7884.88"))

    def test_payment_dates_are_monthly(self):
        schedule = generate_schedule(Decimal("3000"), Decimal("0"), 3, date(2024, 1, 31))
        assert [e.payment_date for e in schedule] == [
            date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)
        ]


class TestAddMonths:

    def test_month_end_clamps(self):
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)

    def test_year_rollover(self):
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)


class TestSummary:

    def test_summary_figures(self):
        summary = summarize(Decimal("100000"), Decimal("12"), 12)
        assert summary.monthly_payment == Money(Decimal("8884.88"))
        assert summary.total_repayment == Money(Decimal("106618.55"))
        assert summary.total_interest == Money(Decimal("6618.55"))
        assert summary.schedule == []

    def test_summary_includes_schedule_with_start_date(self):
        summary = summarize(Decimal("12000"), Decimal("0"), 12, first_payment_date=date(2024, 5, 1))
        assert len(summary.schedule) == 12
        assert summary.total_interest.is_zero()
