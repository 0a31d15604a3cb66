"""
Test suite for currency module

Tests Money arithmetic, amount parsing of user input and display formatting
with Indian digit grouping.
"""

import pytest
from decimal import Decimal

from core_lending.currency import (
    Currency, Money, format_amount, parse_amount, quantize_amount, to_money
)
from core_lending.errors import ValidationError


class TestMoney:
    """Test Money value object"""

    def test_rounds_to_currency_precision(self):
        assert Money(Decimal("10.005")).amount == Decimal("10.01")
        assert Money("99.994").amount == Decimal("99.99")

    def test_addition_and_subtraction(self):
        total = Money(Decimal("100.50")) + Money(Decimal("0.25"))
        assert total == Money(Decimal("100.75"))
        assert (total - Money(Decimal("100.75"))).is_zero()

    def test_currency_mismatch_raises(self):
        with pytest.raises(ValueError):
            Money(Decimal("1"), Currency.INR) + Money(Decimal("1"), Currency.USD)

    def test_comparisons(self):
        assert Money(Decimal("5")) < Money(Decimal("6"))
        assert Money(Decimal("6")) >= Money(Decimal("6.00"))
        assert Money(Decimal("0.01")).is_positive()
        assert not Money.zero().is_positive()

    def test_to_string_uses_rupee_symbol(self):
        assert Money(Decimal("250000")).to_string() == "₹2,50,000.00"


class TestParseAmount:
    """Test parsing of user-entered amounts"""

    def test_indian_grouping(self):
        assert parse_amount("1,00,000") == Decimal("100000")

    def test_western_grouping(self):
        assert parse_amount("100,000") == Decimal("100000")

    def test_symbol_and_spaces(self):
        assert parse_amount("₹ 1,234.50") == Decimal("1234.50")

    def test_rs_prefix(self):
        assert parse_amount("Rs. 500") == Decimal("500")

    def test_plain_number(self):
        assert parse_amount("100000") == Decimal("100000")

    def test_numeric_types(self):
        assert parse_amount(2500) == Decimal("2500")
        assert parse_amount(Decimal("12.5")) == Decimal("12.5")
        assert parse_amount(0.1) == Decimal("0.1")

    @pytest.mark.parametrize("value", ["abc", "12abc", "", "1..2", "1,", "--5"])
    def test_rejects_non_numeric(self, value):
        with pytest.raises(ValidationError):
            parse_amount(value)

    def test_rejects_booleans(self):
        with pytest.raises(ValidationError):
            parse_amount(True)

    def test_rejects_non_finite(self):
        with pytest.raises(ValidationError):
            parse_amount(Decimal("NaN"))


class TestFormatAmount:
    """Test display formatting"""

    def test_lakh_grouping(self):
        assert format_amount(Decimal("100000")) == "₹1,00,000.00"

    def test_crore_grouping(self):
        assert format_amount("12345678.9") == "₹1,23,45,678.90"

    def test_small_amount(self):
        assert format_amount(999) == "₹999.00"

    def test_negative_amount(self):
        assert format_amount("-1500") == "-₹1,500.00"

    def test_other_currency_uses_thousands(self):
        assert format_amount(100000, Currency.USD) == "$100,000.00"

    def test_round_trip(self):
        for value in [Decimal("100000.00"), Decimal("1234567.89"), Decimal("0.50")]:
            assert parse_amount(format_amount(value)) == value

    @pytest.mark.parametrize("value", [0, 1, Decimal("999999.99"), "1,00,000"])
    def test_parse_format_parse_is_stable(self, value):
        assert parse_amount(format_amount(parse_amount(value))) == parse_amount(value)


class TestHelpers:

    def test_quantize_amount(self):
        assert quantize_amount(Decimal("1.235")) == Decimal("1.24")

    def test_quantize_amount_beyond_precision(self):
        with pytest.raises(ValidationError):
            quantize_amount(Decimal("1" + "0" * 30))

    def test_money_beyond_precision(self):
        with pytest.raises(ValidationError):
            Money("1" + "0" * 30)

    def test_to_money(self):
        assert to_money("₹1,500") == Money(Decimal("1500"))
