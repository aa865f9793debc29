"""
Test suite for the money module

Integer minor-unit arithmetic, explicit rounding and currency safety.
"""

import pytest
from decimal import Decimal

from union_ledger.currency import (
    Money, Currency, RoundingRule, round_minor, sum_money, decimal_from_string
)
from union_ledger.exceptions import CurrencyMismatch, InsufficientFunds, InvalidAmount


class TestCurrency:
    """Test currency codes and precision"""

    def test_gmd_has_two_decimal_places(self):
        assert Currency.GMD.code == "GMD"
        assert Currency.GMD.precision == 2
        assert Currency.GMD.minor_per_major == 100

    def test_jpy_has_no_minor_unit(self):
        assert Currency.JPY.minor_per_major == 1

    def test_from_code_is_case_insensitive(self):
        assert Currency.from_code("gmd") == Currency.GMD

    def test_unknown_code_rejected(self):
        with pytest.raises(InvalidAmount):
            Currency.from_code("XYZ")


class TestMoneyConstruction:
    """Test building Money values"""

    def test_minor_units_must_be_int(self):
        with pytest.raises(InvalidAmount):
            Money(Decimal('10.5'), Currency.GMD)
        with pytest.raises(InvalidAmount):
            Money(10.5, Currency.GMD)
        with pytest.raises(InvalidAmount):
            Money(True, Currency.GMD)

    def test_of_converts_major_units(self):
        assert Money.of("100.50", Currency.GMD).minor_units == 10050
        assert Money.of(Decimal("0.01"), Currency.GMD).minor_units == 1
        assert Money.of(5, Currency.JPY).minor_units == 5

    def test_of_rounds_half_up_by_default(self):
        assert Money.of("0.005", Currency.GMD).minor_units == 1
        assert Money.of("0.004", Currency.GMD).minor_units == 0

    def test_of_honours_explicit_rounding(self):
        assert Money.of("0.019", Currency.GMD, RoundingRule.DOWN).minor_units == 1
        assert Money.of("0.011", Currency.GMD, RoundingRule.UP).minor_units == 2

    def test_of_rejects_float(self):
        with pytest.raises(InvalidAmount):
            Money.of(0.1, Currency.GMD)

    def test_of_rejects_garbage(self):
        with pytest.raises(InvalidAmount):
            Money.of("abc", Currency.GMD)
        with pytest.raises(InvalidAmount):
            Money.of("NaN", Currency.GMD)

    def test_amount_is_decimal_major_units(self):
        assert Money(12345, Currency.GMD).amount == Decimal("123.45")
        assert Money(-5, Currency.GMD).amount == Decimal("-0.05")


class TestMoneyArithmetic:
    """Test exact arithmetic"""

    def test_add_and_subtract(self):
        a = Money(1000, Currency.GMD)
        b = Money(250, Currency.GMD)
        assert (a + b).minor_units == 1250
        assert (a - b).minor_units == 750

    def test_operator_subtraction_allows_negative(self):
        assert (Money(100, Currency.GMD) - Money(300, Currency.GMD)).minor_units == -200

    def test_subtract_refuses_negative_result(self):
        balance = Money(100, Currency.GMD)
        with pytest.raises(InsufficientFunds) as exc_info:
            balance.subtract(Money(101, Currency.GMD))
        assert exc_info.value.available == balance
        assert exc_info.value.requested == Money(101, Currency.GMD)

    def test_subtract_can_allow_negative(self):
        result = Money(100, Currency.GMD).subtract(Money(101, Currency.GMD), allow_negative=True)
        assert result.minor_units == -1

    def test_mixed_currencies_rejected(self):
        with pytest.raises(CurrencyMismatch):
            Money(100, Currency.GMD) + Money(100, Currency.USD)
        with pytest.raises(CurrencyMismatch):
            Money(100, Currency.GMD) < Money(100, Currency.USD)

    def test_multiply_by_rate_rounds_half_up(self):
        # 10000 * 0.01 / 12 = 8.333...
        assert Money(10000, Currency.GMD).multiply_by_rate(Decimal("0.01") / 12).minor_units == 8
        # 150 * 0.01 = 1.5
        assert Money(150, Currency.GMD).multiply_by_rate("0.01").minor_units == 2
        assert Money(150, Currency.GMD).multiply_by_rate("0.01", RoundingRule.DOWN).minor_units == 1

    def test_multiply_by_rate_rejects_float(self):
        with pytest.raises(InvalidAmount):
            Money(100, Currency.GMD).multiply_by_rate(0.5)

    def test_split_evenly_assigns_remainder_to_last_share(self):
        shares = Money(1000, Currency.GMD).split_evenly(3)
        assert [s.minor_units for s in shares] == [333, 333, 334]
        assert sum_money(shares, Currency.GMD) == Money(1000, Currency.GMD)

    def test_split_evenly_rejects_zero_parts(self):
        with pytest.raises(InvalidAmount):
            Money(1000, Currency.GMD).split_evenly(0)

    def test_negation_and_abs(self):
        assert (-Money(5, Currency.GMD)).minor_units == -5
        assert abs(Money(-5, Currency.GMD)).minor_units == 5

    def test_round_minor(self):
        assert round_minor(Decimal("2.5")) == 3
        assert round_minor(Decimal("2.5"), RoundingRule.DOWN) == 2


class TestMoneyFormatting:
    """Test display and serialization"""

    def test_to_string(self):
        assert Money(125050, Currency.GMD).to_string() == "GMD 1,250.50"
        assert Money(1000, Currency.JPY).to_string() == "JPY 1,000"

    def test_dict_round_trip(self):
        money = Money(4321, Currency.USD)
        assert money.to_dict() == {"minor_units": 4321, "currency": "USD"}
        assert Money.from_dict(money.to_dict()) == money


class TestDecimalFromString:
    """Test tolerant parsing of user-entered amounts"""

    def test_plain_and_grouped_values(self):
        assert decimal_from_string("1250.50") == Decimal("1250.50")
        assert decimal_from_string("1,250.50") == Decimal("1250.50")
        assert decimal_from_string("D 1,250.50") == Decimal("1250.50")

    def test_comma_as_decimal_separator(self):
        assert decimal_from_string("1250,5") == Decimal("1250.5")

    def test_comma_as_thousands_separator(self):
        assert decimal_from_string("1,250") == Decimal("1250")

    def test_rejects_empty_and_garbage(self):
        with pytest.raises(InvalidAmount):
            decimal_from_string("")
        with pytest.raises(InvalidAmount):
            decimal_from_string("abc")
