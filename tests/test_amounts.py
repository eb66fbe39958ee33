"""
Test suite for amounts module

Tests exact decimal parsing of incoming amounts and the positive /
non-negative gates used by the registry and the ledger engine.
All monetary values must stay Decimal end to end.
"""

import pytest
from decimal import Decimal

from bank_ledger.amounts import (
    to_decimal, positive_amount, non_negative_amount, format_amount, ZERO,
    exact_add, exact_subtract
)
from bank_ledger.errors import InvalidAmount


class TestToDecimal:
    """Test conversion of incoming values to Decimal"""

    def test_accepts_common_representations(self):
        """Test strings, ints, Decimals and floats all convert exactly"""
        assert to_decimal("10.50") == Decimal("10.50")
        assert to_decimal(10) == Decimal("10.00")
        assert to_decimal(Decimal("7.1")) == Decimal("7.10")
        assert to_decimal(" 1_000.25 ") == Decimal("1000.25")

    def test_float_goes_through_shortest_repr(self):
        """Test 0.1 becomes exactly 0.10, not its binary expansion"""
        assert to_decimal(0.1) == Decimal("0.10")
        assert to_decimal(19.99) == Decimal("19.99")

    def test_result_is_quantized_to_scale(self):
        """Test the result carries exactly `scale` places"""
        amount = to_decimal("5", scale=2)
        assert str(amount) == "5.00"

        assert str(to_decimal("5", scale=0)) == "5"

    def test_rejects_excess_precision(self):
        """Test values finer than the minor unit are malformed, never rounded"""
        with pytest.raises(InvalidAmount):
            to_decimal("1.005")

        with pytest.raises(InvalidAmount):
            to_decimal("1.5", scale=0)

    @pytest.mark.parametrize("value", [
        "abc", "", "1e5", "NaN", "Infinity", "1.2.3", "--1",
        Decimal("NaN"), Decimal("Infinity"), float("inf"), float("nan"),
        True, None, [1],
    ])
    def test_rejects_malformed_values(self, value):
        """Test anything that is not a finite number is InvalidAmount"""
        with pytest.raises(InvalidAmount):
            to_decimal(value)

    def test_rejects_values_beyond_context_precision(self):
        """Test huge values surface as InvalidAmount instead of decimal errors"""
        with pytest.raises(InvalidAmount):
            to_decimal("1" + "0" * 30)

    def test_invalid_amount_is_a_value_error(self):
        """Test callers catching ValueError still see malformed amounts"""
        with pytest.raises(ValueError):
            to_decimal("not money")


class TestAmountGates:
    """Test positive and non-negative amount checks"""

    def test_positive_amount(self):
        assert positive_amount("0.01") == Decimal("0.01")

        for value in (0, "0.00", -1, "-0.01"):
            with pytest.raises(InvalidAmount):
                positive_amount(value)

    def test_non_negative_amount(self):
        assert non_negative_amount(0) == ZERO
        assert non_negative_amount("250") == Decimal("250.00")

        with pytest.raises(InvalidAmount):
            non_negative_amount("-0.01")

    def test_format_amount(self):
        assert format_amount(Decimal("5")) == "5.00"
        assert format_amount(Decimal("1234.5")) == "1234.50"
        assert format_amount(Decimal("3"), scale=0) == "3"


class TestExactArithmetic:
    """Test balance arithmetic refuses to round"""

    def test_exact_results(self):
        assert exact_add(Decimal("0.10"), Decimal("0.20")) == Decimal("0.30")
        assert exact_subtract(Decimal("1.00"), Decimal("0.01")) == Decimal("0.99")

    def test_result_beyond_precision_is_rejected(self):
        largest = Decimal("99999999999999999999999999.99")

        with pytest.raises(InvalidAmount):
            exact_add(largest, largest)
        with pytest.raises(InvalidAmount):
            exact_add(largest, Decimal("0.01"))

    def test_subtraction_at_the_limit_is_exact(self):
        largest = Decimal("99999999999999999999999999.99")
        assert exact_subtract(largest, largest) == ZERO
