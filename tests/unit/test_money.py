"""
Tests for the Decimal currency primitive.
"""
import pytest
from decimal import Decimal, ROUND_DOWN

from hypothesis import given, settings
from hypothesis import strategies as st

from propledger import (
    InvalidInput, UnknownExchangeRate,
    get_currency, to_decimal, quantize_money, minor_unit, get_rate, convert,
    to_display,
)


class TestToDecimal:

    def test_float_goes_through_str(self):
        assert to_decimal(0.1) == Decimal("0.1")

    def test_int_and_str(self):
        assert to_decimal(5) == Decimal("5")
        assert to_decimal(" 12.50 ") == Decimal("12.50")

    def test_bool_rejected(self):
        with pytest.raises(InvalidInput):
            to_decimal(True)

    @pytest.mark.parametrize("value", ["NaN", "Infinity", float("inf"), float("nan")])
    def test_non_finite_rejected(self, value):
        with pytest.raises(InvalidInput, match="finite"):
            to_decimal(value)

    def test_garbage_rejected(self):
        with pytest.raises(InvalidInput):
            to_decimal("ten naira")
        with pytest.raises(InvalidInput):
            to_decimal(None)


class TestQuantize:

    def test_half_even(self):
        assert quantize_money(Decimal("0.125")) == Decimal("0.12")
        assert quantize_money(Decimal("0.135")) == Decimal("0.14")

    def test_explicit_rounding(self):
        assert quantize_money(Decimal("0.129"), rounding=ROUND_DOWN) == Decimal("0.12")

    def test_minor_unit(self):
        assert minor_unit("NGN") == Decimal("0.01")
        assert get_currency("USD").decimal_places == 2

    def test_unknown_currency(self):
        with pytest.raises(InvalidInput, match="Unsupported currency"):
            quantize_money(Decimal("1"), "EUR")

    @given(st.decimals(min_value=Decimal("-1000000"), max_value=Decimal("1000000"),
                       places=6, allow_nan=False, allow_infinity=False))
    @settings(max_examples=100)
    def test_quantized_is_whole_minor_units(self, amount):
        """PROPERTY: quantized amounts are a whole number of minor units."""
        q = quantize_money(amount)
        assert q == q.quantize(Decimal("0.01"))
        assert abs(q - amount) <= Decimal("0.005")


class TestExchangeRates:

    def test_usd_to_ngn(self):
        assert get_rate("USD", "NGN") == Decimal("1500")
        assert convert(Decimal("10"), "USD", "NGN") == Decimal("15000.00")

    def test_ngn_to_usd_is_quantized(self):
        assert convert("1500", "NGN", "USD") == Decimal("1.00")

    def test_same_currency(self):
        assert get_rate("NGN", "NGN") == Decimal("1")

    def test_unknown_pair(self):
        with pytest.raises(UnknownExchangeRate):
            get_rate("EUR", "NGN")


def test_to_display_is_float():
    assert to_display(Decimal("12.34")) == pytest.approx(12.34)
    assert isinstance(to_display(Decimal("1")), float)
