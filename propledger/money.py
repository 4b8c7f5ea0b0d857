"""
money.py - Decimal Currency Primitive

Exact fixed-point money arithmetic for the ledger. Every amount that flows
through the ledger is a Decimal rounded to its currency's minor unit; floats
only appear at the presentation boundary (to_display).

The FX table is a flat static lookup. There is no live-rate integration.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Any, Dict

from .core import DEFAULT_CURRENCY, InvalidInput, UnknownExchangeRate


@dataclass(frozen=True, slots=True)
class Currency:
    """
    A currency the ledger can store.

    Attributes:
        code: ISO 4217 code (e.g., "NGN").
        decimal_places: Digits of the minor unit (2 for kobo / cents).
    """
    code: str
    decimal_places: int = 2

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal("0.01")."""
        return Decimal(10) ** -self.decimal_places

    def round(self, value: Decimal, rounding: str = ROUND_HALF_EVEN) -> Decimal:
        """Round a value to this currency's minor unit using quantize."""
        return to_decimal(value).quantize(self.minor_unit, rounding=rounding)


CURRENCIES: Dict[str, Currency] = {
    "NGN": Currency("NGN", 2),
    "USD": Currency("USD", 2),
}

# 1 USD = 1500 NGN (static approximation)
FX_RATES: Dict[str, Dict[str, Decimal]] = {
    "USD": {"NGN": Decimal("1500"), "USD": Decimal("1")},
    "NGN": {"USD": Decimal("1") / Decimal("1500"), "NGN": Decimal("1")},
}


def get_currency(code: str) -> Currency:
    """Look up a registered currency, raising InvalidInput for unknown codes."""
    try:
        return CURRENCIES[code]
    except KeyError:
        raise InvalidInput(f"Unsupported currency: {code!r}") from None


def to_decimal(value: Any) -> Decimal:
    """
    Convert a value to Decimal without passing through binary floating point.

    Floats are converted via str() so 0.1 becomes Decimal("0.1"), not
    Decimal("0.1000000000000000055511151231257827...").

    Raises:
        InvalidInput: for booleans, non-numeric values, NaN or infinity.
    """
    if isinstance(value, bool):
        raise InvalidInput(f"Expected a number, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, (float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidInput(f"Not a valid amount: {value!r}") from None
    else:
        raise InvalidInput(f"Expected a number, got {type(value).__name__}")
    if result.is_nan() or result.is_infinite():
        raise InvalidInput(f"Amount must be finite, got {value!r}")
    return result


def quantize_money(
    amount: Any,
    currency: str = DEFAULT_CURRENCY,
    rounding: str = ROUND_HALF_EVEN,
) -> Decimal:
    """Round an amount to the minor unit of `currency`."""
    return get_currency(currency).round(amount, rounding=rounding)


def minor_unit(currency: str = DEFAULT_CURRENCY) -> Decimal:
    return get_currency(currency).minor_unit


def get_rate(from_currency: str, to_currency: str) -> Decimal:
    """Return the static exchange rate for a currency pair."""
    if from_currency == to_currency:
        return Decimal("1")
    try:
        return FX_RATES[from_currency][to_currency]
    except KeyError:
        raise UnknownExchangeRate(
            f"No exchange rate found for {from_currency} to {to_currency}"
        ) from None


def convert(amount: Any, from_currency: str, to_currency: str) -> Decimal:
    """
    Convert an amount between currencies using the static FX table.

    The result is rounded to the target currency's minor unit.
    """
    rate = get_rate(from_currency, to_currency)
    return quantize_money(to_decimal(amount) * rate, to_currency)


def to_display(amount: Decimal) -> float:
    """
    Convert a ledger amount to a float for charts and display widgets.

    This is the only place the ledger produces a float; never feed the
    result back into ledger arithmetic.
    """
    return float(amount)
