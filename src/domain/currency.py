"""
Currency conversion.

The fare engine prices everything in a canonical currency (USD) and only
converts the final amount for display.  Exchange rates come from a
``RateProvider``; ``StaticRateTable`` is the built-in fixed table.  A live
FX feed can be plugged in by implementing ``rate(from, to)``; retrying a
flaky feed is that provider's job, not the engine's.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Protocol, Union

from .errors import UnsupportedCurrencyError

CANONICAL_CURRENCY = "USD"
CENT = Decimal("0.01")

# Units of each currency per 1 USD.
DEFAULT_USD_RATES: dict[str, float] = {
    "USD": 1.0,
    "EUR": 0.85,
    "GBP": 0.73,
    "INR": 83.0,
}

Amount = Union[Decimal, int, float, str]


class RateProvider(Protocol):
    def rate(self, from_currency: str, to_currency: str) -> float: ...


def to_money(amount: Amount) -> Decimal:
    """Coerce *amount* to a ``Decimal`` rounded half-up to cents."""
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class StaticRateTable:
    """Fixed rates quoted against a pivot currency.

    Every pair of known codes has a path through the pivot, so conversion
    works in both directions: ``rate(a, b) == 1 / rate(b, a)``.
    """

    def __init__(
        self,
        rates: Mapping[str, float] | None = None,
        pivot: str = CANONICAL_CURRENCY,
    ):
        rates = dict(DEFAULT_USD_RATES if rates is None else rates)
        normalised = {code.upper(): float(value) for code, value in rates.items()}
        for code, value in normalised.items():
            if value <= 0:
                raise ValueError(f"Rate for {code} must be positive")
        normalised.setdefault(pivot.upper(), 1.0)
        self._per_pivot = normalised
        self.pivot = pivot.upper()

    @property
    def currencies(self) -> frozenset[str]:
        return frozenset(self._per_pivot)

    def rate(self, from_currency: str, to_currency: str) -> float:
        src, dst = from_currency.upper(), to_currency.upper()
        try:
            return self._per_pivot[dst] / self._per_pivot[src]
        except KeyError:
            raise UnsupportedCurrencyError(
                f"Unsupported currency conversion: {from_currency} to {to_currency}"
            ) from None


def convert_currency(
    amount: Amount,
    from_currency: str,
    to_currency: str,
    rates: RateProvider | None = None,
) -> Decimal:
    """Convert *amount* between currencies, rounded half-up to cents."""
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    if from_currency.upper() == to_currency.upper():
        return amount
    provider = rates if rates is not None else StaticRateTable()
    rate = provider.rate(from_currency, to_currency)
    return to_money(amount * Decimal(str(rate)))
