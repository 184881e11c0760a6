"""Currency registry and cent arithmetic.

All stored money is integer cents (the smallest unit of the currency).
Intermediate values are Decimals and are rounded explicitly by the
caller with one of the helpers below.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Mapping

USD = "usd"

_ONE = Decimal("1")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Currency:
    """A supported currency."""

    code: str
    symbol: str
    unit_scaling_factor: int = 100

    @property
    def is_zero_decimal(self) -> bool:
        return self.unit_scaling_factor == 1


CURRENCIES: dict[str, Currency] = {
    c.code: c
    for c in (
        Currency("usd", "$"),
        Currency("eur", "€"),
        Currency("gbp", "£"),
        Currency("cad", "C$"),
        Currency("aud", "A$"),
        Currency("chf", "CHF"),
        Currency("sgd", "S$"),
        Currency("brl", "R$"),
        Currency("inr", "₹"),
        Currency("mxn", "MX$"),
        Currency("pln", "zł"),
        Currency("jpy", "¥", unit_scaling_factor=1),
        Currency("krw", "₩", unit_scaling_factor=1),
    )
}

# Units of currency per 1 USD.
DEFAULT_RATES: dict[str, Decimal] = {
    "usd": Decimal("1"),
    "eur": Decimal("0.92"),
    "gbp": Decimal("0.79"),
    "cad": Decimal("1.36"),
    "aud": Decimal("1.52"),
    "chf": Decimal("0.88"),
    "sgd": Decimal("1.35"),
    "brl": Decimal("5.00"),
    "inr": Decimal("83.20"),
    "mxn": Decimal("17.10"),
    "pln": Decimal("4.00"),
    "jpy": Decimal("150.00"),
    "krw": Decimal("1330.00"),
}


class UnsupportedCurrencyError(ValueError):
    """Raised for currency codes the ledger does not know."""

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Unsupported currency: {currency}")


def get_currency(code: str) -> Currency:
    try:
        return CURRENCIES[code.lower()]
    except KeyError:
        raise UnsupportedCurrencyError(code) from None


def get_rate(currency: str, overrides: Mapping[str, Decimal] | None = None) -> Decimal:
    """Return units of ``currency`` per 1 USD."""
    code = currency.lower()
    if overrides and code in overrides:
        return Decimal(overrides[code])
    get_currency(code)
    return DEFAULT_RATES[code]


def round_half_up(value: Decimal | int) -> int:
    """Round to the nearest integer, ties away from zero."""
    return int(Decimal(value).quantize(_ONE, rounding=ROUND_HALF_UP))


def floor_cents(value: Decimal | int) -> int:
    return int(Decimal(value).quantize(_ONE, rounding=ROUND_FLOOR))


def ceil_cents(value: Decimal | int) -> int:
    return int(Decimal(value).quantize(_ONE, rounding=ROUND_CEILING))


def get_usd_cents(currency: str, amount_cents: int, rate: Decimal | None = None) -> int:
    """Convert an amount in the currency's smallest unit to USD cents."""
    if currency.lower() == USD:
        return amount_cents
    scaling = get_currency(currency).unit_scaling_factor
    rate = rate if rate is not None else get_rate(currency)
    return round_half_up(Decimal(amount_cents) / scaling * _HUNDRED / rate)


def usd_cents_to_currency(currency: str, usd_cents: int, rate: Decimal | None = None) -> int:
    """Convert USD cents to the currency's smallest unit."""
    if currency.lower() == USD:
        return usd_cents
    scaling = get_currency(currency).unit_scaling_factor
    rate = rate if rate is not None else get_rate(currency)
    return round_half_up(Decimal(usd_cents) / _HUNDRED * rate * scaling)


def currency_amount_to_cents(currency: str, amount: Decimal | str | int) -> int:
    """Convert a decimal amount in currency units (``"9.99"``) to cents.

    Fractions below the smallest unit are truncated.
    """
    scaling = get_currency(currency).unit_scaling_factor
    return int(Decimal(str(amount)) * scaling)


def format_cents(currency: str, cents: int) -> str:
    """Human readable amount, e.g. ``$12.30`` or ``¥1500``."""
    cur = get_currency(currency)
    if cur.is_zero_decimal:
        return f"{cur.symbol}{cents}"
    sign = "-" if cents < 0 else ""
    return f"{sign}{cur.symbol}{Decimal(abs(cents)) / _HUNDRED:.2f}"
