"""
Money helpers.

Amounts are Decimals everywhere, but anything that compares
sums (the debit/credit balance law, settlement limits) goes
through integer minor units so accumulated rounding can never
make two equal totals look different.
"""

from decimal import Decimal, ROUND_HALF_UP

from ledger_core.config import get_settings

ZERO = Decimal("0")


def _exponent() -> Decimal:
    places = get_settings().MONEY_DECIMAL_PLACES
    return Decimal(1).scaleb(-places)


def quantize(amount) -> Decimal:
    """Round an amount to the configured currency precision."""
    if amount is None:
        return ZERO.quantize(_exponent())
    return Decimal(str(amount)).quantize(_exponent(), rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    """Convert an amount to an integer count of minor units (cents)."""
    places = get_settings().MONEY_DECIMAL_PLACES
    return int(quantize(amount).scaleb(places))


def from_minor_units(units: int) -> Decimal:
    places = get_settings().MONEY_DECIMAL_PLACES
    return Decimal(units).scaleb(-places).quantize(_exponent())


def convert(amount, exchange_rate) -> Decimal:
    """Convert a foreign-currency amount to home currency."""
    return quantize(Decimal(str(amount)) * Decimal(str(exchange_rate or 1)))


def money_equal(left, right) -> bool:
    return to_minor_units(left) == to_minor_units(right)
