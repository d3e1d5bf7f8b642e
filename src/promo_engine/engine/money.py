"""
Currency rounding shared by every discount calculator.

Amounts are integer minor units (cents). Calculators accumulate exact
Decimal values and call round_half_up exactly once on the final figure.
"""
from decimal import Decimal, ROUND_HALF_UP


ONE = Decimal('1')
HUNDRED = Decimal('100')


def to_decimal(value) -> Decimal:
    """Convert int/float/str/Decimal to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_half_up(value) -> int:
    """Round to the nearest minor unit, halves away from zero."""
    return int(to_decimal(value).quantize(ONE, rounding=ROUND_HALF_UP))


def percent_of(amount, percent) -> Decimal:
    """Exact percentage of an amount (not rounded)."""
    return to_decimal(amount) * to_decimal(percent) / HUNDRED
