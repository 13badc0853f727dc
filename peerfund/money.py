"""
Money helpers

Dollar amounts are Decimal quantized to cents with ROUND_HALF_UP; wallet
balances are integer cents. Floats are converted through str() so binary
rounding never leaks into a persisted value.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

Number = Union[Decimal, int, str, float]


def to_decimal(value: Number) -> Decimal:
    """Convert int/str/float/Decimal to Decimal without float artifacts"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round2(value: Number) -> Decimal:
    """Round half-up to two decimal places"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(dollars: Number) -> int:
    """Convert a dollar amount to integer cents (half-up)"""
    return int((to_decimal(dollars) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Convert integer cents to a dollar Decimal"""
    return (Decimal(int(cents)) / 100).quantize(CENT)


def format_usd(amount: Number) -> str:
    """Format a dollar amount for user-facing messages, e.g. $1,234.50"""
    return f"${round2(amount):,.2f}"
