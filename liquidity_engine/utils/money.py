"""
Decimal helpers for currency and share quantities.

Every amount in the engine is a ``Decimal`` built from a string, never from
float arithmetic. Values are carried at full context precision and only
quantized for presentation and persistence.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from liquidity_engine.utils.constants import (
    MONEY_PLACES, SHARES_PLACES,
    MONEY_TOLERANCE, SHARES_TOLERANCE, ZERO, ONE_HUNDRED,
)

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert to Decimal, going through ``str`` for floats."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("Booleans are not amounts")
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not a decimal amount: {value!r}") from e


def quantize_money(value: Number) -> Decimal:
    return to_decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def quantize_shares(value: Number) -> Decimal:
    return to_decimal(value).quantize(SHARES_PLACES, rounding=ROUND_HALF_UP)


def safe_divide(numerator: Number, denominator: Number) -> Decimal:
    """Divide, returning zero for a zero denominator."""
    denominator = to_decimal(denominator)
    if denominator == ZERO:
        return ZERO
    return to_decimal(numerator) / denominator


def percentage_of(amount: Number, percentage: Number) -> Decimal:
    """``amount * percentage / 100``."""
    return to_decimal(amount) * to_decimal(percentage) / ONE_HUNDRED


def percent_change(current: Number, base: Number) -> Decimal:
    """Relative change from ``base`` to ``current`` in percent."""
    base = to_decimal(base)
    if base == ZERO:
        return ZERO
    return (to_decimal(current) - base) / base * ONE_HUNDRED


def money_close(a: Number, b: Number, tolerance: Decimal = MONEY_TOLERANCE) -> bool:
    return abs(to_decimal(a) - to_decimal(b)) <= tolerance


def shares_close(a: Number, b: Number, tolerance: Decimal = SHARES_TOLERANCE) -> bool:
    return abs(to_decimal(a) - to_decimal(b)) <= tolerance


def is_dust(shares: Number) -> bool:
    """True when a share quantity is zero within tolerance."""
    return abs(to_decimal(shares)) <= SHARES_TOLERANCE


def decimal_sum(values) -> Decimal:
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return total
