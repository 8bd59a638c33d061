"""
Money Arithmetic Module

Decimal helpers for monetary values. Amounts are always Decimal quantized to
cents with ROUND_HALF_UP; floats are never used for money.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

from .errors import ValidationError

# High precision for intermediate rate arithmetic
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

Numeric = Union[Decimal, int, str]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert an int, str or Decimal to Decimal without rounding.

    Floats are converted through their string form so that 0.1 stays 0.1.
    NaN and infinities are rejected.
    """
    if isinstance(value, bool):
        raise ValidationError("Boolean is not a monetary value")
    if not isinstance(value, Decimal):
        try:
            value = Decimal(str(value))
        except InvalidOperation:
            raise ValidationError(f"Cannot convert {value!r} to Decimal")
    if not value.is_finite():
        raise ValidationError(f"Amount must be a finite number, got {value}")
    return value


def to_money(value: Numeric) -> Decimal:
    """Convert and round to cents"""
    try:
        return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"Amount {value!r} is too large")


def sum_money(values) -> Decimal:
    """Sum an iterable of amounts, returning cents"""
    total = ZERO
    for value in values:
        total += value
    return to_money(total)


def format_money(amount: Decimal) -> str:
    """Format for display and log output"""
    return f"{to_money(amount):,.2f}"
