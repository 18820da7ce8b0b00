"""
SETTLEMENT CORE - MONETARY PRECISION UTILITIES

This module provides:
1. Decimal conversion for all ledger arithmetic
2. Rounding at the storage boundary only
3. Whole-unit rounding for commission amounts (IDR has no minor unit in use)
4. Value validation (no negative amounts)
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Union
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
WHOLE_UNIT_PATTERN = Decimal('1')

Number = Union[float, int, str, Decimal]


class FinancialPrecisionError(Exception):
    """Raised when a value cannot be interpreted as money"""
    pass


class NegativeValueError(Exception):
    """Raised when a negative financial value is detected"""
    pass


def to_decimal(value: Number) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if value is None:
        return Decimal('0')
    if isinstance(value, bool):
        raise FinancialPrecisionError("Boolean is not a monetary value")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value)
        except Exception:
            raise FinancialPrecisionError(f"Cannot convert '{value}' to Decimal")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Number) -> Decimal:
    """Round to 2 decimal places (half up). Call ONLY at calculation boundaries."""
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def round_whole(value: Number) -> Decimal:
    """Round to a whole currency unit, halves away from zero."""
    return to_decimal(value).quantize(WHOLE_UNIT_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Number) -> float:
    """
    Convert back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def validate_non_negative(value: Number, field_name: str) -> None:
    """Raise NegativeValueError if value < 0"""
    if to_decimal(value) < Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' cannot be negative: {value}"
        )


def validate_positive(value: Number, field_name: str) -> None:
    """Raise NegativeValueError if value <= 0"""
    if to_decimal(value) <= Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}"
        )


def safe_multiply(a: Number, b: Number) -> Decimal:
    """Safe multiplication preserving precision"""
    return to_decimal(a) * to_decimal(b)


def safe_add(*values: Number) -> Decimal:
    """Safe addition of multiple values"""
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def safe_sum(values: Iterable[Number]) -> Decimal:
    """Sum an iterable of amounts with Decimal precision"""
    return safe_add(*list(values))


def calculate_commission_amount(base_amount: Number, rate: Number) -> Decimal:
    """
    Commission on a base amount.

    LOCKED FORMULA:
    - commission_amount = round_half_up(base_amount * rate) to whole units
    """
    validate_non_negative(base_amount, 'base_amount')
    validate_non_negative(rate, 'rate')
    return round_whole(safe_multiply(base_amount, rate))
