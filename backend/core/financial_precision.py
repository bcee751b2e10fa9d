"""
BILLING CORE - DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe financial calculations
3. Value validation (no negative amounts)
4. Rounding at calculation boundary only (banker's rounding)
5. Decimal128 conversion for MongoDB storage
"""

from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Any, Union
from bson import Decimal128
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
ZERO = Decimal('0')

Numeric = Union[float, int, str, Decimal]


class FinancialPrecisionError(Exception):
    """Raised when financial precision validation fails"""
    pass


class NegativeValueError(Exception):
    """Raised when a negative financial value is detected"""
    pass


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, bool):
        raise FinancialPrecisionError("Cannot convert bool to Decimal")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, Decimal128):
        result = value.to_decimal()
    elif isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise FinancialPrecisionError(f"Cannot convert '{value}' to Decimal")
    else:
        raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")

    if not result.is_finite():
        raise FinancialPrecisionError(f"Non-finite financial value: {value}")
    return result


def round_financial(value: Numeric) -> Decimal:
    """
    Round a value to 2 decimal places using banker's rounding.
    This should be called ONLY at calculation boundaries.
    """
    decimal_value = to_decimal(value)
    return decimal_value.quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_EVEN)


def to_float(value: Numeric) -> float:
    """
    Convert Decimal to float for JSON responses.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def validate_non_negative(value: Numeric, field_name: str) -> None:
    """
    Validate that a financial value is not negative.
    Raises NegativeValueError if validation fails.
    """
    if to_decimal(value) < ZERO:
        raise NegativeValueError(
            f"Financial value '{field_name}' cannot be negative: {value}"
        )


def validate_positive(value: Numeric, field_name: str) -> None:
    """
    Validate that a financial value is strictly positive (> 0).
    Raises NegativeValueError if validation fails.
    """
    if to_decimal(value) <= ZERO:
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}"
        )


def safe_multiply(a: Numeric, b: Numeric) -> Decimal:
    """Safe multiplication preserving precision"""
    return to_decimal(a) * to_decimal(b)


# =============================================================================
# MONGODB STORAGE CONVERSION
# =============================================================================

def to_decimal128(value: Any) -> Any:
    """
    Recursively convert Decimal values to Decimal128 for MongoDB storage.
    Non-decimal values pass through unchanged.
    """
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, dict):
        return {k: to_decimal128(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_decimal128(v) for v in value]
    return value


def from_decimal128(value: Any) -> Any:
    """Recursively convert Decimal128 values read from MongoDB back to Decimal"""
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: from_decimal128(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_decimal128(v) for v in value]
    return value
