"""
AvaBuilder Agent Transforms

Conversion of human-denominated amounts to the asset's smallest unit.
Computed on decimal digits, never by float multiplication, so repeated
conversions of the same input always produce the same integer.
"""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Literal

from .errors import ValidationError

# Largest value an ERC-20 uint256 amount can hold
MAX_UINT256 = 2**256 - 1

USDC_DECIMALS = 6


class TransformError(ValidationError):
    """Raised when transform fails."""
    pass


def _to_plain_string(value: int | float | str | Decimal) -> str:
    if isinstance(value, bool):
        raise TransformError(f"Invalid numeric value: {value}")
    if isinstance(value, float):
        # str() keeps the shortest round-tripping repr; format() drops exponents
        return format(Decimal(str(value)), "f")
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value).strip()


def transform_to_canonical(
    value: int | float | str | Decimal,
    precision: int,
    mode: Literal["strict", "round", "truncate"] = "strict",
) -> int:
    """
    Transform a financial value to its canonical integer representation.

    Args:
        value: The input value (string or Decimal recommended)
        precision: Number of decimal places (6 for USDC)
        mode: 'strict' (default) | 'round' | 'truncate'
            - strict: reject if input has too many decimal places
            - round: round half-up to precision
            - truncate: silently truncate to precision

    Returns:
        Integer in smallest unit

    Raises:
        TransformError: If value exceeds precision in strict mode, or overflows

    Examples:
        >>> transform_to_canonical("0.01", 6)
        10000
        >>> transform_to_canonical("1.2345", 6)
        1234500
        >>> transform_to_canonical("0.0000005", 6, "round")
        1
    """
    str_value = _to_plain_string(value)

    if not re.match(r"^[+-]?\d+(\.\d+)?$", str_value):
        raise TransformError(f"Invalid numeric value: {value}")

    is_negative = str_value.startswith("-")
    str_value = str_value.lstrip("+-")

    if "." in str_value:
        whole, dec = str_value.split(".")
    else:
        whole, dec = str_value, ""

    base = 10 ** precision

    def build(dec_digits: str) -> int:
        """Build canonical integer from whole + first N decimal digits."""
        padded = dec_digits.ljust(precision, "0")[:precision]
        return int(whole) * base + (int(padded) if padded else 0)

    if len(dec) > precision:
        if mode == "strict":
            raise TransformError(
                f"Value {value} has {len(dec)} decimal places, max is {precision}"
            )

        truncated = build(dec[:precision])

        if mode == "truncate":
            result = truncated
        else:
            # round half-up (away from zero)
            result = truncated + 1 if int(dec[precision]) >= 5 else truncated
    else:
        result = build(dec)

    if is_negative:
        result = -result

    if abs(result) > MAX_UINT256:
        raise TransformError(f"Transformed value {result} exceeds uint256 range")

    return result


def to_atomic_units(
    amount: int | float | str | Decimal,
    decimals: int = USDC_DECIMALS,
) -> int:
    """
    Convert a human amount into the asset's smallest unit, rounding half-up.

    Examples:
        >>> to_atomic_units(0.01)
        10000
        >>> to_atomic_units("1.2345")
        1234500
    """
    return transform_to_canonical(amount, decimals, "round")


def parse_usd_price(price: str | int | float | Decimal, decimals: int = USDC_DECIMALS) -> int:
    """
    Parse a route price such as "$0.01" into atomic units of a USD stablecoin.

    Examples:
        >>> parse_usd_price("$0.01")
        10000
    """
    raw = price.strip().lstrip("$") if isinstance(price, str) else price
    result = transform_to_canonical(raw, decimals, "strict")
    if result <= 0:
        raise TransformError(f"Price must be positive: {price}")
    return result


def format_tvl(tvl: float) -> str:
    """
    Format a USD value with a B/M/K suffix.

    Examples:
        >>> format_tvl(1_234_000_000)
        '$1.23B'
        >>> format_tvl(950)
        '$950.00'
    """
    if tvl >= 1e9:
        return f"${tvl / 1e9:.2f}B"
    if tvl >= 1e6:
        return f"${tvl / 1e6:.2f}M"
    if tvl >= 1e3:
        return f"${tvl / 1e3:.2f}K"
    return f"${tvl:.2f}"
