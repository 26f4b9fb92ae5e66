"""Monetary values.

Amounts travel through the code as ``Decimal`` and are stored as integer
cents. Conversion between the two happens here and nowhere else.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")
ZERO = Decimal("0")
# Largest value a signed 64-bit INTEGER column holds.
MAX_CENTS = 2**63 - 1


def to_decimal(value: object) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # str() keeps the shortest repr, so -15.99 stays -15.99
        return Decimal(str(value))
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: object) -> int:
    amount = to_decimal(value)
    try:
        whole = quantize_money(amount) * 100
        cents = int(whole.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, OverflowError) as exc:
        # NaN, infinity, or too many digits for the decimal context.
        raise ValueError(f"Amount out of range: {value!r}") from exc
    if abs(cents) > MAX_CENTS:
        raise ValueError(f"Amount out of range: {value!r}")
    return cents


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)
