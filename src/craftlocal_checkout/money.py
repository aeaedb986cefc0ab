"""Money conversion helpers.

All amounts past the fee calculator are integer cents. Decimal prices from
the pricing store are converted exactly once, rounding half up.
"""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

Numeric = Union[Decimal, int, float, str]


def to_decimal(value: Numeric) -> Decimal:
    """Coerce a price to Decimal without going through float."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Floats only come from loosely typed JSON; use their repr
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid monetary amount: {value!r}") from e


def to_cents(amount: Numeric) -> int:
    """Convert a major-unit amount to integer cents, rounding half up."""
    return int((to_decimal(amount) * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_rate(amount_cents: int, rate: Decimal) -> int:
    """Apply a fractional rate to a cent amount, rounding half up."""
    return int((Decimal(amount_cents) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(amount_cents: int) -> Decimal:
    """Convert integer cents back to a two-place Decimal."""
    return (Decimal(amount_cents) / HUNDRED).quantize(CENT)


def format_cents(amount_cents: int) -> str:
    return f"{from_cents(amount_cents):.2f}"
