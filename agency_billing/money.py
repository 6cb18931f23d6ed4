"""Decimal helpers for the cents/currency boundary.

Rates and budgets are stored as integer cents on projects and tasks; entry
amounts, rule rates and report figures are decimal currency units. These
helpers are the only place the two meet.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
CENT = Decimal("0.01")
MILLI_HOUR = Decimal("0.001")
SECONDS_PER_HOUR = Decimal(3600)


def to_decimal(value: object) -> Decimal:
    """Coerce a stored numeric (Decimal, int, float or None) to Decimal."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    # str() keeps floats from leaking binary noise into the decimal.
    return Decimal(str(value))


def cents_to_amount(cents: int | None) -> Decimal | None:
    if cents is None:
        return None
    return Decimal(cents) / 100


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_hours(value: Decimal) -> Decimal:
    return value.quantize(MILLI_HOUR, rounding=ROUND_HALF_UP)


def hours_from_seconds(seconds: int) -> Decimal:
    """Tracked hours rounded to three decimal places."""
    return quantize_hours(Decimal(seconds) / SECONDS_PER_HOUR)
