"""
Credit Amount Arithmetic

Credits carry a fixed precision of four decimal places. Storage keeps them
as integer counts of 0.0001 credit so that SQLite and PostgreSQL compare
and sum them exactly; repeated small charges never drift.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from .errors import InvalidAmount

CREDIT_PRECISION = Decimal("0.0001")
UNITS_PER_CREDIT = 10_000
ZERO = Decimal("0.0000")

# Largest amount whose unit count fits a signed 64-bit column
MAX_CREDITS = Decimal("99999999999999.9999")
MAX_CENTS = 2 ** 63 - 1


def to_credits(value: Any) -> Decimal:
    """
    Coerce a number or numeric string to a 4-dp Decimal.

    Raises InvalidAmount for anything that is not a finite number or whose
    magnitude exceeds MAX_CREDITS.
    """
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, float):
        # str() first so 0.1 becomes Decimal("0.1") rather than its binary expansion
        amount = Decimal(str(value))
    else:
        try:
            amount = Decimal(value)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidAmount(f"Not a valid credit amount: {value!r}")

    if not amount.is_finite():
        raise InvalidAmount(f"Not a valid credit amount: {value!r}")
    if abs(amount) > MAX_CREDITS:
        raise InvalidAmount(f"Credit amount out of range: {value!r} (max {MAX_CREDITS})")
    try:
        return amount.quantize(CREDIT_PRECISION, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmount(f"Not a valid credit amount: {value!r}")


def positive_credits(value: Any, field_name: str = "amount") -> Decimal:
    """Coerce and require a strictly positive amount."""
    amount = to_credits(value)
    if amount <= 0:
        raise InvalidAmount(f"{field_name} must be greater than 0, got {amount}")
    return amount


def to_units(value: Any) -> int:
    """Credits to integer storage units."""
    return int(to_credits(value) * UNITS_PER_CREDIT)


def from_units(units: Optional[int]) -> Decimal:
    """Integer storage units to credits."""
    if units is None:
        return ZERO
    return (Decimal(int(units)) / UNITS_PER_CREDIT).quantize(CREDIT_PRECISION)


def usd_to_cents(value: Any) -> int:
    """USD amount to integer cents."""
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Not a valid USD amount: {value!r}")
    if not amount.is_finite():
        raise InvalidAmount(f"Not a valid USD amount: {value!r}")
    try:
        cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        raise InvalidAmount(f"USD amount out of range: {value!r}")
    if abs(cents) > MAX_CENTS:
        raise InvalidAmount(f"USD amount out of range: {value!r}")
    return cents


def cents_to_usd(cents: Optional[int]) -> Decimal:
    if cents is None:
        return Decimal("0.00")
    return (Decimal(int(cents)) / 100).quantize(Decimal("0.01"))
