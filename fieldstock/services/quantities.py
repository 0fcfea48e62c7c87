from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from fieldstock.services.errors import InvalidRequestError

# Numeric(12, 2) on every quantity column
QUANTUM = Decimal("0.01")
ZERO = Decimal("0")


def to_quantity(value, *, field: str = "quantity", positive: bool = False, allow_negative: bool = False) -> Decimal:
    """
    Normalise a caller-supplied quantity to a 2-decimal Decimal.

    Floats go through str() so 0.1 stays 0.1.
    """
    if value is None or isinstance(value, bool):
        raise InvalidRequestError(f"{field} is required")
    try:
        qty = Decimal(str(value)).quantize(QUANTUM, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise InvalidRequestError(f"{field} must be a number (got {value!r})")

    if not qty.is_finite():
        raise InvalidRequestError(f"{field} must be finite")
    if positive and qty <= ZERO:
        raise InvalidRequestError(f"{field} must be greater than 0")
    if not allow_negative and qty < ZERO:
        raise InvalidRequestError(f"{field} must not be negative")
    return qty
