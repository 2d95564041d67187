from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from config.constants import CREDIT_QUANTUM
from utils.exceptions import InvalidAmount


def to_credits(amount) -> Decimal:
    """
    Normalise an amount to a positive Decimal with the ledger's precision.

    Floats go through ``str`` first so 0.1 stays 0.1.
    """
    if isinstance(amount, bool):
        raise InvalidAmount(f"Invalid amount: {amount!r}")
    try:
        value = Decimal(str(amount)) if isinstance(amount, float) else Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise InvalidAmount(f"Invalid amount: {amount!r}")
    value = value.quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP)
    if value <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount!r}")
    return value


def as_decimal(value) -> Decimal:
    """Read a stored numeric column back as a Decimal at ledger precision."""
    if value is None:
        return Decimal(0).quantize(CREDIT_QUANTUM)
    return Decimal(str(value)).quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP)
