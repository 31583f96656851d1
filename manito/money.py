"""Integer CLP helpers: rounding, validation and formatting."""
from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from manito.errors import ValidationError

_PESO = Decimal("1")


def to_decimal(value: Any, field: str) -> Decimal:
    """Return *value* as a finite ``Decimal`` or raise :class:`ValidationError`."""

    if isinstance(value, bool):
        raise ValidationError(field, "must be a number, not a boolean")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValidationError(field, f"must be finite, got {value!r}")
        result = Decimal(str(value))
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(field, f"is not a number: {value!r}") from None
    if not result.is_finite():
        raise ValidationError(field, f"must be finite, got {value!r}")
    return result


def round_clp(value: Decimal) -> int:
    """Round to the nearest whole peso, halves away from zero."""
    return int(value.quantize(_PESO, rounding=ROUND_HALF_UP))


def require_clp(value: Any, field: str) -> int:
    """Validate a non-negative whole-peso amount and return it as ``int``."""

    amount = to_decimal(value, field)
    if amount < 0:
        raise ValidationError(field, f"must be non-negative, got {value!r}")
    if amount != amount.to_integral_value():
        raise ValidationError(field, f"must be a whole number of pesos, got {value!r}")
    return int(amount)


def format_clp(amount: int) -> str:
    """Format *amount* the way Chilean receipts do: ``$1.234.567``."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(int(amount)):,}".replace(",", ".")


__all__ = ["format_clp", "require_clp", "round_clp", "to_decimal"]
