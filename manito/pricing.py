"""Line items and the integer-money price breakdown."""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from manito.errors import ValidationError
from manito.money import require_clp, round_clp, to_decimal


@dataclass(frozen=True)
class LaborItem:
    name: str
    amount: int
    description: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "amount": self.amount}


@dataclass(frozen=True)
class MaterialItem:
    name: str
    quantity: float
    unit: str
    price_per_unit: int
    subtotal: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "quantity": self.quantity,
            "unit": self.unit,
            "price_per_unit": self.price_per_unit,
            "subtotal": self.subtotal,
        }


@dataclass(frozen=True)
class CustomCharge:
    label: str
    amount: int

    def to_payload(self) -> Dict[str, Any]:
        return {"label": self.label, "amount": self.amount}


@dataclass(frozen=True)
class QuoteBreakdown:
    """Validated labor, materials, custom charges and travel fee.

    Every amount is a whole number of pesos so the subtotal is plain integer
    addition and never drifts across repeated edits.
    """

    labor_items: Tuple[LaborItem, ...] = ()
    materials_items: Tuple[MaterialItem, ...] = ()
    custom_charges: Tuple[CustomCharge, ...] = ()
    travel_fee_clp: int = 0

    @property
    def labor_subtotal(self) -> int:
        return sum(item.amount for item in self.labor_items)

    @property
    def materials_subtotal(self) -> int:
        return sum(int(item.subtotal or 0) for item in self.materials_items)

    @property
    def fees_subtotal(self) -> int:
        return sum(charge.amount for charge in self.custom_charges)

    @property
    def subtotal(self) -> int:
        return (
            self.labor_subtotal
            + self.materials_subtotal
            + self.fees_subtotal
            + self.travel_fee_clp
        )


def _require_name(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "name must be a non-empty string")
    return value.strip()


def material_subtotal(quantity: Any, price_per_unit: Any, field: str = "material") -> int:
    """Return ``quantity * price_per_unit`` rounded to the nearest peso."""

    qty = to_decimal(quantity, f"{field}.quantity")
    if qty <= 0:
        raise ValidationError(f"{field}.quantity", f"must be greater than zero, got {quantity!r}")
    price = require_clp(price_per_unit, f"{field}.price_per_unit")
    return round_clp(qty * price)


def _validate_labor(items: Iterable[LaborItem]) -> List[LaborItem]:
    validated: List[LaborItem] = []
    for index, item in enumerate(items):
        field = f"labor_items[{index}]"
        name = _require_name(item.name, f"{field}.name")
        amount = require_clp(item.amount, f"{field}.amount ({name})")
        validated.append(LaborItem(name=name, amount=amount, description=item.description))
    return validated


def _validate_materials(items: Iterable[MaterialItem]) -> List[MaterialItem]:
    validated: List[MaterialItem] = []
    for index, item in enumerate(items):
        field = f"materials_items[{index}]"
        name = _require_name(item.name, f"{field}.name")
        expected = material_subtotal(item.quantity, item.price_per_unit, f"{field} ({name})")
        if item.subtotal is not None:
            given = require_clp(item.subtotal, f"{field}.subtotal ({name})")
            if given != expected:
                raise ValidationError(
                    f"{field}.subtotal ({name})",
                    f"{given} does not equal quantity x price_per_unit = {expected}",
                )
        validated.append(
            replace(
                item,
                name=name,
                price_per_unit=int(item.price_per_unit),
                subtotal=expected,
            )
        )
    return validated


def _validate_charges(charges: Iterable[CustomCharge]) -> List[CustomCharge]:
    validated: List[CustomCharge] = []
    for index, charge in enumerate(charges):
        field = f"custom_charges[{index}]"
        label = _require_name(charge.label, f"{field}.label")
        validated.append(
            CustomCharge(label=label, amount=require_clp(charge.amount, f"{field}.amount ({label})"))
        )
    return validated


def compose_breakdown(
    labor_items: Sequence[LaborItem],
    materials_items: Sequence[MaterialItem],
    custom_charges: Sequence[CustomCharge],
    travel_fee_clp: int,
) -> QuoteBreakdown:
    """Validate every input and return a :class:`QuoteBreakdown`.

    Raises :class:`ValidationError` naming the offending item when an amount
    is negative, fractional, non-finite or NaN, or when a material subtotal
    disagrees with its quantity and unit price.
    """

    return QuoteBreakdown(
        labor_items=tuple(_validate_labor(labor_items)),
        materials_items=tuple(_validate_materials(materials_items)),
        custom_charges=tuple(_validate_charges(custom_charges)),
        travel_fee_clp=require_clp(travel_fee_clp, "travel_fee_clp"),
    )


__all__ = [
    "CustomCharge",
    "LaborItem",
    "MaterialItem",
    "QuoteBreakdown",
    "compose_breakdown",
    "material_subtotal",
]
