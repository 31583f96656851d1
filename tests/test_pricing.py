import math
from decimal import Decimal

import pytest

from manito.errors import ValidationError
from manito.money import format_clp, require_clp, round_clp
from manito.pricing import (
    CustomCharge,
    LaborItem,
    MaterialItem,
    compose_breakdown,
    material_subtotal,
)


def test_round_clp_rounds_half_up():
    assert round_clp(Decimal("4600.5")) == 4601
    assert round_clp(Decimal("4600.49")) == 4600
    assert round_clp(Decimal("0.5")) == 1


@pytest.mark.parametrize("value", [-1, 10.5, math.nan, math.inf, True, "abc"])
def test_require_clp_rejects_bad_amounts(value):
    with pytest.raises(ValidationError) as excinfo:
        require_clp(value, "amount")
    assert excinfo.value.field == "amount"


def test_require_clp_accepts_whole_numbers():
    assert require_clp(0, "amount") == 0
    assert require_clp(15000.0, "amount") == 15000
    assert require_clp("2500", "amount") == 2500


def test_format_clp_uses_dot_thousands():
    assert format_clp(1234567) == "$1.234.567"
    assert format_clp(0) == "$0"
    assert format_clp(-4600) == "-$4.600"


def test_compose_breakdown_sums_every_category():
    breakdown = compose_breakdown(
        [LaborItem("Instalación", 30000), LaborItem("Revisión", 10000)],
        [MaterialItem("Cable", 2.5, "m", 1200), MaterialItem("Enchufe", 3, "un", 2990)],
        [CustomCharge("Retiro de escombros", 5000)],
        4600,
    )

    assert breakdown.labor_subtotal == 40000
    assert breakdown.materials_subtotal == 3000 + 8970
    assert breakdown.fees_subtotal == 5000
    assert breakdown.subtotal == 40000 + 11970 + 5000 + 4600
    assert [item.subtotal for item in breakdown.materials_items] == [3000, 8970]


def test_material_subtotal_rounds_fractional_quantity():
    assert material_subtotal(0.333, 1000) == 333
    assert material_subtotal(1.0005, 1000) == 1001


def test_mismatched_material_subtotal_names_item():
    with pytest.raises(ValidationError) as excinfo:
        compose_breakdown([], [MaterialItem("Pintura", 2, "gal", 15000, subtotal=31000)], [], 0)

    assert excinfo.value.field == "materials_items[0].subtotal (Pintura)"


def test_matching_material_subtotal_is_accepted():
    breakdown = compose_breakdown([], [MaterialItem("Pintura", 2, "gal", 15000, subtotal=30000)], [], 0)
    assert breakdown.subtotal == 30000


def test_negative_labor_amount_names_item():
    with pytest.raises(ValidationError) as excinfo:
        compose_breakdown([LaborItem("Mano de obra", -1)], [], [], 0)

    assert excinfo.value.field == "labor_items[0].amount (Mano de obra)"


def test_nan_charge_is_rejected():
    with pytest.raises(ValidationError) as excinfo:
        compose_breakdown([], [], [CustomCharge("Peaje", math.nan)], 0)

    assert excinfo.value.field == "custom_charges[0].amount (Peaje)"


@pytest.mark.parametrize("quantity", [0, -1])
def test_material_quantity_must_be_positive(quantity):
    with pytest.raises(ValidationError):
        compose_breakdown([], [MaterialItem("Tubo", quantity, "m", 100)], [], 0)


def test_blank_names_are_rejected():
    with pytest.raises(ValidationError) as excinfo:
        compose_breakdown([LaborItem("  ", 100)], [], [], 0)
    assert excinfo.value.field == "labor_items[0].name"


def test_negative_travel_fee_is_rejected():
    with pytest.raises(ValidationError) as excinfo:
        compose_breakdown([LaborItem("Visita", 100)], [], [], -5)
    assert excinfo.value.field == "travel_fee_clp"


def test_empty_breakdown_has_zero_subtotal():
    assert compose_breakdown([], [], [], 0).subtotal == 0


def test_recomposing_identical_inputs_is_stable():
    labor = [LaborItem("Instalación", 33333)]
    materials = [MaterialItem("Cinta", 0.1, "rollo", 999)] * 7
    first = compose_breakdown(labor, materials, [], 1234)

    for _ in range(50):
        assert compose_breakdown(labor, materials, [], 1234) == first
    assert first.subtotal == 33333 + 7 * 100 + 1234
