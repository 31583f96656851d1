"""Tabular and plain-text summaries of a quote payload."""
from __future__ import annotations

from typing import List

import pandas as pd

from manito.money import format_clp
from manito.pricing import QuoteBreakdown
from manito.quote_service import QuotePayload, ResponseType
from manito.tax import format_document_type

BREAKDOWN_COLUMNS = ["category", "name", "quantity", "unit", "amount"]


def breakdown_table(breakdown: QuoteBreakdown) -> pd.DataFrame:
    """Return one row per priced line, in submission order."""

    rows = []
    for item in breakdown.labor_items:
        rows.append(
            {"category": "labor", "name": item.name, "quantity": None, "unit": None, "amount": item.amount}
        )
    for item in breakdown.materials_items:
        rows.append(
            {
                "category": "materials",
                "name": item.name,
                "quantity": item.quantity,
                "unit": item.unit,
                "amount": item.subtotal,
            }
        )
    for charge in breakdown.custom_charges:
        rows.append(
            {"category": "fees", "name": charge.label, "quantity": None, "unit": None, "amount": charge.amount}
        )
    if breakdown.travel_fee_clp:
        rows.append(
            {
                "category": "travel",
                "name": "Travel fee",
                "quantity": None,
                "unit": None,
                "amount": breakdown.travel_fee_clp,
            }
        )
    frame = pd.DataFrame(rows, columns=BREAKDOWN_COLUMNS)
    frame["amount"] = frame["amount"].astype("int64")
    return frame


def build_summary(payload: QuotePayload) -> str:
    frame = breakdown_table(payload.breakdown)
    lines: List[str] = [
        f"Project: {payload.project_id}",
        f"Provider: {payload.provider_id}",
        f"Document: {format_document_type(payload.document_type)}",
        "",
    ]
    if frame.empty:
        lines.append("No priced lines")
    else:
        for row in frame.itertuples(index=False):
            label = row.name
            if row.category == "materials":
                label = f"{row.name} ({row.quantity:g} {row.unit})"
            lines.append(f"  [{row.category}] {label}: {format_clp(int(row.amount))}")
    lines.append("")
    lines.append(f"Subtotal: {format_clp(payload.subtotal_clp)}")
    lines.append(f"IVA: {format_clp(payload.iva_amount_clp)}")
    total_label = "Total"
    if payload.preliminary_estimate:
        total_label = "Total (preliminary estimate, pending site visit)"
    lines.append(f"{total_label}: {format_clp(payload.total_clp)}")
    lines.append(
        f"Duration: {payload.estimated_duration_hours:g} h"
        + (
            f" over {len(payload.session_structure.sessions)} sessions"
            if payload.session_structure
            else ""
        )
    )
    if payload.response_type is ResponseType.VISIT_REQUIRED:
        visit_cost = payload.site_visit_cost_clp or 0
        visit_text = "free" if visit_cost == 0 else format_clp(visit_cost)
        deductible = " (deductible)" if payload.site_visit_deductible else ""
        lines.append(f"Site visit: {visit_text}{deductible}")
    if payload.notes:
        lines.append("")
        lines.append("Notes:")
        lines.append(payload.notes)
    return "\n".join(lines)


__all__ = ["BREAKDOWN_COLUMNS", "breakdown_table", "build_summary"]
