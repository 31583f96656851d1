"""SQLite persistence for submitted quotes."""
from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from manito.config import DEFAULT_VAT_RATE_PERCENT
from manito.errors import SubmissionError, ValidationError
from manito.pricing import compose_breakdown
from manito.quote_service import QuotePayload, SubmissionReceipt
from manito.schema import ensure_schema
from manito.tax import DocumentType, TaxProfile, apply_tax

logger = logging.getLogger(__name__)


class LocalQuoteStore:
    """Quote submission endpoint backed by SQLite.

    Totals are recomputed from the submitted items; the payload's own totals
    are advisory. Repeating a submission with the same idempotency token
    returns the original receipt. Each new submission for a project/provider
    pair is stored as a new version and earlier rows are never rewritten.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        *,
        vat_rate_percent: float = DEFAULT_VAT_RATE_PERCENT,
    ) -> None:
        self.conn = connection
        self.vat_rate_percent = vat_rate_percent
        ensure_schema(self.conn)

    def _tax_profile(self, payload: QuotePayload) -> TaxProfile:
        document_type = DocumentType(payload.document_type)
        exempt = document_type is not DocumentType.FACTURA
        return TaxProfile(
            vat_exempt=exempt,
            vat_rate_percent=0.0 if exempt else self.vat_rate_percent,
            document_type=document_type,
            business_id=payload.acting_as_business_id,
        )

    async def submit(self, payload: QuotePayload) -> SubmissionReceipt:
        return self.persist(payload)

    def persist(self, payload: QuotePayload) -> SubmissionReceipt:
        existing = self.conn.execute(
            "SELECT id, version FROM quotes WHERE idempotency_token = ?",
            (payload.idempotency_token,),
        ).fetchone()
        if existing is not None:
            logger.info(
                "Duplicate submission for token %s; returning quote %s",
                payload.idempotency_token,
                existing[0],
            )
            return SubmissionReceipt(quote_id=str(existing[0]), version=int(existing[1]))

        try:
            breakdown = compose_breakdown(
                payload.breakdown.labor_items,
                payload.breakdown.materials_items,
                payload.breakdown.custom_charges,
                payload.breakdown.travel_fee_clp,
            )
        except ValidationError as exc:
            raise SubmissionError(
                f"Quote rejected: {exc}",
                idempotency_token=payload.idempotency_token,
                retryable=False,
            ) from exc
        tax = apply_tax(breakdown.subtotal, self._tax_profile(payload))
        if tax.total_with_tax != payload.total_clp:
            logger.warning(
                "Client total %s differs from recomputed total %s for project %s",
                payload.total_clp,
                tax.total_with_tax,
                payload.project_id,
            )

        with self.conn:
            accepted = self.conn.execute(
                """
                SELECT id FROM quotes
                WHERE project_id = ? AND provider_id = ? AND status = 'accepted'
                """,
                (payload.project_id, payload.provider_id),
            ).fetchone()
            if accepted is not None:
                raise SubmissionError(
                    f"Quote {accepted[0]} for project {payload.project_id} was already accepted",
                    idempotency_token=payload.idempotency_token,
                    retryable=False,
                )
            row = self.conn.execute(
                "SELECT COALESCE(MAX(version), 0) FROM quotes WHERE project_id = ? AND provider_id = ?",
                (payload.project_id, payload.provider_id),
            ).fetchone()
            version = int(row[0]) + 1
            cursor = self.conn.execute(
                """
                INSERT INTO quotes(
                    idempotency_token, project_id, provider_id, acting_as_business_id,
                    version, response_type, requires_onsite_confirmation,
                    site_visit_cost_clp, labor_items, materials_items, additional_fees,
                    travel_fee_clp, subtotal_clp, iva_amount_clp, total_clp,
                    estimated_duration_hours, hours_per_session, requires_multiple_visits,
                    session_structure, notes, created_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    payload.idempotency_token,
                    payload.project_id,
                    payload.provider_id,
                    payload.acting_as_business_id,
                    version,
                    payload.response_type.value,
                    int(payload.requires_onsite_confirmation),
                    payload.site_visit_cost_clp,
                    json.dumps([item.to_payload() for item in breakdown.labor_items]),
                    json.dumps([item.to_payload() for item in breakdown.materials_items]),
                    json.dumps([charge.to_payload() for charge in breakdown.custom_charges]),
                    breakdown.travel_fee_clp,
                    breakdown.subtotal,
                    tax.iva_amount,
                    tax.total_with_tax,
                    payload.estimated_duration_hours,
                    payload.hours_per_session,
                    int(payload.requires_multiple_visits),
                    json.dumps(payload.session_structure.to_payload())
                    if payload.session_structure
                    else None,
                    payload.notes,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
        quote_id = str(cursor.lastrowid)
        logger.info(
            "Stored quote %s (version %d) for project %s", quote_id, version, payload.project_id
        )
        return SubmissionReceipt(quote_id=quote_id, version=version)


def accept_quote(conn: sqlite3.Connection, quote_id: str) -> None:
    """Mark a quote as accepted; later submissions for its project are refused."""
    with conn:
        cursor = conn.execute(
            "UPDATE quotes SET status = 'accepted' WHERE id = ?",
            (int(quote_id),),
        )
    if cursor.rowcount == 0:
        raise ValueError(f"Unknown quote id: {quote_id}")


def list_quote_versions(
    conn: sqlite3.Connection, project_id: str, provider_id: str
) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT id, version, status, subtotal_clp, iva_amount_clp, total_clp,
               response_type, created_at
        FROM quotes
        WHERE project_id = ? AND provider_id = ?
        ORDER BY version
        """,
        (project_id, provider_id),
    ).fetchall()
    return [
        {
            "quote_id": str(row[0]),
            "version": int(row[1]),
            "status": row[2],
            "subtotal_clp": int(row[3]),
            "iva_amount_clp": int(row[4]),
            "total_clp": int(row[5]),
            "response_type": row[6],
            "created_at": row[7],
        }
        for row in rows
    ]


def get_quote(conn: sqlite3.Connection, quote_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        """
        SELECT id, project_id, provider_id, version, status, labor_items,
               materials_items, additional_fees, travel_fee_clp, subtotal_clp,
               iva_amount_clp, total_clp, notes
        FROM quotes WHERE id = ?
        """,
        (int(quote_id),),
    ).fetchone()
    if row is None:
        return None
    return {
        "quote_id": str(row[0]),
        "project_id": row[1],
        "provider_id": row[2],
        "version": int(row[3]),
        "status": row[4],
        "labor_items": json.loads(row[5]),
        "materials_items": json.loads(row[6]),
        "additional_fees": json.loads(row[7]),
        "travel_fee_clp": int(row[8]),
        "subtotal_clp": int(row[9]),
        "iva_amount_clp": int(row[10]),
        "total_clp": int(row[11]),
        "notes": row[12],
    }


__all__ = ["LocalQuoteStore", "accept_quote", "get_quote", "list_quote_versions"]
