"""Database schema helpers for the quote pricing engine."""
from __future__ import annotations

import sqlite3
from typing import Sequence

from manito.travel_fee import TravelFeePolicy

TRAVEL_FEE_POLICIES: Sequence[tuple] = (
    ("DEFAULT", "Default service area", 5.0, 500.0, 1000, 10000),
    ("PLUMBING", "Gasfitería", 5.0, 600.0, 2000, 15000),
    ("ELECTRICAL", "Electricidad", 5.0, 600.0, 2000, 15000),
    ("CLEANING", "Limpieza", 3.0, 400.0, 1000, 8000),
    ("GARDENING", "Jardinería", 8.0, 450.0, 1500, 12000),
)


def _create_tables(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS distance_cache (
            provider_id TEXT NOT NULL,
            job_id TEXT NOT NULL,
            origin_lat REAL NOT NULL,
            origin_lon REAL NOT NULL,
            dest_lat REAL NOT NULL,
            dest_lon REAL NOT NULL,
            distance_km REAL NOT NULL CHECK(distance_km >= 0),
            duration_seconds REAL,
            source TEXT NOT NULL CHECK(source IN ('routed')),
            resolved_at TEXT NOT NULL,
            PRIMARY KEY (provider_id, job_id)
        );

        CREATE TABLE IF NOT EXISTS travel_fee_policies (
            code TEXT PRIMARY KEY,
            description TEXT NOT NULL,
            free_radius_km REAL NOT NULL CHECK(free_radius_km >= 0),
            per_km_rate_clp REAL NOT NULL CHECK(per_km_rate_clp >= 0),
            min_fee_clp INTEGER NOT NULL CHECK(min_fee_clp >= 0),
            max_fee_clp INTEGER NOT NULL,
            CHECK(max_fee_clp >= min_fee_clp)
        );

        CREATE TABLE IF NOT EXISTS quotes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            idempotency_token TEXT NOT NULL UNIQUE,
            project_id TEXT NOT NULL,
            provider_id TEXT NOT NULL,
            acting_as_business_id TEXT,
            version INTEGER NOT NULL CHECK(version >= 1),
            response_type TEXT NOT NULL CHECK(response_type IN ('quote_now', 'visit_required')),
            requires_onsite_confirmation INTEGER NOT NULL CHECK(requires_onsite_confirmation IN (0,1)),
            site_visit_cost_clp INTEGER,
            labor_items TEXT NOT NULL,
            materials_items TEXT NOT NULL,
            additional_fees TEXT NOT NULL,
            travel_fee_clp INTEGER NOT NULL CHECK(travel_fee_clp >= 0),
            subtotal_clp INTEGER NOT NULL CHECK(subtotal_clp >= 0),
            iva_amount_clp INTEGER NOT NULL CHECK(iva_amount_clp >= 0),
            total_clp INTEGER NOT NULL CHECK(total_clp >= 0),
            estimated_duration_hours REAL NOT NULL,
            hours_per_session REAL NOT NULL,
            requires_multiple_visits INTEGER NOT NULL CHECK(requires_multiple_visits IN (0,1)),
            session_structure TEXT,
            notes TEXT,
            status TEXT NOT NULL DEFAULT 'submitted'
                CHECK(status IN ('submitted', 'accepted')),
            created_at TEXT NOT NULL,
            UNIQUE(project_id, provider_id, version)
        );

        CREATE INDEX IF NOT EXISTS idx_quotes_project_provider
            ON quotes(project_id, provider_id);
        """
    )


def _seed_data(conn: sqlite3.Connection) -> None:
    conn.executemany(
        """
        INSERT OR IGNORE INTO travel_fee_policies
            (code, description, free_radius_km, per_km_rate_clp, min_fee_clp, max_fee_clp)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        TRAVEL_FEE_POLICIES,
    )


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create tables required for quoting and seed default travel-fee policies."""
    _create_tables(conn)
    _seed_data(conn)
    conn.commit()


def load_travel_fee_policy(conn: sqlite3.Connection, code: str) -> TravelFeePolicy:
    row = conn.execute(
        """
        SELECT code, free_radius_km, per_km_rate_clp, min_fee_clp, max_fee_clp
        FROM travel_fee_policies
        WHERE code = ?
        """,
        (code.strip().upper(),),
    ).fetchone()
    if row is None:
        raise ValueError(f"Unknown travel fee policy: {code}")
    return TravelFeePolicy(
        code=row[0],
        free_radius_km=float(row[1]),
        per_km_rate_clp=float(row[2]),
        min_fee_clp=int(row[3]),
        max_fee_clp=int(row[4]),
    )


__all__ = ["TRAVEL_FEE_POLICIES", "ensure_schema", "load_travel_fee_policy"]
