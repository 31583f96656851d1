#!/usr/bin/env python3
"""Quick quote CLI for Manito providers.

Composes a quote from command-line flags, resolves the travel fee (the routing
API is only called for jobs outside the free radius), applies IVA, prints a
copy-paste summary and stores the quote in the local SQLite quote store.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sqlite3
import sys
from datetime import timedelta
from typing import Optional, Sequence

from manito.config import load_settings
from manito.distance import DistanceResolver
from manito.distance_cache import DistanceResolutionCache
from manito.errors import SubmissionError, ValidationError
from manito.geo import Coordinate
from manito.pricing import CustomCharge, LaborItem, MaterialItem
from manito.quote_service import (
    QuoteComposer,
    ResponseType,
    Session,
    SessionStructure,
    VisitConfiguration,
)
from manito.reporting import build_summary
from manito.repo import LocalQuoteStore
from manito.routing import OrsRoutedDistanceProvider, RoutedDistanceProvider
from manito.schema import ensure_schema, load_travel_fee_policy
from manito.tax import resolve_tax_profile

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_FEE_PENDING = 2


def _parse_amount_pair(raw: str, flag: str) -> tuple:
    name, sep, amount = raw.rpartition("=")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"{flag} expects NAME=AMOUNT, got {raw!r}")
    try:
        return name.strip(), int(amount)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{flag} amount must be a whole number: {raw!r}") from None


def parse_labor(raw: str) -> LaborItem:
    name, amount = _parse_amount_pair(raw, "--labor")
    return LaborItem(name=name, amount=amount)


def parse_charge(raw: str) -> CustomCharge:
    label, amount = _parse_amount_pair(raw, "--charge")
    return CustomCharge(label=label, amount=amount)


def parse_material(raw: str) -> MaterialItem:
    parts = [part.strip() for part in raw.split(":")]
    if len(parts) != 4 or not parts[0]:
        raise argparse.ArgumentTypeError(
            f"--material expects NAME:QUANTITY:UNIT:PRICE_PER_UNIT, got {raw!r}"
        )
    name, quantity, unit, price = parts
    try:
        return MaterialItem(name=name, quantity=float(quantity), unit=unit, price_per_unit=int(price))
    except ValueError:
        raise argparse.ArgumentTypeError(f"--material has a non-numeric value: {raw!r}") from None


def parse_coordinate(raw: str) -> Coordinate:
    try:
        lat, lon = (float(part) for part in raw.split(","))
        return Coordinate(lat, lon)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected LAT,LON, got {raw!r}") from None


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Quick quote CLI")
    parser.add_argument("--project-id", required=True)
    parser.add_argument("--provider-id", required=True)
    parser.add_argument("--provider-location", type=parse_coordinate, required=True,
                        help="Provider base as LAT,LON")
    parser.add_argument("--job-location", type=parse_coordinate,
                        help="Job site as LAT,LON; omit to keep --travel-fee")
    parser.add_argument("--labor", type=parse_labor, action="append", default=[],
                        help="Labor line as NAME=AMOUNT (repeatable)")
    parser.add_argument("--material", type=parse_material, action="append", default=[],
                        help="Material as NAME:QUANTITY:UNIT:PRICE_PER_UNIT (repeatable)")
    parser.add_argument("--charge", type=parse_charge, action="append", default=[],
                        help="Custom charge as LABEL=AMOUNT (repeatable)")
    parser.add_argument("--travel-fee", type=int, default=0,
                        help="Manual travel fee when no job location is given")
    parser.add_argument("--policy", default="DEFAULT", help="Travel fee policy code")
    parser.add_argument("--account-type", choices=["individual", "business"], default="individual")
    parser.add_argument("--business-id")
    parser.add_argument("--vat-exempt", action="store_true")
    parser.add_argument("--hours", type=float, default=2.0)
    parser.add_argument("--session", type=float, action="append", dest="sessions",
                        help="Hours of one visit in a multi-visit job (repeatable)")
    parser.add_argument("--notes", default="")
    parser.add_argument("--materials-notes", default="")
    parser.add_argument("--visit-required", action="store_true")
    parser.add_argument("--visit-cost", type=int)
    parser.add_argument("--visit-deductible", action="store_true")
    parser.add_argument("--visit-notes", default="")
    parser.add_argument("--no-save", action="store_true",
                        help="Print the submission payload instead of storing it")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


async def _compose(
    args: argparse.Namespace,
    conn: sqlite3.Connection,
    provider: RoutedDistanceProvider,
) -> int:
    settings = load_settings()
    policy = load_travel_fee_policy(conn, args.policy)
    tax_profile = resolve_tax_profile(
        args.account_type,
        business_id=args.business_id,
        vat_exempt=args.vat_exempt,
        vat_rate_percent=settings.vat_rate_percent,
    )
    resolver = DistanceResolver(
        provider,
        DistanceResolutionCache(conn, ttl=timedelta(hours=settings.cache_ttl_hours)),
        retry=settings.retry,
    )
    store = LocalQuoteStore(conn, vat_rate_percent=settings.vat_rate_percent)
    composer = QuoteComposer(
        project_id=args.project_id,
        provider_id=args.provider_id,
        provider_location=args.provider_location,
        tax_profile=tax_profile,
        policy=policy,
        resolver=resolver,
        submitter=store,
        labor_items=args.labor,
        travel_fee_clp=args.travel_fee,
        estimated_duration_hours=args.hours,
    )
    try:
        composer.start()
        composer.set_materials_items(args.material)
        composer.set_custom_charges(args.charge)
        sessions: Optional[SessionStructure] = None
        if args.sessions:
            sessions = SessionStructure(tuple(Session(hours=hours) for hours in args.sessions))
        composer.set_duration(args.hours, sessions)
        composer.set_notes(args.notes, args.materials_notes)
        if args.visit_required:
            composer.set_response_type(
                ResponseType.VISIT_REQUIRED,
                VisitConfiguration(
                    cost=args.visit_cost,
                    is_deductible=args.visit_deductible if args.visit_cost is not None else None,
                    notes=args.visit_notes,
                ),
            )

        if args.job_location is not None:
            await composer.update_job_location(args.job_location)
            if composer.travel_fee_pending:
                print(f"Travel fee pending: {composer.distance_error}")
                print("Retry later or pass --travel-fee without --job-location.")
                return EXIT_FEE_PENDING

        payload = composer.build_payload()
        print("\n--- Quote Summary ---")
        print(build_summary(payload))

        if args.no_save:
            print("\n--- Submission payload ---")
            print(json.dumps(payload.to_rpc_params(), indent=2, ensure_ascii=False))
            return EXIT_OK

        receipt = await composer.submit()
        print(f"\nSaved quote #{receipt.quote_id} (version {receipt.version}).")
        return EXIT_OK
    except (ValidationError, SubmissionError) as exc:
        print(f"Quote not sent: {exc}")
        return EXIT_INVALID
    finally:
        composer.close()


def main(
    argv: Sequence[str] | None = None,
    *,
    provider: Optional[RoutedDistanceProvider] = None,
) -> int:
    args = parse_args(sys.argv[1:] if argv is None else list(argv))
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    settings = load_settings()
    conn = sqlite3.connect(settings.db_path)
    try:
        ensure_schema(conn)
        if provider is None:
            provider = OrsRoutedDistanceProvider(profile=settings.route_profile)
        try:
            return asyncio.run(_compose(args, conn, provider))
        except ValueError as exc:
            print(str(exc))
            return EXIT_INVALID
    finally:
        conn.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
