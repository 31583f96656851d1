import asyncio
import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from manito.distance import DistanceResolver
from manito.distance_cache import DistanceResolutionCache
from manito.config import RetryPolicy
from manito.geo import Coordinate
from manito.quote_service import QuoteComposer, SubmissionReceipt
from manito.routing import RouteSummary
from manito.tax import resolve_tax_profile
from manito.travel_fee import TravelFeePolicy

# Santiago centre; the job points sit due north of it.
PROVIDER = Coordinate(-33.4489, -70.6693)
JOB_3KM = Coordinate(-33.4219, -70.6693)
JOB_8KM = Coordinate(-33.3770, -70.6693)
JOB_20KM = Coordinate(-33.2690, -70.6693)


class FakeRouteProvider:
    """Returns queued summaries (or raises queued errors) and records calls."""

    def __init__(self, results: Optional[list] = None) -> None:
        self.results = list(results or [])
        self.calls: List[tuple] = []

    async def get_route(self, origin: Coordinate, destination: Coordinate) -> RouteSummary:
        self.calls.append((origin, destination))
        result = self.results.pop(0) if self.results else RouteSummary(9.2, 840.0)
        if isinstance(result, BaseException):
            raise result
        return result


class GatedRouteProvider:
    """Blocks every lookup until the test releases it."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self._gates: List[asyncio.Future] = []

    async def get_route(self, origin: Coordinate, destination: Coordinate) -> RouteSummary:
        gate = asyncio.get_running_loop().create_future()
        self.calls.append((origin, destination))
        self._gates.append(gate)
        return await gate

    def release(self, summary: RouteSummary) -> None:
        for gate in self._gates:
            if not gate.done():
                gate.set_result(summary)

    def release_at(self, index: int, summary: RouteSummary) -> None:
        self._gates[index].set_result(summary)


class RecordingSubmitter:
    def __init__(self, outcomes: Optional[list] = None) -> None:
        self.outcomes = list(outcomes or [])
        self.payloads: list = []

    async def submit(self, payload):
        self.payloads.append(payload)
        outcome = self.outcomes.pop(0) if self.outcomes else SubmissionReceipt(quote_id="q-1")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class GatedSubmitter:
    """Holds every submission open until the test resolves it."""

    def __init__(self) -> None:
        self.payloads: list = []
        self.gate: Optional[asyncio.Future] = None

    async def submit(self, payload):
        self.payloads.append(payload)
        self.gate = asyncio.get_running_loop().create_future()
        return await self.gate


class FrozenClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture()
def conn():
    connection = sqlite3.connect(":memory:")
    yield connection
    connection.close()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def policy() -> TravelFeePolicy:
    return TravelFeePolicy(
        free_radius_km=5.0, per_km_rate_clp=500, min_fee_clp=1000, max_fee_clp=10000
    )


@pytest.fixture()
def cache(conn, clock) -> DistanceResolutionCache:
    return DistanceResolutionCache(conn, clock=clock)


@pytest.fixture()
def route_provider() -> FakeRouteProvider:
    return FakeRouteProvider()


@pytest.fixture()
def resolver(route_provider, cache, clock) -> DistanceResolver:
    return DistanceResolver(
        route_provider,
        cache,
        retry=RetryPolicy(attempts=3, backoff_seconds=0.5),
        sleep=no_sleep,
        clock=clock,
    )


@pytest.fixture()
def submitter() -> RecordingSubmitter:
    return RecordingSubmitter()


@pytest.fixture()
def make_composer(policy, resolver, submitter):
    def _make(**overrides) -> QuoteComposer:
        options = dict(
            project_id="project-1",
            provider_id="provider-1",
            provider_location=PROVIDER,
            tax_profile=resolve_tax_profile("business", business_id="biz-9"),
            policy=policy,
            resolver=resolver,
            submitter=submitter,
        )
        options.update(overrides)
        return QuoteComposer(**options)

    return _make
