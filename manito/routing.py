"""Routed-distance lookups built around OpenRouteService."""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import openrouteservice as ors
from openrouteservice import exceptions as ors_exceptions

from manito.config import DEFAULT_ROUTE_PROFILE, RetryPolicy
from manito.errors import DistanceServiceError, ProtocolError
from manito.geo import Coordinate

logger = logging.getLogger(__name__)

ROUTABLE_POINT_ERROR_CODE = 2010
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

_ORS_CLIENT: Optional["ors.Client"] = None


@dataclass(frozen=True)
class RouteSummary:
    distance_km: float
    duration_seconds: float


class RoutedDistanceProvider(Protocol):
    """Anything that can return a road-network distance between two points."""

    async def get_route(
        self, origin: Coordinate, destination: Coordinate
    ) -> RouteSummary:  # pragma: no cover - protocol
        ...


def get_ors_client(client: Optional["ors.Client"] = None) -> "ors.Client":
    """Return an OpenRouteService client."""

    if client is not None:
        return client

    global _ORS_CLIENT
    if _ORS_CLIENT is None:
        api_key = os.environ.get("ORS_API_KEY")
        if not api_key:
            raise RuntimeError(
                "Set ORS_API_KEY env var (export ORS_API_KEY=YOUR_KEY)"
            )
        _ORS_CLIENT = ors.Client(key=api_key)
    return _ORS_CLIENT


def _is_routable_point_error(exc: Exception) -> bool:
    for payload in (arg for arg in getattr(exc, "args", ()) if isinstance(arg, dict)):
        error = payload.get("error") or {}
        if not isinstance(error, dict):
            continue
        message = str(error.get("message") or "").lower()
        if error.get("code") == ROUTABLE_POINT_ERROR_CODE or "could not find routable point" in message:
            return True
    text = " ".join(str(arg) for arg in getattr(exc, "args", ())).lower()
    return "could not find routable point" in text


def _classify_ors_error(exc: Exception) -> DistanceServiceError:
    if isinstance(exc, ors_exceptions.Timeout):
        return DistanceServiceError(f"Routing request timed out: {exc}", retryable=True)
    if isinstance(exc, ors_exceptions.ApiError):
        status = getattr(exc, "status", None)
        if _is_routable_point_error(exc):
            return DistanceServiceError(
                "No routable road near one of the coordinates", retryable=False
            )
        retryable = status in RETRYABLE_STATUS_CODES
        return DistanceServiceError(
            f"Routing API error (status {status}): {exc}", retryable=retryable
        )
    if isinstance(exc, ors_exceptions.HTTPError):
        status = getattr(exc, "status_code", None)
        return DistanceServiceError(
            f"Routing HTTP error (status {status})",
            retryable=status in RETRYABLE_STATUS_CODES,
        )
    return DistanceServiceError(f"Routing request failed: {exc}", retryable=True)


def parse_route_summary(route: Any) -> RouteSummary:
    """Extract distance and duration from an ORS ``directions`` JSON response."""

    try:
        summary = route["routes"][0]["summary"]
        meters = float(summary["distance"])
        seconds = float(summary.get("duration", 0.0))
    except (KeyError, IndexError, TypeError, ValueError, AttributeError) as exc:
        raise ProtocolError(f"Unexpected routing response shape: {exc!r}") from exc
    if meters < 0 or seconds < 0:
        raise ProtocolError("Routing response contained negative distance or duration")
    return RouteSummary(distance_km=meters / 1000.0, duration_seconds=seconds)


class OrsRoutedDistanceProvider:
    """:class:`RoutedDistanceProvider` backed by the ORS directions endpoint.

    The client is resolved on first use so quotes inside the free radius never
    need an API key.
    """

    def __init__(
        self,
        client: Optional["ors.Client"] = None,
        *,
        profile: str = DEFAULT_ROUTE_PROFILE,
    ) -> None:
        self._client = client
        self.profile = profile

    def _directions(
        self, client: "ors.Client", origin: Coordinate, destination: Coordinate
    ) -> Any:
        return client.directions(
            coordinates=[origin.as_lon_lat(), destination.as_lon_lat()],
            profile=self.profile,
            format="json",
        )

    async def get_route(self, origin: Coordinate, destination: Coordinate) -> RouteSummary:
        try:
            client = get_ors_client(self._client)
        except RuntimeError as exc:
            raise DistanceServiceError(str(exc), retryable=False) from exc
        try:
            route = await asyncio.to_thread(self._directions, client, origin, destination)
        except (
            ors_exceptions.ApiError,
            ors_exceptions.HTTPError,
            ors_exceptions.Timeout,
        ) as exc:
            raise _classify_ors_error(exc) from exc
        except OSError as exc:
            raise DistanceServiceError(f"Routing request failed: {exc}", retryable=True) from exc
        summary = parse_route_summary(route)
        logger.info(
            "Routed %s -> %s: %.2f km", origin, destination, summary.distance_km
        )
        return summary


async def retry_route_lookup(
    provider: RoutedDistanceProvider,
    origin: Coordinate,
    destination: Coordinate,
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RouteSummary:
    """Call ``provider.get_route`` with bounded retry/backoff semantics.

    Only retryable :class:`DistanceServiceError` failures are retried. The last
    error is re-raised with ``attempts`` set once the policy is exhausted.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return await provider.get_route(origin, destination)
        except DistanceServiceError as exc:
            exc.attempts = attempt
            if not exc.retryable or attempt >= policy.attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retrying route lookup in %.2fs (%d/%d attempts) after error: %s",
                delay,
                attempt,
                policy.attempts,
                exc,
            )
            if delay:
                await sleep(delay)


__all__ = [
    "OrsRoutedDistanceProvider",
    "RouteSummary",
    "RoutedDistanceProvider",
    "get_ors_client",
    "parse_route_summary",
    "retry_route_lookup",
]
