"""Free-radius aware distance resolution.

The resolver answers "how far is this job from the provider?" as cheaply as
possible: a haversine pre-check settles every job inside the provider's free
radius without touching the paid routing API, fresh routed results are reused
from :class:`~manito.distance_cache.DistanceResolutionCache`, and only the
remaining jobs trigger a routed lookup.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING

from manito.config import RetryPolicy
from manito.errors import DistanceServiceError
from manito.geo import Coordinate, haversine_km
from manito.routing import RoutedDistanceProvider, retry_route_lookup

if TYPE_CHECKING:  # pragma: no cover - hints for type-checkers only
    from manito.distance_cache import DistanceResolutionCache
    from manito.travel_fee import TravelFeePolicy

logger = logging.getLogger(__name__)


class DistanceSource(str, enum.Enum):
    ESTIMATED = "estimated"
    ROUTED = "routed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DistanceEstimate:
    kilometers: float
    source: DistanceSource
    resolved_at: datetime
    duration_seconds: Optional[float] = None
    degraded: bool = False

    def __post_init__(self) -> None:
        if self.kilometers < 0:
            raise ValueError("kilometers must be non-negative")

    @property
    def is_routed(self) -> bool:
        return self.source is DistanceSource.ROUTED


def within_free_radius(kilometers: float, policy: "TravelFeePolicy") -> bool:
    """Return True when *kilometers* falls in the free tier (boundary inclusive)."""
    return kilometers <= policy.free_radius_km


class DistanceResolver:
    """Resolve provider-to-job distances behind the free-radius rule."""

    def __init__(
        self,
        provider: RoutedDistanceProvider,
        cache: "DistanceResolutionCache",
        *,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._clock = clock

    async def resolve(
        self,
        provider_location: Coordinate,
        job_location: Coordinate,
        policy: "TravelFeePolicy",
        *,
        provider_id: str,
        job_id: str,
        is_current: Optional[Callable[[], bool]] = None,
    ) -> DistanceEstimate:
        """Return the distance estimate for a provider/job pair.

        Raises :class:`DistanceServiceError` when the routed lookup fails; its
        ``fallback`` carries the straight-line estimate marked as degraded.
        When *is_current* returns False once the routed lookup finishes, the
        result is returned but not cached.
        """

        straight_km = haversine_km(provider_location, job_location)
        if within_free_radius(straight_km, policy):
            logger.debug(
                "Job %s is %.2f km from provider %s, inside free radius %.2f km",
                job_id,
                straight_km,
                provider_id,
                policy.free_radius_km,
            )
            return DistanceEstimate(
                kilometers=straight_km,
                source=DistanceSource.ESTIMATED,
                resolved_at=self._clock(),
            )

        cached = self._cache.lookup(provider_id, job_id, provider_location, job_location)
        if cached is not None:
            logger.debug("Distance cache hit for provider %s job %s", provider_id, job_id)
            return cached

        try:
            summary = await retry_route_lookup(
                self._provider,
                provider_location,
                job_location,
                self._retry,
                sleep=self._sleep,
            )
        except DistanceServiceError as exc:
            logger.warning(
                "Routed distance unavailable for provider %s job %s after %d attempt(s): %s",
                provider_id,
                job_id,
                exc.attempts,
                exc,
            )
            exc.fallback = DistanceEstimate(
                kilometers=straight_km,
                source=DistanceSource.ESTIMATED,
                resolved_at=self._clock(),
                degraded=True,
            )
            raise

        estimate = DistanceEstimate(
            kilometers=summary.distance_km,
            source=DistanceSource.ROUTED,
            resolved_at=self._clock(),
            duration_seconds=summary.duration_seconds,
        )
        if is_current is not None and not is_current():
            logger.debug(
                "Not caching superseded routed distance for provider %s job %s",
                provider_id,
                job_id,
            )
            return estimate
        self._cache.store(provider_id, job_id, provider_location, job_location, estimate)
        return estimate

    def invalidate(self, provider_id: str, job_id: str) -> None:
        """Drop any cached routed distance so the next resolve recomputes it."""
        self._cache.invalidate(provider_id, job_id)


__all__ = [
    "DistanceEstimate",
    "DistanceResolver",
    "DistanceSource",
    "within_free_radius",
]
