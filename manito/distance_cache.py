"""SQLite-backed cache of routed distances per provider/job pair."""
from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from manito.config import DEFAULT_CACHE_TTL_HOURS
from manito.distance import DistanceEstimate, DistanceSource
from manito.geo import Coordinate
from manito.schema import ensure_schema

logger = logging.getLogger(__name__)

# Roughly 11 m at the equator.
COORDINATE_EPSILON_DEG = 1e-4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DistanceResolutionCache:
    """Most recent ROUTED estimate per ``(provider_id, job_id)``.

    Entries expire after ``ttl`` and are dropped as soon as either endpoint
    moves by more than ``epsilon_deg``.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        *,
        ttl: timedelta = timedelta(hours=DEFAULT_CACHE_TTL_HOURS),
        epsilon_deg: float = COORDINATE_EPSILON_DEG,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.conn = connection
        self.ttl = ttl
        self.epsilon_deg = epsilon_deg
        self._clock = clock
        ensure_schema(self.conn)

    def lookup(
        self,
        provider_id: str,
        job_id: str,
        origin: Coordinate,
        destination: Coordinate,
    ) -> Optional[DistanceEstimate]:
        row = self.conn.execute(
            """
            SELECT origin_lat, origin_lon, dest_lat, dest_lon,
                   distance_km, duration_seconds, source, resolved_at
            FROM distance_cache
            WHERE provider_id = ? AND job_id = ?
            """,
            (provider_id, job_id),
        ).fetchone()
        if row is None:
            logger.debug("Distance cache miss for provider %s job %s", provider_id, job_id)
            return None

        (origin_lat, origin_lon, dest_lat, dest_lon,
         distance_km, duration_seconds, source, resolved_at) = tuple(row)
        cached_origin = Coordinate(origin_lat, origin_lon)
        cached_dest = Coordinate(dest_lat, dest_lon)
        if origin.moved_from(cached_origin, self.epsilon_deg) or destination.moved_from(
            cached_dest, self.epsilon_deg
        ):
            logger.debug(
                "Coordinates moved for provider %s job %s; invalidating cached distance",
                provider_id,
                job_id,
            )
            self.invalidate(provider_id, job_id)
            return None

        resolved = datetime.fromisoformat(resolved_at)
        if resolved.tzinfo is None:
            resolved = resolved.replace(tzinfo=timezone.utc)
        if self._clock() - resolved > self.ttl:
            logger.debug("Cached distance for provider %s job %s expired", provider_id, job_id)
            self.invalidate(provider_id, job_id)
            return None

        return DistanceEstimate(
            kilometers=float(distance_km),
            source=DistanceSource(source),
            resolved_at=resolved,
            duration_seconds=None if duration_seconds is None else float(duration_seconds),
        )

    def store(
        self,
        provider_id: str,
        job_id: str,
        origin: Coordinate,
        destination: Coordinate,
        estimate: DistanceEstimate,
    ) -> None:
        if estimate.source is not DistanceSource.ROUTED or estimate.degraded:
            raise ValueError("Only non-degraded ROUTED estimates can be cached")
        self.conn.execute(
            """
            INSERT OR REPLACE INTO distance_cache(
                provider_id, job_id, origin_lat, origin_lon, dest_lat, dest_lon,
                distance_km, duration_seconds, source, resolved_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?)
            """,
            (
                provider_id,
                job_id,
                origin.latitude,
                origin.longitude,
                destination.latitude,
                destination.longitude,
                estimate.kilometers,
                estimate.duration_seconds,
                estimate.source.value,
                estimate.resolved_at.isoformat(),
            ),
        )
        self.conn.commit()

    def invalidate(self, provider_id: str, job_id: str) -> None:
        self.conn.execute(
            "DELETE FROM distance_cache WHERE provider_id = ? AND job_id = ?",
            (provider_id, job_id),
        )
        self.conn.commit()


__all__ = ["COORDINATE_EPSILON_DEG", "DistanceResolutionCache"]
