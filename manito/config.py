"""Runtime configuration assembled from environment variables."""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "manito.db"
DEFAULT_ROUTE_PROFILE = "driving-car"
DEFAULT_ROUTE_ATTEMPTS = 3
DEFAULT_ROUTE_BACKOFF = 0.5
DEFAULT_CACHE_TTL_HOURS = 168.0
DEFAULT_VAT_RATE_PERCENT = 19.0


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy for routed-distance lookups."""

    attempts: int = DEFAULT_ROUTE_ATTEMPTS
    backoff_seconds: float = DEFAULT_ROUTE_BACKOFF

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Return the delay before retry number *attempt* (1-based)."""
        return self.backoff_seconds * (2 ** (attempt - 1))


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the quoting pipeline."""

    db_path: str
    ors_api_key: Optional[str]
    route_profile: str
    retry: RetryPolicy
    cache_ttl_hours: float
    vat_rate_percent: float


def _to_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        value = math.nan
    if not math.isfinite(value):
        logger.warning("Ignoring malformed %s=%r; using %s", key, raw, default)
        return default
    return value


def _to_int(env: Mapping[str, str], key: str, default: int) -> int:
    value = _to_float(env, key, float(default))
    if value < 1:
        logger.warning("Ignoring %s=%s below 1; using %s", key, value, default)
        return default
    return int(value)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Return :class:`Settings` read from *env* (defaults to ``os.environ``)."""

    env = os.environ if env is None else env
    backoff = _to_float(env, "MANITO_ROUTE_BACKOFF", DEFAULT_ROUTE_BACKOFF)
    if backoff < 0:
        logger.warning("Ignoring negative MANITO_ROUTE_BACKOFF; using %s", DEFAULT_ROUTE_BACKOFF)
        backoff = DEFAULT_ROUTE_BACKOFF
    return Settings(
        db_path=env.get("MANITO_DB") or env.get("ROUTES_DB") or DEFAULT_DB_PATH,
        ors_api_key=env.get("ORS_API_KEY") or None,
        route_profile=env.get("MANITO_ROUTE_PROFILE") or DEFAULT_ROUTE_PROFILE,
        retry=RetryPolicy(
            attempts=_to_int(env, "MANITO_ROUTE_ATTEMPTS", DEFAULT_ROUTE_ATTEMPTS),
            backoff_seconds=backoff,
        ),
        cache_ttl_hours=_to_float(
            env, "MANITO_DISTANCE_CACHE_TTL_HOURS", DEFAULT_CACHE_TTL_HOURS
        ),
        vat_rate_percent=_to_float(env, "MANITO_VAT_RATE", DEFAULT_VAT_RATE_PERCENT),
    )


__all__ = [
    "DEFAULT_CACHE_TTL_HOURS",
    "DEFAULT_DB_PATH",
    "DEFAULT_ROUTE_ATTEMPTS",
    "DEFAULT_ROUTE_BACKOFF",
    "DEFAULT_ROUTE_PROFILE",
    "DEFAULT_VAT_RATE_PERCENT",
    "RetryPolicy",
    "Settings",
    "load_settings",
]
