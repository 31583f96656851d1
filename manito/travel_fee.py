"""Distance-tiered travel fee calculation."""
from __future__ import annotations

from dataclasses import dataclass

from manito.distance import DistanceEstimate, within_free_radius
from manito.errors import ValidationError
from manito.money import require_clp, round_clp, to_decimal


@dataclass(frozen=True)
class TravelFeePolicy:
    """Travel pricing for one provider/service configuration."""

    free_radius_km: float
    per_km_rate_clp: float
    min_fee_clp: int
    max_fee_clp: int
    code: str = "DEFAULT"

    def __post_init__(self) -> None:
        if to_decimal(self.free_radius_km, "free_radius_km") < 0:
            raise ValidationError("free_radius_km", "must be non-negative")
        if to_decimal(self.per_km_rate_clp, "per_km_rate_clp") < 0:
            raise ValidationError("per_km_rate_clp", "must be non-negative")
        min_fee = require_clp(self.min_fee_clp, "min_fee_clp")
        max_fee = require_clp(self.max_fee_clp, "max_fee_clp")
        if max_fee < min_fee:
            raise ValidationError("max_fee_clp", "must be greater than or equal to min_fee_clp")


def compute_travel_fee(estimate: DistanceEstimate, policy: TravelFeePolicy) -> int:
    """Return the travel fee in whole pesos for *estimate* under *policy*.

    Jobs inside the free radius cost nothing, whatever the estimate source.
    Beyond it the fee is ``kilometers * per_km_rate_clp`` rounded half-up and
    clamped to ``[min_fee_clp, max_fee_clp]``. Degraded estimates are refused
    so a straight-line guess never turns into a billed fee.
    """

    if estimate.degraded:
        raise ValidationError(
            "travel_fee_clp", "distance estimate is degraded; travel fee pending"
        )
    if within_free_radius(estimate.kilometers, policy):
        return 0
    raw = to_decimal(estimate.kilometers, "kilometers") * to_decimal(
        policy.per_km_rate_clp, "per_km_rate_clp"
    )
    fee = round_clp(raw)
    return max(int(policy.min_fee_clp), min(int(policy.max_fee_clp), fee))


__all__ = ["TravelFeePolicy", "compute_travel_fee"]
