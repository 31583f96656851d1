"""Great-circle distance helpers."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List

EARTH_RADIUS_KM = 6371.0088


@dataclass(frozen=True)
class Coordinate:
    """WGS84 point in decimal degrees."""

    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        lat = float(self.latitude)
        lon = float(self.longitude)
        if not (math.isfinite(lat) and math.isfinite(lon)):
            raise ValueError("Coordinates must be finite numbers")
        if not -90.0 <= lat <= 90.0:
            raise ValueError(f"Latitude out of range: {lat}")
        if not -180.0 <= lon <= 180.0:
            raise ValueError(f"Longitude out of range: {lon}")
        object.__setattr__(self, "latitude", lat)
        object.__setattr__(self, "longitude", lon)

    def as_lon_lat(self) -> List[float]:
        """Return ``[lon, lat]`` as expected by OpenRouteService."""
        return [self.longitude, self.latitude]

    def moved_from(self, other: "Coordinate", epsilon_deg: float) -> bool:
        return (
            abs(self.latitude - other.latitude) > epsilon_deg
            or abs(self.longitude - other.longitude) > epsilon_deg
        )


def haversine_km(origin: Coordinate, destination: Coordinate) -> float:
    """Return the straight-line distance between two points in kilometres."""

    lat1_rad, lon1_rad = math.radians(origin.latitude), math.radians(origin.longitude)
    lat2_rad, lon2_rad = math.radians(destination.latitude), math.radians(destination.longitude)
    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


__all__ = ["Coordinate", "EARTH_RADIUS_KM", "haversine_km"]
