from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from geoattend.errors import ValidationError

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True, slots=True)
class LocationSample:
    lat: float
    lon: float
    accuracy_m: float | None = None
    captured_at: datetime | None = None

    def is_low_accuracy(self, threshold_m: float) -> bool:
        return self.accuracy_m is not None and self.accuracy_m > threshold_m

    def to_dict(self) -> dict[str, Any]:
        return {
            "lat": self.lat,
            "lon": self.lon,
            "accuracy_m": self.accuracy_m,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
        }


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters (haversine, spherical earth)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    # Rounding can push a a hair above 1.0 for antipodal points.
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(max(0.0, 1 - a)))
    return EARTH_RADIUS_M * c


def speed_kmh(distance_meters: float, duration_seconds: float) -> float:
    if duration_seconds <= 0:
        return 0.0
    return (distance_meters / 1000.0) / (duration_seconds / 3600.0)


def validate_coordinates(lat: float, lon: float) -> None:
    if not (math.isfinite(lat) and -90.0 <= lat <= 90.0):
        raise ValidationError(code="INVALID_LATITUDE", message="Latitude must be between -90 and 90.")
    if not (math.isfinite(lon) and -180.0 <= lon <= 180.0):
        raise ValidationError(code="INVALID_LONGITUDE", message="Longitude must be between -180 and 180.")


def validate_sample(sample: LocationSample) -> None:
    validate_coordinates(sample.lat, sample.lon)
    if sample.accuracy_m is not None and not (math.isfinite(sample.accuracy_m) and sample.accuracy_m >= 0):
        raise ValidationError(code="INVALID_ACCURACY", message="Accuracy must be a non-negative number of meters.")
