from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from geoattend.services.location import LocationSample, distance_m


class AreaLike(Protocol):
    id: int
    name: str
    center_lat: float
    center_lon: float
    radius_m: float
    is_active: bool


@dataclass(frozen=True, slots=True)
class AreaDistance:
    area_id: int
    area_name: str
    radius_m: float
    distance_m: float
    contains: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "area_id": self.area_id,
            "area_name": self.area_name,
            "radius_m": self.radius_m,
            "distance_m": round(self.distance_m, 2),
            "contains": self.contains,
        }


@dataclass(frozen=True, slots=True)
class GeofenceVerdict:
    is_within_any_area: bool
    nearest: AreaDistance | None
    candidates: tuple[AreaDistance, ...] = field(default_factory=tuple)
    low_accuracy: bool = False

    @property
    def no_areas_assigned(self) -> bool:
        return not self.candidates

    @property
    def matched_area(self) -> AreaDistance | None:
        for candidate in self.candidates:
            if candidate.contains:
                return candidate
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_within_any_area": self.is_within_any_area,
            "no_areas_assigned": self.no_areas_assigned,
            "low_accuracy": self.low_accuracy,
            "nearest": self.nearest.to_dict() if self.nearest else None,
            "candidates": [candidate.to_dict() for candidate in self.candidates],
        }


def resolve_geofence(
    sample: LocationSample,
    areas: Iterable[AreaLike],
    *,
    low_accuracy_threshold_m: float = 100.0,
) -> GeofenceVerdict:
    """Classify a sample against every active area.

    All areas are measured so that ``nearest`` is the true minimum even when an
    earlier area already contains the sample. The boundary is inclusive.
    """
    measured: list[AreaDistance] = []
    for area in areas:
        if not area.is_active:
            continue
        distance = distance_m(sample.lat, sample.lon, area.center_lat, area.center_lon)
        measured.append(
            AreaDistance(
                area_id=area.id,
                area_name=area.name,
                radius_m=float(area.radius_m),
                distance_m=distance,
                contains=distance <= area.radius_m,
            )
        )

    measured.sort(key=lambda item: (item.distance_m, item.area_id))
    return GeofenceVerdict(
        is_within_any_area=any(item.contains for item in measured),
        nearest=measured[0] if measured else None,
        candidates=tuple(measured),
        low_accuracy=sample.is_low_accuracy(low_accuracy_threshold_m),
    )


def build_location_snapshot(sample: LocationSample, verdict: GeofenceVerdict) -> dict[str, Any]:
    snapshot = sample.to_dict()
    snapshot["geofence"] = verdict.to_dict()
    return snapshot
