from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from geoattend.errors import ConflictError, NotFoundError, PolicyViolationError, ValidationError
from geoattend.models import (
    AnomalySeverity,
    AnomalyType,
    AttendanceDay,
    AuthorizedArea,
    MovementTrail,
    SiteVisitPoint,
    TrailAnomaly,
    VisitKind,
)
from geoattend.services.attendance_rules import DayState, day_state
from geoattend.services.directory import SqlDirectory
from geoattend.services.local_time import local_day, normalize_ts
from geoattend.services.location import LocationSample, distance_m, speed_kmh, validate_sample
from geoattend.settings import get_settings

logger = logging.getLogger("geoattend.movement_trail")


@dataclass(frozen=True, slots=True)
class TrailThresholds:
    max_speed_kmh: float = 120.0
    max_plausible_speed_kmh: float = 900.0
    location_jump_min_distance_m: float = 500.0
    location_jump_accuracy_ratio: float = 0.2
    low_accuracy_threshold_m: float = 100.0
    missing_route_gap_seconds: float = 4 * 60 * 60
    max_daily_distance_km: float = 500.0

    @classmethod
    def from_settings(cls) -> TrailThresholds:
        settings = get_settings()
        return cls(
            max_speed_kmh=settings.trail_max_speed_kmh,
            max_plausible_speed_kmh=settings.trail_max_plausible_speed_kmh,
            location_jump_min_distance_m=settings.trail_location_jump_min_distance_m,
            location_jump_accuracy_ratio=settings.trail_location_jump_accuracy_ratio,
            low_accuracy_threshold_m=settings.low_accuracy_threshold_m,
            missing_route_gap_seconds=settings.trail_missing_route_gap_seconds,
            max_daily_distance_km=settings.trail_max_daily_distance_km,
        )


@dataclass(frozen=True, slots=True)
class TrailPoint:
    point_id: int
    ts_utc: datetime
    lat: float
    lon: float
    accuracy_m: float | None = None


@dataclass(frozen=True, slots=True)
class TrailSegment:
    from_point_id: int
    to_point_id: int
    distance_m: float
    duration_s: float
    speed_kmh: float


@dataclass(frozen=True, slots=True)
class DetectedAnomaly:
    type: AnomalyType
    severity: AnomalySeverity
    point_id: int
    description: str
    detected_at: datetime

    def identity(self) -> tuple[str, str, int, str]:
        return (self.type.value, self.severity.value, self.point_id, self.description)


@dataclass(frozen=True, slots=True)
class MovementTrailResult:
    segments: tuple[TrailSegment, ...]
    total_distance_m: float
    total_duration_s: float
    anomalies: tuple[DetectedAnomaly, ...]
    point_count: int
    points: tuple[TrailPoint, ...] = field(default_factory=tuple)

    @property
    def is_validated(self) -> bool:
        return not self.anomalies


def _segment_anomalies(
    segment: TrailSegment,
    start: TrailPoint,
    end: TrailPoint,
    thresholds: TrailThresholds,
    detected_at: datetime,
) -> list[DetectedAnomaly]:
    found: list[DetectedAnomaly] = []
    d = segment.distance_m
    t = segment.duration_s

    if segment.speed_kmh > thresholds.max_speed_kmh:
        found.append(
            DetectedAnomaly(
                type=AnomalyType.EXCESSIVE_SPEED,
                severity=AnomalySeverity.HIGH,
                point_id=end.point_id,
                description=(
                    f"Speed of {segment.speed_kmh:.1f} km/h exceeds maximum allowed speed "
                    f"of {thresholds.max_speed_kmh:.0f} km/h"
                ),
                detected_at=detected_at,
            )
        )

    plausible_limit_m = thresholds.max_plausible_speed_kmh * 1000.0 * max(t, 0.0) / 3600.0
    if d > plausible_limit_m:
        found.append(
            DetectedAnomaly(
                type=AnomalyType.IMPOSSIBLE_DISTANCE,
                severity=AnomalySeverity.HIGH,
                point_id=end.point_id,
                description=(
                    f"Distance of {d / 1000.0:.2f} km in {t:.0f} s cannot be covered "
                    f"even at {thresholds.max_plausible_speed_kmh:.0f} km/h"
                ),
                detected_at=detected_at,
            )
        )

    accuracies = [value for value in (start.accuracy_m, end.accuracy_m) if value is not None]
    worst_accuracy = max(accuracies) if accuracies else None
    if (
        worst_accuracy is not None
        and d >= thresholds.location_jump_min_distance_m
        and worst_accuracy > thresholds.low_accuracy_threshold_m
        and worst_accuracy >= d * thresholds.location_jump_accuracy_ratio
    ):
        found.append(
            DetectedAnomaly(
                type=AnomalyType.LOCATION_JUMP,
                severity=AnomalySeverity.MEDIUM,
                point_id=end.point_id,
                description=(
                    f"Jump of {d / 1000.0:.2f} km reported with {worst_accuracy:.0f} m accuracy"
                ),
                detected_at=detected_at,
            )
        )

    if t > thresholds.missing_route_gap_seconds:
        found.append(
            DetectedAnomaly(
                type=AnomalyType.MISSING_ROUTE,
                severity=AnomalySeverity.LOW,
                point_id=end.point_id,
                description=f"No points recorded for {t / 3600.0:.1f} h between consecutive visits",
                detected_at=detected_at,
            )
        )
    return found


def compute_movement_trail(
    points: Iterable[TrailPoint],
    *,
    thresholds: TrailThresholds | None = None,
    detected_at: datetime | None = None,
) -> MovementTrailResult:
    """Derive segments, totals and anomalies for one employee-day.

    Pure: the same points and thresholds always give the same result, whatever
    order the points arrive in. Ties on timestamp are broken by point id.
    """
    thresholds = thresholds or TrailThresholds()
    detected = normalize_ts(detected_at)
    ordered = sorted(points, key=lambda point: (normalize_ts(point.ts_utc), point.point_id))

    segments: list[TrailSegment] = []
    anomalies: list[DetectedAnomaly] = []
    total_distance = 0.0
    total_duration = 0.0
    for start, end in zip(ordered, ordered[1:]):
        d = distance_m(start.lat, start.lon, end.lat, end.lon)
        t = (normalize_ts(end.ts_utc) - normalize_ts(start.ts_utc)).total_seconds()
        segment = TrailSegment(
            from_point_id=start.point_id,
            to_point_id=end.point_id,
            distance_m=d,
            duration_s=t,
            speed_kmh=speed_kmh(d, t),
        )
        segments.append(segment)
        anomalies.extend(_segment_anomalies(segment, start, end, thresholds, detected))
        total_distance += d
        total_duration += t

    if ordered and total_distance / 1000.0 > thresholds.max_daily_distance_km:
        anomalies.append(
            DetectedAnomaly(
                type=AnomalyType.EXCESSIVE_SPEED,
                severity=AnomalySeverity.HIGH,
                point_id=ordered[-1].point_id,
                description=(
                    f"Total daily distance of {total_distance / 1000.0:.1f} km exceeds "
                    f"maximum of {thresholds.max_daily_distance_km:.0f} km"
                ),
                detected_at=detected,
            )
        )

    return MovementTrailResult(
        segments=tuple(segments),
        total_distance_m=total_distance,
        total_duration_s=total_duration,
        anomalies=tuple(anomalies),
        point_count=len(ordered),
        points=tuple(ordered),
    )


def record_site_visit_point(
    db: Session,
    *,
    employee_id: int,
    sample: LocationSample,
    timestamp: datetime | None = None,
    site_id: int | None = None,
    site_name: str | None = None,
    kind: VisitKind = VisitKind.ARRIVE,
) -> SiteVisitPoint:
    validate_sample(sample)
    ts_utc = normalize_ts(timestamp or sample.captured_at)
    point_day = local_day(ts_utc)

    employee = SqlDirectory(db).get_employee(employee_id)
    if employee is None:
        raise NotFoundError(code="EMPLOYEE_NOT_FOUND", message="Employee not found.")
    if not employee.is_active:
        raise PolicyViolationError(code="EMPLOYEE_INACTIVE", message="Employee is inactive.")

    if site_id is not None and db.get(AuthorizedArea, site_id) is None:
        raise NotFoundError(code="SITE_NOT_FOUND", message="Site not found.")
    normalized_site_name = (site_name or "").strip() or None
    if site_id is None and normalized_site_name is None:
        raise ValidationError(code="SITE_REQUIRED", message="Either a registered site or a site name is required.")

    attendance_day = db.scalar(
        select(AttendanceDay).where(
            AttendanceDay.employee_id == employee_id,
            AttendanceDay.day_date == point_day,
        )
    )
    if day_state(attendance_day) == DayState.CHECKED_OUT:
        raise ConflictError(code="DAY_CLOSED", message="Visit points cannot be added after check-out.")

    point = SiteVisitPoint(
        employee_id=employee_id,
        day_date=point_day,
        ts_utc=ts_utc,
        lat=sample.lat,
        lon=sample.lon,
        accuracy_m=sample.accuracy_m,
        site_id=site_id,
        site_name=normalized_site_name,
        kind=kind,
    )
    db.add(point)
    db.commit()
    db.refresh(point)
    logger.info(
        "site_visit_point_recorded",
        extra={
            "employee_id": employee_id,
            "day_date": point_day.isoformat(),
            "point_id": point.id,
            "site_id": site_id,
            "kind": kind.value,
        },
    )
    return point


def _load_trail_points(db: Session, employee_id: int, day_date: date) -> list[TrailPoint]:
    rows = db.scalars(
        select(SiteVisitPoint)
        .where(
            SiteVisitPoint.employee_id == employee_id,
            SiteVisitPoint.day_date == day_date,
        )
        .order_by(SiteVisitPoint.ts_utc.asc(), SiteVisitPoint.id.asc())
    ).all()
    return [
        TrailPoint(
            point_id=row.id,
            ts_utc=normalize_ts(row.ts_utc),
            lat=row.lat,
            lon=row.lon,
            accuracy_m=row.accuracy_m,
        )
        for row in rows
    ]


def get_movement_trail(db: Session, *, employee_id: int, day_date: date) -> MovementTrail | None:
    return db.scalar(
        select(MovementTrail)
        .where(
            MovementTrail.employee_id == employee_id,
            MovementTrail.day_date == day_date,
        )
        .execution_options(populate_existing=True)
    )


def recompute_movement_trail(
    db: Session,
    *,
    employee_id: int,
    day_date: date,
    now_utc: datetime | None = None,
    thresholds: TrailThresholds | None = None,
) -> MovementTrail:
    """Rebuild the stored trail and its anomaly set from the day's visit points.

    The previous anomaly rows are removed and the new ones written in the same
    transaction, so readers never see a partially replaced trail.
    """
    computed_at = normalize_ts(now_utc)
    result = compute_movement_trail(
        _load_trail_points(db, employee_id, day_date),
        thresholds=thresholds or TrailThresholds.from_settings(),
        detected_at=computed_at,
    )

    trail = get_movement_trail(db, employee_id=employee_id, day_date=day_date)
    if trail is None:
        trail = MovementTrail(employee_id=employee_id, day_date=day_date)
        db.add(trail)

    trail.total_distance_m = result.total_distance_m
    trail.total_duration_s = result.total_duration_s
    trail.point_count = result.point_count
    trail.is_validated = result.is_validated
    trail.computed_at = computed_at
    trail.anomalies = [
        TrailAnomaly(
            point_id=anomaly.point_id,
            type=anomaly.type,
            severity=anomaly.severity,
            description=anomaly.description,
            detected_at=anomaly.detected_at,
        )
        for anomaly in result.anomalies
    ]
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(
            code="TRAIL_RECOMPUTE_CONFLICT",
            message="Movement trail is being recomputed concurrently. Please retry.",
        ) from exc
    db.refresh(trail)

    logger.info(
        "movement_trail_recomputed",
        extra={
            "employee_id": employee_id,
            "day_date": day_date.isoformat(),
            "point_count": result.point_count,
            "total_distance_m": round(result.total_distance_m, 2),
            "anomaly_count": len(result.anomalies),
        },
    )
    if not result.is_validated:
        logger.warning(
            "movement_trail_anomalies_detected",
            extra={
                "employee_id": employee_id,
                "day_date": day_date.isoformat(),
                "anomaly_types": sorted({anomaly.type.value for anomaly in result.anomalies}),
            },
        )
    return trail


def get_distance_statistics(
    db: Session,
    *,
    employee_id: int,
    start_date: date,
    end_date: date,
) -> dict[str, Any]:
    if end_date < start_date:
        raise ValidationError(code="INVALID_DATE_RANGE", message="end_date must not be before start_date.")

    trails = db.scalars(
        select(MovementTrail)
        .where(
            MovementTrail.employee_id == employee_id,
            MovementTrail.day_date >= start_date,
            MovementTrail.day_date <= end_date,
        )
        .order_by(MovementTrail.day_date.asc())
    ).all()

    total_distance_km = sum(trail.total_distance_m for trail in trails) / 1000.0
    max_distance_km = max((trail.total_distance_m for trail in trails), default=0.0) / 1000.0
    anomalies_by_severity = {severity.value: 0 for severity in AnomalySeverity}
    days_with_anomalies = 0
    for trail in trails:
        if trail.anomalies:
            days_with_anomalies += 1
        for anomaly in trail.anomalies:
            anomalies_by_severity[anomaly.severity.value] += 1

    return {
        "employee_id": employee_id,
        "start_date": start_date.isoformat(),
        "end_date": end_date.isoformat(),
        "days_tracked": len(trails),
        "total_distance_km": round(total_distance_km, 2),
        "average_daily_distance_km": round(total_distance_km / len(trails), 2) if trails else 0.0,
        "max_daily_distance_km": round(max_distance_km, 2),
        "days_with_anomalies": days_with_anomalies,
        "anomalies_by_severity": anomalies_by_severity,
    }
