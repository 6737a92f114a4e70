from __future__ import annotations

import random
import unittest
from datetime import date, timedelta

from geoattend.errors import ConflictError, NotFoundError, PolicyViolationError, ValidationError
from geoattend.models import AnomalySeverity, AnomalyType, MovementTrail, SiteVisitPoint, TrailAnomaly
from geoattend.services.attendance import check_in, check_out
from geoattend.services.location import LocationSample
from geoattend.services.movement_trail import (
    TrailPoint,
    compute_movement_trail,
    get_distance_statistics,
    get_movement_trail,
    recompute_movement_trail,
    record_site_visit_point,
)
from tests.db_support import OFFICE_LAT, OFFICE_LON, add_area, add_employee, ist, make_session

DAY = date(2026, 3, 2)
# Degrees of latitude per kilometre on a 6371 km sphere.
KM_LAT = 1 / 111.195


def _point(point_id: int, minutes: float, north_km: float, accuracy_m: float | None = None) -> TrailPoint:
    return TrailPoint(
        point_id=point_id,
        ts_utc=ist(2026, 3, 2, 9, 0) + timedelta(minutes=minutes),
        lat=OFFICE_LAT + north_km * KM_LAT,
        lon=OFFICE_LON,
        accuracy_m=accuracy_m,
    )


class ComputeMovementTrailTests(unittest.TestCase):
    def test_fast_segment_is_flagged_once(self) -> None:
        result = compute_movement_trail([_point(1, 0, 0.0), _point(2, 1, 3.0)])

        self.assertEqual(len(result.segments), 1)
        self.assertAlmostEqual(result.total_distance_m, 3000, delta=5)
        self.assertEqual(result.total_duration_s, 60)
        self.assertAlmostEqual(result.segments[0].speed_kmh, 180, delta=1)
        self.assertEqual(len(result.anomalies), 1)
        anomaly = result.anomalies[0]
        self.assertEqual(anomaly.type, AnomalyType.EXCESSIVE_SPEED)
        self.assertEqual(anomaly.severity, AnomalySeverity.HIGH)
        self.assertEqual(anomaly.point_id, 2)
        self.assertFalse(result.is_validated)

    def test_result_does_not_depend_on_input_order(self) -> None:
        points = [
            _point(1, 0, 0.0),
            _point(2, 1, 3.0),
            _point(3, 1, 3.5),  # same timestamp as point 2
            _point(4, 40, 4.0, accuracy_m=500),
            _point(5, 400, 5.0),
        ]
        detected_at = ist(2026, 3, 2, 20, 0)
        baseline = compute_movement_trail(points, detected_at=detected_at)

        shuffled = list(points)
        random.Random(7).shuffle(shuffled)
        again = compute_movement_trail(reversed(shuffled), detected_at=detected_at)

        self.assertEqual([p.point_id for p in baseline.points], [1, 2, 3, 4, 5])
        self.assertEqual(baseline.segments, again.segments)
        self.assertEqual(baseline.total_distance_m, again.total_distance_m)
        self.assertEqual(
            [anomaly.identity() for anomaly in baseline.anomalies],
            [anomaly.identity() for anomaly in again.anomalies],
        )

    def test_zero_duration_with_distance_is_impossible(self) -> None:
        result = compute_movement_trail([_point(1, 0, 0.0), _point(2, 0, 1.0)])
        self.assertEqual([a.type for a in result.anomalies], [AnomalyType.IMPOSSIBLE_DISTANCE])
        self.assertEqual(result.segments[0].speed_kmh, 0.0)

    def test_long_gap_is_missing_route(self) -> None:
        result = compute_movement_trail([_point(1, 0, 0.0), _point(2, 300, 1.0)])
        self.assertEqual([a.type for a in result.anomalies], [AnomalyType.MISSING_ROUTE])
        self.assertEqual(result.anomalies[0].severity, AnomalySeverity.LOW)

    def test_inaccurate_jump_is_location_jump_only(self) -> None:
        result = compute_movement_trail([_point(1, 0, 0.0, accuracy_m=20), _point(2, 30, 2.0, accuracy_m=500)])
        self.assertEqual([a.type for a in result.anomalies], [AnomalyType.LOCATION_JUMP])
        self.assertEqual(result.anomalies[0].severity, AnomalySeverity.MEDIUM)

    def test_daily_distance_over_limit_is_flagged_on_last_point(self) -> None:
        result = compute_movement_trail([_point(1, 0, 0.0), _point(2, 600, 600.0)])
        types = {(a.type, a.point_id) for a in result.anomalies}
        self.assertIn((AnomalyType.MISSING_ROUTE, 2), types)
        self.assertIn((AnomalyType.EXCESSIVE_SPEED, 2), types)

    def test_single_point_and_empty_input(self) -> None:
        single = compute_movement_trail([_point(1, 0, 0.0)])
        self.assertEqual(single.point_count, 1)
        self.assertEqual(single.segments, ())
        self.assertTrue(single.is_validated)

        empty = compute_movement_trail([])
        self.assertEqual(empty.point_count, 0)
        self.assertEqual(empty.total_distance_m, 0.0)


class MovementTrailPersistenceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.employee = add_employee(self.db, full_name="Arjun Nair")
        self.area = add_area(self.db, name="Bengaluru HQ", assign_to=[self.employee.id])

    def tearDown(self) -> None:
        self.db.close()

    def _record(self, minute: int, north_km: float, **kwargs):
        kwargs.setdefault("site_name", "Client site")
        return record_site_visit_point(
            self.db,
            employee_id=self.employee.id,
            sample=LocationSample(lat=OFFICE_LAT + north_km * KM_LAT, lon=OFFICE_LON, accuracy_m=10),
            timestamp=ist(2026, 3, 2, 10, minute),
            **kwargs,
        )

    def test_recompute_twice_keeps_one_trail_without_duplicate_anomalies(self) -> None:
        self._record(0, 0.0, site_id=self.area.id, site_name=None)
        self._record(1, 3.0)

        first = recompute_movement_trail(
            self.db,
            employee_id=self.employee.id,
            day_date=DAY,
            now_utc=ist(2026, 3, 2, 20, 0),
        )
        second = recompute_movement_trail(
            self.db,
            employee_id=self.employee.id,
            day_date=DAY,
            now_utc=ist(2026, 3, 2, 21, 0),
        )

        self.assertEqual(first.id, second.id)
        self.assertEqual(self.db.query(MovementTrail).count(), 1)
        self.assertEqual(self.db.query(TrailAnomaly).count(), 1)
        stored = get_movement_trail(self.db, employee_id=self.employee.id, day_date=DAY)
        self.assertEqual(stored.point_count, 2)
        self.assertFalse(stored.is_validated)
        self.assertEqual([a.type for a in stored.anomalies], [AnomalyType.EXCESSIVE_SPEED])

    def test_recompute_replaces_anomalies_when_points_change(self) -> None:
        self._record(0, 0.0)
        self._record(1, 3.0)
        recompute_movement_trail(self.db, employee_id=self.employee.id, day_date=DAY)
        self._record(59, 3.5)

        trail = recompute_movement_trail(self.db, employee_id=self.employee.id, day_date=DAY)

        self.assertEqual(trail.point_count, 3)
        self.assertEqual(self.db.query(TrailAnomaly).count(), 1)

    def test_visit_point_needs_known_site_or_name(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self._record(0, 0.0, site_name="   ")
        self.assertEqual(ctx.exception.code, "SITE_REQUIRED")

        with self.assertRaises(NotFoundError) as ctx:
            self._record(0, 0.0, site_id=9999)
        self.assertEqual(ctx.exception.code, "SITE_NOT_FOUND")

    def test_visit_point_requires_active_employee(self) -> None:
        sample = LocationSample(lat=OFFICE_LAT, lon=OFFICE_LON, accuracy_m=10)
        with self.assertRaises(NotFoundError) as ctx:
            record_site_visit_point(self.db, employee_id=9999, sample=sample, site_name="Client site")
        self.assertEqual(ctx.exception.code, "EMPLOYEE_NOT_FOUND")

        former = add_employee(self.db, full_name="Former Staff", is_active=False)
        with self.assertRaises(PolicyViolationError) as ctx:
            record_site_visit_point(self.db, employee_id=former.id, sample=sample, site_name="Client site")
        self.assertEqual(ctx.exception.code, "EMPLOYEE_INACTIVE")
        self.assertEqual(self.db.query(SiteVisitPoint).count(), 0)

    def test_visit_point_after_check_out_is_rejected(self) -> None:
        sample = LocationSample(lat=OFFICE_LAT, lon=OFFICE_LON, accuracy_m=10)
        check_in(self.db, employee_id=self.employee.id, sample=sample, now_utc=ist(2026, 3, 2, 9, 0))
        self._record(30, 1.0)
        check_out(self.db, employee_id=self.employee.id, sample=sample, now_utc=ist(2026, 3, 2, 17, 0))

        with self.assertRaises(ConflictError) as ctx:
            self._record(45, 1.0)
        self.assertEqual(ctx.exception.code, "DAY_CLOSED")

    def test_distance_statistics(self) -> None:
        self._record(0, 0.0)
        self._record(1, 3.0)
        recompute_movement_trail(self.db, employee_id=self.employee.id, day_date=DAY)

        stats = get_distance_statistics(
            self.db,
            employee_id=self.employee.id,
            start_date=DAY,
            end_date=DAY + timedelta(days=6),
        )

        self.assertEqual(stats["days_tracked"], 1)
        self.assertAlmostEqual(stats["total_distance_km"], 3.0, delta=0.01)
        self.assertEqual(stats["average_daily_distance_km"], stats["total_distance_km"])
        self.assertEqual(stats["days_with_anomalies"], 1)
        self.assertEqual(stats["anomalies_by_severity"], {"LOW": 0, "MEDIUM": 0, "HIGH": 1})

        with self.assertRaises(ValidationError):
            get_distance_statistics(self.db, employee_id=self.employee.id, start_date=DAY, end_date=DAY - timedelta(days=1))


if __name__ == "__main__":
    unittest.main()
