from __future__ import annotations

import unittest
from datetime import date
from unittest.mock import patch

from geoattend.errors import ConflictError, PolicyViolationError
from geoattend.models import AttendanceDay, AttendanceRequestStatus, AttendanceStatus, Role
from geoattend.services.attendance import (
    AUTO_CHECKOUT_NOTE,
    auto_close_open_days,
    check_in,
    check_out,
    get_attendance_day,
)
from geoattend.services.attendance_rules import DayState
from geoattend.services.local_time import normalize_ts
from geoattend.services.location import LocationSample
from geoattend.settings import Settings
from tests.db_support import (
    OFFICE_LAT,
    OFFICE_LON,
    add_area,
    add_employee,
    ist,
    make_session,
    recording_outbox,
)

DAY = date(2026, 3, 2)
AT_OFFICE = LocationSample(lat=OFFICE_LAT, lon=OFFICE_LON, accuracy_m=12)
# Roughly 2 km north of the office.
FAR_AWAY = LocationSample(lat=OFFICE_LAT + 0.018, lon=OFFICE_LON, accuracy_m=15)


class AttendanceCheckInTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.manager = add_employee(self.db, full_name="Meera Rao", email="meera@example.com", role=Role.MANAGER)
        self.employee = add_employee(self.db, full_name="Arjun Nair", manager_id=self.manager.id)
        self.area = add_area(self.db, name="Bengaluru HQ", assign_to=[self.employee.id])

    def tearDown(self) -> None:
        self.db.close()

    def test_check_in_inside_area_is_present_and_second_check_in_conflicts(self) -> None:
        outbox, notifier = recording_outbox()
        result = check_in(
            self.db,
            employee_id=self.employee.id,
            sample=AT_OFFICE,
            now_utc=ist(2026, 3, 2, 9, 5),
            outbox=outbox,
        )

        self.assertEqual(result.status, "PRESENT")
        self.assertIsNotNone(result.attendance_day)
        self.assertEqual(result.attendance_day.day_date, DAY)
        self.assertEqual(result.geofence.matched_area.area_id, self.area.id)
        self.assertEqual(result.attendance_day.check_in_location["geofence"]["is_within_any_area"], True)
        self.assertEqual(outbox.pending, [])

        with self.assertRaises(ConflictError) as ctx:
            check_in(
                self.db,
                employee_id=self.employee.id,
                sample=AT_OFFICE,
                now_utc=ist(2026, 3, 2, 9, 30),
            )
        self.assertEqual(ctx.exception.code, "ALREADY_CHECKED_IN")

        rows = self.db.query(AttendanceDay).filter(AttendanceDay.employee_id == self.employee.id).all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(notifier.sent, [])

    def test_lateness_uses_local_cutoff_inclusively(self) -> None:
        on_time = check_in(self.db, employee_id=self.employee.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 9, 15))
        self.assertEqual(on_time.status, "PRESENT")

        late = check_in(self.db, employee_id=self.employee.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 3, 9, 16))
        self.assertEqual(late.status, "LATE")
        self.assertEqual(late.attendance_day.status, AttendanceStatus.LATE)

    def test_outside_all_areas_creates_pending_request_without_day(self) -> None:
        outbox, notifier = recording_outbox()
        result = check_in(
            self.db,
            employee_id=self.employee.id,
            sample=FAR_AWAY,
            now_utc=ist(2026, 3, 2, 9, 5),
            outbox=outbox,
        )

        self.assertEqual(result.status, "PENDING_APPROVAL")
        self.assertIsNone(result.attendance_day)
        self.assertFalse(result.requires_area_setup)
        self.assertEqual(result.attendance_request.status, AttendanceRequestStatus.PENDING)
        self.assertEqual(result.attendance_request.day_date, DAY)
        self.assertGreater(result.geofence.nearest.distance_m, 1900)

        day, state = get_attendance_day(self.db, employee_id=self.employee.id, day_date=DAY)
        self.assertIsNone(day)
        self.assertEqual(state, DayState.NOT_STARTED)

        # Nothing goes out until the outbox is flushed after commit.
        self.assertEqual(notifier.sent, [])
        summary = outbox.flush()
        self.assertEqual(summary, {"queued": 1, "sent": 1, "failed": 0})
        self.assertEqual(notifier.sent[0][0], "meera@example.com")
        self.assertEqual(notifier.sent[0][1], "ATTENDANCE_REQUEST_SUBMITTED")

    def test_every_assigned_area_is_measured(self) -> None:
        traveller = add_employee(self.db, full_name="Field Officer")
        for index in range(5):
            add_area(
                self.db,
                name=f"Depot {index}",
                lat=OFFICE_LAT + 0.05 * (index + 1),
                assign_to=[traveller.id],
            )
        branch = add_area(self.db, name="Branch desk", assign_to=[traveller.id])

        result = check_in(self.db, employee_id=traveller.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 9, 5))

        self.assertEqual(result.status, "PRESENT")
        self.assertEqual(result.geofence.matched_area.area_id, branch.id)
        self.assertEqual(result.geofence.nearest.area_id, branch.id)
        self.assertEqual(len(result.geofence.candidates), 6)

    def test_short_notes_do_not_block_out_of_area_check_in(self) -> None:
        result = check_in(
            self.db,
            employee_id=self.employee.id,
            sample=FAR_AWAY,
            notes="at client",
            now_utc=ist(2026, 3, 2, 9, 5),
        )

        self.assertEqual(result.status, "PENDING_APPROVAL")
        self.assertEqual(
            result.attendance_request.reason,
            "Check-in from outside assigned work areas: at client",
        )

        tomorrow = check_in(
            self.db,
            employee_id=self.employee.id,
            sample=FAR_AWAY,
            notes="  Visiting the Whitefield client for an audit ",
            now_utc=ist(2026, 3, 3, 9, 5),
        )
        self.assertEqual(tomorrow.attendance_request.reason, "Visiting the Whitefield client for an audit")

    def test_zero_areas_default_policy_routes_to_approval(self) -> None:
        add_employee(self.db, full_name="Kavya HR", email="hr@example.com", role=Role.HR)
        newcomer = add_employee(self.db, full_name="New Joiner")
        outbox, notifier = recording_outbox()

        result = check_in(
            self.db,
            employee_id=newcomer.id,
            sample=AT_OFFICE,
            now_utc=ist(2026, 3, 2, 9, 0),
            outbox=outbox,
        )
        outbox.flush()

        self.assertEqual(result.status, "PENDING_APPROVAL")
        self.assertTrue(result.requires_area_setup)
        self.assertTrue(result.geofence.no_areas_assigned)
        self.assertIsNone(result.geofence.nearest)
        self.assertEqual([item[0] for item in notifier.sent], ["hr@example.com"])

    def test_zero_areas_block_policy_rejects(self) -> None:
        newcomer = add_employee(self.db, full_name="New Joiner")
        with patch(
            "geoattend.services.attendance.get_settings",
            return_value=Settings(zero_area_policy="BLOCK"),
        ):
            with self.assertRaises(PolicyViolationError) as ctx:
                check_in(self.db, employee_id=newcomer.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 9, 0))
        self.assertEqual(ctx.exception.code, "NO_AREAS_ASSIGNED")

    def test_inactive_employee_cannot_check_in(self) -> None:
        leaver = add_employee(self.db, full_name="Former Staff", is_active=False)
        with self.assertRaises(PolicyViolationError) as ctx:
            check_in(self.db, employee_id=leaver.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 9, 0))
        self.assertEqual(ctx.exception.code, "EMPLOYEE_INACTIVE")


class AttendanceCheckOutTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.employee = add_employee(self.db, full_name="Arjun Nair")
        add_area(self.db, name="Bengaluru HQ", assign_to=[self.employee.id])

    def tearDown(self) -> None:
        self.db.close()

    def test_check_out_computes_hours_and_overtime(self) -> None:
        check_in(self.db, employee_id=self.employee.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 9, 5))
        result = check_out(self.db, employee_id=self.employee.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 18, 0))

        self.assertEqual(result.work_hours, 8.92)
        self.assertEqual(result.overtime_hours, 0.92)
        self.assertFalse(result.attendance_day.auto_checked_out)
        self.assertEqual(result.attendance_day.status, AttendanceStatus.PRESENT)

        _, state = get_attendance_day(self.db, employee_id=self.employee.id, day_date=DAY)
        self.assertEqual(state, DayState.CHECKED_OUT)

    def test_check_out_without_check_in_fails(self) -> None:
        with self.assertRaises(ConflictError) as ctx:
            check_out(self.db, employee_id=self.employee.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 18, 0))
        self.assertEqual(ctx.exception.code, "NOT_CHECKED_IN")

    def test_second_check_out_fails(self) -> None:
        check_in(self.db, employee_id=self.employee.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 9, 5))
        check_out(self.db, employee_id=self.employee.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 17, 0))

        with self.assertRaises(ConflictError) as ctx:
            check_out(self.db, employee_id=self.employee.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 18, 0))
        self.assertEqual(ctx.exception.code, "ALREADY_CHECKED_OUT")

        day, _ = get_attendance_day(self.db, employee_id=self.employee.id, day_date=DAY)
        self.assertEqual(normalize_ts(day.check_out_at), ist(2026, 3, 2, 17, 0))

    def test_check_out_outside_areas_is_allowed(self) -> None:
        check_in(self.db, employee_id=self.employee.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 9, 5))
        with self.assertLogs("geoattend.attendance", level="WARNING") as captured:
            result = check_out(
                self.db,
                employee_id=self.employee.id,
                sample=FAR_AWAY,
                now_utc=ist(2026, 3, 2, 13, 5),
            )

        self.assertEqual(result.work_hours, 4.0)
        self.assertEqual(result.overtime_hours, 0.0)
        self.assertFalse(result.geofence.is_within_any_area)
        self.assertTrue(any("attendance_checkout_outside_areas" in line for line in captured.output))


class AutoCheckoutTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.employee = add_employee(self.db, full_name="Arjun Nair")
        self.other = add_employee(self.db, full_name="Divya Menon")
        add_area(self.db, name="Bengaluru HQ", assign_to=[self.employee.id, self.other.id])

    def tearDown(self) -> None:
        self.db.close()

    def test_nothing_closes_before_cutoff(self) -> None:
        check_in(self.db, employee_id=self.employee.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 9, 5))
        closed = auto_close_open_days(self.db, day_date=DAY, now_utc=ist(2026, 3, 2, 17, 0))
        self.assertEqual(closed, [])

    def test_open_days_close_at_cutoff(self) -> None:
        check_in(
            self.db,
            employee_id=self.employee.id,
            sample=AT_OFFICE,
            notes="Client visit later",
            now_utc=ist(2026, 3, 2, 9, 5),
        )
        check_in(self.db, employee_id=self.other.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 9, 0))
        check_out(self.db, employee_id=self.other.id, sample=AT_OFFICE, now_utc=ist(2026, 3, 2, 17, 0))

        closed = auto_close_open_days(self.db, day_date=DAY, now_utc=ist(2026, 3, 2, 18, 30))

        self.assertEqual([day.employee_id for day in closed], [self.employee.id])
        day = closed[0]
        self.assertTrue(day.auto_checked_out)
        self.assertEqual(normalize_ts(day.check_out_at), ist(2026, 3, 2, 18, 0))
        self.assertEqual(day.work_hours, 8.92)
        self.assertEqual(day.status, AttendanceStatus.PRESENT)
        self.assertTrue(day.notes.startswith("Client visit later"))
        self.assertIn(AUTO_CHECKOUT_NOTE, day.notes)

        self.assertEqual(auto_close_open_days(self.db, day_date=DAY, now_utc=ist(2026, 3, 2, 19, 0)), [])


if __name__ == "__main__":
    unittest.main()
