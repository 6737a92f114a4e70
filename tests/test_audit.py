from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from geoattend.audit import SYSTEM_ACTOR_ID, AuditContext, entity_reference, record_transition
from geoattend.main import run_maintenance_tick
from geoattend.models import AuditActorType, AuditLog, Employee
from geoattend.services.attendance import check_in
from geoattend.services.location import LocationSample
from tests.db_support import OFFICE_LAT, OFFICE_LON, add_area, add_employee, ist, make_session


class AuditTrailTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.employee = add_employee(self.db, full_name="Arjun Nair")
        add_area(self.db, name="Bengaluru HQ", assign_to=[self.employee.id])
        self.day = check_in(
            self.db,
            employee_id=self.employee.id,
            sample=LocationSample(lat=OFFICE_LAT, lon=OFFICE_LON, accuracy_m=10),
            now_utc=ist(2026, 3, 2, 9, 5),
        ).attendance_day
        self.context = AuditContext(
            actor_type=AuditActorType.EMPLOYEE,
            actor_id=str(self.employee.id),
            ip="10.0.0.8",
            user_agent="field-app/2.1",
            request_id="req-audit-1",
        )

    def tearDown(self) -> None:
        self.db.close()

    def test_entity_type_and_id_come_from_the_row(self) -> None:
        row = record_transition(
            self.db,
            self.context,
            "ATTENDANCE_CHECKIN",
            entity=self.day,
            details={"status": "PRESENT"},
        )

        self.assertIsNotNone(row)
        stored = self.db.query(AuditLog).one()
        self.assertEqual(stored.entity_type, "attendance_day")
        self.assertEqual(stored.entity_id, str(self.day.id))
        self.assertEqual(stored.actor_type, AuditActorType.EMPLOYEE)
        self.assertEqual(stored.ip, "10.0.0.8")
        self.assertEqual(stored.details, {"status": "PRESENT"})

    def test_bulk_action_uses_explicit_entity_type(self) -> None:
        record_transition(self.db, AuditContext.system(), "ATTENDANCE_AUTO_CHECKOUT", entity_type="attendance_day")

        stored = self.db.query(AuditLog).one()
        self.assertEqual(stored.actor_type, AuditActorType.SYSTEM)
        self.assertEqual(stored.actor_id, SYSTEM_ACTOR_ID)
        self.assertEqual(stored.entity_type, "attendance_day")
        self.assertIsNone(stored.entity_id)

    def test_unmapped_entity_is_rejected(self) -> None:
        with self.assertRaises(TypeError):
            entity_reference(self.db.get(Employee, self.employee.id))

    def test_write_failure_is_logged_not_raised(self) -> None:
        with patch.object(self.db, "commit", side_effect=OperationalError("INSERT", {}, Exception("disk full"))):
            with self.assertLogs("geoattend.audit", level="ERROR") as captured:
                row = record_transition(self.db, self.context, "ATTENDANCE_CHECKIN", entity=self.day)

        self.assertIsNone(row)
        self.assertTrue(any("audit_log_write_failed" in line for line in captured.output))
        self.assertEqual(self.db.query(AuditLog).count(), 0)

    def test_maintenance_tick_records_system_audit(self) -> None:
        day_id = self.day.id
        with patch("geoattend.main.SessionLocal", return_value=self.db):
            with patch("geoattend.main.auto_close_open_days", return_value=[self.day]):
                closed_count = run_maintenance_tick()

        self.assertEqual(closed_count, 1)
        stored = self.db.query(AuditLog).one()
        self.assertEqual(stored.action, "ATTENDANCE_AUTO_CHECKOUT")
        self.assertEqual(stored.actor_type, AuditActorType.SYSTEM)
        self.assertEqual(stored.details, {"attendance_day_ids": [day_id]})


if __name__ == "__main__":
    unittest.main()
