from __future__ import annotations

import re

from sqlalchemy import select
from sqlalchemy.orm import Session

from geoattend.models import AuthorizedArea, Employee, EmployeeAreaAssignment, Role

EMAIL_ADDRESS_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
BROADCAST_ROLES = (Role.HR, Role.ADMIN)


def normalize_notification_email(value: str | None) -> str | None:
    normalized = " ".join((value or "").strip().lower().split())
    if not normalized:
        return None
    if not EMAIL_ADDRESS_PATTERN.match(normalized):
        return None
    return normalized


class SqlDirectory:
    """Organizational lookups backed by the employees and area tables."""

    def __init__(self, db: Session):
        self.db = db

    def get_employee(self, employee_id: int) -> Employee | None:
        return self.db.get(Employee, employee_id)

    def assigned_areas(self, employee_id: int) -> list[AuthorizedArea]:
        return list(
            self.db.scalars(
                select(AuthorizedArea)
                .join(EmployeeAreaAssignment, EmployeeAreaAssignment.area_id == AuthorizedArea.id)
                .where(
                    EmployeeAreaAssignment.employee_id == employee_id,
                    AuthorizedArea.is_active.is_(True),
                )
                .order_by(EmployeeAreaAssignment.is_primary.desc(), AuthorizedArea.id.asc())
            ).all()
        )

    def manager_of(self, employee_id: int) -> int | None:
        employee = self.get_employee(employee_id)
        if employee is None or employee.manager_id is None:
            return None
        manager = self.get_employee(employee.manager_id)
        if manager is None or not manager.is_active:
            return None
        return manager.id

    def contact_channel(self, employee_id: int) -> str | None:
        employee = self.get_employee(employee_id)
        if employee is None:
            return None
        return normalize_notification_email(employee.email)

    def hr_admin_ids(self) -> list[int]:
        return list(
            self.db.scalars(
                select(Employee.id)
                .where(
                    Employee.role.in_(BROADCAST_ROLES),
                    Employee.is_active.is_(True),
                )
                .order_by(Employee.id.asc())
            ).all()
        )

    def direct_report_ids(self, manager_id: int) -> list[int]:
        return list(
            self.db.scalars(
                select(Employee.id).where(Employee.manager_id == manager_id).order_by(Employee.id.asc())
            ).all()
        )

    def approval_recipients(self, employee_id: int) -> list[str]:
        """Manager first; when the manager has no usable address, every HR/admin contact."""
        manager_id = self.manager_of(employee_id)
        if manager_id is not None:
            manager_address = self.contact_channel(manager_id)
            if manager_address:
                return [manager_address]

        recipients: list[str] = []
        for contact_id in self.hr_admin_ids():
            address = self.contact_channel(contact_id)
            if address and address not in recipients:
                recipients.append(address)
        return recipients
