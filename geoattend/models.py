from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from geoattend.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    HR = "HR"
    MANAGER = "MANAGER"
    FINANCE = "FINANCE"
    EMPLOYEE = "EMPLOYEE"


class AttendanceStatus(str, enum.Enum):
    PRESENT = "PRESENT"
    LATE = "LATE"
    ABSENT = "ABSENT"
    HALF_DAY = "HALF_DAY"
    ON_LEAVE = "ON_LEAVE"
    HOLIDAY = "HOLIDAY"
    WORK_FROM_HOME = "WORK_FROM_HOME"


class AttendanceMethod(str, enum.Enum):
    GPS = "GPS"
    WEB = "WEB"
    BIOMETRIC = "BIOMETRIC"
    MANUAL = "MANUAL"


class AttendanceProvenance(str, enum.Enum):
    DIRECT = "DIRECT"
    APPROVED_EXCEPTION = "APPROVED_EXCEPTION"


class AttendanceRequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class VisitKind(str, enum.Enum):
    ARRIVE = "ARRIVE"
    DEPART = "DEPART"


class AnomalyType(str, enum.Enum):
    EXCESSIVE_SPEED = "EXCESSIVE_SPEED"
    IMPOSSIBLE_DISTANCE = "IMPOSSIBLE_DISTANCE"
    LOCATION_JUMP = "LOCATION_JUMP"
    MISSING_ROUTE = "MISSING_ROUTE"


class AnomalySeverity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ExpenseClaimStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REIMBURSED = "REIMBURSED"


class ReimbursementBatchStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentMethod(str, enum.Enum):
    BANK_TRANSFER = "BANK_TRANSFER"
    CASH = "CASH"
    CHEQUE = "CHEQUE"


class AuditActorType(str, enum.Enum):
    EMPLOYEE = "EMPLOYEE"
    APPROVER = "APPROVER"
    SYSTEM = "SYSTEM"


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[Role] = mapped_column(
        Enum(Role, name="employee_role"),
        nullable=False,
        default=Role.EMPLOYEE,
        server_default=text("'EMPLOYEE'"),
    )
    manager_id: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    manager: Mapped[Employee | None] = relationship(remote_side="Employee.id")
    area_assignments: Mapped[list[EmployeeAreaAssignment]] = relationship(back_populates="employee")


class AuthorizedArea(Base):
    __tablename__ = "authorized_areas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    center_lat: Mapped[float] = mapped_column(Float, nullable=False)
    center_lon: Mapped[float] = mapped_column(Float, nullable=False)
    radius_m: Mapped[float] = mapped_column(Float, nullable=False, default=100, server_default=text("100"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    assignments: Mapped[list[EmployeeAreaAssignment]] = relationship(back_populates="area")


class EmployeeAreaAssignment(Base):
    __tablename__ = "employee_area_assignments"
    __table_args__ = (UniqueConstraint("employee_id", "area_id", name="uq_employee_area_assignment"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    area_id: Mapped[int] = mapped_column(
        ForeignKey("authorized_areas.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))

    employee: Mapped[Employee] = relationship(back_populates="area_assignments")
    area: Mapped[AuthorizedArea] = relationship(back_populates="assignments")


class AttendanceDay(Base):
    __tablename__ = "attendance_days"
    __table_args__ = (
        UniqueConstraint("employee_id", "day_date", name="uq_attendance_days_employee_day"),
        CheckConstraint(
            "check_out_at IS NULL OR (check_in_at IS NOT NULL AND check_out_at >= check_in_at)",
            name="ck_attendance_days_checkout_after_checkin",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    check_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    check_out_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[AttendanceStatus] = mapped_column(
        Enum(AttendanceStatus, name="attendance_status"),
        nullable=False,
    )
    method: Mapped[AttendanceMethod] = mapped_column(
        Enum(AttendanceMethod, name="attendance_method"),
        nullable=False,
        default=AttendanceMethod.GPS,
        server_default=text("'GPS'"),
    )
    check_in_location: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    check_out_location: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    work_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    overtime_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    provenance: Mapped[AttendanceProvenance] = mapped_column(
        Enum(AttendanceProvenance, name="attendance_provenance"),
        nullable=False,
        default=AttendanceProvenance.DIRECT,
        server_default=text("'DIRECT'"),
    )
    auto_checked_out: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    approved_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("attendance_requests.id", ondelete="SET NULL"),
        nullable=True,
    )
    approved_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    employee: Mapped[Employee] = relationship()


class AttendanceRequest(Base):
    __tablename__ = "attendance_requests"
    __table_args__ = (
        # At most one open request per employee and day.
        Index(
            "uq_attendance_requests_pending_day",
            "employee_id",
            "day_date",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    requested_check_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    method: Mapped[AttendanceMethod] = mapped_column(
        Enum(AttendanceMethod, name="attendance_method"),
        nullable=False,
        default=AttendanceMethod.GPS,
    )
    location: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[AttendanceRequestStatus] = mapped_column(
        Enum(AttendanceRequestStatus, name="attendance_request_status"),
        nullable=False,
        default=AttendanceRequestStatus.PENDING,
        server_default=text("'PENDING'"),
        index=True,
    )
    decided_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decision_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    employee: Mapped[Employee] = relationship()


class SiteVisitPoint(Base):
    __tablename__ = "site_visit_points"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    site_id: Mapped[int | None] = mapped_column(
        ForeignKey("authorized_areas.id", ondelete="SET NULL"),
        nullable=True,
    )
    site_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    kind: Mapped[VisitKind] = mapped_column(
        Enum(VisitKind, name="site_visit_kind"),
        nullable=False,
        default=VisitKind.ARRIVE,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class MovementTrail(Base):
    __tablename__ = "movement_trails"
    __table_args__ = (UniqueConstraint("employee_id", "day_date", name="uq_movement_trails_employee_day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_distance_m: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total_duration_s: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    point_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    anomalies: Mapped[list[TrailAnomaly]] = relationship(
        back_populates="trail",
        cascade="all, delete-orphan",
        order_by="TrailAnomaly.id",
    )


class TrailAnomaly(Base):
    __tablename__ = "trail_anomalies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trail_id: Mapped[int] = mapped_column(
        ForeignKey("movement_trails.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    point_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    type: Mapped[AnomalyType] = mapped_column(Enum(AnomalyType, name="trail_anomaly_type"), nullable=False)
    severity: Mapped[AnomalySeverity] = mapped_column(
        Enum(AnomalySeverity, name="trail_anomaly_severity"),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    trail: Mapped[MovementTrail] = relationship(back_populates="anomalies")


class ReimbursementBatch(Base):
    __tablename__ = "reimbursement_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[ReimbursementBatchStatus] = mapped_column(
        Enum(ReimbursementBatchStatus, name="reimbursement_batch_status"),
        nullable=False,
        default=ReimbursementBatchStatus.PENDING,
        server_default=text("'PENDING'"),
        index=True,
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, name="reimbursement_payment_method"),
        nullable=False,
        default=PaymentMethod.BANK_TRANSFER,
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    member_claim_ids: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)
    reference_number: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    processing_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ExpenseClaim(Base):
    __tablename__ = "expense_claims"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[ExpenseClaimStatus] = mapped_column(
        Enum(ExpenseClaimStatus, name="expense_claim_status"),
        nullable=False,
        default=ExpenseClaimStatus.PENDING,
        server_default=text("'PENDING'"),
        index=True,
    )
    reimbursement_batch_id: Mapped[int | None] = mapped_column(
        ForeignKey("reimbursement_batches.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    reimbursed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
