"""Initial geo attendance schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

employee_role = postgresql.ENUM(
    "ADMIN", "HR", "MANAGER", "FINANCE", "EMPLOYEE", name="employee_role", create_type=False
)
attendance_status = postgresql.ENUM(
    "PRESENT",
    "LATE",
    "ABSENT",
    "HALF_DAY",
    "ON_LEAVE",
    "HOLIDAY",
    "WORK_FROM_HOME",
    name="attendance_status",
    create_type=False,
)
attendance_method = postgresql.ENUM(
    "GPS", "WEB", "BIOMETRIC", "MANUAL", name="attendance_method", create_type=False
)
attendance_provenance = postgresql.ENUM(
    "DIRECT", "APPROVED_EXCEPTION", name="attendance_provenance", create_type=False
)
attendance_request_status = postgresql.ENUM(
    "PENDING", "APPROVED", "REJECTED", name="attendance_request_status", create_type=False
)
site_visit_kind = postgresql.ENUM("ARRIVE", "DEPART", name="site_visit_kind", create_type=False)
trail_anomaly_type = postgresql.ENUM(
    "EXCESSIVE_SPEED",
    "IMPOSSIBLE_DISTANCE",
    "LOCATION_JUMP",
    "MISSING_ROUTE",
    name="trail_anomaly_type",
    create_type=False,
)
trail_anomaly_severity = postgresql.ENUM(
    "LOW", "MEDIUM", "HIGH", name="trail_anomaly_severity", create_type=False
)
reimbursement_batch_status = postgresql.ENUM(
    "PENDING", "PROCESSING", "COMPLETED", "FAILED", name="reimbursement_batch_status", create_type=False
)
reimbursement_payment_method = postgresql.ENUM(
    "BANK_TRANSFER", "CASH", "CHEQUE", name="reimbursement_payment_method", create_type=False
)
expense_claim_status = postgresql.ENUM(
    "PENDING", "APPROVED", "REJECTED", "REIMBURSED", name="expense_claim_status", create_type=False
)
audit_actor_type = postgresql.ENUM(
    "EMPLOYEE", "APPROVER", "SYSTEM", name="audit_actor_type", create_type=False
)

ALL_ENUMS = (
    employee_role,
    attendance_status,
    attendance_method,
    attendance_provenance,
    attendance_request_status,
    site_visit_kind,
    trail_anomaly_type,
    trail_anomaly_severity,
    reimbursement_batch_status,
    reimbursement_payment_method,
    expense_claim_status,
    audit_actor_type,
)


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP"))


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("role", employee_role, nullable=False, server_default=sa.text("'EMPLOYEE'")),
        sa.Column("manager_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["manager_id"], ["employees.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_employees_manager_id", "employees", ["manager_id"])

    op.create_table(
        "authorized_areas",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("center_lat", sa.Float(), nullable=False),
        sa.Column("center_lon", sa.Float(), nullable=False),
        sa.Column("radius_m", sa.Float(), nullable=False, server_default=sa.text("100")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    op.create_table(
        "employee_area_assignments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("area_id", sa.Integer(), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["area_id"], ["authorized_areas.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "area_id", name="uq_employee_area_assignment"),
    )
    op.create_index("ix_employee_area_assignments_employee_id", "employee_area_assignments", ["employee_id"])
    op.create_index("ix_employee_area_assignments_area_id", "employee_area_assignments", ["area_id"])

    op.create_table(
        "attendance_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("requested_check_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("method", attendance_method, nullable=False),
        sa.Column("location", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", attendance_request_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("decided_by", sa.Integer(), nullable=True),
        _timestamp("decided_at", nullable=True),
        sa.Column("decision_comments", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_attendance_requests_employee_id", "attendance_requests", ["employee_id"])
    op.create_index("ix_attendance_requests_day_date", "attendance_requests", ["day_date"])
    op.create_index("ix_attendance_requests_status", "attendance_requests", ["status"])
    op.create_index(
        "uq_attendance_requests_pending_day",
        "attendance_requests",
        ["employee_id", "day_date"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    op.create_table(
        "attendance_days",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        _timestamp("check_in_at", nullable=True),
        _timestamp("check_out_at", nullable=True),
        sa.Column("status", attendance_status, nullable=False),
        sa.Column("method", attendance_method, nullable=False, server_default=sa.text("'GPS'")),
        sa.Column("check_in_location", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("check_out_location", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("work_hours", sa.Float(), nullable=True),
        sa.Column("overtime_hours", sa.Float(), nullable=True),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("provenance", attendance_provenance, nullable=False, server_default=sa.text("'DIRECT'")),
        sa.Column("auto_checked_out", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("approved_request_id", sa.Integer(), nullable=True),
        sa.Column("approved_by", sa.Integer(), nullable=True),
        _timestamp("approved_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["approved_request_id"], ["attendance_requests.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("employee_id", "day_date", name="uq_attendance_days_employee_day"),
        sa.CheckConstraint(
            "check_out_at IS NULL OR (check_in_at IS NOT NULL AND check_out_at >= check_in_at)",
            name="ck_attendance_days_checkout_after_checkin",
        ),
    )
    op.create_index("ix_attendance_days_employee_id", "attendance_days", ["employee_id"])
    op.create_index("ix_attendance_days_day_date", "attendance_days", ["day_date"])

    op.create_table(
        "site_visit_points",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lon", sa.Float(), nullable=False),
        sa.Column("accuracy_m", sa.Float(), nullable=True),
        sa.Column("site_id", sa.Integer(), nullable=True),
        sa.Column("site_name", sa.String(length=255), nullable=True),
        sa.Column("kind", site_visit_kind, nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["site_id"], ["authorized_areas.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_site_visit_points_employee_id", "site_visit_points", ["employee_id"])
    op.create_index("ix_site_visit_points_day_date", "site_visit_points", ["day_date"])
    op.create_index("ix_site_visit_points_ts_utc", "site_visit_points", ["ts_utc"])

    op.create_table(
        "movement_trails",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("total_distance_m", sa.Float(), nullable=False),
        sa.Column("total_duration_s", sa.Float(), nullable=False),
        sa.Column("point_count", sa.Integer(), nullable=False),
        sa.Column("is_validated", sa.Boolean(), nullable=False),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "day_date", name="uq_movement_trails_employee_day"),
    )
    op.create_index("ix_movement_trails_employee_id", "movement_trails", ["employee_id"])

    op.create_table(
        "trail_anomalies",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("trail_id", sa.Integer(), nullable=False),
        sa.Column("point_id", sa.Integer(), nullable=True),
        sa.Column("type", trail_anomaly_type, nullable=False),
        sa.Column("severity", trail_anomaly_severity, nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["trail_id"], ["movement_trails.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_trail_anomalies_trail_id", "trail_anomalies", ["trail_id"])

    op.create_table(
        "reimbursement_batches",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("batch_code", sa.String(length=64), nullable=False),
        sa.Column("status", reimbursement_batch_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("payment_method", reimbursement_payment_method, nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("member_claim_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("reference_number", sa.String(length=255), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("processing_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        _timestamp("failed_at", nullable=True),
        sa.UniqueConstraint("batch_code", name="uq_reimbursement_batches_batch_code"),
    )
    op.create_index("ix_reimbursement_batches_status", "reimbursement_batches", ["status"])

    op.create_table(
        "expense_claims",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("status", expense_claim_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("reimbursement_batch_id", sa.Integer(), nullable=True),
        _timestamp("reimbursed_at", nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reimbursement_batch_id"], ["reimbursement_batches.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_expense_claims_employee_id", "expense_claims", ["employee_id"])
    op.create_index("ix_expense_claims_status", "expense_claims", ["status"])
    op.create_index("ix_expense_claims_reimbursement_batch_id", "expense_claims", ["reimbursement_batch_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _timestamp("ts_utc"),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("expense_claims")
    op.drop_table("reimbursement_batches")
    op.drop_table("trail_anomalies")
    op.drop_table("movement_trails")
    op.drop_table("site_visit_points")
    op.drop_table("attendance_days")
    op.drop_table("attendance_requests")
    op.drop_table("employee_area_assignments")
    op.drop_table("authorized_areas")
    op.drop_table("employees")

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
