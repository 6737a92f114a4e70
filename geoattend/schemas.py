from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from geoattend.models import (
    AnomalySeverity,
    AnomalyType,
    AttendanceMethod,
    AttendanceProvenance,
    AttendanceRequestStatus,
    AttendanceStatus,
    ExpenseClaimStatus,
    PaymentMethod,
    ReimbursementBatchStatus,
    VisitKind,
)


class LocationSamplePayload(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)
    captured_at: datetime | None = None


class AttendanceCheckinRequest(LocationSamplePayload):
    method: AttendanceMethod = AttendanceMethod.GPS
    notes: str | None = Field(default=None, max_length=1000)


class AttendanceCheckoutRequest(LocationSamplePayload):
    pass


class AttendanceDayRead(BaseModel):
    id: int
    employee_id: int
    day_date: date
    check_in_at: datetime | None
    check_out_at: datetime | None
    status: AttendanceStatus
    method: AttendanceMethod
    work_hours: float | None
    overtime_hours: float | None
    provenance: AttendanceProvenance
    auto_checked_out: bool
    approved_request_id: int | None
    check_in_location: dict[str, Any] | None = None
    check_out_location: dict[str, Any] | None = None
    notes: str | None = None

    model_config = ConfigDict(from_attributes=True)


class AttendanceRequestRead(BaseModel):
    id: int
    employee_id: int
    day_date: date
    requested_check_in_at: datetime
    method: AttendanceMethod
    reason: str
    status: AttendanceRequestStatus
    decided_by: int | None
    decided_at: datetime | None
    decision_comments: str | None
    rejection_reason: str | None
    location: dict[str, Any] | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class CheckinResponse(BaseModel):
    status: Literal["PRESENT", "LATE", "PENDING_APPROVAL"]
    requires_area_setup: bool = False
    geofence: dict[str, Any]
    attendance_day: AttendanceDayRead | None = None
    attendance_request: AttendanceRequestRead | None = None


class CheckoutResponse(BaseModel):
    attendance_day: AttendanceDayRead
    work_hours: float
    overtime_hours: float
    geofence: dict[str, Any]


class AttendanceDayStatusResponse(BaseModel):
    employee_id: int
    day_date: date
    state: Literal["NOT_STARTED", "CHECKED_IN", "CHECKED_OUT"]
    attendance_day: AttendanceDayRead | None = None


class AttendanceRequestCreate(LocationSamplePayload):
    day_date: date
    requested_check_in_at: datetime
    reason: str = Field(max_length=2000)
    method: AttendanceMethod = AttendanceMethod.GPS


class AttendanceRequestDecision(BaseModel):
    decision: Literal["APPROVE", "REJECT"]
    comments: str | None = Field(default=None, max_length=2000)


class SiteVisitPointCreate(LocationSamplePayload):
    timestamp: datetime | None = None
    site_id: int | None = None
    site_name: str | None = Field(default=None, max_length=255)
    kind: VisitKind = VisitKind.ARRIVE


class SiteVisitPointRead(BaseModel):
    id: int
    employee_id: int
    day_date: date
    ts_utc: datetime
    lat: float
    lon: float
    accuracy_m: float | None
    site_id: int | None
    site_name: str | None
    kind: VisitKind

    model_config = ConfigDict(from_attributes=True)


class TrailAnomalyRead(BaseModel):
    point_id: int | None
    type: AnomalyType
    severity: AnomalySeverity
    description: str
    detected_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MovementTrailRead(BaseModel):
    employee_id: int
    day_date: date
    total_distance_m: float
    total_duration_s: float
    point_count: int
    is_validated: bool
    computed_at: datetime
    anomalies: list[TrailAnomalyRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class DistanceStatisticsResponse(BaseModel):
    employee_id: int
    start_date: date
    end_date: date
    days_tracked: int
    total_distance_km: float
    average_daily_distance_km: float
    max_daily_distance_km: float
    days_with_anomalies: int
    anomalies_by_severity: dict[str, int]


class AutoCheckoutRequest(BaseModel):
    day_date: date | None = None


class AutoCheckoutResponse(BaseModel):
    day_date: date | None
    closed_count: int
    attendance_day_ids: list[int]


class ReimbursementBatchCreate(BaseModel):
    claim_ids: list[int] = Field(min_length=1)
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    batch_code: str | None = Field(default=None, max_length=64)


class ReimbursementBatchStatusUpdate(BaseModel):
    status: Literal["PROCESSING", "COMPLETED", "FAILED"]
    reference_number: str | None = Field(default=None, max_length=255)
    failure_reason: str | None = Field(default=None, max_length=2000)


class ExpenseClaimRead(BaseModel):
    id: int
    employee_id: int
    amount: Decimal
    status: ExpenseClaimStatus
    reimbursement_batch_id: int | None
    reimbursed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ReimbursementBatchRead(BaseModel):
    id: int
    batch_code: str
    status: ReimbursementBatchStatus
    payment_method: PaymentMethod
    total_amount: Decimal
    member_claim_ids: list[int]
    reference_number: str | None
    failure_reason: str | None
    created_at: datetime | None = None
    processing_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None
    claims: list[ExpenseClaimRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)
