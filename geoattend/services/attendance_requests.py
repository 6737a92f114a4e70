from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from geoattend.errors import (
    ConflictError,
    NotFoundError,
    PolicyViolationError,
    UnauthorizedError,
    ValidationError,
)
from geoattend.models import (
    AttendanceDay,
    AttendanceMethod,
    AttendanceProvenance,
    AttendanceRequest,
    AttendanceRequestStatus,
    AttendanceStatus,
    Employee,
)
from geoattend.security import Identity, can_decide_approvals, can_view_all_requests
from geoattend.services.attendance_rules import compute_work_hours
from geoattend.services.directory import SqlDirectory
from geoattend.services.geofence import GeofenceVerdict, build_location_snapshot, resolve_geofence
from geoattend.services.local_time import attendance_timezone, local_day, normalize_ts
from geoattend.services.location import LocationSample, validate_sample
from geoattend.services.notifications import (
    TEMPLATE_ATTENDANCE_REQUEST_APPROVED,
    TEMPLATE_ATTENDANCE_REQUEST_REJECTED,
    TEMPLATE_ATTENDANCE_REQUEST_SUBMITTED,
    NotificationOutbox,
    OutgoingNotification,
    dispatch,
)
from geoattend.settings import get_settings

logger = logging.getLogger("geoattend.attendance_requests")

DECISION_APPROVE = "APPROVE"
DECISION_REJECT = "REJECT"
DEFAULT_REJECTION_REASON = "Request rejected"
APPROVED_DAY_NOTE = "Approved out-of-area check-in"
REQUEST_LIST_LIMIT = 50


def _require_active_employee(directory: SqlDirectory, employee_id: int) -> Employee:
    employee = directory.get_employee(employee_id)
    if employee is None:
        raise NotFoundError(code="EMPLOYEE_NOT_FOUND", message="Employee not found.")
    if not employee.is_active:
        raise PolicyViolationError(code="EMPLOYEE_INACTIVE", message="Employee is inactive.")
    return employee


def _validate_reason(reason: str | None) -> str:
    normalized = (reason or "").strip()
    min_length = int(get_settings().request_reason_min_length)
    if len(normalized) < min_length:
        raise ValidationError(
            code="REASON_TOO_SHORT",
            message=f"Reason must be at least {min_length} characters.",
        )
    return normalized


def submit_attendance_request(
    db: Session,
    *,
    employee_id: int,
    day_date: date,
    requested_check_in_at: datetime,
    reason: str | None,
    sample: LocationSample | None = None,
    method: AttendanceMethod = AttendanceMethod.GPS,
    verdict: GeofenceVerdict | None = None,
    outbox: NotificationOutbox | None = None,
    directory: SqlDirectory | None = None,
) -> AttendanceRequest:
    directory = directory or SqlDirectory(db)
    normalized_reason = _validate_reason(reason)
    requested_at = normalize_ts(requested_check_in_at)
    if local_day(requested_at) != day_date:
        raise ValidationError(
            code="REQUESTED_TIME_OUTSIDE_DAY",
            message="Requested check-in time must fall on the requested day.",
        )
    employee = _require_active_employee(directory, employee_id)

    location_snapshot = None
    if sample is not None:
        validate_sample(sample)
        if verdict is None:
            verdict = resolve_geofence(
                sample,
                directory.assigned_areas(employee_id),
                low_accuracy_threshold_m=get_settings().low_accuracy_threshold_m,
            )
        location_snapshot = build_location_snapshot(sample, verdict)

    attendance_request = AttendanceRequest(
        employee_id=employee_id,
        day_date=day_date,
        requested_check_in_at=requested_at,
        method=method,
        location=location_snapshot,
        reason=normalized_reason,
        status=AttendanceRequestStatus.PENDING,
    )
    db.add(attendance_request)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(
            code="DUPLICATE_REQUEST",
            message="An open attendance request already exists for this day.",
        ) from exc
    db.refresh(attendance_request)

    nearest = verdict.nearest if verdict is not None else None
    payload = {
        "request_id": attendance_request.id,
        "employee_id": employee_id,
        "employee_name": employee.full_name,
        "day_date": day_date.isoformat(),
        "requested_check_in_at": requested_at.astimezone(attendance_timezone()).isoformat(),
        "reason": normalized_reason,
        "nearest_area": f"{nearest.area_name} ({round(nearest.distance_m)} m)" if nearest else None,
    }
    recipients = directory.approval_recipients(employee_id)
    dispatch(
        outbox,
        [OutgoingNotification(address, TEMPLATE_ATTENDANCE_REQUEST_SUBMITTED, payload) for address in recipients],
    )
    logger.info(
        "attendance_request_submitted",
        extra={
            "request_id": attendance_request.id,
            "employee_id": employee_id,
            "day_date": day_date.isoformat(),
            "recipient_count": len(recipients),
        },
    )
    if not recipients:
        logger.warning(
            "attendance_request_no_approver_contact",
            extra={"request_id": attendance_request.id, "employee_id": employee_id},
        )
    return attendance_request


def _materialize_approved_day(
    db: Session,
    *,
    attendance_request: AttendanceRequest,
    decided_by: Identity,
    decided_at: datetime,
) -> AttendanceDay:
    requested_at = normalize_ts(attendance_request.requested_check_in_at)
    day = db.scalar(
        select(AttendanceDay).where(
            AttendanceDay.employee_id == attendance_request.employee_id,
            AttendanceDay.day_date == attendance_request.day_date,
        )
    )
    if day is None:
        day = AttendanceDay(
            employee_id=attendance_request.employee_id,
            day_date=attendance_request.day_date,
        )
        db.add(day)
    elif day.check_out_at is not None and normalize_ts(day.check_out_at) < requested_at:
        raise ValidationError(
            code="CHECKOUT_BEFORE_CHECKIN",
            message="Approved check-in time is after the recorded check-out.",
        )

    day.check_in_at = requested_at
    day.status = AttendanceStatus.PRESENT
    day.method = attendance_request.method
    day.check_in_location = attendance_request.location
    day.provenance = AttendanceProvenance.APPROVED_EXCEPTION
    day.approved_request_id = attendance_request.id
    day.approved_by = decided_by.id
    day.approved_at = decided_at
    day.notes = APPROVED_DAY_NOTE
    if day.check_out_at is not None:
        day.work_hours, day.overtime_hours = compute_work_hours(requested_at, day.check_out_at)
    return day


def decide_attendance_request(
    db: Session,
    *,
    request_id: int,
    decision: str,
    decided_by: Identity,
    comments: str | None = None,
    now_utc: datetime | None = None,
    outbox: NotificationOutbox | None = None,
    directory: SqlDirectory | None = None,
) -> AttendanceRequest:
    if not can_decide_approvals(decided_by.role):
        raise UnauthorizedError("Only ADMIN, HR or MANAGER users can decide attendance requests.")

    normalized_decision = (decision or "").strip().upper()
    if normalized_decision not in {DECISION_APPROVE, DECISION_REJECT}:
        raise ValidationError(code="INVALID_DECISION", message="Decision must be APPROVE or REJECT.")

    directory = directory or SqlDirectory(db)
    decided_at = normalize_ts(now_utc)
    normalized_comments = (comments or "").strip() or None
    values: dict[str, object] = {
        "decided_by": decided_by.id,
        "decided_at": decided_at,
        "decision_comments": normalized_comments,
    }
    if normalized_decision == DECISION_APPROVE:
        values["status"] = AttendanceRequestStatus.APPROVED
    else:
        values["status"] = AttendanceRequestStatus.REJECTED
        values["rejection_reason"] = normalized_comments or DEFAULT_REJECTION_REASON

    result = db.execute(
        update(AttendanceRequest)
        .where(
            AttendanceRequest.id == request_id,
            AttendanceRequest.status == AttendanceRequestStatus.PENDING,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        if db.get(AttendanceRequest, request_id) is None:
            raise NotFoundError(code="REQUEST_NOT_FOUND", message="Attendance request not found.")
        raise ConflictError(code="ALREADY_DECIDED", message="Attendance request has already been decided.")

    attendance_request = db.get(AttendanceRequest, request_id, populate_existing=True)
    if attendance_request is None:
        db.rollback()
        raise NotFoundError(code="REQUEST_NOT_FOUND", message="Attendance request not found.")

    if normalized_decision == DECISION_APPROVE:
        try:
            _materialize_approved_day(
                db,
                attendance_request=attendance_request,
                decided_by=decided_by,
                decided_at=decided_at,
            )
        except ValidationError:
            db.rollback()
            raise

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(
            code="ATTENDANCE_DAY_CONFLICT",
            message="Attendance day changed while the request was being decided.",
        ) from exc
    db.refresh(attendance_request)

    template_kind = (
        TEMPLATE_ATTENDANCE_REQUEST_APPROVED
        if attendance_request.status == AttendanceRequestStatus.APPROVED
        else TEMPLATE_ATTENDANCE_REQUEST_REJECTED
    )
    address = directory.contact_channel(attendance_request.employee_id)
    if address:
        dispatch(
            outbox,
            [
                OutgoingNotification(
                    address,
                    template_kind,
                    {
                        "request_id": attendance_request.id,
                        "day_date": attendance_request.day_date.isoformat(),
                        "comments": attendance_request.decision_comments
                        or attendance_request.rejection_reason,
                    },
                )
            ],
        )

    logger.info(
        "attendance_request_decided",
        extra={
            "request_id": attendance_request.id,
            "employee_id": attendance_request.employee_id,
            "status": attendance_request.status.value,
            "decided_by": decided_by.id,
        },
    )
    return attendance_request


def get_attendance_request(db: Session, request_id: int) -> AttendanceRequest:
    attendance_request = db.get(AttendanceRequest, request_id)
    if attendance_request is None:
        raise NotFoundError(code="REQUEST_NOT_FOUND", message="Attendance request not found.")
    return attendance_request


def list_attendance_requests(
    db: Session,
    *,
    viewer: Identity,
    status: AttendanceRequestStatus | None = None,
    limit: int = REQUEST_LIST_LIMIT,
    directory: SqlDirectory | None = None,
) -> list[AttendanceRequest]:
    stmt = select(AttendanceRequest)
    if not can_view_all_requests(viewer.role):
        if can_decide_approvals(viewer.role):
            directory = directory or SqlDirectory(db)
            visible_ids = [viewer.id, *directory.direct_report_ids(viewer.id)]
            stmt = stmt.where(AttendanceRequest.employee_id.in_(visible_ids))
        else:
            stmt = stmt.where(AttendanceRequest.employee_id == viewer.id)
    if status is not None:
        stmt = stmt.where(AttendanceRequest.status == status)
    stmt = stmt.order_by(AttendanceRequest.created_at.desc(), AttendanceRequest.id.desc()).limit(limit)
    return list(db.scalars(stmt).all())
