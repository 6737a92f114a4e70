from datetime import date

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from sqlalchemy.orm import Session

from geoattend.audit import record_transition
from geoattend.db import get_db
from geoattend.errors import ApiError
from geoattend.models import AttendanceRequestStatus, AuditActorType
from geoattend.routers.common import audit_context, background_outbox, to_sample
from geoattend.schemas import (
    AttendanceCheckinRequest,
    AttendanceCheckoutRequest,
    AttendanceDayRead,
    AttendanceDayStatusResponse,
    AttendanceRequestCreate,
    AttendanceRequestDecision,
    AttendanceRequestRead,
    CheckinResponse,
    CheckoutResponse,
)
from geoattend.security import Identity, can_decide_approvals, can_view_all_requests, require_identity
from geoattend.services.attendance import check_in, check_out, get_attendance_day
from geoattend.services.attendance_requests import (
    decide_attendance_request,
    get_attendance_request,
    list_attendance_requests,
    submit_attendance_request,
)
from geoattend.services.directory import SqlDirectory

router = APIRouter(prefix="/api/attendance", tags=["attendance"])


@router.post("/check-in", response_model=CheckinResponse)
def checkin(
    payload: AttendanceCheckinRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> CheckinResponse:
    request.state.employee_id = identity.id
    result = check_in(
        db,
        employee_id=identity.id,
        sample=to_sample(payload),
        method=payload.method,
        notes=payload.notes,
        outbox=background_outbox(background_tasks),
    )
    request.state.location_status = result.status

    record_transition(
        db,
        audit_context(request, identity),
        "ATTENDANCE_CHECKIN" if result.attendance_day is not None else "ATTENDANCE_REQUEST_SUBMITTED",
        entity=result.attendance_day or result.attendance_request,
        details={
            "status": result.status,
            "within_area": result.geofence.is_within_any_area,
            "nearest_area_id": result.geofence.nearest.area_id if result.geofence.nearest else None,
            "low_accuracy": result.geofence.low_accuracy,
        },
    )
    return CheckinResponse(
        status=result.status,
        requires_area_setup=result.requires_area_setup,
        geofence=result.geofence.to_dict(),
        attendance_day=(
            AttendanceDayRead.model_validate(result.attendance_day) if result.attendance_day else None
        ),
        attendance_request=(
            AttendanceRequestRead.model_validate(result.attendance_request) if result.attendance_request else None
        ),
    )


@router.post("/check-out", response_model=CheckoutResponse)
def checkout(
    payload: AttendanceCheckoutRequest,
    request: Request,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> CheckoutResponse:
    request.state.employee_id = identity.id
    result = check_out(db, employee_id=identity.id, sample=to_sample(payload))
    record_transition(
        db,
        audit_context(request, identity),
        "ATTENDANCE_CHECKOUT",
        entity=result.attendance_day,
        details={
            "work_hours": result.work_hours,
            "overtime_hours": result.overtime_hours,
            "within_area": result.geofence.is_within_any_area,
        },
    )
    return CheckoutResponse(
        attendance_day=AttendanceDayRead.model_validate(result.attendance_day),
        work_hours=result.work_hours,
        overtime_hours=result.overtime_hours,
        geofence=result.geofence.to_dict(),
    )


@router.get("/days/{day_date}", response_model=AttendanceDayStatusResponse)
def get_day(
    day_date: date,
    employee_id: int | None = Query(default=None),
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> AttendanceDayStatusResponse:
    target_employee_id = employee_id if employee_id is not None else identity.id
    if target_employee_id != identity.id and not can_decide_approvals(identity.role):
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    day, state = get_attendance_day(db, employee_id=target_employee_id, day_date=day_date)
    return AttendanceDayStatusResponse(
        employee_id=target_employee_id,
        day_date=day_date,
        state=state.value,
        attendance_day=AttendanceDayRead.model_validate(day) if day else None,
    )


@router.post("/requests", response_model=AttendanceRequestRead, status_code=status.HTTP_201_CREATED)
def create_request(
    payload: AttendanceRequestCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> AttendanceRequestRead:
    attendance_request = submit_attendance_request(
        db,
        employee_id=identity.id,
        day_date=payload.day_date,
        requested_check_in_at=payload.requested_check_in_at,
        reason=payload.reason,
        sample=to_sample(payload),
        method=payload.method,
        outbox=background_outbox(background_tasks),
    )
    record_transition(
        db,
        audit_context(request, identity),
        "ATTENDANCE_REQUEST_SUBMITTED",
        entity=attendance_request,
        details={"day_date": payload.day_date.isoformat()},
    )
    return AttendanceRequestRead.model_validate(attendance_request)


@router.get("/requests", response_model=list[AttendanceRequestRead])
def list_requests(
    status_filter: AttendanceRequestStatus | None = Query(default=None, alias="status"),
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> list[AttendanceRequestRead]:
    rows = list_attendance_requests(db, viewer=identity, status=status_filter)
    return [AttendanceRequestRead.model_validate(row) for row in rows]


@router.get("/requests/{request_id_value}", response_model=AttendanceRequestRead)
def get_request(
    request_id_value: int,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> AttendanceRequestRead:
    attendance_request = get_attendance_request(db, request_id_value)
    if attendance_request.employee_id != identity.id and not can_view_all_requests(identity.role):
        if SqlDirectory(db).manager_of(attendance_request.employee_id) != identity.id:
            raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return AttendanceRequestRead.model_validate(attendance_request)


@router.post("/requests/{request_id_value}/decision", response_model=AttendanceRequestRead)
def decide_request(
    request_id_value: int,
    payload: AttendanceRequestDecision,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> AttendanceRequestRead:
    attendance_request = decide_attendance_request(
        db,
        request_id=request_id_value,
        decision=payload.decision,
        decided_by=identity,
        comments=payload.comments,
        outbox=background_outbox(background_tasks),
    )
    record_transition(
        db,
        audit_context(request, identity, AuditActorType.APPROVER),
        f"ATTENDANCE_REQUEST_{attendance_request.status.value}",
        entity=attendance_request,
        details={
            "employee_id": attendance_request.employee_id,
            "day_date": attendance_request.day_date.isoformat(),
            "role": identity.role,
        },
    )
    return AttendanceRequestRead.model_validate(attendance_request)
