from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from geoattend.errors import ConflictError, NotFoundError, PolicyViolationError, ValidationError
from geoattend.models import (
    AttendanceDay,
    AttendanceMethod,
    AttendanceProvenance,
    AttendanceRequest,
    Employee,
)
from geoattend.services.attendance_requests import submit_attendance_request
from geoattend.services.attendance_rules import (
    DayState,
    auto_checkout_cutoff_local,
    compute_work_hours,
    day_state,
    derive_checkin_status,
)
from geoattend.services.directory import SqlDirectory
from geoattend.services.geofence import GeofenceVerdict, build_location_snapshot, resolve_geofence
from geoattend.services.local_time import local_day, local_instant_utc, normalize_ts
from geoattend.services.location import LocationSample, validate_sample
from geoattend.services.notifications import NotificationOutbox
from geoattend.settings import get_settings

logger = logging.getLogger("geoattend.attendance")

CHECKIN_PENDING_APPROVAL = "PENDING_APPROVAL"
ZERO_AREA_POLICY_BLOCK = "BLOCK"
DEFAULT_OUTSIDE_AREA_REASON = "Check-in from outside assigned work areas"
AUTO_CHECKOUT_NOTE = "[AUTO] Checked out at end-of-day cutoff"


@dataclass(frozen=True, slots=True)
class CheckInResult:
    status: str
    geofence: GeofenceVerdict
    attendance_day: AttendanceDay | None = None
    attendance_request: AttendanceRequest | None = None
    requires_area_setup: bool = False


@dataclass(frozen=True, slots=True)
class CheckOutResult:
    attendance_day: AttendanceDay
    work_hours: float
    overtime_hours: float
    geofence: GeofenceVerdict


def _outside_area_reason(notes: str | None) -> str:
    # Notes below the minimum reason length ride along on the default reason.
    cleaned = " ".join((notes or "").split())
    if len(cleaned) >= int(get_settings().request_reason_min_length):
        return cleaned
    if cleaned:
        return f"{DEFAULT_OUTSIDE_AREA_REASON}: {cleaned}"
    return DEFAULT_OUTSIDE_AREA_REASON


def _get_attendance_day(db: Session, employee_id: int, day_date: date) -> AttendanceDay | None:
    return db.scalar(
        select(AttendanceDay)
        .where(
            AttendanceDay.employee_id == employee_id,
            AttendanceDay.day_date == day_date,
        )
        .execution_options(populate_existing=True)
    )


def _resolve_employee(directory: SqlDirectory, employee_id: int) -> Employee:
    employee = directory.get_employee(employee_id)
    if employee is None:
        raise NotFoundError(code="EMPLOYEE_NOT_FOUND", message="Employee not found.")
    if not employee.is_active:
        raise PolicyViolationError(code="EMPLOYEE_INACTIVE", message="Employee is inactive.")
    return employee


def _evaluate(directory: SqlDirectory, employee_id: int, sample: LocationSample) -> GeofenceVerdict:
    settings = get_settings()
    verdict = resolve_geofence(
        sample,
        directory.assigned_areas(employee_id),
        low_accuracy_threshold_m=settings.low_accuracy_threshold_m,
    )
    if verdict.low_accuracy:
        logger.warning(
            "location_sample_low_accuracy",
            extra={
                "employee_id": employee_id,
                "accuracy_m": sample.accuracy_m,
                "threshold_m": settings.low_accuracy_threshold_m,
            },
        )
    return verdict


def get_attendance_day(db: Session, *, employee_id: int, day_date: date) -> tuple[AttendanceDay | None, DayState]:
    day = _get_attendance_day(db, employee_id, day_date)
    return day, day_state(day)


def check_in(
    db: Session,
    *,
    employee_id: int,
    sample: LocationSample,
    method: AttendanceMethod = AttendanceMethod.GPS,
    notes: str | None = None,
    day_date: date | None = None,
    now_utc: datetime | None = None,
    outbox: NotificationOutbox | None = None,
    directory: SqlDirectory | None = None,
) -> CheckInResult:
    validate_sample(sample)
    now = normalize_ts(now_utc)
    target_day = day_date or local_day(now)
    directory = directory or SqlDirectory(db)
    _resolve_employee(directory, employee_id)

    # Fast path only; the unique (employee_id, day_date) key is what actually guards duplicates.
    existing = _get_attendance_day(db, employee_id, target_day)
    if day_state(existing) != DayState.NOT_STARTED:
        raise ConflictError(code="ALREADY_CHECKED_IN", message="Already checked in for this day.")

    verdict = _evaluate(directory, employee_id, sample)

    if not verdict.is_within_any_area:
        if verdict.no_areas_assigned:
            logger.warning(
                "attendance_checkin_no_areas_assigned",
                extra={"employee_id": employee_id, "day_date": target_day.isoformat()},
            )
            if get_settings().zero_area_policy.strip().upper() == ZERO_AREA_POLICY_BLOCK:
                raise PolicyViolationError(
                    code="NO_AREAS_ASSIGNED",
                    message="No work areas are assigned. Please contact HR.",
                )

        attendance_request = submit_attendance_request(
            db,
            employee_id=employee_id,
            day_date=target_day,
            requested_check_in_at=now,
            reason=_outside_area_reason(notes),
            sample=sample,
            method=method,
            verdict=verdict,
            outbox=outbox,
            directory=directory,
        )
        logger.info(
            "attendance_checkin_pending_approval",
            extra={
                "employee_id": employee_id,
                "day_date": target_day.isoformat(),
                "request_id": attendance_request.id,
                "nearest_area_id": verdict.nearest.area_id if verdict.nearest else None,
                "nearest_distance_m": round(verdict.nearest.distance_m, 2) if verdict.nearest else None,
            },
        )
        return CheckInResult(
            status=CHECKIN_PENDING_APPROVAL,
            geofence=verdict,
            attendance_request=attendance_request,
            requires_area_setup=verdict.no_areas_assigned,
        )

    status = derive_checkin_status(now)
    day = AttendanceDay(
        employee_id=employee_id,
        day_date=target_day,
        check_in_at=now,
        status=status,
        method=method,
        check_in_location=build_location_snapshot(sample, verdict),
        notes=(notes or "").strip() or None,
        provenance=AttendanceProvenance.DIRECT,
    )
    db.add(day)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(code="ALREADY_CHECKED_IN", message="Already checked in for this day.") from exc
    db.refresh(day)

    matched = verdict.matched_area
    logger.info(
        "attendance_checkin_recorded",
        extra={
            "employee_id": employee_id,
            "day_date": target_day.isoformat(),
            "attendance_day_id": day.id,
            "status": status.value,
            "area_id": matched.area_id if matched else None,
            "low_accuracy": verdict.low_accuracy,
        },
    )
    return CheckInResult(status=status.value, geofence=verdict, attendance_day=day)


def _close_day(
    db: Session,
    *,
    employee_id: int,
    day_date: date,
    check_out_at: datetime,
    check_in_at: datetime,
    location: dict | None,
    auto: bool,
    notes: str | None = None,
) -> bool:
    work_hours, overtime_hours = compute_work_hours(check_in_at, check_out_at)
    values: dict[str, object] = {
        "check_out_at": check_out_at,
        "check_out_location": location,
        "work_hours": work_hours,
        "overtime_hours": overtime_hours,
        "auto_checked_out": auto,
    }
    if notes is not None:
        values["notes"] = notes
    result = db.execute(
        update(AttendanceDay)
        .where(
            AttendanceDay.employee_id == employee_id,
            AttendanceDay.day_date == day_date,
            AttendanceDay.check_in_at == check_in_at,
            AttendanceDay.check_out_at.is_(None),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def check_out(
    db: Session,
    *,
    employee_id: int,
    sample: LocationSample,
    day_date: date | None = None,
    now_utc: datetime | None = None,
    directory: SqlDirectory | None = None,
) -> CheckOutResult:
    validate_sample(sample)
    now = normalize_ts(now_utc)
    target_day = day_date or local_day(now)
    directory = directory or SqlDirectory(db)
    _resolve_employee(directory, employee_id)

    day = _get_attendance_day(db, employee_id, target_day)
    state = day_state(day)
    if state == DayState.NOT_STARTED:
        raise ConflictError(code="NOT_CHECKED_IN", message="No check-in recorded for this day.")
    if state == DayState.CHECKED_OUT:
        raise ConflictError(code="ALREADY_CHECKED_OUT", message="Already checked out for this day.")

    check_in_at = normalize_ts(day.check_in_at)
    if now < check_in_at:
        raise ValidationError(
            code="CHECKOUT_BEFORE_CHECKIN",
            message="Check-out time cannot be earlier than check-in time.",
        )

    verdict = _evaluate(directory, employee_id, sample)
    if not verdict.is_within_any_area:
        # Recorded for review only; leaving early from a client site is normal.
        logger.warning(
            "attendance_checkout_outside_areas",
            extra={
                "employee_id": employee_id,
                "day_date": target_day.isoformat(),
                "nearest_area_id": verdict.nearest.area_id if verdict.nearest else None,
            },
        )

    closed = _close_day(
        db,
        employee_id=employee_id,
        day_date=target_day,
        check_out_at=now,
        check_in_at=day.check_in_at,
        location=build_location_snapshot(sample, verdict),
        auto=False,
    )
    if not closed:
        db.rollback()
        if day_state(_get_attendance_day(db, employee_id, target_day)) == DayState.CHECKED_OUT:
            raise ConflictError(code="ALREADY_CHECKED_OUT", message="Already checked out for this day.")
        raise ConflictError(
            code="ATTENDANCE_DAY_CHANGED",
            message="Attendance day changed during check-out. Please retry.",
        )
    db.commit()

    day = _get_attendance_day(db, employee_id, target_day)
    logger.info(
        "attendance_checkout_recorded",
        extra={
            "employee_id": employee_id,
            "day_date": target_day.isoformat(),
            "attendance_day_id": day.id,
            "work_hours": day.work_hours,
            "overtime_hours": day.overtime_hours,
        },
    )
    return CheckOutResult(
        attendance_day=day,
        work_hours=float(day.work_hours or 0.0),
        overtime_hours=float(day.overtime_hours or 0.0),
        geofence=verdict,
    )


def auto_close_open_days(
    db: Session,
    *,
    day_date: date | None = None,
    now_utc: datetime | None = None,
) -> list[AttendanceDay]:
    """Close every day still checked in once the local end-of-day cutoff has passed.

    The check-out instant is the cutoff itself. Status is left untouched.
    """
    now = normalize_ts(now_utc)
    target_day = day_date or local_day(now)
    cutoff_utc = local_instant_utc(target_day, auto_checkout_cutoff_local())
    if now < cutoff_utc:
        return []

    open_days = list(
        db.scalars(
            select(AttendanceDay)
            .where(
                AttendanceDay.day_date == target_day,
                AttendanceDay.check_in_at.is_not(None),
                AttendanceDay.check_out_at.is_(None),
            )
            .order_by(AttendanceDay.id.asc())
        ).all()
    )

    closed_keys: list[tuple[int, date]] = []
    for day in open_days:
        check_in_at = normalize_ts(day.check_in_at)
        check_out_at = max(cutoff_utc, check_in_at)
        closed = _close_day(
            db,
            employee_id=day.employee_id,
            day_date=day.day_date,
            check_out_at=check_out_at,
            check_in_at=day.check_in_at,
            location=None,
            auto=True,
            notes=f"{day.notes} {AUTO_CHECKOUT_NOTE}" if day.notes else AUTO_CHECKOUT_NOTE,
        )
        if closed:
            closed_keys.append((day.employee_id, day.day_date))
    db.commit()

    closed_days = [_get_attendance_day(db, employee_id, closed_day) for employee_id, closed_day in closed_keys]
    if closed_days:
        logger.info(
            "attendance_auto_checkout_completed",
            extra={
                "day_date": target_day.isoformat(),
                "closed_count": len(closed_days),
                "employee_ids": [employee_id for employee_id, _ in closed_keys],
            },
        )
    return [day for day in closed_days if day is not None]
