from datetime import date

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from geoattend.audit import record_transition
from geoattend.db import get_db
from geoattend.errors import ApiError, NotFoundError
from geoattend.routers.common import audit_context, to_sample
from geoattend.schemas import (
    DistanceStatisticsResponse,
    MovementTrailRead,
    SiteVisitPointCreate,
    SiteVisitPointRead,
)
from geoattend.security import Identity, can_decide_approvals, require_identity
from geoattend.services.movement_trail import (
    get_distance_statistics,
    get_movement_trail,
    recompute_movement_trail,
    record_site_visit_point,
)

router = APIRouter(prefix="/api/movement", tags=["movement"])


def _target_employee(identity: Identity, employee_id: int | None) -> int:
    if employee_id is None or employee_id == identity.id:
        return identity.id
    if not can_decide_approvals(identity.role):
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return employee_id


@router.post("/points", response_model=SiteVisitPointRead, status_code=status.HTTP_201_CREATED)
def create_point(
    payload: SiteVisitPointCreate,
    request: Request,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> SiteVisitPointRead:
    request.state.employee_id = identity.id
    point = record_site_visit_point(
        db,
        employee_id=identity.id,
        sample=to_sample(payload),
        timestamp=payload.timestamp,
        site_id=payload.site_id,
        site_name=payload.site_name,
        kind=payload.kind,
    )
    record_transition(
        db,
        audit_context(request, identity),
        "SITE_VISIT_POINT_RECORDED",
        entity=point,
        details={"day_date": point.day_date.isoformat(), "site_id": point.site_id, "kind": point.kind.value},
    )
    return SiteVisitPointRead.model_validate(point)


@router.post("/trails/{day_date}/recompute", response_model=MovementTrailRead)
def recompute_trail(
    day_date: date,
    request: Request,
    employee_id: int | None = Query(default=None),
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> MovementTrailRead:
    trail = recompute_movement_trail(
        db,
        employee_id=_target_employee(identity, employee_id),
        day_date=day_date,
    )
    record_transition(
        db,
        audit_context(request, identity),
        "MOVEMENT_TRAIL_RECOMPUTED",
        entity=trail,
        details={
            "employee_id": trail.employee_id,
            "day_date": day_date.isoformat(),
            "point_count": trail.point_count,
            "is_validated": trail.is_validated,
        },
    )
    return MovementTrailRead.model_validate(trail)


@router.get("/trails/{day_date}", response_model=MovementTrailRead)
def get_trail(
    day_date: date,
    employee_id: int | None = Query(default=None),
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> MovementTrailRead:
    trail = get_movement_trail(db, employee_id=_target_employee(identity, employee_id), day_date=day_date)
    if trail is None:
        raise NotFoundError(code="TRAIL_NOT_FOUND", message="Movement trail has not been computed for this day.")
    return MovementTrailRead.model_validate(trail)


@router.get("/statistics", response_model=DistanceStatisticsResponse)
def distance_statistics(
    start_date: date,
    end_date: date,
    employee_id: int | None = Query(default=None),
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> DistanceStatisticsResponse:
    stats = get_distance_statistics(
        db,
        employee_id=_target_employee(identity, employee_id),
        start_date=start_date,
        end_date=end_date,
    )
    return DistanceStatisticsResponse(**stats)
