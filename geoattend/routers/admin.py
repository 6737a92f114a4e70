from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from sqlalchemy.orm import Session

from geoattend.audit import record_transition
from geoattend.db import get_db
from geoattend.errors import ApiError
from geoattend.models import AuditActorType, ReimbursementBatch, ReimbursementBatchStatus
from geoattend.routers.common import audit_context, background_outbox
from geoattend.schemas import (
    AutoCheckoutRequest,
    AutoCheckoutResponse,
    ExpenseClaimRead,
    ReimbursementBatchCreate,
    ReimbursementBatchRead,
    ReimbursementBatchStatusUpdate,
)
from geoattend.security import Identity, can_view_all_requests, require_identity, require_reimbursement_manager
from geoattend.services.attendance import auto_close_open_days
from geoattend.services.reimbursements import (
    create_reimbursement_batch,
    list_batch_claims,
    transition_reimbursement_batch,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _batch_read(db: Session, batch: ReimbursementBatch) -> ReimbursementBatchRead:
    batch_read = ReimbursementBatchRead.model_validate(batch)
    batch_read.claims = [ExpenseClaimRead.model_validate(claim) for claim in list_batch_claims(db, batch)]
    return batch_read


@router.post("/attendance/auto-checkout", response_model=AutoCheckoutResponse)
def run_auto_checkout(
    payload: AutoCheckoutRequest,
    request: Request,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> AutoCheckoutResponse:
    if not can_view_all_requests(identity.role):
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    closed_days = auto_close_open_days(db, day_date=payload.day_date)
    closed_ids = [day.id for day in closed_days]
    record_transition(
        db,
        audit_context(request, identity, AuditActorType.APPROVER),
        "ATTENDANCE_AUTO_CHECKOUT",
        entity_type="attendance_day",
        details={
            "day_date": payload.day_date.isoformat() if payload.day_date else None,
            "attendance_day_ids": closed_ids,
        },
    )
    return AutoCheckoutResponse(
        day_date=payload.day_date,
        closed_count=len(closed_ids),
        attendance_day_ids=closed_ids,
    )


@router.post(
    "/reimbursement-batches",
    response_model=ReimbursementBatchRead,
    status_code=status.HTTP_201_CREATED,
)
def create_batch(
    payload: ReimbursementBatchCreate,
    request: Request,
    identity: Identity = Depends(require_reimbursement_manager),
    db: Session = Depends(get_db),
) -> ReimbursementBatchRead:
    batch = create_reimbursement_batch(
        db,
        claim_ids=payload.claim_ids,
        created_by=identity,
        payment_method=payload.payment_method,
        batch_code=payload.batch_code,
    )
    record_transition(
        db,
        audit_context(request, identity, AuditActorType.APPROVER),
        "REIMBURSEMENT_BATCH_CREATED",
        entity=batch,
        details={"claim_ids": list(batch.member_claim_ids), "total_amount": str(batch.total_amount)},
    )
    return _batch_read(db, batch)


@router.post("/reimbursement-batches/{batch_id}/status", response_model=ReimbursementBatchRead)
def update_batch_status(
    batch_id: int,
    payload: ReimbursementBatchStatusUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_reimbursement_manager),
    db: Session = Depends(get_db),
) -> ReimbursementBatchRead:
    batch = transition_reimbursement_batch(
        db,
        batch_id=batch_id,
        target_status=ReimbursementBatchStatus(payload.status),
        actor=identity,
        reference_number=payload.reference_number,
        failure_reason=payload.failure_reason,
        outbox=background_outbox(background_tasks),
    )
    record_transition(
        db,
        audit_context(request, identity, AuditActorType.APPROVER),
        f"REIMBURSEMENT_BATCH_{batch.status.value}",
        entity=batch,
        details={"reference_number": batch.reference_number, "failure_reason": batch.failure_reason},
    )
    return _batch_read(db, batch)
