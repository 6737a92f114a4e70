from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from geoattend.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from geoattend.models import (
    ExpenseClaim,
    ExpenseClaimStatus,
    PaymentMethod,
    ReimbursementBatch,
    ReimbursementBatchStatus,
)
from geoattend.security import Identity, can_manage_reimbursements
from geoattend.services.directory import SqlDirectory
from geoattend.services.local_time import normalize_ts
from geoattend.services.notifications import (
    TEMPLATE_REIMBURSEMENT_COMPLETED,
    TEMPLATE_REIMBURSEMENT_FAILED,
    NotificationOutbox,
    OutgoingNotification,
    dispatch,
)

logger = logging.getLogger("geoattend.reimbursements")

ALLOWED_TRANSITIONS: dict[ReimbursementBatchStatus, ReimbursementBatchStatus] = {
    # target -> required current status
    ReimbursementBatchStatus.PROCESSING: ReimbursementBatchStatus.PENDING,
    ReimbursementBatchStatus.COMPLETED: ReimbursementBatchStatus.PROCESSING,
    ReimbursementBatchStatus.FAILED: ReimbursementBatchStatus.PROCESSING,
}


def _require_manager(actor: Identity) -> None:
    if not can_manage_reimbursements(actor.role):
        raise UnauthorizedError("Only ADMIN or FINANCE users can manage reimbursement batches.")


def _get_batch(db: Session, batch_id: int) -> ReimbursementBatch:
    batch = db.get(ReimbursementBatch, batch_id, populate_existing=True)
    if batch is None:
        raise NotFoundError(code="BATCH_NOT_FOUND", message="Reimbursement batch not found.")
    return batch


def _default_batch_code(now_utc: datetime) -> str:
    return f"REIMB-{int(now_utc.timestamp() * 1000)}"


def create_reimbursement_batch(
    db: Session,
    *,
    claim_ids: list[int],
    created_by: Identity,
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
    batch_code: str | None = None,
    now_utc: datetime | None = None,
) -> ReimbursementBatch:
    _require_manager(created_by)
    unique_claim_ids = sorted(set(claim_ids))
    if not unique_claim_ids:
        raise ValidationError(code="NO_CLAIMS", message="At least one expense claim is required.")

    now = normalize_ts(now_utc)
    claims = db.scalars(select(ExpenseClaim).where(ExpenseClaim.id.in_(unique_claim_ids))).all()
    if len(claims) != len(unique_claim_ids):
        raise NotFoundError(code="CLAIM_NOT_FOUND", message="One or more expense claims were not found.")

    batch = ReimbursementBatch(
        batch_code=(batch_code or "").strip() or _default_batch_code(now),
        status=ReimbursementBatchStatus.PENDING,
        payment_method=payment_method,
        total_amount=sum((Decimal(claim.amount) for claim in claims), Decimal("0")),
        member_claim_ids=unique_claim_ids,
        created_by=created_by.id,
    )
    db.add(batch)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(code="DUPLICATE_BATCH_CODE", message="Batch code is already in use.") from exc

    # Claims join a batch only from the approved, unbatched state.
    result = db.execute(
        update(ExpenseClaim)
        .where(
            ExpenseClaim.id.in_(unique_claim_ids),
            ExpenseClaim.status == ExpenseClaimStatus.APPROVED,
            ExpenseClaim.reimbursement_batch_id.is_(None),
        )
        .values(reimbursement_batch_id=batch.id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(unique_claim_ids):
        db.rollback()
        raise ConflictError(
            code="CLAIM_NOT_AVAILABLE",
            message="Every claim must be approved and not already part of a batch.",
        )
    db.commit()
    db.refresh(batch)

    logger.info(
        "reimbursement_batch_created",
        extra={
            "batch_id": batch.id,
            "batch_code": batch.batch_code,
            "claim_count": len(unique_claim_ids),
            "total_amount": str(batch.total_amount),
        },
    )
    return batch


def _employee_notifications(
    claims: list[ExpenseClaim],
    *,
    batch: ReimbursementBatch,
    template_kind: str,
    directory: SqlDirectory,
) -> list[OutgoingNotification]:
    per_employee: OrderedDict[int, list[ExpenseClaim]] = OrderedDict()
    for claim in sorted(claims, key=lambda item: (item.employee_id, item.id)):
        per_employee.setdefault(claim.employee_id, []).append(claim)

    messages: list[OutgoingNotification] = []
    for employee_id, employee_claims in per_employee.items():
        address = directory.contact_channel(employee_id)
        if not address:
            continue
        amount = sum((Decimal(claim.amount) for claim in employee_claims), Decimal("0"))
        messages.append(
            OutgoingNotification(
                address,
                template_kind,
                {
                    "batch_id": batch.id,
                    "batch_code": batch.batch_code,
                    "claim_count": len(employee_claims),
                    "amount": f"{amount:.2f}",
                    "reference_number": batch.reference_number,
                    "failure_reason": batch.failure_reason,
                },
            )
        )
    return messages


def transition_reimbursement_batch(
    db: Session,
    *,
    batch_id: int,
    target_status: ReimbursementBatchStatus,
    actor: Identity,
    reference_number: str | None = None,
    failure_reason: str | None = None,
    now_utc: datetime | None = None,
    outbox: NotificationOutbox | None = None,
    directory: SqlDirectory | None = None,
) -> ReimbursementBatch:
    _require_manager(actor)
    required_status = ALLOWED_TRANSITIONS.get(target_status)
    if required_status is None:
        raise ValidationError(
            code="INVALID_BATCH_STATUS",
            message=f"Batches cannot be moved to {target_status.value}.",
        )

    now = normalize_ts(now_utc)
    values: dict[str, object] = {"status": target_status}
    if target_status == ReimbursementBatchStatus.PROCESSING:
        values["processing_at"] = now
    elif target_status == ReimbursementBatchStatus.COMPLETED:
        values["completed_at"] = now
        if reference_number and reference_number.strip():
            values["reference_number"] = reference_number.strip()
    else:
        values["failed_at"] = now
        values["failure_reason"] = (failure_reason or "").strip() or "Payment failed"

    result = db.execute(
        update(ReimbursementBatch)
        .where(
            ReimbursementBatch.id == batch_id,
            ReimbursementBatch.status == required_status,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        current = _get_batch(db, batch_id)
        raise ConflictError(
            code="INVALID_BATCH_TRANSITION",
            message=f"Cannot move batch from {current.status.value} to {target_status.value}.",
        )

    members = list(
        db.scalars(
            select(ExpenseClaim)
            .where(ExpenseClaim.reimbursement_batch_id == batch_id)
            .order_by(ExpenseClaim.id.asc())
        ).all()
    )
    if target_status == ReimbursementBatchStatus.COMPLETED:
        db.execute(
            update(ExpenseClaim)
            .where(ExpenseClaim.reimbursement_batch_id == batch_id)
            .values(status=ExpenseClaimStatus.REIMBURSED, reimbursed_at=now)
            .execution_options(synchronize_session=False)
        )
    elif target_status == ReimbursementBatchStatus.FAILED:
        # Compensation: members go back to the approved queue, free to join another batch.
        db.execute(
            update(ExpenseClaim)
            .where(ExpenseClaim.reimbursement_batch_id == batch_id)
            .values(
                status=ExpenseClaimStatus.APPROVED,
                reimbursed_at=None,
                reimbursement_batch_id=None,
            )
            .execution_options(synchronize_session=False)
        )
    db.commit()
    batch = _get_batch(db, batch_id)

    if target_status in {ReimbursementBatchStatus.COMPLETED, ReimbursementBatchStatus.FAILED}:
        template_kind = (
            TEMPLATE_REIMBURSEMENT_COMPLETED
            if target_status == ReimbursementBatchStatus.COMPLETED
            else TEMPLATE_REIMBURSEMENT_FAILED
        )
        dispatch(
            outbox,
            _employee_notifications(
                members,
                batch=batch,
                template_kind=template_kind,
                directory=directory or SqlDirectory(db),
            ),
        )

    logger.info(
        "reimbursement_batch_transitioned",
        extra={
            "batch_id": batch.id,
            "status": batch.status.value,
            "claim_count": len(members),
            "actor_id": actor.id,
        },
    )
    return batch


def list_batch_claims(db: Session, batch: ReimbursementBatch) -> list[ExpenseClaim]:
    if not batch.member_claim_ids:
        return []
    return list(
        db.scalars(
            select(ExpenseClaim)
            .where(ExpenseClaim.id.in_(batch.member_claim_ids))
            .order_by(ExpenseClaim.id.asc())
            .execution_options(populate_existing=True)
        ).all()
    )
