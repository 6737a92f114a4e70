from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from geoattend.models import (
    AttendanceDay,
    AttendanceRequest,
    AuditActorType,
    AuditLog,
    MovementTrail,
    ReimbursementBatch,
    SiteVisitPoint,
)

logger = logging.getLogger("geoattend.audit")

SYSTEM_ACTOR_ID = "maintenance_worker"

_ENTITY_TYPES: dict[type, str] = {
    AttendanceDay: "attendance_day",
    AttendanceRequest: "attendance_request",
    MovementTrail: "movement_trail",
    ReimbursementBatch: "reimbursement_batch",
    SiteVisitPoint: "site_visit_point",
}


@dataclass(frozen=True, slots=True)
class AuditContext:
    """Who performed a transition and where the call came from."""

    actor_type: AuditActorType
    actor_id: str
    ip: str | None = None
    user_agent: str | None = None
    request_id: str | None = None

    @classmethod
    def system(cls) -> AuditContext:
        return cls(actor_type=AuditActorType.SYSTEM, actor_id=SYSTEM_ACTOR_ID)


def entity_reference(entity: object | None) -> tuple[str | None, str | None]:
    if entity is None:
        return None, None
    entity_type = _ENTITY_TYPES.get(type(entity))
    if entity_type is None:
        raise TypeError(f"No audit entity type for {type(entity).__name__}")
    entity_id = getattr(entity, "id", None)
    return entity_type, str(entity_id) if entity_id is not None else None


def record_transition(
    db: Session,
    context: AuditContext,
    action: str,
    *,
    entity: object | None = None,
    entity_type: str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> AuditLog | None:
    """Append one row to ``audit_logs`` for a state transition that already committed.

    ``entity`` names the affected row; ``entity_type`` alone covers bulk work such as
    the end-of-day auto check-out. Write failures are logged and ``None`` is returned.
    """
    resolved_type, entity_id = entity_reference(entity)
    row = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=context.actor_type,
        actor_id=context.actor_id,
        action=action,
        entity_type=resolved_type or entity_type,
        entity_id=entity_id,
        ip=context.ip,
        user_agent=context.user_agent,
        success=success,
        details=details or {},
    )
    log_extra = {
        "request_id": context.request_id,
        "action": action,
        "actor_type": context.actor_type.value,
        "actor_id": context.actor_id,
        "entity_type": row.entity_type,
        "entity_id": entity_id,
    }
    db.add(row)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("audit_log_write_failed", extra=log_extra)
        return None

    logger.info("audit_event", extra={**log_extra, "success": success, "details": row.details})
    return row
