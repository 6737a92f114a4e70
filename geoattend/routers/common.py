from __future__ import annotations

from fastapi import BackgroundTasks, Request

from geoattend.audit import AuditContext
from geoattend.models import AuditActorType
from geoattend.schemas import LocationSamplePayload
from geoattend.security import Identity
from geoattend.services.location import LocationSample
from geoattend.services.notifications import NotificationOutbox, new_outbox


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or None
    if request.client is None:
        return None
    return request.client.host


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def audit_context(
    request: Request,
    identity: Identity,
    actor_type: AuditActorType = AuditActorType.EMPLOYEE,
) -> AuditContext:
    return AuditContext(
        actor_type=actor_type,
        actor_id=str(identity.id),
        ip=client_ip(request),
        user_agent=user_agent(request),
        request_id=request_id(request),
    )


def to_sample(payload: LocationSamplePayload) -> LocationSample:
    return LocationSample(
        lat=payload.lat,
        lon=payload.lon,
        accuracy_m=payload.accuracy_m,
        captured_at=payload.captured_at,
    )


def background_outbox(background_tasks: BackgroundTasks) -> NotificationOutbox:
    """Outbox whose deliveries run after the response has been sent."""
    outbox = new_outbox()
    background_tasks.add_task(outbox.flush)
    return outbox
