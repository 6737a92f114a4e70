from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from geoattend.errors import ApiError
from geoattend.models import Role
from geoattend.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

APPROVER_ROLES = frozenset({Role.ADMIN.value, Role.HR.value, Role.MANAGER.value})
ORG_WIDE_VIEWER_ROLES = frozenset({Role.ADMIN.value, Role.HR.value})
REIMBURSEMENT_ROLES = frozenset({Role.ADMIN.value, Role.FINANCE.value})


@dataclass(frozen=True, slots=True)
class Identity:
    id: int
    role: str


def can_decide_approvals(role: str | None) -> bool:
    return (role or "").upper() in APPROVER_ROLES


def can_view_all_requests(role: str | None) -> bool:
    return (role or "").upper() in ORG_WIDE_VIEWER_ROLES


def can_manage_reimbursements(role: str | None) -> bool:
    return (role or "").upper() in REIMBURSEMENT_ROLES


def create_access_token(identity: Identity, *, expires_minutes: int | None = None) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    minutes = settings.access_token_minutes if expires_minutes is None else expires_minutes
    claims: dict[str, Any] = {
        "sub": str(identity.id),
        "role": identity.role,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm="HS256")


def decode_identity_token(token: str) -> Identity:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    try:
        employee_id = int(subject)
    except (TypeError, ValueError) as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.") from exc

    role = str(payload.get("role") or Role.EMPLOYEE.value).upper()
    return Identity(id=employee_id, role=role)


def require_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Identity:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    identity = decode_identity_token(credentials.credentials)
    request.state.actor = identity.role.lower()
    request.state.actor_id = str(identity.id)
    return identity


def require_reimbursement_manager(identity: Identity = Depends(require_identity)) -> Identity:
    if not can_manage_reimbursements(identity.role):
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return identity
