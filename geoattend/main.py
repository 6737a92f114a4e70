import asyncio
from contextlib import suppress
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from geoattend.audit import AuditContext, record_transition
from geoattend.db import SessionLocal
from geoattend.errors import ApiError, error_response
from geoattend.logging_utils import setup_json_logging
from geoattend.routers import admin, attendance, movement
from geoattend.services.attendance import auto_close_open_days
from geoattend.services.notifications import get_notification_channel_health
from geoattend.settings import get_cors_origins, get_settings

setup_json_logging()
logger = logging.getLogger("geoattend.request")
maintenance_worker_logger = logging.getLogger("geoattend.maintenance_worker")
settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "anonymous")
    request.state.actor_id = getattr(request.state, "actor_id", None)

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "anonymous"),
                "actor_id": getattr(request.state, "actor_id", None),
                "employee_id": getattr(request.state, "employee_id", None),
                "location_status": getattr(request.state, "location_status", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code == 409:
        logger.info(
            "state_conflict",
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "code": exc.code,
                "path": request.url.path,
            },
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(attendance.router)
app.include_router(movement.router)
app.include_router(admin.router)


def run_maintenance_tick() -> int:
    db = SessionLocal()
    try:
        closed_days = auto_close_open_days(db)
        if closed_days:
            record_transition(
                db,
                AuditContext.system(),
                "ATTENDANCE_AUTO_CHECKOUT",
                entity_type="attendance_day",
                details={"attendance_day_ids": [day.id for day in closed_days]},
            )
    finally:
        db.close()
    return len(closed_days)


async def _maintenance_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(30, int(settings.maintenance_worker_interval_seconds))
    while not stop_event.is_set():
        try:
            closed_count = await asyncio.to_thread(run_maintenance_tick)
        except Exception:
            maintenance_worker_logger.exception("maintenance_worker_tick_failed")
        else:
            if closed_count:
                maintenance_worker_logger.info(
                    "maintenance_worker_tick",
                    extra={"auto_closed_days": closed_count},
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def start_maintenance_worker() -> None:
    if not settings.maintenance_worker_enabled:
        return
    if getattr(app.state, "maintenance_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_maintenance_worker_loop(stop_event))
    app.state.maintenance_worker_stop_event = stop_event
    app.state.maintenance_worker_task = task
    channel_health = get_notification_channel_health()
    missing_fields = channel_health.get("email", {}).get("missing_fields", [])
    if missing_fields:
        maintenance_worker_logger.warning(
            "notification_email_channel_not_configured",
            extra={"missing_fields": missing_fields},
        )
    maintenance_worker_logger.info(
        "maintenance_worker_started",
        extra={"interval_seconds": max(30, int(settings.maintenance_worker_interval_seconds))},
    )


@app.on_event("shutdown")
async def stop_maintenance_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "maintenance_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "maintenance_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.maintenance_worker_stop_event = None
    app.state.maintenance_worker_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "notification_channels": get_notification_channel_health(),
    }
