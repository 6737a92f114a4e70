from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any

from geoattend.settings import get_settings

logger = logging.getLogger("geoattend.notifications")

TEMPLATE_ATTENDANCE_REQUEST_SUBMITTED = "ATTENDANCE_REQUEST_SUBMITTED"
TEMPLATE_ATTENDANCE_REQUEST_APPROVED = "ATTENDANCE_REQUEST_APPROVED"
TEMPLATE_ATTENDANCE_REQUEST_REJECTED = "ATTENDANCE_REQUEST_REJECTED"
TEMPLATE_REIMBURSEMENT_COMPLETED = "REIMBURSEMENT_COMPLETED"
TEMPLATE_REIMBURSEMENT_FAILED = "REIMBURSEMENT_FAILED"

_TEMPLATES: dict[str, tuple[str, str]] = {
    TEMPLATE_ATTENDANCE_REQUEST_SUBMITTED: (
        "Attendance approval needed: {employee_name} on {day_date}",
        "{employee_name} checked in from outside their assigned work areas on {day_date}.\n"
        "Requested check-in: {requested_check_in_at}\n"
        "Nearest area: {nearest_area}\n"
        "Reason: {reason}\n"
        "Request id: {request_id}",
    ),
    TEMPLATE_ATTENDANCE_REQUEST_APPROVED: (
        "Your attendance request for {day_date} was approved",
        "Your out-of-area check-in on {day_date} was approved and recorded as present.\n"
        "Comments: {comments}",
    ),
    TEMPLATE_ATTENDANCE_REQUEST_REJECTED: (
        "Your attendance request for {day_date} was rejected",
        "Your out-of-area check-in on {day_date} was rejected.\n"
        "Reason: {comments}",
    ),
    TEMPLATE_REIMBURSEMENT_COMPLETED: (
        "Reimbursement {batch_code} processed",
        "{claim_count} expense claim(s) totalling {amount} were reimbursed.\n"
        "Reference: {reference_number}",
    ),
    TEMPLATE_REIMBURSEMENT_FAILED: (
        "Reimbursement {batch_code} failed",
        "Payment for {claim_count} expense claim(s) totalling {amount} failed and the claims "
        "were returned to the approved queue.\n"
        "Reason: {failure_reason}",
    ),
}


class _DefaultDict(dict):
    def __missing__(self, key: str) -> str:
        return "-"


def render_template(template_kind: str, payload: dict[str, Any]) -> tuple[str, str]:
    try:
        subject_template, body_template = _TEMPLATES[template_kind]
    except KeyError:
        return template_kind, "\n".join(f"{key}: {value}" for key, value in sorted(payload.items()))
    values = _DefaultDict({key: "-" if value is None else value for key, value in payload.items()})
    return subject_template.format_map(values), body_template.format_map(values)


class Notifier:
    configured: bool = False

    def notify(self, address: str, template_kind: str, payload: dict[str, Any]) -> bool:
        raise NotImplementedError


class EmailNotifier(Notifier):
    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = bool(settings.notification_email_enabled)
        self.smtp_host = settings.smtp_host.strip()
        self.smtp_port = int(settings.smtp_port)
        self.smtp_user = settings.smtp_user.strip()
        self.smtp_pass = settings.smtp_pass
        self.smtp_from = settings.smtp_from.strip()
        self.smtp_use_tls = bool(settings.smtp_use_tls)
        self.timeout_seconds = max(1, int(settings.notification_timeout_seconds))
        self.configured = bool(self.smtp_host and self.smtp_from)

    def notify(self, address: str, template_kind: str, payload: dict[str, Any]) -> bool:
        subject, body = render_template(template_kind, payload)
        if not self.enabled:
            logger.info("email_channel_disabled", extra={"subject": subject})
            return False
        if not self.configured:
            logger.info(
                "email_channel_placeholder_send",
                extra={
                    "subject": subject,
                    "address": address,
                    "body": body,
                },
            )
            return False

        email_message = EmailMessage()
        email_message["From"] = self.smtp_from
        email_message["To"] = address
        email_message["Subject"] = subject
        email_message.set_content(body)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds) as smtp_client:
            if self.smtp_use_tls:
                smtp_client.starttls()
            if self.smtp_user:
                smtp_client.login(self.smtp_user, self.smtp_pass)
            smtp_client.send_message(email_message)
        return True

    def config_status(self) -> dict[str, Any]:
        missing_fields: list[str] = []
        if not self.smtp_host:
            missing_fields.append("SMTP_HOST")
        if not self.smtp_from:
            missing_fields.append("SMTP_FROM")
        return {
            "enabled": bool(self.enabled),
            "configured": self.configured,
            "smtp_use_tls": bool(self.smtp_use_tls),
            "missing_fields": missing_fields,
        }


@dataclass(frozen=True, slots=True)
class OutgoingNotification:
    address: str
    template_kind: str
    payload: dict[str, Any]


def safe_notify(notifier: Notifier, message: OutgoingNotification) -> bool:
    try:
        return bool(notifier.notify(message.address, message.template_kind, message.payload))
    except Exception:
        # Delivery problems never roll back or fail the transition that produced them.
        logger.exception(
            "notification_send_failed",
            extra={
                "address": message.address,
                "template_kind": message.template_kind,
            },
        )
        return False


@dataclass
class NotificationOutbox:
    """Messages queued by a committed transition, delivered later by ``flush``.

    Routers hand ``flush`` to FastAPI background tasks so delivery happens after the
    response is sent.
    """

    notifier: Notifier
    pending: list[OutgoingNotification] = field(default_factory=list)

    def enqueue(self, address: str, template_kind: str, payload: dict[str, Any]) -> None:
        self.pending.append(OutgoingNotification(address=address, template_kind=template_kind, payload=payload))

    def flush(self) -> dict[str, int]:
        messages, self.pending = self.pending, []
        sent = 0
        for message in messages:
            if safe_notify(self.notifier, message):
                sent += 1
        if messages:
            logger.info(
                "notification_outbox_flushed",
                extra={"queued": len(messages), "sent": sent},
            )
        return {"queued": len(messages), "sent": sent, "failed": len(messages) - sent}


def get_notifier() -> Notifier:
    return EmailNotifier()


def new_outbox() -> NotificationOutbox:
    return NotificationOutbox(notifier=get_notifier())


def get_notification_channel_health() -> dict[str, Any]:
    return {"email": EmailNotifier().config_status()}


def dispatch(outbox: NotificationOutbox | None, messages: list[OutgoingNotification]) -> None:
    """Queue on the caller's outbox, or deliver right away when there is none."""
    target = outbox if outbox is not None else new_outbox()
    target.pending.extend(messages)
    if outbox is None:
        target.flush()
