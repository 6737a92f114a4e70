from __future__ import annotations

import unittest
from unittest.mock import MagicMock, patch

from geoattend.services.notifications import (
    TEMPLATE_ATTENDANCE_REQUEST_SUBMITTED,
    EmailNotifier,
    OutgoingNotification,
    dispatch,
    get_notification_channel_health,
    render_template,
    safe_notify,
)
from geoattend.settings import Settings
from tests.db_support import RecordingNotifier


class NotificationServiceTests(unittest.TestCase):
    def test_render_template_fills_missing_values_with_dash(self) -> None:
        subject, body = render_template(
            TEMPLATE_ATTENDANCE_REQUEST_SUBMITTED,
            {
                "employee_name": "Arjun Nair",
                "day_date": "2026-03-02",
                "nearest_area": None,
            },
        )
        self.assertEqual(subject, "Attendance approval needed: Arjun Nair on 2026-03-02")
        self.assertIn("Nearest area: -", body)
        self.assertIn("Request id: -", body)

    def test_unknown_template_lists_payload(self) -> None:
        subject, body = render_template("CUSTOM", {"b": 2, "a": 1})
        self.assertEqual(subject, "CUSTOM")
        self.assertEqual(body, "a: 1\nb: 2")

    @patch("geoattend.services.notifications.get_settings")
    def test_email_placeholder_when_smtp_missing(self, mock_get_settings) -> None:
        mock_get_settings.return_value = Settings(smtp_host="", smtp_from="")
        notifier = EmailNotifier()

        with self.assertLogs("geoattend.notifications", level="INFO") as captured:
            sent = notifier.notify("hr@example.com", TEMPLATE_ATTENDANCE_REQUEST_SUBMITTED, {})

        self.assertFalse(sent)
        self.assertTrue(any("email_channel_placeholder_send" in line for line in captured.output))
        self.assertEqual(notifier.config_status()["missing_fields"], ["SMTP_HOST", "SMTP_FROM"])

    @patch("geoattend.services.notifications.smtplib.SMTP")
    @patch("geoattend.services.notifications.get_settings")
    def test_email_sent_over_smtp_when_configured(self, mock_get_settings, mock_smtp) -> None:
        mock_get_settings.return_value = Settings(
            smtp_host="smtp.example.com",
            smtp_port=2525,
            smtp_user="mailer",
            smtp_pass="secret",
            smtp_from="attendance@example.com",
            notification_timeout_seconds=7,
        )
        client = MagicMock()
        mock_smtp.return_value.__enter__.return_value = client

        sent = EmailNotifier().notify(
            "meera@example.com",
            TEMPLATE_ATTENDANCE_REQUEST_SUBMITTED,
            {"employee_name": "Arjun Nair", "day_date": "2026-03-02"},
        )

        self.assertTrue(sent)
        mock_smtp.assert_called_once_with("smtp.example.com", 2525, timeout=7)
        client.starttls.assert_called_once()
        client.login.assert_called_once_with("mailer", "secret")
        message = client.send_message.call_args.args[0]
        self.assertEqual(message["To"], "meera@example.com")
        self.assertEqual(message["From"], "attendance@example.com")

    def test_safe_notify_swallows_delivery_errors(self) -> None:
        message = OutgoingNotification("hr@example.com", TEMPLATE_ATTENDANCE_REQUEST_SUBMITTED, {})
        with self.assertLogs("geoattend.notifications", level="ERROR"):
            self.assertFalse(safe_notify(RecordingNotifier(fail=True), message))
        self.assertTrue(safe_notify(RecordingNotifier(), message))

    @patch("geoattend.services.notifications.get_notifier")
    def test_dispatch_without_outbox_delivers_immediately(self, mock_get_notifier) -> None:
        notifier = RecordingNotifier()
        mock_get_notifier.return_value = notifier

        dispatch(None, [OutgoingNotification("hr@example.com", "CUSTOM", {"x": 1})])

        self.assertEqual(notifier.sent, [("hr@example.com", "CUSTOM", {"x": 1})])

    @patch("geoattend.services.notifications.get_settings")
    def test_channel_health_reports_email_status(self, mock_get_settings) -> None:
        mock_get_settings.return_value = Settings(smtp_host="smtp.example.com", smtp_from="a@example.com")
        health = get_notification_channel_health()
        self.assertTrue(health["email"]["configured"])
        self.assertEqual(health["email"]["missing_fields"], [])


if __name__ == "__main__":
    unittest.main()
