"""
Notification channels used by reminders and operator alerts.

A channel takes ``(recipient, subject, body)`` and reports per-recipient
success. Delivery transports other than email live outside this service.
"""
from __future__ import annotations

import logging
from typing import Iterable

from flask import current_app
from flask_mail import Message

from extensions import mail

log = logging.getLogger(__name__)


class NotificationChannel:
    name = "base"

    def send(self, recipient: str, subject: str, body: str) -> bool:
        raise NotImplementedError


class MailChannel(NotificationChannel):
    name = "email"

    def send(self, recipient: str, subject: str, body: str) -> bool:
        if not recipient:
            return False
        msg = Message(
            subject=subject,
            sender=current_app.config.get("MAIL_DEFAULT_SENDER"),
            recipients=[recipient],
            body=body,
        )
        mail.send(msg)
        return True


class NullChannel(NotificationChannel):
    """Dry-run channel: logs instead of delivering."""

    name = "null"

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    def send(self, recipient: str, subject: str, body: str) -> bool:
        log.info("dry-run notification to %s: %s", recipient, subject)
        self.sent.append((recipient, subject, body))
        return True


def default_channel() -> NotificationChannel:
    return MailChannel()


def send_alert_email(subject: str, body: str, recipients: Iterable[str]) -> dict[str, bool]:
    channel = default_channel()
    successes: dict[str, bool] = {}
    for recipient in recipients:
        if not recipient:
            continue
        try:
            sent = channel.send(recipient, subject, body)
        except Exception:
            log.exception("alert email to %s failed", recipient)
            sent = False
        successes[recipient] = sent
    return successes
