"""MailerSend REST client."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import httpx

MAILER_SEND_API_KEY = os.getenv("MAILER_SEND_API_KEY", "")
MAILER_SEND_API_URL = os.getenv("MAILER_SEND_API_URL", "https://api.mailersend.com/v1")
MAILER_SEND_SENDER_EMAIL = os.getenv("MAILER_SEND_SENDER_EMAIL", "no-reply@destexplore.eu")
MAILER_SEND_SENDER_NAME = os.getenv("MAILER_SEND_SENDER_NAME", "DestExplore")
MAILER_SEND_TRIAL_MODE = os.getenv("MAILER_SEND_TRIAL_MODE", "").strip().lower() == "true"
MAILER_SEND_TRIAL_EMAIL = os.getenv("MAILER_SEND_TRIAL_EMAIL", "")
MAILER_SEND_TIMEOUT = float(os.getenv("MAILER_SEND_TIMEOUT", "10"))

logger = logging.getLogger(__name__)


class MailerSendError(Exception):
    """MailerSend rejected the request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class MailerSendNotConfigured(MailerSendError):
    """MAILER_SEND_API_KEY is not set."""


@dataclass(frozen=True)
class Recipient:
    email: str
    name: str | None = None

    def as_dict(self) -> dict[str, str]:
        out = {"email": self.email.strip().lower()}
        if self.name:
            out["name"] = self.name
        return out


@dataclass
class Email:
    to: list[Recipient]
    subject: str
    html: str | None = None
    text: str | None = None
    template_id: str | None = None
    # Template variables, applied to every recipient (MailerSend "personalization").
    variables: dict[str, str] = field(default_factory=dict)
    reply_to: Recipient | None = None
    sender: Recipient | None = None


@dataclass(frozen=True)
class SendResult:
    message_id: str | None
    sent_to: list[str]
    trial_mode: bool


def trial_recipients(recipients: list[Recipient]) -> list[Recipient]:
    """
    Trial MailerSend accounts may only deliver to the verified address, so
    every recipient collapses into that single one.
    """
    if not MAILER_SEND_TRIAL_MODE:
        return recipients
    if not MAILER_SEND_TRIAL_EMAIL:
        raise MailerSendNotConfigured("MAILER_SEND_TRIAL_MODE is on but MAILER_SEND_TRIAL_EMAIL is empty")
    return [Recipient(MAILER_SEND_TRIAL_EMAIL, f"Test Recipient ({len(recipients)} emails redirected)")]


def build_payload(email: Email, recipients: list[Recipient]) -> dict[str, Any]:
    sender = email.sender or Recipient(MAILER_SEND_SENDER_EMAIL, MAILER_SEND_SENDER_NAME)
    payload: dict[str, Any] = {
        "from": {"email": sender.email, "name": sender.name},
        "to": [r.as_dict() for r in recipients],
        # Required by the API even when a template supplies the body.
        "subject": email.subject,
    }
    if email.template_id:
        payload["template_id"] = email.template_id
        if email.variables:
            # Addresses here must match "to" exactly, hence the shared normalisation in as_dict().
            payload["personalization"] = [
                {"email": r.as_dict()["email"], "data": {k: str(v) for k, v in email.variables.items()}}
                for r in recipients
            ]
    if email.html:
        payload["html"] = email.html
    if email.text:
        payload["text"] = email.text
    if email.reply_to:
        payload["reply_to"] = email.reply_to.as_dict()
    return payload


def send(email: Email, transport: httpx.BaseTransport | None = None) -> SendResult:
    if not MAILER_SEND_API_KEY:
        raise MailerSendNotConfigured("MAILER_SEND_API_KEY is not configured")
    if not email.to:
        raise MailerSendError("Email has no recipients")

    recipients = trial_recipients(email.to)
    payload = build_payload(email, recipients)

    try:
        with httpx.Client(timeout=MAILER_SEND_TIMEOUT, transport=transport) as client:
            response = client.post(
                f"{MAILER_SEND_API_URL.rstrip('/')}/email",
                json=payload,
                headers={
                    "Authorization": f"Bearer {MAILER_SEND_API_KEY}",
                    "Accept": "application/json",
                },
            )
    except httpx.HTTPError as e:
        raise MailerSendError(f"MailerSend request failed: {e}") from e

    if response.status_code >= 400:
        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}
        logger.warning("MailerSend rejected email (status=%s, subject=%s): %s", response.status_code, email.subject, body)
        raise MailerSendError("Failed to send email via MailerSend", status_code=response.status_code, body=body)

    message_id = response.headers.get("x-message-id")
    sent_to = [r.as_dict()["email"] for r in recipients]
    logger.info("Email sent (message_id=%s, subject=%s, recipients=%d)", message_id, email.subject, len(sent_to))
    return SendResult(message_id=message_id, sent_to=sent_to, trial_mode=MAILER_SEND_TRIAL_MODE)
