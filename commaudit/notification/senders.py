"""Channel senders: SMTP email and Twilio SMS.

Both return a ``SendReceipt`` carrying the provider's message id, which
becomes the external message id that later webhook callbacks correlate
on.  Neither raises on provider errors: a failed attempt is a receipt
with ``accepted=False``.

Safety: recipient addresses and message bodies are never logged.
"""
from __future__ import annotations

import logging
import smtplib
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Protocol

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from commaudit.core.settings import Settings, get_settings
from commaudit.delivery.status import TYPE_EMAIL, TYPE_SMS

logger = logging.getLogger(__name__)

_MAX_RETRIES = 3
_BACKOFF_BASE = 1  # seconds: 1, 2, 4


# ---------------------------------------------------------------------------
# SendReceipt / ChannelSender
# ---------------------------------------------------------------------------

@dataclass
class SendReceipt:
    """Record of a single send attempt."""

    accepted: bool
    external_id: str | None
    error: str | None = None
    attempt_count: int = 1
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ChannelSender(Protocol):
    communication_type: str

    def send(self, recipient: str, subject: str | None, content: str) -> SendReceipt:
        ...


# ---------------------------------------------------------------------------
# SmtpEmailSender
# ---------------------------------------------------------------------------

class SmtpEmailSender:
    """Send email through an SMTP relay with retries and exponential backoff."""

    communication_type = TYPE_EMAIL

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int = 587,
        from_address: str = "noreply@notifications.local",
        *,
        max_retries: int = _MAX_RETRIES,
        backoff_base: float = _BACKOFF_BASE,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.from_address = from_address
        self.max_retries = max_retries
        self.backoff_base = backoff_base

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SmtpEmailSender:
        settings = settings or get_settings()
        return cls(settings.smtp_host, settings.smtp_port, settings.smtp_from)

    def send(self, recipient: str, subject: str | None, content: str) -> SendReceipt:
        domain = self.from_address.rpartition("@")[2] or None
        message_id = make_msgid(domain=domain)

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject or ""
        msg["From"] = self.from_address
        msg["To"] = recipient
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(content, "plain", "utf-8"))

        external_id = message_id.strip("<>")
        last_error: str | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
                    server.sendmail(self.from_address, [recipient], msg.as_string())
                logger.info("Email %s accepted by relay (attempt %d)", external_id, attempt)
                return SendReceipt(accepted=True, external_id=external_id, attempt_count=attempt)
            except smtplib.SMTPException as exc:
                last_error = str(exc)
                logger.warning("SMTP error for email %s attempt %d: %s", external_id, attempt, type(exc).__name__)
                if attempt < self.max_retries:
                    time.sleep(self.backoff_base * (2 ** (attempt - 1)))

        logger.error("Email %s failed after %d attempts", external_id, self.max_retries)
        return SendReceipt(
            accepted=False,
            external_id=None,
            error=last_error,
            attempt_count=self.max_retries,
        )


# ---------------------------------------------------------------------------
# TwilioSmsSender
# ---------------------------------------------------------------------------

class TwilioSmsSender:
    """Send SMS through the Twilio REST API."""

    communication_type = TYPE_SMS

    def __init__(
        self,
        client: Client,
        from_number: str,
        *,
        status_callback_url: str | None = None,
    ) -> None:
        self.client = client
        self.from_number = from_number
        self.status_callback_url = status_callback_url

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        status_callback_url: str | None = None,
    ) -> TwilioSmsSender:
        settings = settings or get_settings()
        if not (settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number):
            raise ValueError("TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER must be set")
        client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        return cls(client, settings.twilio_from_number, status_callback_url=status_callback_url)

    def send(self, recipient: str, subject: str | None, content: str) -> SendReceipt:
        kwargs = {"to": recipient, "from_": self.from_number, "body": content}
        if self.status_callback_url:
            kwargs["status_callback"] = self.status_callback_url
        try:
            message = self.client.messages.create(**kwargs)
        except TwilioException as exc:
            logger.error("Twilio rejected SMS: %s", type(exc).__name__)
            return SendReceipt(accepted=False, external_id=None, error=str(exc))

        logger.info("SMS %s accepted by Twilio", message.sid)
        return SendReceipt(accepted=True, external_id=message.sid)
