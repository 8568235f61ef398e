"""Tests for commaudit/notification/senders.py and dispatcher.py.

All SMTP and Twilio calls are mocked; no real provider is contacted.
"""
from __future__ import annotations

import email as email_mod
import smtplib
from unittest.mock import MagicMock, call, patch
from uuid import uuid4

import pytest
from twilio.base.exceptions import TwilioException

from commaudit.core.errors import ValidationError
from commaudit.core.settings import Settings
from commaudit.db.models import NotificationPreference
from commaudit.delivery.store import CommunicationLogStore
from commaudit.notification.dispatcher import NotificationDispatcher
from commaudit.notification.senders import SendReceipt, SmtpEmailSender, TwilioSmsSender


# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------


def _smtp_server(mock_smtp_cls) -> MagicMock:
    mock_server = MagicMock()
    mock_smtp_cls.return_value.__enter__ = MagicMock(return_value=mock_server)
    mock_smtp_cls.return_value.__exit__ = MagicMock(return_value=False)
    return mock_server


def _twilio_client(sid: str = "SM0001") -> MagicMock:
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid=sid)
    return client


class _StubSender:
    def __init__(self, communication_type: str, receipt: SendReceipt) -> None:
        self.communication_type = communication_type
        self.receipt = receipt
        self.calls: list[tuple] = []

    def send(self, recipient, subject, content):
        self.calls.append((recipient, subject, content))
        return self.receipt


# ===========================================================================
# SmtpEmailSender
# ===========================================================================


class TestSmtpEmailSender:
    @patch("commaudit.notification.senders.smtplib.SMTP")
    def test_accepted_email_returns_message_id(self, mock_smtp_cls):
        mock_server = _smtp_server(mock_smtp_cls)

        sender = SmtpEmailSender("localhost", 25, "noreply@colorgarb.example")
        receipt = sender.send("director@example.org", "Proof ready", "Your proof is ready")

        assert receipt.accepted is True
        assert receipt.attempt_count == 1
        assert receipt.external_id.endswith("@colorgarb.example")
        assert "<" not in receipt.external_id
        mock_smtp_cls.assert_called_once_with("localhost", 25)

        from_addr, to_addrs, raw = mock_server.sendmail.call_args.args
        assert from_addr == "noreply@colorgarb.example"
        assert to_addrs == ["director@example.org"]
        parsed = email_mod.message_from_string(raw)
        assert parsed["Subject"] == "Proof ready"
        assert parsed["Message-ID"] == f"<{receipt.external_id}>"

    @patch("commaudit.notification.senders.time.sleep")
    @patch("commaudit.notification.senders.smtplib.SMTP")
    def test_retries_with_backoff_then_succeeds(self, mock_smtp_cls, mock_sleep):
        mock_server = _smtp_server(mock_smtp_cls)
        mock_server.sendmail.side_effect = [
            smtplib.SMTPServerDisconnected("gone"),
            smtplib.SMTPServerDisconnected("gone"),
            {},
        ]

        receipt = SmtpEmailSender("localhost").send("a@example.org", "Hi", "Body")

        assert receipt.accepted is True
        assert receipt.attempt_count == 3
        assert mock_sleep.call_args_list == [call(1), call(2)]

    @patch("commaudit.notification.senders.time.sleep")
    @patch("commaudit.notification.senders.smtplib.SMTP")
    def test_gives_up_after_max_retries(self, mock_smtp_cls, mock_sleep):
        mock_server = _smtp_server(mock_smtp_cls)
        mock_server.sendmail.side_effect = smtplib.SMTPException("relay down")

        receipt = SmtpEmailSender("localhost").send("a@example.org", "Hi", "Body")

        assert receipt.accepted is False
        assert receipt.external_id is None
        assert receipt.attempt_count == 3
        assert receipt.error == "relay down"
        assert mock_sleep.call_count == 2

    def test_from_settings(self):
        sender = SmtpEmailSender.from_settings(Settings(SMTP_HOST="smtp.internal", SMTP_PORT=2525))
        assert sender.smtp_host == "smtp.internal"
        assert sender.smtp_port == 2525


# ===========================================================================
# TwilioSmsSender
# ===========================================================================


class TestTwilioSmsSender:
    def test_accepted_sms_returns_sid(self):
        client = _twilio_client("SM123")
        sender = TwilioSmsSender(client, "+15005550006", status_callback_url="https://api.example.org/webhooks/twilio")

        receipt = sender.send("+12125551234", None, "Order shipped")

        assert receipt == SendReceipt(
            accepted=True, external_id="SM123", timestamp=receipt.timestamp
        )
        client.messages.create.assert_called_once_with(
            to="+12125551234",
            from_="+15005550006",
            body="Order shipped",
            status_callback="https://api.example.org/webhooks/twilio",
        )

    def test_no_status_callback_by_default(self):
        client = _twilio_client()
        TwilioSmsSender(client, "+15005550006").send("+12125551234", None, "Hi")
        assert "status_callback" not in client.messages.create.call_args.kwargs

    def test_rejection_is_a_failed_receipt(self):
        client = MagicMock()
        client.messages.create.side_effect = TwilioException("invalid number")

        receipt = TwilioSmsSender(client, "+15005550006").send("+12125551234", None, "Hi")

        assert receipt.accepted is False
        assert receipt.external_id is None
        assert "invalid number" in receipt.error

    def test_from_settings_requires_credentials(self):
        with pytest.raises(ValueError):
            TwilioSmsSender.from_settings(Settings(TWILIO_ACCOUNT_SID="AC123"))


# ===========================================================================
# NotificationDispatcher
# ===========================================================================


class TestNotificationDispatcher:
    @pytest.fixture()
    def store(self, db_session) -> CommunicationLogStore:
        return CommunicationLogStore(db_session)

    def test_accepted_email_is_recorded_with_external_id(self, store, make_order):
        email_sender = _StubSender("Email", SendReceipt(accepted=True, external_id="msg-001"))
        dispatcher = NotificationDispatcher(store, [email_sender])

        log = dispatcher.dispatch(
            "email", make_order().id, str(uuid4()), "Your proof is ready",
            recipient_email="Director@Example.org", subject="Proof ready",
            template_used="proof-ready",
        )

        assert log.delivery_status == "Sent"
        assert log.external_message_id == "msg-001"
        assert log.recipient_email == "director@example.org"
        assert log.template_used == "proof-ready"
        assert email_sender.calls == [("director@example.org", "Proof ready", "Your proof is ready")]

    def test_sms_goes_to_normalized_number(self, store, make_order):
        sms_sender = _StubSender("SMS", SendReceipt(accepted=True, external_id="SM0001"))
        dispatcher = NotificationDispatcher(store, [sms_sender])

        log = dispatcher.dispatch("SMS", make_order().id, None, "Shipped", recipient_phone="(212) 555-1234")

        assert log.recipient_phone == "+12125551234"
        assert sms_sender.calls[0][0] == "+12125551234"

    def test_opted_out_recipient_is_skipped(self, store, make_order, db_session):
        db_session.add(NotificationPreference(
            user_id=str(uuid4()), phone_number="+12125551234", phone_verified=True, sms_enabled=False,
        ))
        db_session.flush()
        sms_sender = _StubSender("SMS", SendReceipt(accepted=True, external_id="SM0001"))

        log = NotificationDispatcher(store, [sms_sender]).dispatch(
            "SMS", make_order().id, None, "Shipped", recipient_phone="+12125551234"
        )

        assert log is None
        assert sms_sender.calls == []

    def test_in_app_message_needs_no_sender(self, store, make_order):
        log = NotificationDispatcher(store, []).dispatch(
            "Message", make_order().id, str(uuid4()), "See your proof", recipient_id="user-42"
        )
        assert log.communication_type == "Message"
        assert log.recipient_id == "user-42"
        assert log.delivery_status == "Sent"

    def test_missing_sender_is_rejected(self, store, make_order):
        with pytest.raises(ValidationError) as exc_info:
            NotificationDispatcher(store, []).dispatch(
                "Email", make_order().id, None, "Hi", recipient_email="a@example.org"
            )
        assert exc_info.value.field == "communicationType"

    def test_rejected_send_is_recorded_as_failed(self, store, make_order):
        sender = _StubSender("Email", SendReceipt(accepted=False, external_id=None, error="relay down"))

        log = NotificationDispatcher(store, [sender]).dispatch(
            "Email", make_order().id, None, "Hi", recipient_email="a@example.org"
        )

        assert log.delivery_status == "Failed"
        assert log.failure_reason == "relay down"
        assert log.external_message_id is None

    def test_rejection_without_error_gets_generic_reason(self, store, make_order):
        sender = _StubSender("Email", SendReceipt(accepted=False, external_id=None))
        log = NotificationDispatcher(store, [sender]).dispatch(
            "Email", make_order().id, None, "Hi", recipient_email="a@example.org"
        )
        assert log.failure_reason == "Send failed"
