"""Tests for commaudit/webhooks/normalizer.py.

Covers:
- SendGrid event and batch parsing, including bad events mid-batch
- SendGrid Inbound Parse correlation via Message-ID
- Twilio status and inbound form parsing
- apply_status_events counters and per-event failure isolation
"""
from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import patch
from uuid import uuid4

import pytest

from commaudit.core.errors import ProviderPayloadError, ValidationError
from commaudit.db.models import NotificationDeliveryLog
from commaudit.delivery.store import CommunicationLogStore
from commaudit.webhooks.normalizer import (
    BatchResult,
    InboundMessage,
    StatusEvent,
    apply_inbound,
    apply_status_events,
    parse_sendgrid_batch,
    parse_sendgrid_event,
    parse_sendgrid_inbound,
    parse_twilio_inbound,
    parse_twilio_status,
)


# ===========================================================================
# TestSendGridParsing
# ===========================================================================


class TestSendGridParsing:
    def test_event_maps_status_and_strips_filter_suffix(self):
        event = parse_sendgrid_event({
            "event": "delivered",
            "sg_message_id": "14c5d75ce93.dfd.64b469.filter0001.16648.5515E0B88.0",
            "email": "a@x.com",
            "timestamp": 1767225600,
        })
        assert event.status == "Delivered"
        assert event.external_id == "14c5d75ce93.dfd.64b469"
        assert event.occurred_at == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert event.provider == "sendgrid"

    def test_bounce_reason_becomes_failure_detail(self):
        event = parse_sendgrid_event({"event": "bounce", "sg_message_id": "msg-002", "reason": "Invalid"})
        assert event.status == "Bounced"
        assert event.failure_detail == "Invalid"

    def test_response_used_when_reason_missing(self):
        event = parse_sendgrid_event({"event": "deferred", "sg_message_id": "m", "response": "451 try later"})
        assert event.failure_detail == "451 try later"

    def test_missing_fields_raise(self):
        with pytest.raises(ProviderPayloadError):
            parse_sendgrid_event({"event": "delivered"})
        with pytest.raises(ProviderPayloadError):
            parse_sendgrid_event("not-an-object")

    def test_batch_keeps_valid_events_around_bad_ones(self):
        events, errors = parse_sendgrid_batch([
            {"event": "delivered", "sg_message_id": "msg-001"},
            {"event": "teleported", "sg_message_id": "msg-002"},
            42,
            {"event": "open", "sg_message_id": "msg-003"},
        ])
        assert [e.external_id for e in events] == ["msg-001", "msg-003"]
        assert len(errors) == 2

    def test_single_object_is_a_batch_of_one(self):
        events, errors = parse_sendgrid_batch({"event": "click", "sg_message_id": "msg-9"})
        assert [e.status for e in events] == ["Clicked"]
        assert errors == []

    def test_non_array_payload_raises(self):
        with pytest.raises(ProviderPayloadError):
            parse_sendgrid_batch("delivered")

    def test_bad_timestamp_is_ignored(self):
        event = parse_sendgrid_event({"event": "open", "sg_message_id": "m", "timestamp": "soon"})
        assert event.occurred_at is None

    def test_inbound_parse_uses_message_id_header(self):
        message = parse_sendgrid_inbound({
            "from": "Director <director@example.org>",
            "text": "STOP",
            "subject": "Re: Proof",
            "headers": "Message-ID: <abc123@mail.example.org>\r\nSubject: Re: Proof\r\n",
        })
        assert message.external_id == "abc123@mail.example.org"
        assert message.body == "STOP"
        assert message.subject == "Re: Proof"

    def test_inbound_without_message_id_is_ignored(self):
        assert parse_sendgrid_inbound({"from": "a@example.org", "text": "hi"}) is None


# ===========================================================================
# TestTwilioParsing
# ===========================================================================


class TestTwilioParsing:
    def test_status_callback(self):
        event = parse_twilio_status({
            "MessageSid": "SM123",
            "MessageStatus": "undelivered",
            "ErrorCode": "30003",
            "ErrorMessage": "Unreachable destination handset",
        })
        assert event.status == "Failed"
        assert event.external_id == "SM123"
        assert event.failure_detail == "Error 30003: Unreachable destination handset"

    def test_legacy_sms_fields(self):
        event = parse_twilio_status({"SmsSid": "SM9", "SmsStatus": "delivered"})
        assert event.status == "Delivered"
        assert event.failure_detail is None

    def test_missing_sid_raises(self):
        with pytest.raises(ProviderPayloadError):
            parse_twilio_status({"MessageStatus": "sent"})

    def test_unknown_status_raises(self):
        with pytest.raises(ProviderPayloadError):
            parse_twilio_status({"MessageSid": "SM1", "MessageStatus": "evaporated"})

    def test_inbound(self):
        message = parse_twilio_inbound({"MessageSid": "SMin", "From": "+12125551234", "Body": "STOP"})
        assert message.sender == "+12125551234"
        assert message.body == "STOP"

    def test_inbound_without_sender_is_ignored(self):
        assert parse_twilio_inbound({"MessageSid": "SMin", "Body": "hi"}) is None


# ===========================================================================
# TestApply
# ===========================================================================


class TestApply:
    @pytest.fixture()
    def store(self, db_session) -> CommunicationLogStore:
        return CommunicationLogStore(db_session, actor="provider-webhook")

    def _record(self, store, order, external_id):
        return store.record(
            "Email", order.id, str(uuid4()), "body",
            recipient_email="a@x.com", external_id=external_id,
        )

    def test_counts_applied_and_unmatched(self, store, make_order):
        order = make_order()
        self._record(store, order, "msg-001")
        events = [
            StatusEvent("sendgrid", "msg-001", "Delivered"),
            StatusEvent("sendgrid", "msg-unknown", "Delivered"),
        ]

        result = apply_status_events(store, events)

        assert result.received == 2
        assert result.applied == 1
        assert result.unmatched == 1
        assert result.processed == 2
        assert result.failed == 0

    def test_failure_on_one_event_does_not_stop_the_rest(self, store, make_order):
        order = make_order()
        first = self._record(store, order, "msg-001")
        third = self._record(store, order, "msg-003")
        original = store.update_delivery_status

        def flaky(external_id, *args, **kwargs):
            if external_id == "msg-002":
                raise ValidationError("boom")
            return original(external_id, *args, **kwargs)

        events = [
            StatusEvent("sendgrid", "msg-001", "Delivered"),
            StatusEvent("sendgrid", "msg-002", "Delivered"),
            StatusEvent("sendgrid", "msg-003", "Bounced", failure_detail="Invalid"),
        ]
        with patch.object(store, "update_delivery_status", side_effect=flaky):
            result = apply_status_events(store, events, result=BatchResult(skipped=1))

        assert result.applied == 2
        assert result.failed == 1
        assert result.skipped == 1
        assert first.delivery_status == "Delivered"
        assert third.delivery_status == "Bounced"

    def test_sendgrid_events_label_delivery_provider(self, store, make_order, db_session):
        order = make_order()
        self._record(store, order, "msg-001")
        apply_status_events(store, [StatusEvent("sendgrid", "msg-001", "Delivered")])
        delivery = db_session.query(NotificationDeliveryLog).one()
        assert delivery.provider == "SendGrid"

    def test_apply_inbound(self, store):
        outcome = apply_inbound(store, InboundMessage("twilio", "+12125551234", "hello", "SMin-1"))
        assert outcome.communication_log.external_message_id == "SMin-1"
        assert outcome.duplicate is False
