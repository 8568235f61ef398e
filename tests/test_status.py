"""Tests for commaudit/delivery/status.py.

Covers:
- Provider event mapping (email and SMS tables, aliases, case)
- Unknown providers and events raise ProviderPayloadError
- Provider inference from external id shape
- Failure detail formatting
- Case-insensitive filter parsing
"""
from __future__ import annotations

import pytest

from commaudit.core.errors import ProviderPayloadError, ValidationError
from commaudit.delivery.status import (
    DELIVERY_STATUSES,
    FAILURE_STATUSES,
    SUCCESS_STATUSES,
    format_failure_detail,
    infer_delivery_provider,
    map_provider_event,
    parse_communication_type,
    parse_delivery_status,
    resolve_provider,
)


# ===========================================================================
# TestEventMapping
# ===========================================================================


class TestEventMapping:
    @pytest.mark.parametrize(
        "event, expected",
        [
            ("delivered", "Delivered"),
            ("bounce", "Bounced"),
            ("dropped", "Failed"),
            ("deferred", "Deferred"),
            ("open", "Opened"),
            ("click", "Clicked"),
            ("spamreport", "SpamReport"),
            ("unsubscribe", "Unsubscribed"),
            ("processed", "Sent"),
        ],
    )
    def test_email_events(self, event, expected):
        assert map_provider_event("EmailProvider", event) == expected

    @pytest.mark.parametrize(
        "event, expected",
        [
            ("queued", "Queued"),
            ("sent", "Sent"),
            ("delivered", "Delivered"),
            ("undelivered", "Failed"),
            ("failed", "Failed"),
            ("received", "Delivered"),
        ],
    )
    def test_sms_events(self, event, expected):
        assert map_provider_event("SmsProvider", event) == expected

    def test_concrete_provider_names_are_aliases(self):
        assert map_provider_event("sendgrid", "bounce") == "Bounced"
        assert map_provider_event("Twilio", "undelivered") == "Failed"

    def test_event_matching_is_case_insensitive(self):
        assert map_provider_event("SendGrid", "  Delivered ") == "Delivered"

    def test_unknown_event_raises(self):
        with pytest.raises(ProviderPayloadError) as exc_info:
            map_provider_event("sendgrid", "teleported")
        assert exc_info.value.provider == "sendgrid"

    def test_email_event_is_not_an_sms_event(self):
        with pytest.raises(ProviderPayloadError):
            map_provider_event("twilio", "bounce")

    def test_unknown_provider_raises(self):
        with pytest.raises(ProviderPayloadError):
            resolve_provider("carrier-pigeon")

    def test_success_and_failure_sets_are_disjoint(self):
        assert not SUCCESS_STATUSES & FAILURE_STATUSES
        assert SUCCESS_STATUSES <= set(DELIVERY_STATUSES)
        assert FAILURE_STATUSES <= set(DELIVERY_STATUSES)


# ===========================================================================
# TestHelpers
# ===========================================================================


class TestHelpers:
    @pytest.mark.parametrize(
        "external_id, expected",
        [
            ("sg-abc123", "SendGrid"),
            ("sendgrid-xyz", "SendGrid"),
            ("SM0123456789abcdef", "Twilio"),
            ("twilio-42", "Twilio"),
            ("internal-7", "Internal"),
            ("something-else", "Unknown"),
        ],
    )
    def test_infer_delivery_provider(self, external_id, expected):
        assert infer_delivery_provider(external_id) == expected

    def test_failure_detail_with_code_and_message(self):
        assert (
            format_failure_detail("30003", "Unreachable destination handset")
            == "Error 30003: Unreachable destination handset"
        )

    def test_failure_detail_partial(self):
        assert format_failure_detail(None, "Mailbox full") == "Mailbox full"
        assert format_failure_detail("30005", " ") == "Error 30005"
        assert format_failure_detail(None, None) is None

    def test_parse_delivery_status_is_case_insensitive(self):
        assert parse_delivery_status("delivered") == "Delivered"
        assert parse_delivery_status("SPAMREPORT") == "SpamReport"

    def test_parse_delivery_status_rejects_unknown(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_delivery_status("Lost")
        assert exc_info.value.field == "deliveryStatus"

    def test_parse_communication_type(self):
        assert parse_communication_type("sms") == "SMS"
        assert parse_communication_type("Email") == "Email"
        with pytest.raises(ValidationError) as exc_info:
            parse_communication_type("Fax")
        assert exc_info.value.field == "communicationType"
