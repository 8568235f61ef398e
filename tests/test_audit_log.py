"""Tests for commaudit/audit/audit_log.py.

Covers:
- record_event persists immutable rows
- Input validation (event type, actor, status events)
- History lookups by log id, external id and type
- Detail text is never logged
"""
from __future__ import annotations

import logging

import pytest

from commaudit.audit.audit_log import (
    get_communication_history,
    get_events_by_type,
    get_external_id_history,
    record_event,
)
from commaudit.audit.events import (
    EVENT_COMMUNICATION_RECORDED,
    EVENT_STATUS_CHANGED,
    EVENT_STATUS_UNMATCHED,
)


class TestRecordEvent:
    def test_persists_immutable_event(self, db_session):
        event = record_event(
            db_session,
            EVENT_STATUS_CHANGED,
            "provider-webhook",
            communication_log_id="log-1",
            external_id="msg-001",
            previous_status="Sent",
            new_status="Delivered",
            provider="SendGrid",
        )
        assert event.audit_event_id is not None
        assert event.immutable is True
        assert event.timestamp is not None
        assert event.previous_status == "Sent"

    def test_invalid_event_type_raises(self, db_session):
        with pytest.raises(ValueError, match="Invalid event_type"):
            record_event(db_session, "status_guessed", "system")

    def test_blank_actor_raises(self, db_session):
        with pytest.raises(ValueError, match="actor"):
            record_event(db_session, EVENT_COMMUNICATION_RECORDED, "   ")

    def test_status_event_requires_new_status(self, db_session):
        with pytest.raises(ValueError, match="new_status"):
            record_event(db_session, EVENT_STATUS_UNMATCHED, "system", external_id="msg-9")

    def test_detail_is_not_logged(self, db_session, caplog):
        with caplog.at_level(logging.INFO):
            record_event(
                db_session,
                EVENT_STATUS_CHANGED,
                "system",
                new_status="Bounced",
                detail="550 mailbox jane@example.org does not exist",
            )
        assert "jane@example.org" not in caplog.text
        assert "Bounced" in caplog.text


class TestHistory:
    def test_communication_history_is_filtered(self, db_session):
        record_event(db_session, EVENT_COMMUNICATION_RECORDED, "system", communication_log_id="a")
        record_event(
            db_session, EVENT_STATUS_CHANGED, "system", communication_log_id="a", new_status="Delivered"
        )
        record_event(db_session, EVENT_COMMUNICATION_RECORDED, "system", communication_log_id="b")

        history = get_communication_history(db_session, "a")
        assert [e.event_type for e in history] == [EVENT_COMMUNICATION_RECORDED, EVENT_STATUS_CHANGED]

    def test_external_id_history_includes_unmatched(self, db_session):
        record_event(db_session, EVENT_STATUS_UNMATCHED, "system", external_id="msg-late", new_status="Delivered")
        history = get_external_id_history(db_session, "msg-late")
        assert len(history) == 1
        assert history[0].communication_log_id is None

    def test_events_by_type(self, db_session):
        record_event(db_session, EVENT_COMMUNICATION_RECORDED, "system")
        record_event(db_session, EVENT_STATUS_CHANGED, "system", new_status="Sent")
        assert len(get_events_by_type(db_session, EVENT_STATUS_CHANGED)) == 1

    def test_events_by_unknown_type_raises(self, db_session):
        with pytest.raises(ValueError):
            get_events_by_type(db_session, "nope")
