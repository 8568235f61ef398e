"""Provider Webhook Normalizer.

Converts SendGrid event batches and Twilio form callbacks into
``StatusEvent`` / ``InboundMessage`` values, then applies them through the
Communication Log Store one event at a time.  Provider field names never
leave this module.

A bad event is skipped and logged; it never aborts the rest of the batch.
Each event is applied inside its own SAVEPOINT so a storage error on one
event rolls back only that event.

Safety: sender addresses, message bodies and raw payloads are never
logged; only provider, external id, status and counts.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.parser import HeaderParser
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from commaudit.core.errors import CommunicationAuditError, ProviderPayloadError
from commaudit.delivery.status import (
    DELIVERY_PROVIDER_SENDGRID,
    DELIVERY_PROVIDER_TWILIO,
    format_failure_detail,
    map_provider_event,
)
from commaudit.delivery.store import CommunicationLogStore, InboundResult

logger = logging.getLogger(__name__)

PROVIDER_SENDGRID = "sendgrid"
PROVIDER_TWILIO = "twilio"

_DELIVERY_PROVIDER_LABELS = {
    PROVIDER_SENDGRID: DELIVERY_PROVIDER_SENDGRID,
    PROVIDER_TWILIO: DELIVERY_PROVIDER_TWILIO,
}


# ---------------------------------------------------------------------------
# Canonical events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatusEvent:
    """One provider callback in canonical form."""

    provider: str
    external_id: str
    status: str
    failure_detail: str | None = None
    occurred_at: datetime | None = None
    raw: Any = None


@dataclass(frozen=True)
class InboundMessage:
    provider: str
    sender: str
    body: str
    external_id: str
    subject: str | None = None


@dataclass
class BatchResult:
    """Per-batch counters; ``processed`` is what providers are told."""

    received: int = 0
    applied: int = 0
    unmatched: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.applied + self.unmatched


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_unix_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _sendgrid_message_id(raw_id: str) -> str:
    """Strip the ``.filterNNNN...`` suffix SendGrid appends to the send-time id."""
    marker = raw_id.find(".filter")
    return raw_id[:marker] if marker > 0 else raw_id


# ---------------------------------------------------------------------------
# SendGrid
# ---------------------------------------------------------------------------


def parse_sendgrid_event(item: Any) -> StatusEvent:
    """Convert one SendGrid event object.  Raises ``ProviderPayloadError``."""
    if not isinstance(item, Mapping):
        raise ProviderPayloadError("SendGrid event is not an object", provider=PROVIDER_SENDGRID)

    event = _clean(item.get("event"))
    message_id = _clean(item.get("sg_message_id"))
    if event is None or message_id is None:
        raise ProviderPayloadError(
            "SendGrid event is missing event or sg_message_id", provider=PROVIDER_SENDGRID
        )

    status = map_provider_event(PROVIDER_SENDGRID, event)
    return StatusEvent(
        provider=PROVIDER_SENDGRID,
        external_id=_sendgrid_message_id(message_id),
        status=status,
        failure_detail=_clean(item.get("reason")) or _clean(item.get("response")),
        occurred_at=_parse_unix_timestamp(item.get("timestamp")),
        raw=dict(item),
    )


def parse_sendgrid_batch(payload: Any) -> tuple[list[StatusEvent], list[ProviderPayloadError]]:
    """Split a SendGrid payload into valid events and per-event errors.

    Accepts a JSON array or a single event object.  Any other top-level
    shape raises ``ProviderPayloadError`` for the whole request.
    """
    if isinstance(payload, Mapping):
        items: list[Any] = [payload]
    elif isinstance(payload, list):
        items = payload
    else:
        raise ProviderPayloadError(
            "SendGrid payload must be an array of events", provider=PROVIDER_SENDGRID
        )

    events: list[StatusEvent] = []
    errors: list[ProviderPayloadError] = []
    for index, item in enumerate(items):
        try:
            events.append(parse_sendgrid_event(item))
        except ProviderPayloadError as exc:
            logger.warning("Skipping SendGrid event %d: %s", index, exc)
            errors.append(exc)
    return events, errors


def parse_sendgrid_inbound(form: Mapping[str, Any]) -> InboundMessage | None:
    """Read a SendGrid Inbound Parse post.  ``None`` when it cannot be correlated."""
    sender = _clean(form.get("from"))
    headers = HeaderParser().parsestr(str(form.get("headers") or ""))
    message_id = _clean(headers.get("Message-ID"))
    if sender is None or message_id is None:
        return None
    return InboundMessage(
        provider=PROVIDER_SENDGRID,
        sender=sender,
        body=str(form.get("text") or ""),
        external_id=message_id.strip("<>"),
        subject=_clean(form.get("subject")),
    )


# ---------------------------------------------------------------------------
# Twilio
# ---------------------------------------------------------------------------


def parse_twilio_status(form: Mapping[str, Any]) -> StatusEvent:
    """Convert a Twilio status callback.  Raises ``ProviderPayloadError``."""
    message_sid = _clean(form.get("MessageSid")) or _clean(form.get("SmsSid"))
    message_status = _clean(form.get("MessageStatus")) or _clean(form.get("SmsStatus"))
    if message_sid is None or message_status is None:
        raise ProviderPayloadError(
            "Twilio callback is missing MessageSid or MessageStatus", provider=PROVIDER_TWILIO
        )

    status = map_provider_event(PROVIDER_TWILIO, message_status)
    return StatusEvent(
        provider=PROVIDER_TWILIO,
        external_id=message_sid,
        status=status,
        failure_detail=format_failure_detail(
            _clean(form.get("ErrorCode")), _clean(form.get("ErrorMessage"))
        ),
        raw=dict(form),
    )


def parse_twilio_inbound(form: Mapping[str, Any]) -> InboundMessage | None:
    """Read a Twilio inbound SMS.  ``None`` when MessageSid or From is missing."""
    message_sid = _clean(form.get("MessageSid")) or _clean(form.get("SmsSid"))
    sender = _clean(form.get("From"))
    if message_sid is None or sender is None:
        return None
    return InboundMessage(
        provider=PROVIDER_TWILIO,
        sender=sender,
        body=str(form.get("Body") or ""),
        external_id=message_sid,
    )


# ---------------------------------------------------------------------------
# Application to the store
# ---------------------------------------------------------------------------


def apply_status_events(
    store: CommunicationLogStore,
    events: list[StatusEvent],
    *,
    result: BatchResult | None = None,
) -> BatchResult:
    """Apply each event through the store, isolating failures per event."""
    result = result or BatchResult()
    result.received += len(events)
    for event in events:
        try:
            with store.db.begin_nested():
                log = store.update_delivery_status(
                    event.external_id,
                    event.status,
                    event.failure_detail,
                    event.raw,
                    provider=_DELIVERY_PROVIDER_LABELS.get(event.provider),
                    occurred_at=event.occurred_at,
                )
        except (CommunicationAuditError, SQLAlchemyError) as exc:
            result.failed += 1
            result.errors.append(str(exc))
            logger.warning(
                "Failed to apply %s status %s for %s: %s",
                event.provider, event.status, event.external_id, type(exc).__name__,
            )
            continue

        if log is None:
            result.unmatched += 1
        else:
            result.applied += 1
    return result


def apply_inbound(store: CommunicationLogStore, message: InboundMessage) -> InboundResult:
    with store.db.begin_nested():
        return store.append_inbound(
            message.sender,
            message.body,
            message.external_id,
            subject=message.subject,
        )
