"""Communication Log Store.

The only writer of ``CommunicationLog`` and ``NotificationDeliveryLog``
rows.  Every operation is a handful of indexed single-row reads and
writes, so it fits inside a provider's webhook response deadline.  The
store flushes but never commits; the caller owns the transaction.

Correlation is by external message id only.  A status for an id the
store has not seen yet is kept on an unlinked ``NotificationDeliveryLog``
and applied when ``record()`` later creates the matching log.

Safety: recipient addresses and message content are never logged;
only ids, types and statuses.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from commaudit.audit.audit_log import record_event
from commaudit.audit.events import (
    EVENT_COMMUNICATION_RECORDED,
    EVENT_INBOUND_RECEIVED,
    EVENT_PREFERENCE_OPT_IN,
    EVENT_PREFERENCE_OPT_OUT,
    EVENT_STATUS_CHANGED,
    EVENT_STATUS_UNMATCHED,
)
from commaudit.core.errors import ValidationError
from commaudit.db.models import CommunicationLog, NotificationDeliveryLog, NotificationPreference, utcnow
from commaudit.db.repositories import (
    CommunicationLogRepository,
    NotificationDeliveryLogRepository,
    NotificationPreferenceRepository,
    OrderRepository,
)
from commaudit.delivery.status import (
    ENGAGEMENT_STATUSES,
    FAILURE_STATUSES,
    STATUS_DELIVERED,
    STATUS_FAILED,
    STATUS_QUEUED,
    STATUS_SENT,
    TYPE_EMAIL,
    TYPE_MESSAGE,
    TYPE_SMS,
    VALID_DELIVERY_STATUSES,
    infer_delivery_provider,
    parse_communication_type,
)
from commaudit.normalization.email_normalizer import normalize_email
from commaudit.normalization.phone_normalizer import normalize_phone

logger = logging.getLogger(__name__)

OPT_OUT_KEYWORDS: frozenset[str] = frozenset({"STOP", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})
OPT_IN_KEYWORDS: frozenset[str] = frozenset({"START", "SUBSCRIBE", "UNSTOP"})

DIRECTION_INBOUND = "inbound"


@dataclass
class InboundResult:
    """Outcome of ``append_inbound``."""

    communication_log: CommunicationLog
    duplicate: bool = False
    opted_out: list[str] = field(default_factory=list)
    opted_in: list[str] = field(default_factory=list)


def _canonical_user_id(user_id: str | None) -> str | None:
    """GUID-shaped user ids are stored in canonical lowercase form."""
    if user_id is None:
        return None
    try:
        return str(UUID(str(user_id).strip()))
    except ValueError:
        return str(user_id).strip() or None


def _serialize_payload(raw_payload: Any) -> str | None:
    if raw_payload is None:
        return None
    if isinstance(raw_payload, str):
        return raw_payload
    return json.dumps(raw_payload, default=str, separators=(",", ":"))


class CommunicationLogStore:
    """Durable record of communications and their delivery status.

    Usage::

        store = CommunicationLogStore(db_session)
        log = store.record("Email", order_id, sender_id, "Your proof is ready",
                           recipient_email="director@example.org",
                           subject="Proof ready", external_id="msg-001")
        store.update_delivery_status("msg-001", "Delivered")
    """

    def __init__(
        self,
        db: Session,
        *,
        default_phone_region: str = "US",
        actor: str = "system",
    ) -> None:
        self.db = db
        self.default_phone_region = default_phone_region
        self.actor = actor
        self._logs = CommunicationLogRepository(db)
        self._deliveries = NotificationDeliveryLogRepository(db)
        self._preferences = NotificationPreferenceRepository(db)
        self._orders = OrderRepository(db)

    # -- record -------------------------------------------------------------

    def record(
        self,
        communication_type: str,
        order_id: UUID,
        sender_id: str | None,
        content: str,
        *,
        recipient_email: str | None = None,
        recipient_phone: str | None = None,
        recipient_id: str | None = None,
        subject: str | None = None,
        external_id: str | None = None,
        confirmed: bool = True,
        failure_reason: str | None = None,
        template_used: str | None = None,
        metadata: dict | None = None,
    ) -> CommunicationLog:
        """Create the log entry for a send attempt.

        The entry starts in ``Sent`` once the provider accepted the message
        (*confirmed*), ``Queued`` before that, and ``Failed`` when the
        attempt already failed with *failure_reason*.

        Raises ``ValidationError`` when the recipient is missing or malformed
        for *communication_type*, when both an email and a phone recipient
        are given, when the order does not exist, or when *external_id* is
        already recorded.
        """
        communication_type = parse_communication_type(communication_type)
        sender_id = _canonical_user_id(sender_id)
        if content is None:
            raise ValidationError("content is required", field="content")
        if subject is not None and communication_type == TYPE_SMS:
            raise ValidationError("subject is not supported for SMS", field="subject")

        email, phone = self.resolve_recipient(
            communication_type, recipient_email, recipient_phone, recipient_id
        )

        if order_id is None or self._orders.get(order_id) is None:
            raise ValidationError(f"Order {order_id} not found", field="orderId")

        external_id = (external_id or "").strip() or None
        if external_id is not None and self._logs.get_by_external_id(external_id) is not None:
            raise ValidationError(
                f"External message id {external_id!r} is already recorded",
                field="externalId",
            )

        if failure_reason:
            status = STATUS_FAILED
        else:
            status = STATUS_SENT if confirmed else STATUS_QUEUED

        log = self._logs.create(
            communication_type=communication_type,
            order_id=order_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            recipient_email=email,
            recipient_phone=phone,
            subject=subject,
            content=content,
            template_used=template_used,
            delivery_status=status,
            external_message_id=external_id,
            failure_reason=failure_reason,
            metadata_json=metadata,
        )
        record_event(
            self.db,
            EVENT_COMMUNICATION_RECORDED,
            self.actor,
            communication_log_id=str(log.id),
            external_id=external_id,
            new_status=status,
        )
        logger.info(
            "Recorded communication %s type=%s status=%s", log.id, communication_type, status
        )

        if external_id is not None:
            self._bind_buffered_status(log)
        return log

    def resolve_recipient(
        self,
        communication_type: str,
        recipient_email: str | None,
        recipient_phone: str | None,
        recipient_id: str | None,
    ) -> tuple[str | None, str | None]:
        has_email = bool(recipient_email and recipient_email.strip())
        has_phone = bool(recipient_phone and recipient_phone.strip())
        if has_email and has_phone:
            raise ValidationError(
                "Provide either an email or a phone recipient, not both", field="recipient"
            )

        email = phone = None
        if has_email:
            email = normalize_email(recipient_email)
            if email is None:
                raise ValidationError("Recipient email address is malformed", field="recipientEmail")
        if has_phone:
            phone = normalize_phone(recipient_phone, default_region=self.default_phone_region)
            if phone is None:
                raise ValidationError("Recipient phone number is malformed", field="recipientPhone")

        if communication_type == TYPE_EMAIL and email is None:
            raise ValidationError("Email communications require a recipient email", field="recipientEmail")
        if communication_type == TYPE_SMS and phone is None:
            raise ValidationError("SMS communications require a recipient phone", field="recipientPhone")
        if communication_type == TYPE_MESSAGE and not (recipient_id and recipient_id.strip()):
            raise ValidationError("Messages require a recipient user id", field="recipientId")
        return email, phone

    def _bind_buffered_status(self, log: CommunicationLog) -> None:
        delivery = self._deliveries.get_by_external_id(log.external_message_id)
        if delivery is None or delivery.communication_log_id is not None:
            return
        delivery.communication_log_id = log.id
        previous = log.delivery_status
        self._apply_status(log, delivery.status, delivery.status_details, delivery.updated_at)
        self.db.flush()
        record_event(
            self.db,
            EVENT_STATUS_CHANGED,
            self.actor,
            communication_log_id=str(log.id),
            external_id=log.external_message_id,
            previous_status=previous,
            new_status=delivery.status,
            provider=delivery.provider,
            detail=delivery.status_details,
        )
        logger.info("Applied buffered status %s to communication %s", delivery.status, log.id)

    # -- status updates -----------------------------------------------------

    def update_delivery_status(
        self,
        external_id: str,
        status: str,
        failure_detail: str | None = None,
        raw_payload: Any = None,
        *,
        provider: str | None = None,
        occurred_at: datetime | None = None,
    ) -> CommunicationLog | None:
        """Apply a canonical *status* to the log correlated by *external_id*.

        Returns the updated log, or ``None`` when no log carries that id yet.
        The unknown-id case is not an error: the status is kept on the
        delivery log for late binding and nothing else changes.  Repeating
        the current status is a no-op, so provider retries are harmless.
        """
        external_id = (external_id or "").strip()
        if not external_id:
            raise ValidationError("external id is required", field="externalId")
        if status not in VALID_DELIVERY_STATUSES:
            raise ValidationError(
                f"Invalid status {status!r}; must be one of {sorted(VALID_DELIVERY_STATUSES)}",
                field="status",
            )

        log = self._logs.get_by_external_id(external_id)
        delivery = self._deliveries.get_by_external_id(external_id)

        if (
            delivery is not None
            and delivery.status == status
            and delivery.status_details == failure_detail
            and (log is None or log.delivery_status == status)
        ):
            logger.debug("Duplicate status %s for external id %s ignored", status, external_id)
            return log

        provider_label = provider or infer_delivery_provider(external_id)
        delivery = self._upsert_delivery(
            delivery, external_id, status, failure_detail, raw_payload, provider_label
        )

        if log is None:
            record_event(
                self.db,
                EVENT_STATUS_UNMATCHED,
                self.actor,
                external_id=external_id,
                new_status=status,
                provider=provider_label,
                detail=failure_detail,
                provider_timestamp=occurred_at,
            )
            logger.info(
                "No communication for external id %s; status %s kept for late binding",
                external_id, status,
            )
            return None

        delivery.communication_log_id = log.id
        previous = log.delivery_status
        self._apply_status(log, status, failure_detail, occurred_at)
        self.db.flush()

        record_event(
            self.db,
            EVENT_STATUS_CHANGED,
            self.actor,
            communication_log_id=str(log.id),
            external_id=external_id,
            previous_status=previous,
            new_status=status,
            provider=provider_label,
            detail=failure_detail,
            provider_timestamp=occurred_at,
        )
        logger.info("Communication %s status %s -> %s", log.id, previous, status)
        return log

    def _upsert_delivery(
        self,
        delivery: NotificationDeliveryLog | None,
        external_id: str,
        status: str,
        failure_detail: str | None,
        raw_payload: Any,
        provider: str,
    ) -> NotificationDeliveryLog:
        webhook_data = _serialize_payload(raw_payload)
        if delivery is None:
            return self._deliveries.create(
                external_id=external_id,
                provider=provider,
                status=status,
                status_details=failure_detail,
                webhook_data=webhook_data,
            )
        return self._deliveries.update(
            delivery,
            status=status,
            status_details=failure_detail,
            webhook_data=webhook_data,
            updated_at=utcnow(),
        )

    @staticmethod
    def _apply_status(
        log: CommunicationLog,
        status: str,
        failure_detail: str | None,
        occurred_at: datetime | None,
    ) -> None:
        at = occurred_at or utcnow()
        log.delivery_status = status
        if status == STATUS_DELIVERED:
            if log.delivered_at is None:
                log.delivered_at = at
        elif status in ENGAGEMENT_STATUSES:
            if log.read_at is None:
                log.read_at = at
            if log.delivered_at is None:
                log.delivered_at = at
        if status in FAILURE_STATUSES:
            log.failure_reason = failure_detail or log.failure_reason or status

    # -- inbound ------------------------------------------------------------

    def append_inbound(
        self,
        sender_address: str,
        body: str,
        external_id: str,
        *,
        subject: str | None = None,
    ) -> InboundResult:
        """Record an inbound SMS or email and apply opt-out/opt-in keywords.

        The channel follows *sender_address*: a phone number is SMS, an email
        address is Email.  A body that is exactly an opt-out keyword (any
        case, surrounding whitespace ignored) disables that channel on every
        preference registered for the address; an opt-in keyword re-enables
        SMS on verified phones.  Re-delivery of the same *external_id* is a
        no-op.
        """
        external_id = (external_id or "").strip()
        if not external_id:
            raise ValidationError("external id is required", field="externalId")

        existing = self._logs.get_by_external_id(external_id)
        if existing is not None:
            logger.info("Inbound message %s already recorded", external_id)
            return InboundResult(communication_log=existing, duplicate=True)

        phone = normalize_phone(sender_address, default_region=self.default_phone_region)
        email = None if phone else normalize_email(sender_address)
        if phone is None and email is None:
            raise ValidationError("Inbound sender address is malformed", field="from")

        if phone is not None:
            channel = TYPE_SMS
            preferences = self._preferences.find_by_phone(phone)
            context = self._logs.latest_for_phone(phone)
        else:
            channel = TYPE_EMAIL
            preferences = self._preferences.find_by_email(email)
            context = self._logs.latest_for_email(email)

        log = self._logs.create(
            communication_type=channel,
            order_id=context.order_id if context is not None else None,
            sender_id=preferences[0].user_id if preferences else None,
            recipient_email=email,
            recipient_phone=phone,
            subject=subject if channel == TYPE_EMAIL else None,
            content=body or "",
            delivery_status=STATUS_DELIVERED,
            external_message_id=external_id,
            delivered_at=utcnow(),
            metadata_json={"direction": DIRECTION_INBOUND},
        )
        record_event(
            self.db,
            EVENT_INBOUND_RECEIVED,
            self.actor,
            communication_log_id=str(log.id),
            external_id=external_id,
            new_status=STATUS_DELIVERED,
        )
        logger.info("Recorded inbound %s message %s", channel, log.id)

        result = InboundResult(communication_log=log)
        keyword = (body or "").strip().upper()
        if keyword in OPT_OUT_KEYWORDS:
            result.opted_out = self._set_channel_enabled(preferences, channel, enabled=False)
        elif keyword in OPT_IN_KEYWORDS and channel == TYPE_SMS:
            verified = [p for p in preferences if p.phone_verified]
            result.opted_in = self._set_channel_enabled(verified, channel, enabled=True)
        return result

    def _set_channel_enabled(
        self,
        preferences: list[NotificationPreference],
        channel: str,
        *,
        enabled: bool,
    ) -> list[str]:
        if not preferences:
            return []

        column = "sms_enabled" if channel == TYPE_SMS else "email_enabled"
        ids = [p.id for p in preferences]
        values: dict[str, Any] = {column: enabled, "updated_at": utcnow()}
        if not enabled:
            values["opted_out_at"] = utcnow()
        self.db.execute(
            update(NotificationPreference)
            .where(NotificationPreference.id.in_(ids))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )

        event_type = EVENT_PREFERENCE_OPT_IN if enabled else EVENT_PREFERENCE_OPT_OUT
        for preference in preferences:
            record_event(self.db, event_type, self.actor, detail=f"user={preference.user_id} channel={channel}")
        logger.info("Preference %s applied to %d record(s) channel=%s", event_type, len(ids), channel)
        return [p.user_id for p in preferences]

    # -- archival -----------------------------------------------------------

    def archive(self, log_ids: list[UUID]) -> int:
        """Hide logs from default views.  Rows are never deleted."""
        if not log_ids:
            return 0
        result = self.db.execute(
            update(CommunicationLog)
            .where(CommunicationLog.id.in_(log_ids))
            .values(is_archived=True)
            .execution_options(synchronize_session="fetch")
        )
        logger.info("Archived %d communication log(s)", result.rowcount)
        return result.rowcount
