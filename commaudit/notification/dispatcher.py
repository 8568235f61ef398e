"""Notification dispatcher.

Checks the recipient's channel preferences, hands the message to the
injected ``ChannelSender`` and records the attempt.  The sender's
message id becomes the log's external message id, which is what the
provider webhooks later correlate on.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from uuid import UUID

from commaudit.core.errors import ValidationError
from commaudit.db.models import CommunicationLog, NotificationPreference
from commaudit.db.repositories import NotificationPreferenceRepository
from commaudit.delivery.status import TYPE_EMAIL, TYPE_MESSAGE, TYPE_SMS, parse_communication_type
from commaudit.delivery.store import CommunicationLogStore
from commaudit.notification.senders import ChannelSender

logger = logging.getLogger(__name__)

_SEND_FAILED = "Send failed"


def _channel_allowed(preference: NotificationPreference, communication_type: str) -> bool:
    if communication_type == TYPE_SMS:
        return bool(preference.sms_enabled)
    if communication_type == TYPE_EMAIL:
        return bool(preference.email_enabled)
    return True


class NotificationDispatcher:
    """Send and record communications through per-channel senders."""

    def __init__(self, store: CommunicationLogStore, senders: Iterable[ChannelSender]) -> None:
        self.store = store
        self._senders = {s.communication_type: s for s in senders}
        self._preferences = NotificationPreferenceRepository(store.db)

    def dispatch(
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
        template_used: str | None = None,
    ) -> CommunicationLog | None:
        """Send one communication and record it.

        Returns ``None`` without sending when the recipient has opted out
        of the channel.  A provider rejection is recorded as ``Failed``
        with the provider's error as the failure reason.
        """
        communication_type = parse_communication_type(communication_type)
        email, phone = self.store.resolve_recipient(
            communication_type, recipient_email, recipient_phone, recipient_id
        )

        if not self._allowed(communication_type, email, phone, recipient_id):
            logger.info("Recipient opted out of %s; nothing sent", communication_type)
            return None

        if communication_type == TYPE_MESSAGE:
            return self.store.record(
                communication_type, order_id, sender_id, content,
                recipient_id=recipient_id, subject=subject, template_used=template_used,
            )

        sender = self._senders.get(communication_type)
        if sender is None:
            raise ValidationError(
                f"No sender configured for {communication_type}", field="communicationType"
            )

        receipt = sender.send(email or phone, subject, content)
        failure_reason = None if receipt.accepted else (receipt.error or _SEND_FAILED)
        return self.store.record(
            communication_type,
            order_id,
            sender_id,
            content,
            recipient_email=email,
            recipient_phone=phone,
            recipient_id=recipient_id,
            subject=subject,
            external_id=receipt.external_id,
            failure_reason=failure_reason,
            template_used=template_used,
        )

    def _allowed(
        self,
        communication_type: str,
        email: str | None,
        phone: str | None,
        recipient_id: str | None,
    ) -> bool:
        preferences: list[NotificationPreference] = []
        if recipient_id:
            preference = self._preferences.get_by_user_id(recipient_id)
            if preference is not None:
                preferences.append(preference)
        if phone is not None:
            preferences.extend(self._preferences.find_by_phone(phone))
        elif email is not None:
            preferences.extend(self._preferences.find_by_email(email))
        return all(_channel_allowed(p, communication_type) for p in preferences)
