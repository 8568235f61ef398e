"""Append-only delivery audit logger.

Provides ``record_event()`` to persist ``DeliveryAuditEvent`` rows.
All writes are immutable (``immutable=True``).

Safety: ``detail`` may hold provider error text and is never logged;
only event_type, actor and status.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from commaudit.audit.events import STATUS_EVENT_TYPES, VALID_EVENT_TYPES
from commaudit.db.models import DeliveryAuditEvent

logger = logging.getLogger(__name__)


def _check_event_type(event_type: str) -> None:
    if event_type not in VALID_EVENT_TYPES:
        raise ValueError(
            f"Invalid event_type {event_type!r}; "
            f"must be one of {sorted(VALID_EVENT_TYPES)}"
        )


def record_event(
    db_session: Session,
    event_type: str,
    actor: str,
    *,
    communication_log_id: str | None = None,
    external_id: str | None = None,
    previous_status: str | None = None,
    new_status: str | None = None,
    provider: str | None = None,
    detail: str | None = None,
    provider_timestamp: datetime | None = None,
) -> DeliveryAuditEvent:
    """Create and persist an immutable ``DeliveryAuditEvent``.

    Raises ``ValueError`` for invalid inputs.  Flushes but does **not**
    commit; the caller controls the transaction boundary.
    """
    _check_event_type(event_type)

    if not actor or not actor.strip():
        raise ValueError("actor must be a non-empty string")

    if event_type in STATUS_EVENT_TYPES and not new_status:
        raise ValueError(f"new_status is required for {event_type} events")

    event = DeliveryAuditEvent(
        event_type=event_type,
        actor=actor,
        communication_log_id=communication_log_id,
        external_id=external_id,
        previous_status=previous_status,
        new_status=new_status,
        provider=provider,
        detail=detail,
        provider_timestamp=provider_timestamp,
        immutable=True,
    )
    db_session.add(event)
    db_session.flush()

    logger.info(
        "Audit event recorded: type=%s actor=%s status=%s",
        event_type, actor, new_status,
    )
    return event


def get_communication_history(
    db_session: Session,
    communication_log_id: str,
) -> list[DeliveryAuditEvent]:
    """Return all events for one communication, oldest first."""
    stmt = (
        select(DeliveryAuditEvent)
        .where(DeliveryAuditEvent.communication_log_id == communication_log_id)
        .order_by(DeliveryAuditEvent.timestamp.asc())
    )
    return list(db_session.execute(stmt).scalars().all())


def get_external_id_history(
    db_session: Session,
    external_id: str,
) -> list[DeliveryAuditEvent]:
    """Return all events observed for *external_id*, including unmatched ones."""
    stmt = (
        select(DeliveryAuditEvent)
        .where(DeliveryAuditEvent.external_id == external_id)
        .order_by(DeliveryAuditEvent.timestamp.asc())
    )
    return list(db_session.execute(stmt).scalars().all())


def get_events_by_type(
    db_session: Session,
    event_type: str,
) -> list[DeliveryAuditEvent]:
    """Return all events of *event_type*, ordered by timestamp."""
    _check_event_type(event_type)
    stmt = (
        select(DeliveryAuditEvent)
        .where(DeliveryAuditEvent.event_type == event_type)
        .order_by(DeliveryAuditEvent.timestamp.asc())
    )
    return list(db_session.execute(stmt).scalars().all())
