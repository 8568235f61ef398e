"""Delivery Summary Aggregator.

Computes ``DeliveryStatusSummary`` over a date range, optionally for one
organization.  Status and type counts come from one grouped query, so
both maps always sum to ``total_communications``.

The date window uses the same rules as search: ``date_from`` inclusive,
``date_to`` covering its whole calendar day.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from commaudit.core.errors import ValidationError
from commaudit.db.models import CommunicationLog, as_utc
from commaudit.delivery.status import FAILURE_STATUSES, SUCCESS_STATUSES
from commaudit.query.criteria import SearchCriteria
from commaudit.query.engine import build_filters

logger = logging.getLogger(__name__)

MAX_RANGE_DAYS = 365
TOP_FAILURE_REASON_LIMIT = 10


@dataclass
class FailureReason:
    reason: str
    count: int
    percentage: float
    last_occurrence: datetime | None


@dataclass
class DeliveryStatusSummary:
    organization_id: UUID | None
    date_from: datetime
    date_to: datetime
    total_communications: int = 0
    status_counts: dict[str, int] = field(default_factory=dict)
    type_counts: dict[str, int] = field(default_factory=dict)
    delivery_success_rate: float = 0.0
    daily_volume: dict[str, int] = field(default_factory=dict)
    hourly_volume: dict[int, int] = field(default_factory=dict)
    peak_hour: int | None = None
    top_failure_reasons: list[FailureReason] = field(default_factory=list)
    average_delivery_time_minutes: float | None = None

    @property
    def failed_count(self) -> int:
        return sum(self.status_counts.get(s, 0) for s in FAILURE_STATUSES)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def validate_range(date_from: datetime | None, date_to: datetime | None) -> None:
    """Raise ``ValidationError`` unless ``from <= to`` within 365 days."""
    if date_from is None:
        raise ValidationError("from is required", field="from")
    if date_to is None:
        raise ValidationError("to is required", field="to")
    if as_utc(date_from) > as_utc(date_to):
        raise ValidationError("from must be on or before to", field="from")
    if as_utc(date_to) - as_utc(date_from) > timedelta(days=MAX_RANGE_DAYS):
        raise ValidationError(
            f"Date range cannot exceed {MAX_RANGE_DAYS} days", field="to"
        )


def delivery_success_rate(status_counts: dict[str, int], total: int) -> float:
    """Delivered + Opened + Clicked as a percentage of *total*, in [0, 100]."""
    if total <= 0:
        return 0.0
    successes = sum(status_counts.get(s, 0) for s in SUCCESS_STATUSES)
    return round(min(max(successes / total * 100.0, 0.0), 100.0), 2)


def peak_hour(hourly_volume: dict[int, int]) -> int | None:
    if not hourly_volume:
        return None
    # earliest hour wins a tie
    return min(hourly_volume, key=lambda hour: (-hourly_volume[hour], hour))


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class DeliverySummaryAggregator:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get_delivery_status_summary(
        self,
        organization_id: UUID | None,
        date_from: datetime,
        date_to: datetime,
    ) -> DeliveryStatusSummary:
        """Aggregate communications sent between *date_from* and *date_to*.

        *organization_id* must already be scoped for the caller; ``None``
        means every organization.  An organization without communications
        yields an empty summary, not an error.
        """
        validate_range(date_from, date_to)
        criteria = SearchCriteria(
            organization_id=str(organization_id) if organization_id is not None else None,
            date_from=date_from,
            date_to=date_to,
        )
        summary = DeliveryStatusSummary(
            organization_id=organization_id,
            date_from=criteria.date_from,
            date_to=criteria.date_to,
        )
        clauses = build_filters(criteria)
        if clauses is None:
            return summary

        grouped = self.db.execute(
            select(CommunicationLog.delivery_status, CommunicationLog.communication_type, func.count())
            .where(*clauses)
            .group_by(CommunicationLog.delivery_status, CommunicationLog.communication_type)
        ).all()

        status_counts: Counter[str] = Counter()
        type_counts: Counter[str] = Counter()
        for status, communication_type, count in grouped:
            status_counts[status] += int(count)
            type_counts[communication_type] += int(count)

        summary.total_communications = sum(status_counts.values())
        summary.status_counts = dict(status_counts)
        summary.type_counts = dict(type_counts)
        summary.delivery_success_rate = delivery_success_rate(
            summary.status_counts, summary.total_communications
        )
        if summary.total_communications == 0:
            return summary

        self._add_volume(summary, clauses)
        summary.top_failure_reasons = self._failure_reasons(clauses, summary.failed_count)

        logger.info(
            "Delivery summary computed: total=%d success_rate=%.2f",
            summary.total_communications, summary.delivery_success_rate,
        )
        return summary

    def _add_volume(self, summary: DeliveryStatusSummary, clauses: list) -> None:
        daily: Counter[str] = Counter()
        hourly: Counter[int] = Counter()
        delivery_minutes: list[float] = []

        rows = self.db.execute(
            select(CommunicationLog.sent_at, CommunicationLog.delivered_at).where(*clauses)
        )
        for sent_at, delivered_at in rows:
            sent_at = as_utc(sent_at)
            daily[sent_at.date().isoformat()] += 1
            hourly[sent_at.hour] += 1
            delivered_at = as_utc(delivered_at)
            if delivered_at is not None and delivered_at >= sent_at:
                delivery_minutes.append((delivered_at - sent_at).total_seconds() / 60.0)

        summary.daily_volume = dict(sorted(daily.items()))
        summary.hourly_volume = dict(sorted(hourly.items()))
        summary.peak_hour = peak_hour(summary.hourly_volume)
        if delivery_minutes:
            summary.average_delivery_time_minutes = round(
                sum(delivery_minutes) / len(delivery_minutes), 2
            )

    def _failure_reasons(self, clauses: list, failed_count: int) -> list[FailureReason]:
        if failed_count == 0:
            return []
        rows = self.db.execute(
            select(
                CommunicationLog.failure_reason,
                func.count(),
                func.max(CommunicationLog.sent_at),
            )
            .where(
                *clauses,
                CommunicationLog.delivery_status.in_(FAILURE_STATUSES),
                CommunicationLog.failure_reason.is_not(None),
            )
            .group_by(CommunicationLog.failure_reason)
            .order_by(func.count().desc(), CommunicationLog.failure_reason.asc())
            .limit(TOP_FAILURE_REASON_LIMIT)
        ).all()
        return [
            FailureReason(
                reason=reason,
                count=int(count),
                percentage=round(int(count) / failed_count * 100.0, 2),
                last_occurrence=as_utc(last) if isinstance(last, datetime) else None,
            )
            for reason, count, last in rows
        ]
