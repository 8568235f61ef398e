"""Audit Query Engine.

Paginated, filtered, sorted search over ``communication_logs``.  Tenant
scoping is applied to the criteria before any statement is built; the
organization filter is a sub-select on ``orders`` so rows without an
order are only visible to unscoped (staff) queries.

Ordering is always ``sortBy`` then ``id`` ascending, so repeated queries
over unchanged data page identically.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session

from commaudit.core.roles import scope_organization
from commaudit.db.models import CommunicationLog, Order
from commaudit.query.criteria import MAX_PAGE_SIZE, SearchCriteria, parse_uuid

logger = logging.getLogger(__name__)

_SORT_COLUMNS = {
    "sentAt": CommunicationLog.sent_at,
    "deliveredAt": CommunicationLog.delivered_at,
    "readAt": CommunicationLog.read_at,
    "communicationType": CommunicationLog.communication_type,
    "deliveryStatus": CommunicationLog.delivery_status,
}
_NULLABLE_SORTS = frozenset({"deliveredAt", "readAt"})


@dataclass
class SearchResult:
    logs: list[CommunicationLog]
    total_count: int
    page: int
    page_size: int
    status_summary: dict[str, int] = field(default_factory=dict)

    @property
    def has_next_page(self) -> bool:
        return self.page * self.page_size < self.total_count


def apply_tenant_scope(
    criteria: SearchCriteria,
    role: str | None,
    caller_organization_id,
) -> SearchCriteria:
    """Force the caller's own organization onto *criteria* unless staff."""
    organization_id = scope_organization(role, caller_organization_id, criteria.organization_id)
    if organization_id is not None:
        organization_id = str(organization_id)
    return criteria.model_copy(update={"organization_id": organization_id})


def build_filters(criteria: SearchCriteria) -> list | None:
    """Build WHERE clauses; ``None`` means the criteria can match nothing."""
    clauses: list = []

    if criteria.organization_id is not None:
        organization_id = parse_uuid(criteria.organization_id)
        if organization_id is None:
            return None
        clauses.append(
            CommunicationLog.order_id.in_(
                select(Order.id).where(Order.organization_id == organization_id)
            )
        )

    if criteria.order_id is not None:
        order_id = parse_uuid(criteria.order_id)
        if order_id is None:
            return None
        clauses.append(CommunicationLog.order_id == order_id)

    if criteria.sender_id is not None:
        sender_id = parse_uuid(criteria.sender_id)
        if sender_id is None:
            return None
        clauses.append(CommunicationLog.sender_id == str(sender_id))

    if criteria.recipient_id is not None:
        clauses.append(CommunicationLog.recipient_id == criteria.recipient_id.strip())

    if criteria.communication_type:
        clauses.append(CommunicationLog.communication_type.in_(criteria.communication_type))

    if criteria.delivery_status:
        clauses.append(CommunicationLog.delivery_status.in_(criteria.delivery_status))

    if criteria.date_from is not None:
        clauses.append(CommunicationLog.sent_at >= criteria.date_from)

    if criteria.date_to is not None:
        # dateTo covers its whole calendar day
        end = criteria.date_to.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
        clauses.append(CommunicationLog.sent_at < end)

    term = (criteria.search_term or "").strip()
    if term:
        clauses.append(
            or_(
                CommunicationLog.subject.icontains(term, autoescape=True),
                CommunicationLog.content.icontains(term, autoescape=True),
                CommunicationLog.recipient_email.icontains(term, autoescape=True),
                CommunicationLog.recipient_phone.icontains(term, autoescape=True),
            )
        )

    if not criteria.include_archived:
        clauses.append(CommunicationLog.is_archived.is_(False))

    return clauses


def _ordered(stmt: Select, criteria: SearchCriteria) -> Select:
    column = _SORT_COLUMNS[criteria.sort_by]
    primary = column.asc() if criteria.sort_direction == "asc" else column.desc()
    if criteria.sort_by in _NULLABLE_SORTS:
        primary = primary.nulls_last()
    return stmt.order_by(primary, CommunicationLog.id.asc())


class AuditQueryEngine:
    """Read-only search over the Communication Log Store.

    Criteria must already be validated (``validate_rules`` or ``clamped``)
    and tenant-scoped (``apply_tenant_scope``).
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def count(self, criteria: SearchCriteria) -> int:
        clauses = build_filters(criteria)
        if clauses is None:
            return 0
        stmt = select(func.count()).select_from(CommunicationLog).where(*clauses)
        return int(self.db.execute(stmt).scalar_one())

    def status_summary(self, criteria: SearchCriteria) -> dict[str, int]:
        clauses = build_filters(criteria)
        if clauses is None:
            return {}
        stmt = (
            select(CommunicationLog.delivery_status, func.count())
            .where(*clauses)
            .group_by(CommunicationLog.delivery_status)
        )
        return {status: int(count) for status, count in self.db.execute(stmt).all()}

    def search(self, criteria: SearchCriteria, *, with_summary: bool = True) -> SearchResult:
        clauses = build_filters(criteria)
        if clauses is None:
            logger.info("Search filter cannot match; returning empty page")
            return SearchResult([], 0, criteria.page, criteria.page_size)

        total = self.count(criteria)
        offset = (criteria.page - 1) * criteria.page_size
        logs: list[CommunicationLog] = []
        if offset < total:
            stmt = _ordered(select(CommunicationLog).where(*clauses), criteria)
            stmt = stmt.offset(offset).limit(criteria.page_size)
            logs = list(self.db.execute(stmt).scalars().all())

        summary = self.status_summary(criteria) if with_summary else {}
        logger.info(
            "Search returned %d of %d log(s) page=%d size=%d",
            len(logs), total, criteria.page, criteria.page_size,
        )
        return SearchResult(logs, total, criteria.page, criteria.page_size, summary)

    def iter_logs(
        self,
        criteria: SearchCriteria,
        limit: int,
        *,
        batch_size: int = MAX_PAGE_SIZE,
    ) -> Iterator[CommunicationLog]:
        """Yield up to *limit* logs in result order, one page-sized batch at a time."""
        clauses = build_filters(criteria)
        if clauses is None or limit <= 0:
            return
        base = _ordered(select(CommunicationLog).where(*clauses), criteria)
        emitted = 0
        while emitted < limit:
            size = min(batch_size, limit - emitted)
            batch = list(self.db.execute(base.offset(emitted).limit(size)).scalars().all())
            yield from batch
            emitted += len(batch)
            if len(batch) < size:
                return
