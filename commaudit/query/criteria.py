"""Search criteria for the audit query engine.

Pydantic parses the wire shape (camelCase, single values or lists, ISO
dates); ``validate()`` applies the range rules and raises the domain
``ValidationError`` so the API can name the offending field.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from commaudit.core.errors import ValidationError
from commaudit.delivery.status import parse_communication_type, parse_delivery_status

MIN_PAGE_SIZE = 1
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50

SORT_FIELDS = ["sentAt", "deliveredAt", "readAt", "communicationType", "deliveryStatus"]
_SORT_LOOKUP = {name.lower(): name for name in SORT_FIELDS}
SORT_DIRECTIONS = frozenset({"asc", "desc"})


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_uuid(value: Any) -> UUID | None:
    """Return *value* as a UUID, or ``None`` when it is not GUID-shaped."""
    if value is None:
        return None
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value).strip())
    except ValueError:
        return None


class SearchCriteria(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    organization_id: str | None = None
    order_id: str | None = None
    communication_type: list[str] | None = None
    delivery_status: list[str] | None = None
    sender_id: str | None = None
    recipient_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search_term: str | None = None
    include_content: bool = False
    include_archived: bool = False
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    sort_by: str = "sentAt"
    sort_direction: str = "desc"

    @field_validator("organization_id", "order_id", "sender_id", "recipient_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("communication_type", "delivery_status", mode="before")
    @classmethod
    def _split_values(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            value = value.split(",")
        return [str(v).strip() for v in value if str(v).strip()] or None

    @field_validator("date_from", "date_to", mode="before")
    @classmethod
    def _parse_dates(cls, value: Any) -> Any:
        if isinstance(value, str) and len(value.strip()) == 10:
            return datetime.fromisoformat(value.strip())
        if isinstance(value, date) and not isinstance(value, datetime):
            return datetime(value.year, value.month, value.day)
        return value

    @field_validator("date_from", "date_to")
    @classmethod
    def _normalize_dates(cls, value: datetime | None) -> datetime | None:
        return _to_utc(value) if value is not None else None

    # -- rules --------------------------------------------------------------

    def validate_rules(self) -> SearchCriteria:
        """Check page, size, dates and sort; return a canonicalized copy.

        Raises ``ValidationError`` naming the first offending field.
        """
        if self.page < 1:
            raise ValidationError("page must be greater than or equal to 1", field="page")
        if not MIN_PAGE_SIZE <= self.page_size <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"pageSize must be between {MIN_PAGE_SIZE} and {MAX_PAGE_SIZE}",
                field="pageSize",
            )
        return self._canonical()

    def clamped(self) -> SearchCriteria:
        """Like ``validate_rules`` but clamps page and page size into range."""
        copy = self.model_copy(update={
            "page": max(self.page, 1),
            "page_size": min(max(self.page_size, MIN_PAGE_SIZE), MAX_PAGE_SIZE),
        })
        return copy._canonical()

    def _canonical(self) -> SearchCriteria:
        if self.date_from is not None and self.date_to is not None and self.date_from > self.date_to:
            raise ValidationError("dateFrom must be on or before dateTo", field="dateFrom")

        sort_by = _SORT_LOOKUP.get(self.sort_by.strip().lower())
        if sort_by is None:
            raise ValidationError(f"sortBy must be one of {SORT_FIELDS}", field="sortBy")
        direction = self.sort_direction.strip().lower()
        if direction not in SORT_DIRECTIONS:
            raise ValidationError("sortDirection must be 'asc' or 'desc'", field="sortDirection")

        types = None
        if self.communication_type:
            types = [parse_communication_type(t) for t in self.communication_type]
        statuses = None
        if self.delivery_status:
            statuses = [parse_delivery_status(s) for s in self.delivery_status]

        return self.model_copy(update={
            "sort_by": sort_by,
            "sort_direction": direction,
            "communication_type": types,
            "delivery_status": statuses,
        })
