"""Communication audit routes.

POST /communication-audit/search                 -- search logs (JSON body)
GET  /communication-audit/search                 -- search logs (query string)
GET  /communication-audit/delivery-summary       -- delivery status summary
GET  /communication-audit/orders/{order_id}      -- every log for one order
GET  /communication-audit/logs/{log_id}/events   -- audit trail of one log

Request validation runs before tenant scoping, and scoping runs before
any query.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from commaudit.api.auth import get_current_principal
from commaudit.api.deps import get_db, get_query_engine
from commaudit.api.serializers import serialize_audit_event, serialize_log, serialize_summary
from commaudit.audit.audit_log import get_communication_history
from commaudit.core.errors import ValidationError
from commaudit.core.roles import scope_organization
from commaudit.core.security import Principal
from commaudit.core.settings import get_settings
from commaudit.db.models import CommunicationLog, Order
from commaudit.query.criteria import SearchCriteria, parse_uuid
from commaudit.query.engine import AuditQueryEngine, SearchResult, apply_tenant_scope
from commaudit.reporting.summary import DeliverySummaryAggregator, validate_range

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/communication-audit", tags=["communication-audit"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def criteria_from_mapping(data: dict) -> SearchCriteria:
    """Parse criteria, reporting type errors as ``ValidationError`` on the field."""
    try:
        return SearchCriteria.model_validate(data)
    except PydanticValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error.get("loc", ())) or None
        raise ValidationError(error.get("msg", "Invalid search criteria"), field=field) from exc


def parse_date_param(value: str | None, field: str) -> datetime | None:
    if value is None or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO 8601 date", field=field) from exc


def _search_response(result: SearchResult, include_content: bool) -> dict:
    return {
        "logs": [serialize_log(log, include_content=include_content) for log in result.logs],
        "totalCount": result.total_count,
        "page": result.page,
        "pageSize": result.page_size,
        "hasNextPage": result.has_next_page,
        "statusSummary": result.status_summary,
    }


def _run_search(
    criteria: SearchCriteria,
    principal: Principal,
    engine: AuditQueryEngine,
) -> dict:
    criteria = criteria.validate_rules()
    criteria = apply_tenant_scope(criteria, principal.role, principal.organization_id)
    result = engine.search(criteria)
    return _search_response(result, criteria.include_content)


def _visible_to(principal: Principal, order: Order | None) -> bool:
    if order is None:
        return principal.is_staff
    if principal.is_staff:
        return True
    return principal.organization_id is not None and order.organization_id == principal.organization_id


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/search", summary="Search communication logs")
def search_post(
    body: Any = Body(default=None),
    principal: Principal = Depends(get_current_principal),
    engine: AuditQueryEngine = Depends(get_query_engine),
):
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise ValidationError("Search criteria must be a JSON object")
    return _run_search(criteria_from_mapping(body), principal, engine)


@router.get("/search", summary="Search communication logs with query parameters")
def search_get(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    engine: AuditQueryEngine = Depends(get_query_engine),
):
    data: dict = {}
    for key in request.query_params.keys():
        values = request.query_params.getlist(key)
        data[key] = values if len(values) > 1 else values[0]
    return _run_search(criteria_from_mapping(data), principal, engine)


@router.get("/delivery-summary", summary="Delivery status summary for a date range")
def delivery_summary(
    organization_id: str | None = Query(default=None, alias="organizationId"),
    date_from: str | None = Query(default=None, alias="from"),
    date_to: str | None = Query(default=None, alias="to"),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    start = parse_date_param(date_from, "from")
    end = parse_date_param(date_to, "to")
    validate_range(start, end)

    requested = None
    if organization_id is not None and organization_id.strip():
        requested = parse_uuid(organization_id)
        if requested is None:
            raise ValidationError("organizationId must be a GUID", field="organizationId")

    scoped = scope_organization(principal.role, principal.organization_id, requested)
    summary = DeliverySummaryAggregator(db).get_delivery_status_summary(scoped, start, end)
    return serialize_summary(summary)


@router.get("/orders/{order_id}", summary="All communications for one order")
def order_history(
    order_id: str,
    include_content: bool = Query(default=False, alias="includeContent"),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    order_uuid = parse_uuid(order_id)
    order = db.get(Order, order_uuid) if order_uuid is not None else None
    if order is None or not _visible_to(principal, order):
        raise HTTPException(status_code=404, detail="Order not found")

    criteria = SearchCriteria(
        order_id=str(order.id),
        sort_by="sentAt",
        sort_direction="asc",
        include_content=include_content,
    ).clamped()
    logs = list(AuditQueryEngine(db).iter_logs(criteria, get_settings().export_max_records))
    return {
        "orderId": str(order.id),
        "orderNumber": order.order_number,
        "totalCount": len(logs),
        "logs": [serialize_log(log, include_content=include_content) for log in logs],
    }


@router.get("/logs/{log_id}/events", summary="Audit trail for one communication")
def log_events(
    log_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    log_uuid = parse_uuid(log_id)
    log = db.get(CommunicationLog, log_uuid) if log_uuid is not None else None
    if log is None or not _visible_to(principal, log.order):
        raise HTTPException(status_code=404, detail="Communication not found")

    events = get_communication_history(db, str(log.id))
    return {
        "communicationLogId": str(log.id),
        "events": [serialize_audit_event(ev) for ev in events],
    }
