"""Communication report routes: compliance PDF."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from commaudit.api.auth import get_current_principal
from commaudit.api.deps import get_export_engine
from commaudit.api.routes.communication_export import file_response
from commaudit.core.errors import ValidationError
from commaudit.core.roles import scope_organization
from commaudit.core.security import Principal
from commaudit.export.engine import ExportEngine
from commaudit.query.criteria import parse_uuid
from commaudit.reporting.summary import validate_range

router = APIRouter(prefix="/communication-reports", tags=["communication-reports"])


class ComplianceReportRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    organization_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    include_failure_analysis: bool = True
    include_charts: bool = True
    report_title: str | None = None


@router.post("/reports/compliance-pdf", summary="Generate a compliance PDF report")
def compliance_pdf(
    body: ComplianceReportRequest,
    principal: Principal = Depends(get_current_principal),
    engine: ExportEngine = Depends(get_export_engine),
):
    validate_range(body.date_from, body.date_to)

    requested = None
    if body.organization_id:
        requested = parse_uuid(body.organization_id)
        if requested is None:
            raise ValidationError("organizationId must be a GUID", field="organizationId")
    organization_id = scope_organization(principal.role, principal.organization_id, requested)

    report = engine.generate_compliance_pdf(
        organization_id,
        body.date_from,
        body.date_to,
        title=body.report_title,
        include_failure_analysis=body.include_failure_analysis,
        include_charts=body.include_charts,
    )
    return file_response(report.data, report.content_type, report.file_name)
