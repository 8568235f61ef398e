"""Communication export routes.

POST /communication-export/estimate             -- size estimate, no render
POST /communication-export/{format}             -- csv | excel | pdf
GET  /communication-export/status/{job_id}      -- queued job status
GET  /communication-export/download/{job_id}    -- finished job file

Small exports answer 200 with the file; larger ones answer 202 with a
job handle and are rendered by the background runner.
"""
from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from commaudit.api.auth import get_current_principal
from commaudit.api.deps import get_db, get_export_engine, get_export_runner
from commaudit.api.serializers import serialize_export_job
from commaudit.core.roles import scope_organization
from commaudit.core.security import Principal
from commaudit.core.settings import get_settings
from commaudit.export.engine import (
    ExportEngine,
    ExportJobRunner,
    ExportRequest,
    Inline,
)
from commaudit.query.engine import apply_tenant_scope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/communication-export", tags=["communication-export"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def file_response(data: bytes, content_type: str, file_name: str) -> Response:
    return Response(
        content=data,
        media_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


def _prepared(body: ExportRequest, principal: Principal, path_format: str | None = None) -> ExportRequest:
    request = body.validated(path_format=path_format, max_allowed=get_settings().export_max_records)
    criteria = apply_tenant_scope(request.search_criteria, principal.role, principal.organization_id)
    return request.model_copy(update={"search_criteria": criteria})


def _job_scope(principal: Principal) -> UUID | None:
    if principal.is_staff:
        return None
    return scope_organization(principal.role, principal.organization_id, None)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/estimate", summary="Estimate the size of an export")
def estimate_export(
    body: ExportRequest,
    principal: Principal = Depends(get_current_principal),
    engine: ExportEngine = Depends(get_export_engine),
):
    request = _prepared(body, principal)
    estimate = engine.estimate(request.search_criteria, request.max_records)
    return {
        "estimatedRecords": estimate.estimated_records,
        "estimatedSizeKB": estimate.estimated_size_kb,
        "requiresAsync": estimate.requires_async_processing,
        "recommendedFormat": estimate.recommended_format,
    }


@router.post("/{export_format}", summary="Export communication logs")
def create_export(
    export_format: str,
    body: ExportRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    runner: ExportJobRunner = Depends(get_export_runner),
):
    request = _prepared(body, principal, export_format)
    outcome = ExportEngine(db).export(request, requested_by=principal.user_id)

    if isinstance(outcome, Inline):
        return file_response(outcome.data, outcome.content_type, outcome.file_name)

    job = outcome.job
    # The runner reads the job from its own session.
    db.commit()
    runner.submit(job.id)
    return JSONResponse(
        status_code=202,
        content={
            "jobId": str(job.id),
            "status": job.status,
            "recordCount": job.record_count,
            "estimatedSize": job.estimated_size,
        },
    )


@router.get("/status/{job_id}", summary="Get export job status")
def export_status(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: ExportEngine = Depends(get_export_engine),
):
    job = engine.get_export_status(job_id, organization_scope=_job_scope(principal))
    if job is None:
        raise HTTPException(status_code=404, detail=f"Export job {job_id} not found")
    return serialize_export_job(job)


@router.get("/download/{job_id}", summary="Download a finished export")
def download_export(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: ExportEngine = Depends(get_export_engine),
):
    export_file = engine.get_export_file(job_id, organization_scope=_job_scope(principal))
    if export_file is None:
        raise HTTPException(status_code=404, detail=f"Export file for job {job_id} not found or expired")
    return file_response(export_file.data, export_file.content_type, export_file.file_name)
