"""Export Engine.

One entry point, ``ExportEngine.export``, validates an ``ExportRequest``
once and returns an ``ExportOutcome``: ``Inline`` with rendered bytes when
the estimated record count is at or below the synchronous threshold,
``Queued`` with a ``Processing`` ``ExportJob`` otherwise.  Queued jobs are
rendered by ``ExportJobRunner`` on a worker thread with its own session,
and move to ``Completed`` or ``Failed`` exactly once.

Completed files live under ``Settings.export_dir`` until ``expires_at``;
``cleanup_expired_exports`` removes them and downloads then return 404.

Safety: criteria, recipient addresses and content are never logged;
only job ids, formats and counts.
"""
from __future__ import annotations

import logging
import re
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from commaudit.audit.audit_log import record_event
from commaudit.audit.events import EVENT_EXPORT_REQUESTED
from commaudit.core.errors import RenderError, ValidationError
from commaudit.core.settings import Settings, get_settings
from commaudit.db.models import ExportJob, as_utc, utcnow
from commaudit.db.repositories import ExportJobRepository
from commaudit.export.pdf import build_compliance_html, build_export_html, render_pdf
from commaudit.export.renderers import LogRow, build_csv_content, build_excel_content
from commaudit.query.criteria import SearchCriteria, parse_uuid
from commaudit.query.engine import AuditQueryEngine
from commaudit.reporting.summary import DeliverySummaryAggregator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FORMAT_CSV = "CSV"
FORMAT_EXCEL = "Excel"
FORMAT_PDF = "PDF"

EXPORT_FORMATS = [FORMAT_CSV, FORMAT_EXCEL, FORMAT_PDF]

_FORMAT_ALIASES = {
    "csv": FORMAT_CSV,
    "excel": FORMAT_EXCEL,
    "xlsx": FORMAT_EXCEL,
    "pdf": FORMAT_PDF,
}

CONTENT_TYPES: dict[str, str] = {
    FORMAT_CSV: "text/csv",
    FORMAT_EXCEL: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    FORMAT_PDF: "application/pdf",
}

FILE_EXTENSIONS: dict[str, str] = {
    FORMAT_CSV: "csv",
    FORMAT_EXCEL: "xlsx",
    FORMAT_PDF: "pdf",
}

JOB_PROCESSING = "Processing"
JOB_COMPLETED = "Completed"
JOB_FAILED = "Failed"

STRATEGY_INLINE = "inline"
STRATEGY_QUEUED = "queued"

DEFAULT_MAX_RECORDS = 10_000
BYTES_PER_RECORD_ESTIMATE = 200
KB_PER_RECORD_ESTIMATE = 2
CSV_RECOMMENDATION_THRESHOLD = 10_000

_FILENAME_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


# ---------------------------------------------------------------------------
# Request / outcome types
# ---------------------------------------------------------------------------


def parse_export_format(value: str | None) -> str:
    canonical = _FORMAT_ALIASES.get((value or "").strip().lower())
    if canonical is None:
        raise ValidationError(
            f"Invalid export format {value!r}; must be one of {EXPORT_FORMATS}", field="format"
        )
    return canonical


class ExportRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    search_criteria: SearchCriteria = Field(default_factory=SearchCriteria)
    format: str | None = None
    include_content: bool = False
    include_metadata: bool = False
    max_records: int = DEFAULT_MAX_RECORDS
    custom_filename: str | None = None

    def validated(self, *, path_format: str | None = None, max_allowed: int) -> ExportRequest:
        """Resolve the format and bounds; clamp the criteria page size.

        Raises ``ValidationError`` for an unknown format, a ``maxRecords``
        outside ``[1, max_allowed]`` or an invalid criteria date range.
        """
        export_format = parse_export_format(path_format or self.format or FORMAT_CSV)
        if not 1 <= self.max_records <= max_allowed:
            raise ValidationError(
                f"maxRecords must be between 1 and {max_allowed}", field="maxRecords"
            )
        return self.model_copy(update={
            "format": export_format,
            "search_criteria": self.search_criteria.clamped(),
        })


@dataclass
class Inline:
    data: bytes
    content_type: str
    file_name: str
    record_count: int


@dataclass
class Queued:
    job: ExportJob


ExportOutcome = Union[Inline, Queued]


@dataclass
class ExportFile:
    data: bytes
    content_type: str
    file_name: str


@dataclass
class ExportEstimate:
    estimated_records: int
    estimated_size_kb: int
    requires_async_processing: bool
    recommended_format: str


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def choose_export_strategy(record_count: int, threshold: int) -> str:
    """Inline when *record_count* is at or below *threshold*, else queued."""
    return STRATEGY_INLINE if record_count <= threshold else STRATEGY_QUEUED


def build_file_name(export_format: str, custom: str | None = None, *, now: datetime | None = None) -> str:
    extension = FILE_EXTENSIONS[export_format]
    if custom:
        stem = _FILENAME_UNSAFE.sub("-", Path(custom).stem).strip("-.")[:100]
        if stem:
            return f"{stem}.{extension}"
    now = now or datetime.now(timezone.utc)
    return f"communication-export-{now:%Y%m%d-%H%M%S}.{extension}"


def render_export(
    export_format: str,
    rows: list[LogRow],
    *,
    include_content: bool = False,
    include_metadata: bool = False,
) -> bytes:
    """Render *rows*; any failure is raised as ``RenderError``."""
    try:
        if export_format == FORMAT_CSV:
            return build_csv_content(
                rows, include_content=include_content, include_metadata=include_metadata
            ).encode("utf-8")
        if export_format == FORMAT_EXCEL:
            return build_excel_content(
                rows, include_content=include_content, include_metadata=include_metadata
            )
        if export_format == FORMAT_PDF:
            return render_pdf(build_export_html(rows))
    except Exception as exc:
        raise RenderError(f"{export_format} rendering failed: {type(exc).__name__}") from exc
    raise RenderError(f"Unsupported export format {export_format!r}")


def download_url_for(job_id: UUID) -> str:
    return f"/communication-export/download/{job_id}"


# ---------------------------------------------------------------------------
# Engine (request-scoped)
# ---------------------------------------------------------------------------


class ExportEngine:
    """Request-scoped export operations over one DB session.

    Criteria handed to ``export`` and ``estimate`` must already be
    validated and tenant-scoped.
    """

    def __init__(self, db: Session, *, settings: Settings | None = None) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self._query = AuditQueryEngine(db)
        self._jobs = ExportJobRepository(db)

    def estimate(self, criteria: SearchCriteria, max_records: int) -> ExportEstimate:
        count = min(self._query.count(criteria), max_records)
        return ExportEstimate(
            estimated_records=count,
            estimated_size_kb=count * KB_PER_RECORD_ESTIMATE,
            requires_async_processing=(
                choose_export_strategy(count, self.settings.export_sync_threshold) == STRATEGY_QUEUED
            ),
            recommended_format=FORMAT_CSV if count > CSV_RECOMMENDATION_THRESHOLD else FORMAT_EXCEL,
        )

    def export(self, request: ExportRequest, *, requested_by: str) -> ExportOutcome:
        criteria = request.search_criteria
        count = min(self._query.count(criteria), request.max_records)
        strategy = choose_export_strategy(count, self.settings.export_sync_threshold)
        file_name = build_file_name(request.format, request.custom_filename)

        record_event(
            self.db,
            EVENT_EXPORT_REQUESTED,
            requested_by,
            detail=f"format={request.format} records={count} strategy={strategy}",
        )

        if strategy == STRATEGY_INLINE:
            rows = [LogRow.from_orm(log) for log in self._query.iter_logs(criteria, count)]
            data = render_export(
                request.format,
                rows,
                include_content=request.include_content,
                include_metadata=request.include_metadata,
            )
            logger.info("Inline %s export rendered: %d record(s)", request.format, len(rows))
            return Inline(
                data=data,
                content_type=CONTENT_TYPES[request.format],
                file_name=file_name,
                record_count=len(rows),
            )

        job = self._jobs.create(
            organization_id=parse_uuid(criteria.organization_id),
            requested_by=requested_by,
            criteria_json=criteria.model_dump(mode="json", by_alias=True),
            format=request.format,
            include_content=request.include_content,
            include_metadata=request.include_metadata,
            max_records=request.max_records,
            status=JOB_PROCESSING,
            record_count=count,
            estimated_size=count * BYTES_PER_RECORD_ESTIMATE,
            file_name=file_name,
        )
        logger.info("Queued %s export job %s: %d record(s)", request.format, job.id, count)
        return Queued(job=job)

    # -- compliance report --------------------------------------------------

    def generate_compliance_pdf(
        self,
        organization_id: UUID | None,
        date_from: datetime,
        date_to: datetime,
        *,
        title: str | None = None,
        include_failure_analysis: bool = True,
        include_charts: bool = True,
    ) -> ExportFile:
        """Render the compliance report PDF for an already-scoped organization.

        Range errors raise ``ValidationError`` before anything is rendered;
        rendering failures raise ``RenderError``.
        """
        summary = DeliverySummaryAggregator(self.db).get_delivery_status_summary(
            organization_id, date_from, date_to
        )
        try:
            data = render_pdf(
                build_compliance_html(
                    summary,
                    title=title,
                    include_failure_analysis=include_failure_analysis,
                    include_charts=include_charts,
                )
            )
        except Exception as exc:
            raise RenderError(f"Compliance report rendering failed: {type(exc).__name__}") from exc

        now = datetime.now(timezone.utc)
        logger.info("Compliance report rendered: total=%d", summary.total_communications)
        return ExportFile(
            data=data,
            content_type=CONTENT_TYPES[FORMAT_PDF],
            file_name=f"compliance-report-{now:%Y%m%d-%H%M%S}.pdf",
        )

    # -- job lookups --------------------------------------------------------

    def _visible_job(self, job_id, organization_scope: UUID | None) -> ExportJob | None:
        job_uuid = parse_uuid(job_id)
        if job_uuid is None:
            return None
        job = self._jobs.get(job_uuid)
        if job is None:
            return None
        if organization_scope is not None and job.organization_id != organization_scope:
            return None
        return job

    def get_export_status(self, job_id, *, organization_scope: UUID | None = None) -> ExportJob | None:
        """Return the job, or ``None`` when unknown or outside the caller's scope."""
        return self._visible_job(job_id, organization_scope)

    def get_export_file(
        self,
        job_id,
        *,
        organization_scope: UUID | None = None,
        now: datetime | None = None,
    ) -> ExportFile | None:
        """Return the finished file, or ``None`` if unknown, unfinished or expired."""
        job = self._visible_job(job_id, organization_scope)
        if job is None or job.status != JOB_COMPLETED or not job.file_path:
            return None
        now = now or utcnow()
        if job.expires_at is not None and as_utc(job.expires_at) <= now:
            return None
        path = Path(job.file_path)
        if not path.is_file():
            logger.warning("Export file for job %s is missing on disk", job.id)
            return None
        return ExportFile(
            data=path.read_bytes(),
            content_type=CONTENT_TYPES[job.format],
            file_name=job.file_name,
        )


# ---------------------------------------------------------------------------
# Background runner
# ---------------------------------------------------------------------------


class ExportJobRunner:
    """Renders queued export jobs on worker threads.

    Each job opens its own session from *session_factory*, reads its rows,
    renders them on a dedicated render thread bounded by
    ``export_render_timeout_seconds`` and writes the file.  The final
    status write only applies while the job is still ``Processing``.

    Python threads cannot be killed, so a timed-out render keeps running
    until it returns.  Each render gets its own single-use executor,
    so a stuck render never holds up later jobs.  It can delay
    interpreter exit, which joins outstanding worker threads.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        workers = max(self.settings.export_workers, 1)
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="export-job")
        self._futures: dict[UUID, Future] = {}

    def submit(self, job_id: UUID) -> Future:
        future = self._executor.submit(self.run, job_id)
        self._futures[job_id] = future
        future.add_done_callback(lambda _f, jid=job_id: self._futures.pop(jid, None))
        return future

    def wait(self, job_id: UUID, timeout: float | None = None) -> None:
        future = self._futures.pop(job_id, None)
        if future is not None:
            future.result(timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def run(self, job_id: UUID) -> str | None:
        """Render one job and return its final status (``None`` if skipped)."""
        with self.session_factory() as db:
            job = db.get(ExportJob, job_id)
            if job is None or job.status != JOB_PROCESSING:
                logger.info("Export job %s is not pending; skipping", job_id)
                return None

            try:
                values = self._render_to_file(db, job)
                final_status = JOB_COMPLETED
            except FutureTimeoutError:
                final_status = JOB_FAILED
                timeout = self.settings.export_render_timeout_seconds
                values = {"error_message": f"Export rendering timed out after {timeout:g} seconds"}
                logger.error("Export job %s timed out", job_id)
            except RenderError as exc:
                final_status = JOB_FAILED
                values = {"error_message": str(exc)}
                logger.error("Export job %s failed to render: %s", job_id, exc)
            except Exception as exc:
                final_status = JOB_FAILED
                values = {"error_message": f"Export failed: {type(exc).__name__}"}
                logger.exception("Export job %s failed", job_id)

            db.rollback()
            result = db.execute(
                update(ExportJob)
                .where(ExportJob.id == job_id, ExportJob.status == JOB_PROCESSING)
                .values(status=final_status, completed_at=utcnow(), **values)
            )
            db.commit()

        if result.rowcount != 1:
            logger.warning("Export job %s changed state concurrently", job_id)
            return None
        logger.info("Export job %s finished: %s", job_id, final_status)
        return final_status

    def _render_to_file(self, db: Session, job: ExportJob) -> dict:
        criteria = SearchCriteria.model_validate(job.criteria_json or {})
        rows = [
            LogRow.from_orm(log)
            for log in AuditQueryEngine(db).iter_logs(criteria, job.max_records)
        ]
        render_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="export-render")
        try:
            render = render_pool.submit(
                render_export,
                job.format,
                rows,
                include_content=job.include_content,
                include_metadata=job.include_metadata,
            )
            data = render.result(timeout=self.settings.export_render_timeout_seconds)
        finally:
            render_pool.shutdown(wait=False)

        export_dir = Path(self.settings.export_dir)
        export_dir.mkdir(parents=True, exist_ok=True)
        file_path = export_dir / f"{job.id}.{FILE_EXTENSIONS[job.format]}"
        file_path.write_bytes(data)

        return {
            "file_path": str(file_path),
            "record_count": len(rows),
            "download_url": download_url_for(job.id),
            "expires_at": utcnow() + timedelta(hours=self.settings.export_retention_hours),
        }


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


def cleanup_expired_exports(db: Session, *, now: datetime | None = None) -> int:
    """Delete files of expired jobs.  Flushes; the caller commits."""
    now = now or utcnow()
    removed = 0
    for job in ExportJobRepository(db).list_expired(now):
        Path(job.file_path).unlink(missing_ok=True)
        job.file_path = None
        removed += 1
    db.flush()
    if removed:
        logger.info("Removed %d expired export file(s)", removed)
    return removed
