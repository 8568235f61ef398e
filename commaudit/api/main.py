"""FastAPI application factory.

Assembles CORS, the HTML-safe JSON middleware, domain error handlers and
all API routers.  This module is the authoritative app object;
commaudit/main.py re-exports it.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from commaudit.api.deps import get_export_runner
from commaudit.api.middleware.html_escape import HTMLSafeJSONMiddleware
from commaudit.api.routes.communication_audit import router as communication_audit_router
from commaudit.api.routes.communication_export import router as communication_export_router
from commaudit.api.routes.communication_reports import router as communication_reports_router
from commaudit.api.routes.health import router as health_router
from commaudit.api.routes.webhooks import router as webhooks_router
from commaudit.core.errors import InternalError, NotFoundError, RenderError, ValidationError
from commaudit.core.logging import setup_logging
from commaudit.core.settings import get_settings
from commaudit.db.session import get_session_factory
from commaudit.export.engine import cleanup_expired_exports

logger = logging.getLogger(__name__)


def sweep_expired_exports_once() -> int:
    """Delete files of expired export jobs in one committed transaction."""
    with get_session_factory()() as db:
        removed = cleanup_expired_exports(db)
        db.commit()
    return removed


async def _sweep_expired_exports() -> None:
    """Periodically delete export files past their retention window."""
    interval = get_settings().export_sweep_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(sweep_expired_exports_once)
        except Exception:
            logger.exception("Export retention sweep failed")


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    task = asyncio.create_task(_sweep_expired_exports())
    yield
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    if get_export_runner.cache_info().currsize:
        get_export_runner().shutdown()


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS: restrict origins in production via a reverse proxy
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Registered after CORS so it runs on the inner response
app.add_middleware(HTMLSafeJSONMiddleware)


@app.exception_handler(ValidationError)
async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content=exc.to_dict())


@app.exception_handler(NotFoundError)
async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(RenderError)
async def _render_error(_: Request, exc: RenderError) -> JSONResponse:
    logger.error("Export rendering failed: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Export rendering failed"})


@app.exception_handler(InternalError)
async def _internal_error(_: Request, exc: InternalError) -> JSONResponse:
    logger.error("Internal error: %s", exc, exc_info=exc.__cause__)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(health_router)
app.include_router(communication_audit_router)
app.include_router(communication_export_router)
app.include_router(communication_reports_router)
app.include_router(webhooks_router)
