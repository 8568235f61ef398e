"""FastAPI dependency injection: database sessions and service factories."""
from __future__ import annotations

from collections.abc import Generator
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from commaudit.core.errors import InternalError
from commaudit.core.settings import get_settings
from commaudit.db.session import get_session_factory
from commaudit.delivery.store import CommunicationLogStore
from commaudit.export.engine import ExportEngine, ExportJobRunner
from commaudit.query.engine import AuditQueryEngine

WEBHOOK_ACTOR = "provider-webhook"


def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error."""
    factory = get_session_factory()
    db = factory()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise InternalError("Storage unavailable") from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@lru_cache(maxsize=1)
def get_export_runner() -> ExportJobRunner:
    """Process-wide runner for queued export jobs."""
    return ExportJobRunner(get_session_factory())


def get_query_engine(db: Session = Depends(get_db)) -> AuditQueryEngine:
    return AuditQueryEngine(db)


def get_export_engine(db: Session = Depends(get_db)) -> ExportEngine:
    return ExportEngine(db)


def get_webhook_store(db: Session = Depends(get_db)) -> CommunicationLogStore:
    """Return a store bound to the current session that audits as the webhook actor."""
    return CommunicationLogStore(
        db,
        default_phone_region=get_settings().default_phone_region,
        actor=WEBHOOK_ACTOR,
    )
