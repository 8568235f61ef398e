from __future__ import annotations

from unittest.mock import MagicMock
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from commaudit.db.base import Base
from commaudit.db.models import Order

ORG_A = UUID("11111111-1111-4111-8111-111111111111")
ORG_B = UUID("22222222-2222-4222-8222-222222222222")
STAFF_ROLE = "ColorGarbStaff"


@pytest.fixture(autouse=True)
def _settings_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Point settings at throwaway resources for every test."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("STAFF_ROLE", STAFF_ROLE)
    monkeypatch.setenv("EXPORT_DIR", str(tmp_path / "exports"))
    monkeypatch.delenv("SENDGRID_WEBHOOK_PUBLIC_KEY", raising=False)
    monkeypatch.delenv("TWILIO_VALIDATE_SIGNATURES", raising=False)

    from commaudit.core.settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db_session(session_factory) -> Session:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def make_order(db_session: Session):
    """Factory for orders owned by an organization."""

    def _make(organization_id: UUID = ORG_A, order_number: str | None = None) -> Order:
        order = Order(
            organization_id=organization_id,
            order_number=order_number or f"CG-{uuid4().hex[:6].upper()}",
        )
        db_session.add(order)
        db_session.flush()
        return order

    return _make


@pytest.fixture()
def auth_headers():
    """Factory for ``Authorization`` headers carrying a signed bearer token."""
    from commaudit.core.security import create_access_token

    def _headers(
        role: str = "Director",
        organization_id: UUID | None = ORG_A,
        user_id: str | None = None,
    ) -> dict[str, str]:
        token = create_access_token(user_id or str(uuid4()), role, organization_id)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def export_runner() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def client(db_session: Session, export_runner: MagicMock) -> TestClient:
    """TestClient with get_db overridden to use the in-memory session."""
    from commaudit.api.deps import get_db, get_export_runner
    from commaudit.api.main import app

    def _override_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_export_runner] = lambda: export_runner
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()
