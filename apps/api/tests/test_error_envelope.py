from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import get_current_actor
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.service import lead_service
from app.identity.models import User
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.security.context import AuthContext


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    agent = User(name="Agent One", email="agent1@example.com", password_hash="x", role="agent")
    db_session.add(agent)
    db_session.commit()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor(request: Request) -> AuthContext:
        return AuthContext(user_id=agent.id, role=agent.role)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_unexpected_errors_become_internal_error_envelope(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.ERROR)

    def boom(*args: object, **kwargs: object) -> None:
        raise RuntimeError("connection string leaked: postgres://secret")

    monkeypatch.setattr(lead_service, "list_leads", boom)

    response = client.get("/api/leads", headers={"X-Correlation-Id": "boom-1"})
    assert response.status_code == 500
    body = response.json()
    assert body == {
        "code": "internal_error",
        "message": "internal server error",
        "details": None,
        "correlation_id": "boom-1",
    }
    assert "secret" not in response.text

    errors = [record for record in caplog.records if record.name == "app.errors" and record.getMessage() == "request.unhandled_error"]
    assert errors
    assert getattr(errors[0], "error", None) == "RuntimeError"


def test_unknown_route_and_method_use_envelope(client: TestClient) -> None:
    missing = client.get("/api/nothing-here")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"

    wrong_method = client.put("/api/dashboard")
    assert wrong_method.status_code == 405
    assert wrong_method.json()["code"] == "method_not_allowed"


def test_query_validation_uses_envelope(client: TestClient) -> None:
    response = client.get("/api/leads", params={"limit": 0})
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "validation_failed"
    assert body["details"][0]["loc"] == ["query", "limit"]
