from __future__ import annotations

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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def users(db_session: Session) -> dict[str, User]:
    rows = {
        "admin": User(name="Metrics Admin", email="metrics@example.com", password_hash="x", role="admin"),
        "agent": User(name="Metrics Agent", email="agent@example.com", password_hash="x", role="agent"),
    }
    db_session.add_all(rows.values())
    db_session.commit()
    return rows


@pytest.fixture()
def client(db_session: Session, users: dict[str, User]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor(request: Request) -> AuthContext:
        user = users["admin"]
        return AuthContext(user_id=user.id, role=user.role, correlation_id="metrics-corr-1")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_conversion_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    lead = client.post("/api/leads", json={"name": "Metrics Lead", "email": "metrics-lead@example.com"})
    assert lead.status_code == 201
    converted = client.post(f"/api/leads/{lead.json()['id']}/convert")
    assert converted.status_code == 201

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_lead_conversions_total" in body
    assert "crm_lead_conversion_duration_seconds" in body
    assert "crm_activity_records_total" in body
    assert 'path="/health"' in body
    assert 'path="/api/leads/{id}/convert"' in body
    assert 'outcome="converted"' in body


def test_metrics_endpoint_requires_admin(client: TestClient, users: dict[str, User]) -> None:
    def agent_actor(request: Request) -> AuthContext:
        return AuthContext(user_id=users["agent"].id, role="agent")

    app.dependency_overrides[get_current_actor] = agent_actor
    response = client.get("/metrics")
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    assert client.get("/metrics").status_code == 404
