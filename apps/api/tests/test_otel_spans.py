from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.auth import get_current_actor
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.identity.models import User
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel
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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def agent(db_session: Session) -> User:
    user = User(name="Agent One", email="agent1@example.com", password_hash="x", role="agent")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture()
def client(db_session: Session, agent: User) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor(request: Request) -> AuthContext:
        return AuthContext(
            user_id=agent.id,
            role=agent.role,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/leads",
        json={"name": "Span Lead", "email": "span@example.com"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_conversion_span_carries_lead_and_customer(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    lead = client.post(
        "/api/leads",
        json={"name": "Span Lead", "email": "span@example.com"},
        headers={"X-Correlation-Id": "otel-conv-1"},
    )
    assert lead.status_code == 201

    converted = client.post(f"/api/leads/{lead.json()['id']}/convert", headers={"X-Correlation-Id": "otel-conv-1"})
    assert converted.status_code == 201

    conversion_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.lead.convert"]
    assert conversion_spans
    assert any(
        span.attributes.get("lead_id") == lead.json()["id"]
        and span.attributes.get("customer_id") == converted.json()["customer"]["id"]
        and span.attributes.get("outcome") == "converted"
        and span.attributes.get("correlation_id") == "otel-conv-1"
        for span in conversion_spans
    )


def test_rejected_conversion_span_records_outcome(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    lead = client.post("/api/leads", json={"name": "Span Lead", "email": "span@example.com"})
    assert client.post(f"/api/leads/{lead.json()['id']}/convert").status_code == 201
    assert client.post(f"/api/leads/{lead.json()['id']}/convert").status_code == 409

    outcomes = [span.attributes.get("outcome") for span in span_exporter.get_finished_spans() if span.name == "crm.lead.convert"]
    assert "rejected" in outcomes
