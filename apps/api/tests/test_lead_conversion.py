from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import get_current_actor
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import Customer, Lead
from app.identity.models import User
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.models.activity import Activity
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
    monkeypatch.delenv("BLOCK_CLOSED_LEAD_CONVERSION", raising=False)
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def users(db_session: Session) -> dict[str, User]:
    rows = {
        "admin": User(name="Admin", email="admin@example.com", password_hash="x", role="admin"),
        "agent1": User(name="Agent One", email="agent1@example.com", password_hash="x", role="agent"),
        "agent2": User(name="Agent Two", email="agent2@example.com", password_hash="x", role="agent"),
    }
    db_session.add_all(rows.values())
    db_session.commit()
    return rows


@pytest.fixture()
def client(
    db_session: Session,
    users: dict[str, User],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "agent1"}

    def override_get_current_actor(request: Request) -> AuthContext:
        user = users[state["current"]]
        return AuthContext(
            user_id=user.id,
            role=user.role,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_lead(test_client: TestClient, email: str = "jamie@example.com", **overrides: object) -> dict:
    payload: dict[str, object] = {"name": "Jamie Smith", "email": email, "phone": "555-0100", "source": "Referral"}
    payload.update(overrides)
    response = test_client.post("/api/leads", json=payload)
    assert response.status_code == 201
    return response.json()


def test_convert_lead_creates_linked_customer_and_archives_lead(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    response = test_client.post(f"/api/leads/{lead['id']}/convert")
    assert response.status_code == 201
    body = response.json()
    customer = body["customer"]
    assert body["lead_id"] == lead["id"]
    assert customer["email"] == "jamie@example.com"
    assert customer["name"] == "Jamie Smith"
    assert customer["phone"] == "555-0100"
    assert customer["company"] == "Referral"
    assert customer["owner_id"] == str(users["agent1"].id)
    assert customer["converted_from_lead_id"] == lead["id"]
    assert customer["tags"] == ["converted-lead"]

    row = db_session.scalar(select(Lead).where(Lead.id == uuid.UUID(lead["id"])))
    assert row is not None
    assert row.is_archived is True
    assert row.status == "Closed Won"
    assert str(row.converted_customer_id) == customer["id"]

    listed = test_client.get("/api/leads").json()
    assert listed["total_count"] == 0

    actions = set(db_session.scalars(select(Activity.action)).all())
    assert {"Lead converted to customer", "Customer created from lead"} <= actions


def test_company_defaults_when_lead_has_no_source(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client, source=None)
    response = test_client.post(f"/api/leads/{lead['id']}/convert")
    assert response.status_code == 201
    assert response.json()["customer"]["company"] == "Not specified"


def test_second_conversion_conflicts(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)
    assert test_client.post(f"/api/leads/{lead['id']}/convert").status_code == 201

    again = test_client.post(f"/api/leads/{lead['id']}/convert")
    assert again.status_code == 409
    assert again.json()["code"] == "crm_lead_convert_failed"
    assert db_session.scalar(select(func.count()).select_from(Customer)) == 1


def test_conversion_conflicts_with_existing_customer_email(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    assert test_client.post("/api/customers", json={"name": "Existing", "email": "jamie@example.com"}).status_code == 201
    lead = _create_lead(test_client)

    response = test_client.post(f"/api/leads/{lead['id']}/convert")
    assert response.status_code == 409

    row = db_session.scalar(select(Lead).where(Lead.id == uuid.UUID(lead["id"])))
    assert row is not None
    assert row.is_archived is False
    assert row.status == "New"


def test_conversion_fails_closed_for_other_agents(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client
    lead = _create_lead(test_client)

    set_actor("agent2")
    assert test_client.post(f"/api/leads/{lead['id']}/convert").status_code == 403
    assert test_client.post(f"/api/leads/{uuid.uuid4()}/convert").status_code == 403

    set_actor("admin")
    assert test_client.post(f"/api/leads/{uuid.uuid4()}/convert").status_code == 404
    assert test_client.post(f"/api/leads/{lead['id']}/convert").status_code == 201


def test_closed_lead_guard_is_opt_in(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    lost = _create_lead(test_client, email="lost@example.com", status="Closed Lost")
    assert test_client.post(f"/api/leads/{lost['id']}/convert").status_code == 201

    monkeypatch.setenv("BLOCK_CLOSED_LEAD_CONVERSION", "true")
    get_settings.cache_clear()
    blocked = _create_lead(test_client, email="blocked@example.com", status="Closed Lost")
    response = test_client.post(f"/api/leads/{blocked['id']}/convert")
    assert response.status_code == 400


def test_failed_commit_leaves_no_partial_conversion(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    original_commit = db_session.commit

    def failing_commit() -> None:
        if any(isinstance(item, Customer) for item in db_session.new) or any(
            isinstance(item, Lead) and item.is_archived for item in db_session.dirty
        ):
            raise RuntimeError("database went away")
        original_commit()

    monkeypatch.setattr(db_session, "commit", failing_commit)
    with TestClient(app, raise_server_exceptions=False) as failing_client:
        response = failing_client.post(f"/api/leads/{lead['id']}/convert")
    monkeypatch.setattr(db_session, "commit", original_commit)

    assert response.status_code == 500
    assert response.json()["code"] == "internal_error"
    assert db_session.scalar(select(func.count()).select_from(Customer)) == 0
    row = db_session.scalar(select(Lead).where(Lead.id == uuid.UUID(lead["id"])))
    assert row is not None
    assert row.is_archived is False


def test_reconcile_archives_leads_left_behind(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    lead = Lead(name="Half Done", email="half@example.com", assigned_agent_id=users["agent1"].id)
    db_session.add(lead)
    db_session.flush()
    customer = Customer(
        name="Half Done",
        email="half@example.com",
        tags=["converted-lead"],
        owner_id=users["agent1"].id,
        converted_from_lead_id=lead.id,
    )
    db_session.add(customer)
    db_session.commit()

    assert test_client.post("/api/leads/reconcile-conversions").status_code == 403

    set_actor("admin")
    response = test_client.post("/api/leads/reconcile-conversions")
    assert response.status_code == 200
    assert response.json() == {"repaired_lead_ids": [str(lead.id)], "count": 1}

    db_session.refresh(lead)
    assert lead.is_archived is True
    assert lead.status == "Closed Won"
    assert lead.converted_customer_id == customer.id

    second = test_client.post("/api/leads/reconcile-conversions")
    assert second.json()["count"] == 0
