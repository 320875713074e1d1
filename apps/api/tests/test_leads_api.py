from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timezone

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import get_current_actor
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import Lead
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


def _lead_payload(email: str = "jamie@example.com", **overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "name": "Jamie Smith",
        "email": email,
        "phone": "+1-555-0100",
        "source": "Website",
    }
    payload.update(overrides)
    return payload


def test_create_lead_defaults_status_and_assigns_caller(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, _ = client
    response = test_client.post("/api/leads", json=_lead_payload(email="Jamie@Example.com"))
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "New"
    assert body["email"] == "jamie@example.com"
    assert body["assigned_agent_id"] == str(users["agent1"].id)
    assert body["assigned_agent"]["name"] == "Agent One"
    assert body["is_archived"] is False


def test_create_lead_rejects_bad_email_and_status(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    bad_email = test_client.post("/api/leads", json=_lead_payload(email="not-an-email"))
    assert bad_email.status_code == 400
    assert bad_email.json()["code"] == "validation_failed"

    bad_status = test_client.post("/api/leads", json=_lead_payload(status="Maybe"))
    assert bad_status.status_code == 400


def test_agent_cannot_assign_lead_to_someone_else(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    response = test_client.post("/api/leads", json=_lead_payload(assigned_agent_id=str(users["agent2"].id)))
    assert response.status_code == 403
    assert response.json()["code"] == "crm_lead_create_failed"

    set_actor("admin")
    assigned = test_client.post("/api/leads", json=_lead_payload(assigned_agent_id=str(users["agent2"].id)))
    assert assigned.status_code == 201
    assert assigned.json()["assigned_agent_id"] == str(users["agent2"].id)


def test_duplicate_email_only_among_active_leads(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client
    first = test_client.post("/api/leads", json=_lead_payload())
    assert first.status_code == 201

    duplicate = test_client.post("/api/leads", json=_lead_payload())
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "crm_lead_create_failed"

    set_actor("admin")
    archived = test_client.delete(f"/api/leads/{first.json()['id']}")
    assert archived.status_code == 200

    set_actor("agent1")
    recreated = test_client.post("/api/leads", json=_lead_payload())
    assert recreated.status_code == 201


def test_list_leads_is_scoped_and_paginated(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client
    for index in range(3):
        assert test_client.post("/api/leads", json=_lead_payload(email=f"mine{index}@example.com")).status_code == 201

    set_actor("agent2")
    assert test_client.post("/api/leads", json=_lead_payload(email="theirs@example.com")).status_code == 201

    set_actor("agent1")
    listed = test_client.get("/api/leads", params={"limit": 2, "page": 1})
    assert listed.status_code == 200
    body = listed.json()
    assert body["total_count"] == 3
    assert body["total_pages"] == 2
    assert body["current_page"] == 1
    assert len(body["items"]) == 2
    assert all(item["email"].startswith("mine") for item in body["items"])

    second_page = test_client.get("/api/leads", params={"limit": 2, "page": 2}).json()
    assert len(second_page["items"]) == 1
    seen = {item["id"] for item in body["items"]} | {item["id"] for item in second_page["items"]}
    assert len(seen) == 3

    set_actor("admin")
    assert test_client.get("/api/leads").json()["total_count"] == 4


def test_repeated_page_requests_return_identical_order(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, _ = client
    created_at = datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)
    db_session.add_all(
        [
            Lead(
                name="Same Time",
                email=f"tied{index}@example.com",
                assigned_agent_id=users["agent1"].id,
                created_at=created_at,
            )
            for index in range(12)
        ]
    )
    db_session.commit()

    params = {"page": 1, "limit": 10}
    first = [item["id"] for item in test_client.get("/api/leads", params=params).json()["items"]]
    second = [item["id"] for item in test_client.get("/api/leads", params=params).json()["items"]]
    assert len(first) == 10
    assert first == second
    assert first == sorted(first)

    by_name = {"page": 1, "limit": 10, "sort_by": "name", "sort_order": "asc"}
    assert [item["id"] for item in test_client.get("/api/leads", params=by_name).json()["items"]] == first

    rest = [item["id"] for item in test_client.get("/api/leads", params={"page": 2, "limit": 10}).json()["items"]]
    assert len(rest) == 2
    assert not set(first) & set(rest)


def test_list_leads_search_and_sort(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    assert test_client.post("/api/leads", json=_lead_payload(email="zed@example.com", name="Zed")).status_code == 201
    assert test_client.post("/api/leads", json=_lead_payload(email="amy@example.com", name="Amy")).status_code == 201
    assert (
        test_client.post("/api/leads", json=_lead_payload(email="other@example.com", name="Other", source="Referral")).status_code
        == 201
    )

    searched = test_client.get("/api/leads", params={"search": "referral"}).json()
    assert [item["name"] for item in searched["items"]] == ["Other"]

    ordered = test_client.get("/api/leads", params={"sort_by": "name", "sort_order": "asc"}).json()
    assert [item["name"] for item in ordered["items"]] == ["Amy", "Other", "Zed"]

    bad_sort = test_client.get("/api/leads", params={"sort_by": "password"})
    assert bad_sort.status_code == 400

    status_filtered = test_client.get("/api/leads", params={"status": "Closed Won"}).json()
    assert status_filtered["total_count"] == 0
    assert status_filtered["total_pages"] == 0


def test_get_lead_fails_closed_for_other_agents(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client
    created = test_client.post("/api/leads", json=_lead_payload())
    lead_id = created.json()["id"]

    set_actor("agent2")
    foreign = test_client.get(f"/api/leads/{lead_id}")
    assert foreign.status_code == 403
    missing = test_client.get(f"/api/leads/{uuid.uuid4()}")
    assert missing.status_code == 403

    set_actor("admin")
    assert test_client.get(f"/api/leads/{lead_id}").status_code == 200
    assert test_client.get(f"/api/leads/{uuid.uuid4()}").status_code == 404

    malformed = test_client.get("/api/leads/not-a-uuid")
    assert malformed.status_code == 400


def test_update_lead_enforces_field_allow_list(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    lead_id = test_client.post("/api/leads", json=_lead_payload()).json()["id"]

    updated = test_client.patch(f"/api/leads/{lead_id}", json={"status": "In Progress", "notes": "Called"})
    assert updated.status_code == 200
    assert updated.json()["status"] == "In Progress"
    assert updated.json()["notes"] == "Called"

    unknown = test_client.patch(f"/api/leads/{lead_id}", json={"is_archived": True})
    assert unknown.status_code == 400

    reassign = test_client.put(f"/api/leads/{lead_id}", json={"assigned_agent_id": str(users["agent2"].id)})
    assert reassign.status_code == 403

    set_actor("admin")
    reassigned = test_client.put(f"/api/leads/{lead_id}", json={"assigned_agent_id": str(users["agent2"].id)})
    assert reassigned.status_code == 200
    assert reassigned.json()["assigned_agent_id"] == str(users["agent2"].id)


def test_delete_lead_is_admin_only_soft_archive(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    lead_id = test_client.post("/api/leads", json=_lead_payload()).json()["id"]

    denied = test_client.delete(f"/api/leads/{lead_id}")
    assert denied.status_code == 403

    set_actor("admin")
    archived = test_client.delete(f"/api/leads/{lead_id}")
    assert archived.status_code == 200
    assert archived.json()["message"] == "Lead archived successfully"

    row = db_session.scalar(select(Lead).where(Lead.id == uuid.UUID(lead_id)))
    assert row is not None
    assert row.is_archived is True
    assert test_client.get(f"/api/leads/{lead_id}").status_code == 404
    assert test_client.get("/api/leads").json()["total_count"] == 0


def test_lead_stats_and_activity_trail(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    assert test_client.post("/api/leads", json=_lead_payload(email="a@example.com")).status_code == 201
    assert test_client.post("/api/leads", json=_lead_payload(email="b@example.com", status="Closed Won")).status_code == 201
    assert test_client.post("/api/leads", json=_lead_payload(email="c@example.com", source=None)).status_code == 201

    stats = test_client.get("/api/leads/stats/status").json()
    assert stats == {"new": 2, "in_progress": 0, "closed_won": 1, "closed_lost": 0, "total": 3}

    sources = test_client.get("/api/leads/stats/source").json()
    assert sources[0] == {"name": "Website", "value": 2}
    assert {"name": "Unknown", "value": 1} in sources

    actions = db_session.scalars(select(Activity.action).where(Activity.entity_type == "Lead")).all()
    assert actions.count("Lead created") == 3
