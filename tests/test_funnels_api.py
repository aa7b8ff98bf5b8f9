from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from funnelcrm import events
from funnelcrm.core.config import get_settings
from funnelcrm.core.database import Base, get_db
from funnelcrm.crm.api import get_current_user
from funnelcrm.crm.service import ActorUser
from funnelcrm.main import app
from funnelcrm.middleware.rate_limit import reset_rate_limiter


MANAGER_PERMISSIONS = {
    "crm.funnels.read",
    "crm.funnels.manage",
    "crm.leads.read",
    "crm.leads.write",
}


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


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "manager": ActorUser(user_id=1, company_id=100, permissions=set(MANAGER_PERMISSIONS), correlation_id="corr-funnel"),
        "reader": ActorUser(user_id=2, company_id=100, permissions={"crm.funnels.read"}, correlation_id="corr-funnel"),
        "outsider": ActorUser(user_id=3, company_id=200, permissions=set(MANAGER_PERMISSIONS), correlation_id="corr-funnel"),
    }
    state = {"current": "manager"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_funnel(test_client: TestClient, name: str = "Sales", stages: tuple[str, ...] = ("New", "Won")) -> dict:
    response = test_client.post("/api/funnels", json={"name": name, "description": "Inbound pipeline"})
    assert response.status_code == 201
    funnel = response.json()
    for stage_name in stages:
        created = test_client.post(f"/api/funnels/{funnel['id']}/stages", json={"name": stage_name})
        assert created.status_code == 201
    return funnel


def test_create_and_get_funnel_with_ordered_stages(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    funnel = _create_funnel(test_client, stages=("New", "Contacted", "Won"))
    assert funnel["company_id"] == 100
    assert funnel["created_by"] == 1
    assert funnel["type"] == "funnel"

    response = test_client.get(f"/api/funnels/{funnel['id']}")
    assert response.status_code == 200
    body = response.json()
    assert [(stage["name"], stage["order"]) for stage in body["stages"]] == [("New", 1), ("Contacted", 2), ("Won", 3)]


def test_list_funnels_filters_and_tenant_scope(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    _create_funnel(test_client, name="Sales")
    model = test_client.post("/api/funnels", json={"name": "Template", "type": "model", "is_active": False})
    assert model.status_code == 201

    assert [item["name"] for item in test_client.get("/api/funnels").json()] == ["Sales", "Template"]
    assert [item["name"] for item in test_client.get("/api/funnels", params={"type": "model"}).json()] == ["Template"]
    assert [item["name"] for item in test_client.get("/api/funnels", params={"is_active": True}).json()] == ["Sales"]

    set_actor("outsider")
    assert test_client.get("/api/funnels").json() == []


def test_foreign_funnel_is_not_found(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    funnel = _create_funnel(test_client)

    set_actor("outsider")
    response = test_client.get(f"/api/funnels/{funnel['id']}")
    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "not_found"
    assert body["details"] == {"resource": "funnel", "id": funnel["id"]}


def test_reader_cannot_manage_funnels(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    funnel = _create_funnel(test_client)

    set_actor("reader")
    assert test_client.get(f"/api/funnels/{funnel['id']}").status_code == 200
    response = test_client.patch(f"/api/funnels/{funnel['id']}", json={"name": "Renamed"})
    assert response.status_code == 403
    assert response.json()["code"] == "crm_funnel_update_failed"
    assert response.json()["message"] == "Missing permission: crm.funnels.manage"


def test_patch_funnel(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    funnel = _create_funnel(test_client)

    response = test_client.patch(
        f"/api/funnels/{funnel['id']}",
        json={"name": "  Renamed  ", "settings": {"currency": "EUR"}},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "Renamed"
    assert body["settings"] == {"currency": "EUR"}
    assert body["description"] == "Inbound pipeline"


def test_delete_and_restore_funnel_cascade(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    funnel = _create_funnel(test_client, stages=("New", "Contacted", "Won"))
    events.published_events.clear()

    deleted = test_client.delete(f"/api/funnels/{funnel['id']}")
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}
    assert test_client.get(f"/api/funnels/{funnel['id']}").status_code == 404
    assert test_client.get(f"/api/funnels/{funnel['id']}/stages").status_code == 404

    restored = test_client.post(f"/api/funnels/{funnel['id']}/restore")
    assert restored.status_code == 200
    assert [(stage["name"], stage["order"]) for stage in restored.json()["stages"]] == [
        ("New", 1),
        ("Contacted", 2),
        ("Won", 3),
    ]
    event_types = [event["event_type"] for event in events.published_events]
    assert event_types == ["crm.funnel.deleted", "crm.funnel.restored"]


def test_duplicate_funnel(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    funnel = _create_funnel(test_client, stages=("New", "Won"))

    default_copy = test_client.post(f"/api/funnels/{funnel['id']}/duplicate")
    assert default_copy.status_code == 201
    assert default_copy.json()["name"] == "Sales (copy)"
    assert [stage["name"] for stage in default_copy.json()["stages"]] == ["New", "Won"]

    named = test_client.post(f"/api/funnels/{funnel['id']}/duplicate", json={"name": "Partner", "type": "model"})
    assert named.status_code == 201
    assert named.json()["name"] == "Partner"
    assert named.json()["type"] == "model"
    assert named.json()["stages"][0]["funnel_id"] == named.json()["id"]


def test_board_groups_active_leads_by_stage(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    funnel = _create_funnel(test_client, stages=("New", "Won"))
    stages = test_client.get(f"/api/funnels/{funnel['id']}/stages").json()

    first = test_client.post("/api/leads", json={"funnel_id": funnel["id"], "first_name": "Ada"}).json()
    second = test_client.post("/api/leads", json={"funnel_id": funnel["id"], "first_name": "Alan"}).json()
    won = test_client.post(
        "/api/leads",
        json={"funnel_id": funnel["id"], "stage_id": stages[1]["id"], "first_name": "Grace"},
    ).json()
    gone = test_client.post("/api/leads", json={"funnel_id": funnel["id"], "first_name": "Gone"}).json()
    assert test_client.delete(f"/api/leads/{gone['id']}").status_code == 200

    response = test_client.get(f"/api/funnels/{funnel['id']}/board")
    assert response.status_code == 200
    board = response.json()
    assert board["funnel"]["id"] == funnel["id"]
    assert [stage["name"] for stage in board["stages"]] == ["New", "Won"]
    assert [lead["id"] for lead in board["stages"][0]["leads"]] == [second["id"], first["id"]]
    assert [lead["id"] for lead in board["stages"][1]["leads"]] == [won["id"]]


def test_invalid_funnel_type_is_validation_error(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post("/api/funnels", json={"name": "Bad", "type": "kanban"})
    assert response.status_code == 422
