from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from funnelcrm.core.config import get_settings
from funnelcrm.core.database import Base, get_db
from funnelcrm.crm.api import get_current_user as crm_get_current_user
from funnelcrm.crm.service import ActorUser
from funnelcrm.main import app
from funnelcrm.middleware.rate_limit import reset_rate_limiter


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id=1,
            company_id=100,
            permissions={"crm.funnels.read", "crm.funnels.manage"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _token(sub: str) -> str:
    settings = get_settings()
    return jwt.encode({"sub": sub, "company_id": 100, "roles": []}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def test_mutating_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = [client.post("/api/funnels", json={"name": f"Funnel {index}"}) for index in range(5)]

    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "rate_limited"
    assert body["message"] == "Too many requests"
    assert body["details"]["retry_after"] >= 1
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = client.post("/api/funnels", json={"name": "Readable Funnel"})
    assert create.status_code == 201

    responses = [client.get("/api/funnels") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_buckets_are_per_user(client: TestClient) -> None:
    first_user = {"Authorization": f"Bearer {_token('1')}"}
    second_user = {"Authorization": f"Bearer {_token('2')}"}

    for index in range(3):
        assert client.post("/api/funnels", json={"name": f"F{index}"}, headers=first_user).status_code == 201
    assert client.post("/api/funnels", json={"name": "Blocked"}, headers=first_user).status_code == 429
    assert client.post("/api/funnels", json={"name": "Other"}, headers=second_user).status_code == 201


def test_buckets_are_per_resource_group(client: TestClient) -> None:
    funnel = client.post("/api/funnels", json={"name": "Grouped"})
    assert funnel.status_code == 201
    for index in range(2):
        assert client.post("/api/funnels", json={"name": f"G{index}"}).status_code == 201
    assert client.post("/api/funnels", json={"name": "Blocked"}).status_code == 429

    lead = client.post("/api/leads", json={"funnel_id": funnel.json()["id"]})
    assert lead.status_code != 429
