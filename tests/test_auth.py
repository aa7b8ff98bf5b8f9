from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from funnelcrm.core.config import get_settings
from funnelcrm.core.database import Base, get_db
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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _bearer(claims: dict) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def test_token_claims_drive_tenant_and_permissions(client: TestClient) -> None:
    headers = _bearer(
        {
            "sub": "5",
            "company_id": "100",
            "roles": ["sales"],
            "permissions": ["crm.funnels.read", "crm.funnels.manage"],
        }
    )

    created = client.post("/api/funnels", json={"name": "Token Funnel"}, headers=headers)
    assert created.status_code == 201
    assert created.json()["company_id"] == 100
    assert created.json()["created_by"] == 5
    assert created.headers["x-company-id"] == "100"

    me = client.get("/me", headers=headers)
    assert me.json() == {"sub": "5", "company_id": 100, "roles": ["sales"]}


def test_anonymous_caller_is_denied(client: TestClient) -> None:
    response = client.post("/api/funnels", json={"name": "Nope"})
    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: crm.funnels.manage"

    me = client.get("/me")
    assert me.json() == {"sub": "anonymous", "company_id": None, "roles": ["guest"]}


def test_invalid_token_is_treated_as_anonymous(client: TestClient) -> None:
    response = client.get("/api/funnels", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 403
