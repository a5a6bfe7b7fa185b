from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.auth import AuthUser, get_current_user as auth_get_current_user
from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.crm.api import ActorUser
from leadflow.crm.api import get_current_user as crm_get_current_user
from leadflow.main import app
from leadflow.middleware.rate_limit import reset_rate_limiter


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
def organization_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, organization_id: uuid.UUID, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id=uuid.UUID(int=9),
            organization_id=organization_id,
            permissions={"crm.leads.read", "crm.leads.write", "crm.leads.convert", "crm.leads.assign"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_lead_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    lead = client.post(
        "/api/crm/leads",
        json={"first_name": "Metric", "last_name": "Lead", "email": "metric@example.com", "source": "Web"},
    )
    assert lead.status_code == 201
    lead_id = lead.json()["id"]

    qualified = client.put(f"/api/crm/leads/{lead_id}", json={"status": "qualified"})
    assert qualified.status_code == 200

    converted = client.post(f"/api/crm/leads/{lead_id}/convert", json={"create_contact": True})
    assert converted.status_code == 200

    bulk = client.post(
        "/api/crm/leads/bulk-assign",
        json={"lead_ids": [lead_id], "assigned_to_id": str(uuid.uuid4())},
    )
    assert bulk.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_lead_conversions_total" in body
    assert "crm_lead_conversion_duration_seconds" in body
    assert "crm_lead_bulk_updates_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/leads/{id}/convert"' in body
    assert 'outcome="converted"' in body
    assert 'operation="assign"' in body


@pytest.mark.parametrize("roles", [[]])
def test_metrics_endpoint_requires_role(client: TestClient) -> None:
    response = client.get("/metrics")

    assert response.status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
