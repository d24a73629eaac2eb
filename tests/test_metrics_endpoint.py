from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice.core.auth import AuthUser, get_current_user
from backoffice.core.config import get_settings
from backoffice.core.database import Base, get_db
from backoffice.main import app


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
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_report_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    generated = client.post("/reports/generate", json={"entity": "grants", "fields": ["name", "amount"]})
    assert generated.status_code == 200

    rejected = client.post(
        "/reports/export",
        json={"definition": {"entity": "grants", "fields": ["name"]}, "format": "pdf"},
    )
    assert rejected.status_code == 400

    created = client.post(
        "/reports/saved",
        json={"name": "Grants", "definition": {"entity": "grants", "fields": ["name"]}},
    )
    assert created.status_code == 201
    published = client.post(f"/reports/saved/{created.json()['id']}/public-link")
    assert published.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "report_runs_total" in body
    assert "report_query_duration_seconds" in body
    assert "saved_report_transitions_total" in body

    assert 'path="/health"' in body
    assert 'path="/reports/saved/{id}/public-link"' in body
    assert 'entity="grants",format="json",outcome="success"' in body
    assert 'from_state="private",to_state="public"' in body


def test_metrics_requires_permission(client: TestClient) -> None:
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="user-1", roles=["staff"])

    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_disabled_returns_404(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
