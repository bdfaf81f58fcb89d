"""
Tests for health check endpoints.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from booking_engine.config import settings
from booking_engine.main import app

client = TestClient(app)


@pytest.fixture
def container(monkeypatch):
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", "client-id")
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_SECRET", "client-secret")
    monkeypatch.setattr(settings, "INTERNAL_API_KEY", "internal-key")

    fake = SimpleNamespace(
        settings=settings,
        redis=SimpleNamespace(ping=AsyncMock(return_value=True)),
        db=SimpleNamespace(
            health_check=AsyncMock(
                return_value={"healthy": True, "pool_stats": {"pool_size": 3, "pool_available": 3}}
            )
        ),
    )
    app.state.container = fake
    yield fake
    del app.state.container


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "booking-engine"


def test_readyz_endpoint_all_services_healthy(container):
    """Test readiness endpoint when all services are healthy."""
    response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True

    checks = data["checks"]
    assert checks["redis"]["ok"] is True
    assert checks["database"]["ok"] is True
    assert checks["database"]["pool_stats"]["pool_size"] == 3
    assert checks["configuration"]["ok"] is True


def test_readyz_endpoint_redis_unhealthy(container):
    """Test readiness endpoint when Redis is down."""
    container.redis.ping.return_value = False

    data = client.get("/readyz").json()

    assert data["overall_ok"] is False
    assert data["checks"]["redis"]["ok"] is False
    assert data["checks"]["database"]["ok"] is True


def test_readyz_endpoint_database_unhealthy(container):
    """Test readiness endpoint when the pool reports an error."""
    container.db.health_check.return_value = {"healthy": False, "error": "connection refused"}

    data = client.get("/readyz").json()

    assert data["overall_ok"] is False
    assert data["checks"]["database"]["error"] == "connection refused"


def test_readyz_reports_missing_configuration(container, monkeypatch):
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", None)
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", None)

    data = client.get("/readyz").json()

    assert data["overall_ok"] is False
    issues = data["checks"]["configuration"]["issues"]
    assert "Google OAuth client not configured" in issues
    assert "ENCRYPTION_KEY missing or invalid" in issues


def test_request_id_is_echoed():
    response = client.get("/healthz", headers={"X-Request-ID": "call-42-req"})

    assert response.headers["X-Request-ID"] == "call-42-req"


def test_request_id_generated_when_missing():
    response = client.get("/healthz")

    assert len(response.headers["X-Request-ID"]) == 36
