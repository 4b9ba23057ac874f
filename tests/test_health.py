"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' against the device registry
  - No authentication required
  - degraded status when the registry cannot answer
"""

from __future__ import annotations

from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    client, _token, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert data["components"]["app"] == "ok"
    assert data["components"]["database"] == "ok"


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_health_degraded_when_database_unreachable(api_client):
    """A failing registry connection reports degraded, not a 500."""
    client, _, _ = api_client
    real_registry = client.app.state.registry
    broken = MagicMock()
    broken.engine.connect.side_effect = OperationalError("SELECT 1", {}, Exception("down"))
    client.app.state.registry = broken
    try:
        resp = client.get("/api/v1/health")
    finally:
        client.app.state.registry = real_registry
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "error"
