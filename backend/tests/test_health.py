"""Tests for health check endpoints."""

import pytest


@pytest.mark.unit
class TestHealth:
    """Health endpoint tests."""

    @pytest.mark.asyncio
    async def test_health_v1(self, client):
        """GET /api/v1/health returns 200 with app info."""
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["app"] == "Workflow Execution Engine"
        assert "version" in data

    @pytest.mark.asyncio
    async def test_health_root(self, client):
        """GET /api/health returns 200 (unversioned, for LB health checks)."""
        resp = await client.get("/api/health")
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_engine_status(self, client, manager):
        resp = await client.get("/api/v1/health/status")
        assert resp.status_code == 200
        data = resp.json()
        assert "uptime_seconds" in data
        assert data["components"]["persistence"] == "ok"
        assert data["components"]["websocket_clients"] == 0
        assert data["workers"] == {"max": manager.max_workers, "active": 0, "queued": 0}
        assert "echo" in data["step_types"]
        assert all(owner is None for owner in data["debug_sessions"].values())

    @pytest.mark.asyncio
    async def test_response_has_request_id(self, client):
        """Every response should have X-Request-ID header."""
        resp = await client.get("/api/v1/health")
        assert "x-request-id" in resp.headers
        assert resp.headers["x-process-time"].endswith("ms")

    @pytest.mark.asyncio
    async def test_custom_request_id_propagated(self, client):
        """If client sends X-Request-ID, it should be echoed back."""
        custom_id = "test-request-12345"
        resp = await client.get(
            "/api/v1/health",
            headers={"X-Request-ID": custom_id},
        )
        assert resp.headers.get("x-request-id") == custom_id
