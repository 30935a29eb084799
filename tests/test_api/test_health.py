"""Tests for health check endpoint."""

import pytest
from httpx import AsyncClient

from vmhost import __version__


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Test health check endpoint."""
    response = await client.get("/api/v1/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["version"] == __version__
    assert data["database"] == "connected"
    assert data["vms"] == 0
    assert data["running"] == 0


@pytest.mark.asyncio
async def test_health_counts_vms(client: AsyncClient):
    response = await client.post("/api/v1/vms", json={"name": "web01", "disk_size_gb": 1})
    assert response.status_code == 201

    data = (await client.get("/api/v1/health")).json()
    assert data["vms"] == 1
    assert data["running"] == 0


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["health_check"] == "/api/v1/health"
    assert "X-Request-ID" in response.headers
