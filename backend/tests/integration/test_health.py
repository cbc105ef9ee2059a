"""
Integration tests for health check endpoints.
"""

import pytest
from fastapi import status
from httpx import AsyncClient

from infrastructure.config.settings import settings


class TestHealthEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, async_client: AsyncClient):
        response = await async_client.get("/api/v1/health")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "healthy"
        assert "X-Request-ID" in response.headers
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    @pytest.mark.asyncio
    async def test_health_db(self, async_client: AsyncClient):
        response = await async_client.get("/api/v1/health/db")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["database"] == "connected"

    @pytest.mark.asyncio
    async def test_readiness_and_liveness(self, async_client: AsyncClient):
        ready = await async_client.get("/api/v1/health/ready")
        live = await async_client.get("/api/v1/health/live")

        assert ready.json() == {"ready": True, "database": "ok"}
        assert live.json() == {"alive": True}

    @pytest.mark.asyncio
    async def test_redis_disabled_without_url(self, async_client: AsyncClient, monkeypatch):
        monkeypatch.setattr(settings, "redis_url", "")

        response = await async_client.get("/api/v1/health/redis")

        assert response.json() == {"status": "disabled", "service": "redis"}

    @pytest.mark.asyncio
    async def test_services_requires_secret(self, async_client: AsyncClient, cron_secret):
        response = await async_client.get("/api/v1/health/services")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_services_reports_provider_configuration(
        self, async_client: AsyncClient, cron_secret, paypal_legacy_provider
    ):
        paypal_legacy_provider.configured = False

        response = await async_client.get(
            "/api/v1/health/services", headers={"Authorization": f"Bearer {cron_secret}"}
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "degraded"
        assert data["services"]["stripe"] == {"configured": True}
        assert data["services"]["paypal_legacy"] == {"configured": False}
        assert set(data["background_tasks"]) == {"running", "completed", "failed", "dropped"}

    @pytest.mark.asyncio
    async def test_root(self, async_client: AsyncClient):
        response = await async_client.get("/")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["health"] == "/api/v1/health"
