"""
Integration tests for the reconciliation cron endpoint.
"""

from datetime import UTC, datetime, timedelta

import pytest
from fastapi import status
from httpx import AsyncClient
from sqlalchemy import select

from conftest import make_subscription, remote_subscription
from infrastructure.config.settings import settings
from infrastructure.database.models import Profile

SYNC_URL = "/api/v1/cron/sync-subscriptions"


def _auth(secret: str) -> dict:
    return {"Authorization": f"Bearer {secret}"}


class TestCronAuth:
    @pytest.mark.asyncio
    async def test_missing_token_returns_401(self, async_client: AsyncClient, cron_secret):
        response = await async_client.get(SYNC_URL)

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_wrong_token_returns_401(self, async_client: AsyncClient, cron_secret):
        response = await async_client.get(SYNC_URL, headers=_auth("not-the-secret"))

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_unconfigured_secret_returns_503(self, async_client: AsyncClient, monkeypatch):
        monkeypatch.setattr(settings, "cron_secret", None)

        response = await async_client.get(SYNC_URL, headers=_auth("anything"))

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestCronSweep:
    @pytest.mark.asyncio
    async def test_empty_sweep_summary(self, async_client: AsyncClient, cron_secret):
        response = await async_client.get(SYNC_URL, headers=_auth(cron_secret))

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True
        assert set(data["providers"]) == {"stripe", "paypal", "paypal_legacy"}
        assert data["expired"] == {"checked": 0, "revoked": 0, "errors": 0}
        assert data["healed"] == {"checked": 0, "created": 0, "activated": 0, "errors": 0}
        assert data["discovered"]["anomalies"] == []
        assert data["cancelled"] == []

    @pytest.mark.asyncio
    async def test_sweep_revokes_missing_subscription(
        self, async_client: AsyncClient, db_session, cron_secret, pro_profile
    ):
        await make_subscription(
            db_session, pro_profile.id, sub_id="sub_vanished",
            period_end=datetime.now(UTC) - timedelta(days=1),
        )

        response = await async_client.get(SYNC_URL, headers=_auth(cron_secret))

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["cancelled"] == [pro_profile.id]
        assert data["providers"]["stripe"]["checked"] == 1
        role = (await db_session.execute(select(Profile.role).where(Profile.id == pro_profile.id))).scalar_one()
        assert role == "user"

    @pytest.mark.asyncio
    async def test_sweep_reports_skipped_and_anomalies(
        self, async_client: AsyncClient, cron_secret, paypal_legacy_provider, stripe_provider
    ):
        paypal_legacy_provider.configured = False
        stripe_provider.listing = [remote_subscription("sub_orphan", email="ghost@example.com")]

        response = await async_client.get(SYNC_URL, headers=_auth(cron_secret))

        data = response.json()
        assert data["providers"]["paypal_legacy"]["skipped"] is True
        assert data["discovered"]["found"] == 1
        assert data["discovered"]["anomalies"] == [
            {
                "provider": "stripe",
                "subscription_id": "sub_orphan",
                "email": "ghost@example.com",
                "reason": "user_not_found",
            }
        ]
