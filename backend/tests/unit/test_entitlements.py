"""
Unit tests for the entitlement projector and the subscription store.
"""

from datetime import timedelta

import pytest

from conftest import NOW, make_profile, make_subscription
from core.domain.subscription import GraceOutcome
from services.entitlements import EntitlementProjector
from services.subscription_store import SubscriptionStore


class TestGrantRevoke:
    @pytest.mark.asyncio
    async def test_grant_promotes_user(self, db_session, user_profile):
        projector = EntitlementProjector(db_session)

        assert await projector.grant(user_profile.id) is True
        assert user_profile.role == "pro"
        # Second grant is a no-op
        assert await projector.grant(user_profile.id) is False

    @pytest.mark.asyncio
    async def test_grant_never_touches_admin(self, db_session, admin_profile):
        projector = EntitlementProjector(db_session)

        assert await projector.grant(admin_profile.id) is False
        assert admin_profile.role == "admin"

    @pytest.mark.asyncio
    async def test_grant_unknown_user(self, db_session):
        projector = EntitlementProjector(db_session)
        assert await projector.grant("00000000-0000-0000-0000-000000000000") is False

    @pytest.mark.asyncio
    async def test_revoke_demotes_pro(self, db_session, pro_profile):
        projector = EntitlementProjector(db_session)

        assert await projector.revoke(pro_profile.id, NOW) is True
        assert pro_profile.role == "user"

    @pytest.mark.asyncio
    async def test_revoke_refused_for_admin(self, db_session, admin_profile):
        projector = EntitlementProjector(db_session)

        assert await projector.revoke(admin_profile.id, NOW) is False
        assert admin_profile.role == "admin"

    @pytest.mark.asyncio
    async def test_revoke_refused_while_other_subscription_entitles(self, db_session, pro_profile):
        canceled = await make_subscription(
            db_session, pro_profile.id, status="canceled", period_end=NOW - timedelta(days=1)
        )
        await make_subscription(db_session, pro_profile.id, provider="paypal", sub_id="I-ACTIVE", status="active")
        projector = EntitlementProjector(db_session)

        changed = await projector.revoke(pro_profile.id, NOW, exclude_subscription_id=canceled.id)

        assert changed is False
        assert pro_profile.role == "pro"


class TestGraceRule:
    @pytest.mark.asyncio
    async def test_deferred_while_period_runs(self, db_session, pro_profile):
        sub = await make_subscription(
            db_session, pro_profile.id, status="canceled", period_end=NOW + timedelta(days=5)
        )
        projector = EntitlementProjector(db_session)

        decision = await projector.apply_grace_rule(sub, NOW)

        assert decision.outcome == GraceOutcome.DEFERRED
        assert decision.grace_end == NOW + timedelta(days=5)
        assert pro_profile.role == "pro"

    @pytest.mark.asyncio
    async def test_revoked_once_period_ended(self, db_session, pro_profile):
        sub = await make_subscription(
            db_session, pro_profile.id, status="canceled", period_end=NOW - timedelta(hours=1)
        )
        projector = EntitlementProjector(db_session)

        decision = await projector.apply_grace_rule(sub, NOW)

        assert decision.outcome == GraceOutcome.REVOKED
        assert decision.role_changed is True
        assert pro_profile.role == "user"

    @pytest.mark.asyncio
    async def test_explicit_grace_end_overrides_row(self, db_session, pro_profile):
        sub = await make_subscription(
            db_session, pro_profile.id, status="canceled", period_end=NOW + timedelta(days=20)
        )
        projector = EntitlementProjector(db_session)

        decision = await projector.apply_grace_rule(sub, NOW, grace_end=NOW)

        assert decision.outcome == GraceOutcome.REVOKED
        assert pro_profile.role == "user"

    @pytest.mark.asyncio
    async def test_admin_is_protected(self, db_session, admin_profile):
        sub = await make_subscription(db_session, admin_profile.id, status="canceled")
        projector = EntitlementProjector(db_session)

        decision = await projector.apply_grace_rule(sub, NOW)

        assert decision.outcome == GraceOutcome.PROTECTED
        assert admin_profile.role == "admin"

    @pytest.mark.asyncio
    async def test_tolerance_delays_revoke(self, db_session, pro_profile):
        sub = await make_subscription(
            db_session, pro_profile.id, status="canceled", period_end=NOW - timedelta(minutes=5)
        )
        projector = EntitlementProjector(db_session, tolerance=timedelta(minutes=10))

        decision = await projector.apply_grace_rule(sub, NOW)

        assert decision.outcome == GraceOutcome.DEFERRED


class TestAccessLevel:
    @pytest.mark.asyncio
    async def test_free_user(self, db_session, user_profile):
        level = await EntitlementProjector(db_session).access_level(user_profile.id, NOW)

        assert level.has_access is False
        assert level.plan_id is None
        assert level.features["characters_per_month"] == 500

    @pytest.mark.asyncio
    async def test_active_subscriber(self, db_session, pro_profile):
        await make_subscription(
            db_session, pro_profile.id, plan_id="monthly_pro", period_end=NOW + timedelta(days=10)
        )

        level = await EntitlementProjector(db_session).access_level(pro_profile.id, NOW)

        assert level.has_access is True
        assert level.plan_id == "monthly_pro"
        assert level.status == "active"
        assert level.access_until is None
        assert level.features["api_access"] is True

    @pytest.mark.asyncio
    async def test_prefers_entitling_subscription(self, db_session, pro_profile):
        await make_subscription(
            db_session, pro_profile.id, status="canceled", period_end=NOW - timedelta(days=3)
        )
        await make_subscription(db_session, pro_profile.id, provider="stripe", plan_id="lifetime", sub_id="pi_1")

        level = await EntitlementProjector(db_session).access_level(pro_profile.id, NOW)

        assert level.plan_id == "lifetime"
        assert level.has_access is True

    @pytest.mark.asyncio
    async def test_admin_without_subscription(self, db_session, admin_profile):
        level = await EntitlementProjector(db_session).access_level(admin_profile.id, NOW)

        assert level.has_access is True
        assert level.role == "admin"

    @pytest.mark.asyncio
    async def test_unknown_user(self, db_session):
        level = await EntitlementProjector(db_session).access_level(
            "00000000-0000-0000-0000-000000000000", NOW
        )
        assert level is None

    @pytest.mark.asyncio
    async def test_find_user_by_email_is_case_insensitive(self, db_session):
        profile = await make_profile(db_session, email="Mixed.Case@Example.com")
        projector = EntitlementProjector(db_session)

        found = await projector.find_user_by_email("  mixed.case@example.COM ")

        assert found is not None
        assert found.id == profile.id


class TestSubscriptionStore:
    @pytest.mark.asyncio
    async def test_upsert_inserts_then_updates(self, db_session, user_profile):
        store = SubscriptionStore(db_session)
        values = {
            "user_id": user_profile.id,
            "provider": "stripe",
            "provider_subscription_id": "sub_up",
            "status": "incomplete",
            "plan_id": "monthly",
        }

        first = await store.upsert(values, now=NOW)
        second = await store.upsert({**values, "status": "active"}, now=NOW + timedelta(minutes=1))

        assert first.id == second.id
        assert second.status == "active"
        assert len(await store.list_for_user(user_profile.id)) == 1

    @pytest.mark.asyncio
    async def test_upsert_never_changes_owner(self, db_session, user_profile, pro_profile):
        store = SubscriptionStore(db_session)
        base = {"provider": "stripe", "provider_subscription_id": "sub_owner", "plan_id": "monthly"}

        await store.upsert({**base, "user_id": user_profile.id}, now=NOW)
        sub = await store.upsert({**base, "user_id": pro_profile.id}, now=NOW)

        assert sub.user_id == user_profile.id

    @pytest.mark.asyncio
    async def test_insert_if_absent(self, db_session, user_profile):
        store = SubscriptionStore(db_session)
        values = {
            "user_id": user_profile.id,
            "provider": "paypal",
            "provider_subscription_id": "I-ONCE",
            "plan_id": "monthly",
            "status": "active",
        }

        assert await store.insert_if_absent(values, now=NOW) is True
        assert await store.insert_if_absent({**values, "status": "canceled"}, now=NOW) is False
        assert (await store.get("paypal", "I-ONCE")).status == "active"

    @pytest.mark.asyncio
    async def test_update_reports_changes(self, db_session, user_profile):
        end = NOW + timedelta(days=30)
        sub = await make_subscription(db_session, user_profile.id, period_end=end)
        store = SubscriptionStore(db_session)

        # Same instant read back from SQLite without tzinfo is not a change
        assert await store.update(sub, now=NOW, current_period_end=end) is False
        assert await store.update(sub, now=NOW, status="past_due") is True
        assert sub.status == "past_due"

    @pytest.mark.asyncio
    async def test_find_by_provider_id_checks_providers_in_order(self, db_session, user_profile):
        await make_subscription(db_session, user_profile.id, provider="paypal_legacy", sub_id="I-OLD", is_legacy=True)
        store = SubscriptionStore(db_session)

        found = await store.find_by_provider_id("I-OLD", ["paypal", "paypal_legacy"])

        assert found is not None
        assert found.provider == "paypal_legacy"
