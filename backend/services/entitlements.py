"""
Entitlement projection.

The ``role`` column on ``profiles`` is what the rest of the application
checks. This service is the only writer of that column for billing:
it grants ``pro`` on paid activation and revokes it once no subscription
entitles the user any more. Admins are never touched.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain.subscription import (
    GraceOutcome,
    LIFETIME_PLAN_ID,
    SubscriptionStatus,
    access_until,
    ensure_utc,
    grace_expired,
    grace_period_end,
    is_entitling,
)
from core.plans import plan_features
from infrastructure.config.settings import settings
from infrastructure.database.models.subscription import Subscription
from infrastructure.database.models.user import Profile, UserRole

logger = logging.getLogger(__name__)

# Preference order when picking a user's current subscription
_STATUS_RANK = {
    SubscriptionStatus.ACTIVE.value: 0,
    SubscriptionStatus.PAST_DUE.value: 1,
    SubscriptionStatus.PAUSED.value: 2,
    SubscriptionStatus.CANCELED.value: 3,
    SubscriptionStatus.INCOMPLETE.value: 4,
}


@dataclass
class GraceDecision:
    """What applying the grace rule did."""

    outcome: GraceOutcome
    grace_end: datetime
    role_changed: bool = False


@dataclass
class AccessLevel:
    """Read model answering "what can this user do right now"."""

    user_id: str
    role: str
    has_access: bool
    plan_id: Optional[str]
    status: Optional[str]
    provider: Optional[str]
    access_until: Optional[datetime]
    features: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role,
            "has_access": self.has_access,
            "plan_id": self.plan_id,
            "status": self.status,
            "provider": self.provider,
            "access_until": self.access_until.isoformat() if self.access_until else None,
            "features": self.features,
        }


class EntitlementProjector:
    """Projects subscription state onto ``profiles.role``."""

    def __init__(
        self,
        db: AsyncSession,
        past_due_grace_days: int | None = None,
        tolerance: timedelta | None = None,
    ):
        self.db = db
        self.past_due_grace_days = (
            past_due_grace_days if past_due_grace_days is not None else settings.past_due_grace_days
        )
        self.tolerance = (
            tolerance if tolerance is not None else timedelta(minutes=settings.grace_tolerance_minutes)
        )

    async def get_profile(self, user_id: str, for_update: bool = False) -> Optional[Profile]:
        query = select(Profile).where(Profile.id == user_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def find_user_by_email(self, email: str) -> Optional[Profile]:
        """Case-insensitive lookup used by discovery."""
        normalized = (email or "").strip().lower()
        if not normalized:
            return None
        result = await self.db.execute(select(Profile).where(func.lower(Profile.email) == normalized))
        return result.scalars().first()

    async def _subscriptions(self, user_id: str) -> list[Subscription]:
        result = await self.db.execute(select(Subscription).where(Subscription.user_id == user_id))
        return list(result.scalars().all())

    async def has_other_entitling(
        self,
        user_id: str,
        now: datetime,
        exclude_subscription_id: Optional[str] = None,
    ) -> bool:
        """Whether any subscription other than the excluded one still grants access."""
        for sub in await self._subscriptions(user_id):
            if sub.id == exclude_subscription_id:
                continue
            if is_entitling(sub, now, self.past_due_grace_days, self.tolerance):
                return True
        return False

    async def current_subscription(self, user_id: str, now: datetime) -> Optional[Subscription]:
        """The subscription that best describes the user's access right now."""
        subs = await self._subscriptions(user_id)
        if not subs:
            return None

        def sort_key(sub: Subscription):
            entitling = is_entitling(sub, now, self.past_due_grace_days, self.tolerance)
            lifetime = sub.plan_id == LIFETIME_PLAN_ID and sub.status != SubscriptionStatus.CANCELED.value
            return (
                not entitling,
                not lifetime,
                _STATUS_RANK.get(sub.status, 9),
                -(ensure_utc(sub.created_at).timestamp() if sub.created_at else 0),
            )

        return sorted(subs, key=sort_key)[0]

    async def grant(self, user_id: str) -> bool:
        """Set role to pro unless admin. Returns True if the role changed."""
        profile = await self.get_profile(user_id, for_update=True)
        if profile is None:
            logger.warning(f"Cannot grant access: user {user_id} not found")
            return False
        if profile.is_admin or profile.is_pro:
            return False

        profile.role = UserRole.PRO.value
        await self.db.flush()
        logger.info(f"Granted pro access to user {user_id}")
        return True

    async def revoke(
        self,
        user_id: str,
        now: datetime,
        exclude_subscription_id: Optional[str] = None,
    ) -> bool:
        """
        Set role back to user.

        Refused for admins and for users with another entitling subscription.
        Returns True if the role changed.
        """
        profile = await self.get_profile(user_id, for_update=True)
        if profile is None:
            logger.warning(f"Cannot revoke access: user {user_id} not found")
            return False
        if profile.is_admin:
            logger.info(f"Skipping revoke for admin user {user_id}")
            return False
        if await self.has_other_entitling(user_id, now, exclude_subscription_id):
            logger.info(f"User {user_id} keeps access through another subscription")
            return False
        if profile.role == UserRole.USER.value:
            return False

        profile.role = UserRole.USER.value
        await self.db.flush()
        logger.info(f"Revoked pro access from user {user_id}")
        return True

    async def apply_grace_rule(
        self,
        sub: Subscription,
        now: datetime,
        grace_end: Optional[datetime] = None,
    ) -> GraceDecision:
        """
        Revoke access for a terminal subscription once its grace has run out.

        The boundary is ``cancel_at ?? current_period_end ?? now`` over the
        stored row unless the caller already computed *grace_end* from
        provider data.
        """
        if grace_end is None:
            grace_end = grace_period_end(sub.cancel_at, sub.current_period_end, now)

        if not grace_expired(grace_end, now, self.tolerance):
            logger.info(
                f"Access kept until {grace_end.isoformat()}",
                extra={"provider": sub.provider, "subscription_id": sub.provider_subscription_id},
            )
            return GraceDecision(outcome=GraceOutcome.DEFERRED, grace_end=grace_end)

        profile = await self.get_profile(sub.user_id)
        if profile is not None and profile.is_admin:
            return GraceDecision(outcome=GraceOutcome.PROTECTED, grace_end=grace_end)
        if await self.has_other_entitling(sub.user_id, now, exclude_subscription_id=sub.id):
            return GraceDecision(outcome=GraceOutcome.PROTECTED, grace_end=grace_end)

        changed = await self.revoke(sub.user_id, now, exclude_subscription_id=sub.id)
        return GraceDecision(outcome=GraceOutcome.REVOKED, grace_end=grace_end, role_changed=changed)

    async def access_level(self, user_id: str, now: datetime) -> Optional[AccessLevel]:
        profile = await self.get_profile(user_id)
        if profile is None:
            return None

        sub = await self.current_subscription(user_id, now)
        entitled = sub is not None and is_entitling(sub, now, self.past_due_grace_days, self.tolerance)
        has_access = profile.is_admin or entitled
        if entitled:
            features = plan_features(sub.plan_id)
        elif profile.is_admin:
            features = plan_features(LIFETIME_PLAN_ID)
        else:
            features = plan_features("free")

        return AccessLevel(
            user_id=user_id,
            role=profile.role,
            has_access=has_access,
            plan_id=sub.plan_id if sub else None,
            status=sub.status if sub else None,
            provider=sub.provider if sub else None,
            access_until=access_until(sub, now, self.past_due_grace_days) if entitled else None,
            features=features,
        )
