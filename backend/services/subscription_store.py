"""
Subscription store.

Persistence for ``subscriptions`` keyed by (provider, provider_subscription_id).
Upserts go through the dialect's ``INSERT ... ON CONFLICT`` so concurrent
webhook deliveries and the sweep never create two rows for one subscription.
"""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Optional

from sqlalchemy import and_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain.subscription import ensure_utc
from infrastructure.database.models.subscription import Subscription

logger = logging.getLogger(__name__)

_CONFLICT_KEYS = ("provider", "provider_subscription_id")
# Never overwritten by an upsert
_IMMUTABLE_COLUMNS = {"id", "user_id", "created_at", *_CONFLICT_KEYS}


def _same(current: Any, new: Any) -> bool:
    if isinstance(current, datetime) and isinstance(new, datetime):
        return ensure_utc(current) == ensure_utc(new)
    return current == new


class SubscriptionStore:
    """Read and write subscription rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _insert(self):
        dialect = self.db.bind.dialect.name
        if dialect == "postgresql":
            return pg_insert(Subscription)
        if dialect == "sqlite":
            return sqlite_insert(Subscription)
        raise NotImplementedError(f"Upsert not supported for dialect {dialect}")

    async def get(self, provider: str, provider_subscription_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(
                and_(
                    Subscription.provider == provider,
                    Subscription.provider_subscription_id == provider_subscription_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_provider_id(
        self,
        provider_subscription_id: str,
        providers: Iterable[str],
    ) -> Optional[Subscription]:
        """First row matching the id under any of *providers*, in order."""
        for provider in providers:
            sub = await self.get(provider, provider_subscription_id)
            if sub is not None:
                return sub
        return None

    async def upsert(self, values: dict[str, Any], now: datetime | None = None) -> Subscription:
        """
        Insert a subscription or update the existing row with *values*.

        Only keys present in *values* are written on conflict; the owner and
        identity columns are never changed.
        """
        now = now or datetime.now(UTC)
        row = {"created_at": now, "updated_at": now, **values}
        stmt = self._insert().values(**row)
        update_cols = {
            key: stmt.excluded[key] for key in row if key not in _IMMUTABLE_COLUMNS
        }
        stmt = stmt.on_conflict_do_update(index_elements=list(_CONFLICT_KEYS), set_=update_cols)
        await self.db.execute(stmt)

        sub = await self.get(values["provider"], values["provider_subscription_id"])
        logger.info(
            f"Upserted subscription status={sub.status}",
            extra={"provider": sub.provider, "subscription_id": sub.provider_subscription_id},
        )
        return sub

    async def insert_if_absent(self, values: dict[str, Any], now: datetime | None = None) -> bool:
        """Insert unless the row exists. Returns True if a row was created."""
        now = now or datetime.now(UTC)
        row = {"created_at": now, "updated_at": now, **values}
        stmt = self._insert().values(**row).on_conflict_do_nothing(index_elements=list(_CONFLICT_KEYS))
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def update(self, sub: Subscription, now: datetime | None = None, **changes: Any) -> bool:
        """Apply *changes* to *sub*. Returns True if anything differed."""
        changed = False
        for key, value in changes.items():
            if not _same(getattr(sub, key), value):
                setattr(sub, key, value)
                changed = True
        if changed:
            sub.updated_at = now or datetime.now(UTC)
            await self.db.flush()
        return changed

    async def list_by_status(self, provider: str, statuses: Iterable[str]) -> list[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(
                and_(
                    Subscription.provider == provider,
                    Subscription.status.in_(list(statuses)),
                )
            )
            .order_by(Subscription.created_at)
        )
        return list(result.scalars().all())

    async def list_for_user(self, user_id: str) -> list[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def known_ids(self, provider: str) -> set[str]:
        """Every provider subscription id stored for *provider*, any status."""
        result = await self.db.execute(
            select(Subscription.provider_subscription_id).where(Subscription.provider == provider)
        )
        return set(result.scalars().all())
