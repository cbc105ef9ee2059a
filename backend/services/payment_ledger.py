"""
Payment history ledger with the dedup guard.

Every monetary event goes through ``PaymentLedger.insert``. A row is
rejected as a duplicate when its gateway identifier is already recorded,
or when the same user was charged the same amount moments ago (providers
sometimes deliver one charge under two identifiers). A concurrent insert
that loses the race on the unique identifier is also reported as a
duplicate rather than an error.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain.subscription import TransactionType
from infrastructure.config.settings import settings
from infrastructure.database.models.payment_history import PaymentHistory

logger = logging.getLogger(__name__)

_UNIQUE_VIOLATION_MARKERS = ("unique", "duplicate key", "23505")


@dataclass
class PaymentRecord:
    """A ledger row to insert."""

    user_id: str
    transaction_type: str
    gateway: str
    gateway_identifier: str
    amount: Decimal
    currency: str = "USD"
    item_name: Optional[str] = None
    gateway_event_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class LedgerResult:
    success: bool
    duplicate: bool = False
    error: Optional[str] = None
    entry_id: Optional[str] = None


def _is_unique_violation(exc: IntegrityError) -> bool:
    text = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in text for marker in _UNIQUE_VIOLATION_MARKERS)


class PaymentLedger:
    """Insert-only access to ``payment_history``."""

    def __init__(self, db: AsyncSession, dedup_window: timedelta | None = None):
        self.db = db
        self.dedup_window = dedup_window or timedelta(minutes=settings.ledger_dedup_window_minutes)

    async def exists(self, gateway_identifier: str) -> bool:
        result = await self.db.execute(
            select(PaymentHistory.id).where(PaymentHistory.gateway_identifier == gateway_identifier)
        )
        return result.scalar_one_or_none() is not None

    async def _recent_same_amount(self, record: PaymentRecord, amount: Decimal, now: datetime) -> bool:
        """Same user, same amount, inside the dedup window.

        Failed charges are not money received, so they neither trigger nor
        are caught by this check.
        """
        if record.transaction_type == TransactionType.PAYMENT_FAILED.value:
            return False

        result = await self.db.execute(
            select(PaymentHistory.id)
            .where(
                and_(
                    PaymentHistory.user_id == record.user_id,
                    PaymentHistory.amount == amount,
                    PaymentHistory.created_at >= now - self.dedup_window,
                    PaymentHistory.transaction_type != TransactionType.PAYMENT_FAILED.value,
                )
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def insert(self, record: PaymentRecord, now: datetime | None = None) -> LedgerResult:
        """
        Insert *record* unless it duplicates an existing charge.

        Returns:
            LedgerResult(success=True, duplicate=True) for any duplicate,
            success=False only for unexpected constraint failures
        """
        now = now or datetime.now(UTC)
        amount = Decimal(record.amount).quantize(Decimal("0.01"))

        if await self.exists(record.gateway_identifier):
            logger.info(
                "Ledger duplicate by identifier",
                extra={"provider": record.gateway, "subscription_id": record.gateway_identifier},
            )
            return LedgerResult(success=True, duplicate=True)

        if await self._recent_same_amount(record, amount, now):
            logger.warning(
                f"Ledger duplicate by amount window: user {record.user_id} charged {amount} "
                f"within {self.dedup_window}",
                extra={"provider": record.gateway, "subscription_id": record.gateway_identifier},
            )
            return LedgerResult(success=True, duplicate=True)

        entry = PaymentHistory(
            user_id=record.user_id,
            transaction_type=record.transaction_type,
            gateway=record.gateway,
            gateway_identifier=record.gateway_identifier,
            gateway_event_id=record.gateway_event_id,
            amount=amount,
            currency=(record.currency or "USD").upper(),
            item_name=record.item_name,
            extra_data=record.metadata or None,
            created_at=now,
        )

        savepoint = await self.db.begin_nested()
        try:
            self.db.add(entry)
            await savepoint.commit()
        except IntegrityError as exc:
            await savepoint.rollback()
            if _is_unique_violation(exc):
                # Lost a race with a concurrent delivery of the same charge
                logger.info(f"Ledger insert raced on {record.gateway_identifier}, treating as duplicate")
                return LedgerResult(success=True, duplicate=True)
            logger.error(f"Ledger insert failed for {record.gateway_identifier}: {exc}")
            return LedgerResult(success=False, error=str(exc.orig or exc))

        return LedgerResult(success=True, entry_id=entry.id)

    async def find_user_for_identifier(self, gateway_identifier: str) -> Optional[str]:
        """User id of the ledger row keyed by *gateway_identifier*, if any.

        Legacy PayPal imports are keyed by the subscription id, which is how
        renewals on the legacy account find their owner.
        """
        result = await self.db.execute(
            select(PaymentHistory.user_id).where(PaymentHistory.gateway_identifier == gateway_identifier)
        )
        return result.scalar_one_or_none()

    async def recent_subscription_entries(self, since: datetime) -> list[PaymentHistory]:
        """Subscription payments recorded since *since*, newest first."""
        result = await self.db.execute(
            select(PaymentHistory)
            .where(
                and_(
                    PaymentHistory.transaction_type == TransactionType.SUBSCRIPTION.value,
                    PaymentHistory.created_at >= since,
                )
            )
            .order_by(PaymentHistory.created_at.desc())
        )
        return list(result.scalars().all())
