"""
Subscription reconciliation sweep.

Re-derives subscription truth from the providers and repairs local drift
left by missed or failed webhooks:

1. Sync: poll every locally active or past_due subscription.
2. Expiry: revoke access for terminal rows whose grace period has ended.
3. Auto-heal: recreate subscription rows for recent subscription payments
   that have none.
4. Discovery: adopt provider-side active subscriptions with no local row.

Each phase is isolated from the others and each item runs in its own
savepoint, so one bad record only rolls back itself.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain.subscription import (
    BillingProvider,
    SubscriptionStatus,
    TransactionType,
    grace_expired,
    grace_period_end,
    is_entitling,
    past_due_access_until,
)
from core.interfaces.payments import PaymentProvider, ProviderSubscription
from core.plans import get_plan, plan_for_amount, plan_name
from infrastructure.config.settings import Settings, settings as default_settings
from infrastructure.database.connection import async_session_maker
from infrastructure.database.models.subscription import Subscription
from infrastructure.database.models.user import Profile, UserRole
from services.entitlements import EntitlementProjector
from services.notifications import NullNotifier
from services.payment_ledger import PaymentLedger, PaymentRecord
from services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

PROVIDER_ORDER = (
    BillingProvider.STRIPE.value,
    BillingProvider.PAYPAL.value,
    BillingProvider.PAYPAL_LEGACY.value,
)

PAYPAL_ACCOUNTS = (BillingProvider.PAYPAL.value, BillingProvider.PAYPAL_LEGACY.value)

# Listing safety valve; a provider returning the same cursor forever must not hang the sweep
MAX_DISCOVERY_PAGES = 200


# ── Tallies ───────────────────────────────────────────────────────────────────


@dataclass
class ProviderTally:
    checked: int = 0
    synced: int = 0
    errors: int = 0
    skipped: bool = False


@dataclass
class ExpiryTally:
    checked: int = 0
    revoked: int = 0
    errors: int = 0


@dataclass
class HealTally:
    checked: int = 0
    created: int = 0
    activated: int = 0
    errors: int = 0


@dataclass
class DiscoveryTally:
    checked: int = 0
    found: int = 0
    created: int = 0
    errors: int = 0
    anomalies: list[dict[str, Optional[str]]] = field(default_factory=list)


@dataclass
class SweepReport:
    timestamp: datetime
    providers: dict[str, ProviderTally] = field(
        default_factory=lambda: {name: ProviderTally() for name in PROVIDER_ORDER}
    )
    expired: ExpiryTally = field(default_factory=ExpiryTally)
    healed: HealTally = field(default_factory=HealTally)
    discovered: DiscoveryTally = field(default_factory=DiscoveryTally)
    cancelled: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def add_cancelled(self, user_id: str) -> None:
        if user_id not in self.cancelled:
            self.cancelled.append(user_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
            "providers": {name: asdict(tally) for name, tally in self.providers.items()},
            "expired": asdict(self.expired),
            "healed": asdict(self.healed),
            "discovered": asdict(self.discovered),
            "cancelled": list(self.cancelled),
        }


# ── Sweep ─────────────────────────────────────────────────────────────────────


class ReconciliationSweep:
    """One reconciliation run over all configured providers."""

    def __init__(
        self,
        db: AsyncSession,
        providers: dict[str, PaymentProvider],
        notifier: NullNotifier | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.providers = providers
        self.notifier = notifier or NullNotifier()
        self.settings = settings or default_settings
        self.store = SubscriptionStore(db)
        self.ledger = PaymentLedger(db, timedelta(minutes=self.settings.ledger_dedup_window_minutes))
        self.projector = EntitlementProjector(
            db,
            past_due_grace_days=self.settings.past_due_grace_days,
            tolerance=timedelta(minutes=self.settings.grace_tolerance_minutes),
        )
        # Notifications wait for their savepoint, then for the phase commit
        self._item_effects: list[Callable[[], None]] = []
        self._phase_effects: list[Callable[[], None]] = []

    def _configured(self, name: str) -> Optional[PaymentProvider]:
        provider = self.providers.get(name)
        if provider is None or not provider.is_configured:
            return None
        return provider

    def _sibling_accounts(self, name: str) -> list[str]:
        """Providers whose rows may hold the same subscription ids as *name*."""
        if name in PAYPAL_ACCOUNTS:
            return [name] + [other for other in PAYPAL_ACCOUNTS if other != name]
        return [name]

    def _defer(self, effect: Callable[[], None]) -> None:
        self._item_effects.append(effect)

    def _item_done(self, committed: bool) -> None:
        """Keep the item's effects for the phase commit, or drop them with its savepoint."""
        if committed:
            self._phase_effects.extend(self._item_effects)
        self._item_effects = []

    def _release_effects(self) -> None:
        effects, self._phase_effects = self._phase_effects, []
        for effect in effects:
            try:
                effect()
            except Exception as e:
                logger.error(f"Failed to schedule reconciliation side effect: {e}", exc_info=True)

    def _discard_effects(self) -> None:
        self._item_effects = []
        self._phase_effects = []

    async def run(self, now: datetime | None = None) -> SweepReport:
        now = now or datetime.now(UTC)
        started = time.monotonic()
        report = SweepReport(timestamp=now)
        logger.info("Reconciliation sweep started")

        for phase in (self._sync_phase, self._expiry_phase, self._heal_phase, self._discovery_phase):
            try:
                await phase(report, now)
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                self._discard_effects()
                logger.error(f"Sweep phase {phase.__name__} failed: {e}", exc_info=True)
                self._count_phase_error(phase.__name__, report)
            else:
                self._release_effects()

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Reconciliation sweep finished in {report.duration_ms}ms, "
            f"{len(report.cancelled)} downgraded, {report.healed.created} healed, "
            f"{report.discovered.created} discovered"
        )
        return report

    @staticmethod
    def _count_phase_error(phase_name: str, report: SweepReport) -> None:
        if phase_name == "_expiry_phase":
            report.expired.errors += 1
        elif phase_name == "_heal_phase":
            report.healed.errors += 1
        elif phase_name == "_discovery_phase":
            report.discovered.errors += 1
        else:
            for tally in report.providers.values():
                if not tally.skipped:
                    tally.errors += 1

    # ── Phase A: sync ─────────────────────────────────────────────────────────

    async def _sync_phase(self, report: SweepReport, now: datetime) -> None:
        for name in PROVIDER_ORDER:
            tally = report.providers[name]
            provider = self._configured(name)
            if provider is None:
                tally.skipped = True
                logger.info(f"Skipping sync for {name}: credentials not configured")
                continue

            subs = await self.store.list_by_status(
                name, [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]
            )
            for sub in subs:
                # Lifetime purchases are keyed by one-time payment ids
                if not provider.is_subscription_id(sub.provider_subscription_id):
                    continue
                tally.checked += 1
                user_id, sub_id = sub.user_id, sub.provider_subscription_id
                savepoint = await self.db.begin_nested()
                try:
                    changed, revoked = await self._sync_one(provider, sub, now)
                    await savepoint.commit()
                except Exception as e:
                    await savepoint.rollback()
                    self._item_done(committed=False)
                    tally.errors += 1
                    logger.error(
                        f"Sync failed: {e}",
                        extra={"provider": name, "subscription_id": sub_id},
                        exc_info=True,
                    )
                    continue
                self._item_done(committed=True)
                if changed:
                    tally.synced += 1
                if revoked:
                    report.add_cancelled(user_id)

    async def _sync_one(
        self,
        provider: PaymentProvider,
        sub: Subscription,
        now: datetime,
    ) -> tuple[bool, bool]:
        """Reconcile one row. Returns (row changed, role revoked)."""
        remote = await provider.get_subscription(sub.provider_subscription_id)

        if remote is None and sub.provider == BillingProvider.PAYPAL_LEGACY.value:
            remote = await self._claim_for_current_account(sub, now)

        if remote is None:
            # Deleted upstream: canceled immediately, grace from what we stored
            await self.store.update(
                sub,
                now=now,
                status=SubscriptionStatus.CANCELED.value,
                canceled_at=sub.canceled_at or now,
                cancellation_reason=sub.cancellation_reason or "provider_missing",
            )
            decision = await self.projector.apply_grace_rule(sub, now)
            return True, decision.role_changed

        if remote.is_active:
            return await self._refresh_active(sub, remote, now), False

        if remote.status == SubscriptionStatus.PAST_DUE.value:
            changed = await self.store.update(
                sub,
                now=now,
                status=SubscriptionStatus.PAST_DUE.value,
                current_period_end=remote.current_period_end or sub.current_period_end,
            )
            return changed, False

        return await self._cancel_from_remote(sub, remote, now)

    async def _claim_for_current_account(self, sub: Subscription, now: datetime) -> Optional[ProviderSubscription]:
        """
        Look up a legacy row the legacy account does not know on the current account.

        A renewal seen before its activation can leave a current-account
        subscription stored as legacy. When the current account reports it,
        the row moves there instead of being canceled.
        """
        current = self._configured(BillingProvider.PAYPAL.value)
        if current is None:
            return None
        remote = await current.get_subscription(sub.provider_subscription_id)
        if remote is None:
            return None
        if await self.store.get(BillingProvider.PAYPAL.value, sub.provider_subscription_id) is None:
            await self.store.update(sub, now=now, provider=BillingProvider.PAYPAL.value, is_legacy=False)
            logger.info(
                "Moved subscription from the legacy PayPal account to the current one",
                extra={"provider": sub.provider, "subscription_id": sub.provider_subscription_id},
            )
        return remote

    async def _refresh_active(self, sub: Subscription, remote: ProviderSubscription, now: datetime) -> bool:
        changes: dict[str, Any] = {}
        if remote.current_period_start is not None:
            changes["current_period_start"] = remote.current_period_start
        if remote.current_period_end is not None:
            changes["current_period_end"] = remote.current_period_end

        if remote.cancel_scheduled:
            # Not yet effective: metadata only, status untouched
            changes["cancel_at"] = remote.cancel_at or remote.current_period_end
        else:
            if sub.cancel_at is not None:
                changes["cancel_at"] = None
            if sub.status != SubscriptionStatus.ACTIVE.value:
                changes["status"] = SubscriptionStatus.ACTIVE.value
        changed = await self.store.update(sub, now=now, **changes)

        # Role drift is repaired even when the row itself is unchanged
        granted = False
        if sub.status == SubscriptionStatus.ACTIVE.value:
            granted = await self.projector.grant(sub.user_id)
        return changed or granted

    async def _cancel_from_remote(
        self,
        sub: Subscription,
        remote: ProviderSubscription,
        now: datetime,
    ) -> tuple[bool, bool]:
        """Provider says the subscription ended; apply the grace rule to its data."""
        grace_end = grace_period_end(remote.cancel_at, remote.current_period_end, now)
        was_active = sub.status == SubscriptionStatus.ACTIVE.value

        await self.store.update(
            sub,
            now=now,
            status=SubscriptionStatus.CANCELED.value,
            canceled_at=remote.canceled_at or sub.canceled_at or now,
            cancel_at=grace_end,
            current_period_end=remote.current_period_end or sub.current_period_end,
            cancellation_reason=sub.cancellation_reason or f"provider_status_{remote.raw_status.lower()}",
        )
        decision = await self.projector.apply_grace_rule(sub, now, grace_end=grace_end)

        if was_active:
            profile = await self.projector.get_profile(sub.user_id)
            payload = {
                "user_email": profile.email if profile else "unknown",
                "amount": Decimal(sub.price_amount) / 100,
                "currency": sub.price_currency,
                "provider": sub.provider,
                "plan_name": sub.plan_name or plan_name(sub.plan_id),
                "subscription_id": sub.provider_subscription_id,
                "details": f"Detected by reconciliation ({remote.raw_status}); {decision.outcome.value}",
            }
            self._defer(lambda: self.notifier.payment_notification("cancellation", **payload))
        return True, decision.role_changed

    # ── Expiry pass ───────────────────────────────────────────────────────────

    async def _expiry_phase(self, report: SweepReport, now: datetime) -> None:
        """Revoke pro users whose terminal subscriptions ran out of grace."""
        result = await self.db.execute(
            select(Subscription)
            .join(Profile, Profile.id == Subscription.user_id)
            .where(
                Subscription.status.in_(
                    [
                        SubscriptionStatus.CANCELED.value,
                        SubscriptionStatus.PAUSED.value,
                        SubscriptionStatus.PAST_DUE.value,
                    ]
                ),
                Profile.role == UserRole.PRO.value,
            )
        )
        tolerance = timedelta(minutes=self.settings.grace_tolerance_minutes)

        for sub in result.scalars().all():
            report.expired.checked += 1
            user_id = sub.user_id
            if sub.status == SubscriptionStatus.PAST_DUE.value:
                until = past_due_access_until(sub.current_period_end, now, self.settings.past_due_grace_days)
                expired = grace_expired(until, now, tolerance)
            else:
                expired = not is_entitling(sub, now, self.settings.past_due_grace_days, tolerance)
            if not expired:
                continue

            savepoint = await self.db.begin_nested()
            try:
                changed = await self.projector.revoke(user_id, now)
                await savepoint.commit()
            except Exception as e:
                await savepoint.rollback()
                report.expired.errors += 1
                logger.error(f"Grace expiry failed for user {user_id}: {e}", exc_info=True)
                continue
            if changed:
                report.expired.revoked += 1
                report.add_cancelled(user_id)

    # ── Phase B: auto-heal ────────────────────────────────────────────────────

    def _heal_target(self, provider: PaymentProvider, entry) -> Optional[str]:
        """The subscription id a ledger row implies, if any."""
        if provider.is_subscription_id(entry.gateway_identifier):
            return entry.gateway_identifier
        candidate = (entry.extra_data or {}).get("subscription_id")
        if candidate and provider.is_subscription_id(candidate):
            return candidate
        return None

    async def _heal_phase(self, report: SweepReport, now: datetime) -> None:
        since = now - timedelta(days=self.settings.auto_heal_lookback_days)
        entries = await self.ledger.recent_subscription_entries(since)
        seen: set[tuple[str, str]] = set()

        for entry in entries:
            provider = self._configured(entry.gateway)
            if provider is None:
                continue
            sub_id = self._heal_target(provider, entry)
            if sub_id is None or (entry.gateway, sub_id) in seen:
                continue
            seen.add((entry.gateway, sub_id))

            if await self.store.find_by_provider_id(sub_id, self._sibling_accounts(entry.gateway)) is not None:
                continue

            report.healed.checked += 1
            savepoint = await self.db.begin_nested()
            try:
                created, activated = await self._heal_one(provider, entry, sub_id, now)
                await savepoint.commit()
            except Exception as e:
                await savepoint.rollback()
                report.healed.errors += 1
                logger.error(
                    f"Auto-heal failed: {e}",
                    extra={"provider": entry.gateway, "subscription_id": sub_id},
                    exc_info=True,
                )
                continue
            report.healed.created += int(created)
            report.healed.activated += int(activated)

    async def _heal_one(self, provider: PaymentProvider, entry, sub_id: str, now: datetime) -> tuple[bool, bool]:
        remote = await provider.get_subscription(sub_id)
        if remote is None:
            # The payment may belong to the other PayPal account
            for other_name in self._sibling_accounts(provider.name)[1:]:
                other = self._configured(other_name)
                if other is None:
                    continue
                remote = await other.get_subscription(sub_id)
                if remote is not None:
                    provider = other
                    break
        if remote is None or not remote.is_active:
            logger.info(
                f"Orphan payment's subscription is not active ({remote.raw_status if remote else 'missing'})",
                extra={"provider": provider.name, "subscription_id": sub_id},
            )
            return False, False

        metadata = entry.extra_data or {}
        plan_id = (
            remote.plan_id
            or metadata.get("plan_id")
            or (plan_for_amount(remote.price_amount) if remote.price_amount else "monthly")
        )
        created = await self.store.insert_if_absent(
            self._row_from_remote(remote, entry.user_id, plan_id, provider.name),
            now=now,
        )
        if created:
            logger.info(
                f"Auto-healed missing subscription for user {entry.user_id}",
                extra={"provider": provider.name, "subscription_id": sub_id},
            )
        activated = await self.projector.grant(entry.user_id)
        return created, activated

    # ── Phase C: discovery ────────────────────────────────────────────────────

    async def _discovery_phase(self, report: SweepReport, now: datetime) -> None:
        tally = report.discovered
        for name in PROVIDER_ORDER:
            provider = self._configured(name)
            if provider is None:
                continue

            # Either PayPal account may already hold the id
            known: set[str] = set()
            for account in self._sibling_accounts(name):
                known |= await self.store.known_ids(account)
            seen: set[str] = set()
            cursor: Optional[str] = None

            for _ in range(MAX_DISCOVERY_PAGES):
                try:
                    page = await provider.list_active_subscriptions(cursor)
                except Exception as e:
                    tally.errors += 1
                    logger.error(f"Discovery listing failed: {e}", extra={"provider": name}, exc_info=True)
                    break

                for remote in page.items:
                    if remote.id in seen:
                        continue
                    seen.add(remote.id)
                    tally.checked += 1
                    if remote.id in known:
                        continue
                    tally.found += 1
                    await self._discover_one(provider, remote, tally, now)

                if not page.next_cursor or page.next_cursor == cursor:
                    break
                cursor = page.next_cursor

    async def _discover_one(
        self,
        provider: PaymentProvider,
        remote: ProviderSubscription,
        tally: DiscoveryTally,
        now: datetime,
    ) -> None:
        def anomaly(reason: str) -> None:
            tally.anomalies.append(
                {
                    "provider": provider.name,
                    "subscription_id": remote.id,
                    "email": remote.customer_email,
                    "reason": reason,
                }
            )
            logger.warning(
                f"Discovery anomaly: {reason}",
                extra={"provider": provider.name, "subscription_id": remote.id},
            )

        if not remote.customer_email:
            anomaly("no_customer_email")
            return

        savepoint = await self.db.begin_nested()
        try:
            profile = await self.projector.find_user_by_email(remote.customer_email)
            if profile is None:
                await savepoint.commit()
                anomaly("user_not_found")
                return

            plan_id = remote.plan_id or (plan_for_amount(remote.price_amount) if remote.price_amount else "monthly")
            created = await self.store.insert_if_absent(
                self._row_from_remote(remote, profile.id, plan_id, provider.name),
                now=now,
            )
            if created:
                result = await self.ledger.insert(
                    PaymentRecord(
                        user_id=profile.id,
                        transaction_type=TransactionType.SUBSCRIPTION.value,
                        gateway=provider.name,
                        gateway_identifier=remote.id,
                        amount=Decimal(remote.price_amount) / 100,
                        currency=remote.currency,
                        item_name=plan_name(plan_id),
                        metadata={"plan_id": plan_id, "subscription_id": remote.id, "discovered": True},
                    ),
                    now,
                )
                if not result.success:
                    raise RuntimeError(result.error or "ledger insert failed")
            await self.projector.grant(profile.id)
            await savepoint.commit()
        except Exception as e:
            await savepoint.rollback()
            tally.errors += 1
            logger.error(
                f"Discovery adoption failed: {e}",
                extra={"provider": provider.name, "subscription_id": remote.id},
                exc_info=True,
            )
            return

        if created:
            tally.created += 1
            logger.info(
                f"Discovered subscription for user {profile.id}",
                extra={"provider": provider.name, "subscription_id": remote.id},
            )

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    def _row_from_remote(remote: ProviderSubscription, user_id: str, plan_id: str, provider_name: str) -> dict:
        plan = get_plan(plan_id)
        return {
            "user_id": user_id,
            "provider": provider_name,
            "provider_subscription_id": remote.id,
            "provider_customer_id": remote.customer_id,
            "status": SubscriptionStatus.ACTIVE.value,
            "plan_id": plan_id,
            "plan_name": plan_name(plan_id),
            "price_amount": remote.price_amount or (int(round(plan["price"] * 100)) if plan else 0),
            "price_currency": remote.currency,
            "billing_interval": remote.billing_interval or (plan["interval"] if plan else "month"),
            "current_period_start": remote.current_period_start,
            "current_period_end": remote.current_period_end,
            "cancel_at": remote.cancel_at,
            "is_legacy": provider_name == BillingProvider.PAYPAL_LEGACY.value,
        }


async def run_reconciliation_loop(providers_factory, notifier: NullNotifier | None = None) -> None:
    """Run the sweep every ``reconciliation_interval_hours`` until cancelled."""
    interval = default_settings.reconciliation_interval_hours * 3600
    while True:
        await asyncio.sleep(interval)
        try:
            async with async_session_maker() as session:
                sweep = ReconciliationSweep(session, providers_factory(), notifier)
                report = await sweep.run()
                logger.info(f"Scheduled reconciliation complete: {report.to_dict()}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Scheduled reconciliation failed: {e}", exc_info=True)
