"""
Billing event handler.

Applies normalized billing events (from any provider) to the subscription
store, the payment ledger and the entitlement projection. Every handler is
idempotent: replaying an event leaves the same rows and the same role.

Side effects are queued while the event is applied and only released by
``run_side_effects()`` after the caller has committed, so a rolled-back
event never sends an email.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.domain.events import (
    BillingEvent,
    MissingCorrelationError,
    OneTimePurchase,
    PaymentFailed,
    PaymentIssue,
    RenewalPaid,
    SubscriptionActivated,
    SubscriptionCanceled,
    SubscriptionPaused,
    SubscriptionReactivated,
    SubscriptionUpdated,
    UnhandledEvent,
)
from core.domain.subscription import (
    LIFETIME_PLAN_ID,
    BillingProvider,
    SubscriptionStatus,
    TransactionType,
    can_transition,
)
from core.interfaces.payments import PaymentProvider, ProviderSubscription
from core.plans import get_plan, plan_for_amount, plan_name
from infrastructure.database.models.subscription import Subscription
from infrastructure.database.models.user import Profile
from services.entitlements import EntitlementProjector
from services.notifications import NullNotifier
from services.payment_ledger import PaymentLedger, PaymentRecord
from services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

DEFAULT_PLAN_ID = "monthly"

PAYPAL_PROVIDERS = (BillingProvider.PAYPAL.value, BillingProvider.PAYPAL_LEGACY.value)


class BillingPersistenceError(Exception):
    """Raised when a ledger write fails for a reason other than dedup."""

    pass


@dataclass
class HandleResult:
    """What the handler did with one event."""

    handled: bool
    action: str
    user_id: Optional[str] = None
    duplicate: bool = False


def _to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class BillingEventHandler:
    """Applies billing events inside the caller's transaction."""

    def __init__(
        self,
        db: AsyncSession,
        providers: dict[str, PaymentProvider] | None = None,
        notifier: NullNotifier | None = None,
        projector: EntitlementProjector | None = None,
        ledger: PaymentLedger | None = None,
    ):
        self.db = db
        self.providers = providers or {}
        self.notifier = notifier or NullNotifier()
        self.store = SubscriptionStore(db)
        self.ledger = ledger or PaymentLedger(db)
        self.projector = projector or EntitlementProjector(db)
        self._effects: list[Callable[[], None]] = []

    # ── Side effects ──────────────────────────────────────────────────────────

    def _defer(self, effect: Callable[[], None]) -> None:
        self._effects.append(effect)

    def discard_side_effects(self) -> None:
        self._effects.clear()

    def run_side_effects(self) -> int:
        """Release queued side effects. Returns how many were released."""
        effects, self._effects = self._effects, []
        for effect in effects:
            try:
                effect()
            except Exception as e:
                # Scheduling must never fail an acknowledged event
                logger.error(f"Failed to schedule billing side effect: {e}", exc_info=True)
        return len(effects)

    # ── Dispatch ──────────────────────────────────────────────────────────────

    async def handle(self, event: BillingEvent, now: datetime) -> HandleResult:
        """Apply *event*; raises on persistence failure."""
        logger.info(
            f"Handling billing event {event.event_type}",
            extra={"provider": event.provider, "event_type": event.event_type},
        )

        if isinstance(event, SubscriptionActivated):
            return await self._on_activated(event, now)
        elif isinstance(event, RenewalPaid):
            return await self._on_renewal(event, now)
        elif isinstance(event, SubscriptionUpdated):
            return await self._on_updated(event, now)
        elif isinstance(event, SubscriptionCanceled):
            return await self._on_canceled(event, now)
        elif isinstance(event, SubscriptionPaused):
            return await self._on_paused(event, now)
        elif isinstance(event, SubscriptionReactivated):
            return await self._on_reactivated(event, now)
        elif isinstance(event, PaymentFailed):
            return await self._on_payment_failed(event, now)
        elif isinstance(event, OneTimePurchase):
            return await self._on_one_time(event, now)
        elif isinstance(event, PaymentIssue):
            return self._on_payment_issue(event)
        elif isinstance(event, UnhandledEvent):
            logger.info(f"Ignoring {event.event_type}: {event.reason}")
            return HandleResult(handled=False, action="ignored")

        logger.warning(f"No handler for event variant {type(event).__name__}")
        return HandleResult(handled=False, action="ignored")

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _record_payment(self, record: PaymentRecord, now: datetime) -> bool:
        """Insert a ledger row. Returns True if it was new."""
        result = await self.ledger.insert(record, now)
        if not result.success:
            raise BillingPersistenceError(result.error or "ledger insert failed")
        return not result.duplicate

    def _lookup_providers(self, provider: str) -> list[str]:
        """Where a provider's subscription ids may be stored."""
        if provider in PAYPAL_PROVIDERS:
            return [provider] + [other for other in PAYPAL_PROVIDERS if other != provider]
        return [provider]

    async def _find(self, provider: str, provider_subscription_id: str) -> Optional[Subscription]:
        return await self.store.find_by_provider_id(provider_subscription_id, self._lookup_providers(provider))

    async def _set_status(self, sub: Subscription, target: str, now: datetime, **changes) -> bool:
        """Move *sub* to *target* if the state machine allows it, plus *changes*."""
        if not can_transition(sub.status, target):
            logger.warning(
                f"Ignoring transition {sub.status} -> {target}",
                extra={"provider": sub.provider, "subscription_id": sub.provider_subscription_id},
            )
            if changes:
                await self.store.update(sub, now=now, **changes)
            return False
        await self.store.update(sub, now=now, status=target, **changes)
        return True

    def _unknown(self, event: BillingEvent, subscription_id: str) -> HandleResult:
        # Acknowledged; the reconciliation sweep adopts it if it is real
        logger.warning(
            f"{event.event_type} for unknown subscription",
            extra={"provider": event.provider, "subscription_id": subscription_id},
        )
        return HandleResult(handled=False, action="unknown_subscription")

    def _notify_payment(
        self,
        kind: str,
        profile: Optional[Profile],
        amount: Decimal,
        currency: str,
        provider: str,
        plan_id: Optional[str],
        subscription_id: Optional[str],
        details: Optional[str] = None,
    ) -> None:
        email = profile.email if profile else "unknown"
        self._defer(
            lambda: self.notifier.payment_notification(
                kind,
                user_email=email,
                amount=amount,
                currency=currency,
                provider=provider,
                plan_name=plan_name(plan_id),
                subscription_id=subscription_id,
                details=details,
            )
        )

    # ── Handlers ──────────────────────────────────────────────────────────────

    async def _enrich_activation(self, event: SubscriptionActivated) -> None:
        """Fill period and customer data missing from the webhook (best effort)."""
        provider = self.providers.get(event.provider)
        if provider is None or not provider.is_configured:
            return
        try:
            remote = await provider.get_subscription(event.provider_subscription_id)
        except Exception as e:
            logger.warning(f"Could not enrich activation from provider: {e}")
            return
        if remote is None:
            return
        event.current_period_start = event.current_period_start or remote.current_period_start
        event.current_period_end = event.current_period_end or remote.current_period_end
        event.provider_customer_id = event.provider_customer_id or remote.customer_id
        event.customer_email = event.customer_email or remote.customer_email
        event.billing_interval = event.billing_interval or remote.billing_interval
        event.plan_id = event.plan_id or remote.plan_id
        if not event.amount and remote.price_amount:
            event.amount = (Decimal(remote.price_amount) / 100).quantize(Decimal("0.01"))

    async def _on_activated(self, event: SubscriptionActivated, now: datetime) -> HandleResult:
        profile = await self.projector.get_profile(event.user_id)
        if profile is None:
            raise MissingCorrelationError(f"User {event.user_id} not found")

        if event.status == SubscriptionStatus.ACTIVE.value and event.current_period_end is None:
            await self._enrich_activation(event)

        plan_id = event.plan_id or DEFAULT_PLAN_ID
        plan = get_plan(plan_id)
        amount = event.amount or Decimal(str(plan["price"] if plan else 0))
        values = {
            "user_id": event.user_id,
            "provider": event.provider,
            "provider_subscription_id": event.provider_subscription_id,
            "provider_customer_id": event.provider_customer_id,
            "status": event.status,
            "plan_id": plan_id,
            "plan_name": plan_name(plan_id),
            "price_amount": _to_cents(amount),
            "price_currency": event.currency,
            "billing_interval": event.billing_interval or (plan["interval"] if plan else "month"),
            "current_period_start": event.current_period_start,
            "current_period_end": event.current_period_end,
            "is_legacy": event.provider == BillingProvider.PAYPAL_LEGACY.value,
        }
        values = {key: value for key, value in values.items() if value is not None}

        existing = await self.store.get(event.provider, event.provider_subscription_id)
        if existing is not None and existing.status != SubscriptionStatus.INCOMPLETE.value:
            # Late or replayed activation must not undo a later cancel or failure
            values.pop("status", None)

        sub = await self.store.upsert(values, now=now)

        if sub.status != SubscriptionStatus.ACTIVE.value:
            return HandleResult(handled=True, action="subscription_pending", user_id=sub.user_id)

        is_new = await self._record_payment(
            PaymentRecord(
                user_id=sub.user_id,
                transaction_type=TransactionType.SUBSCRIPTION.value,
                gateway=event.provider,
                gateway_identifier=event.gateway_identifier or event.provider_subscription_id,
                gateway_event_id=event.event_id,
                amount=amount,
                currency=event.currency,
                item_name=sub.plan_name,
                metadata={"plan_id": plan_id, "subscription_id": event.provider_subscription_id},
            ),
            now,
        )
        await self.projector.grant(sub.user_id)

        if is_new:
            self._notify_payment(
                "new_subscription", profile, amount, event.currency, event.provider,
                plan_id, event.provider_subscription_id,
            )
            self._defer(lambda: self.notifier.welcome(email=profile.email, name=profile.name, plan_id=plan_id))
            self._defer(
                lambda: self.notifier.track(
                    sub.user_id,
                    "subscription_started",
                    {"plan_id": plan_id, "provider": event.provider},
                    revenue=float(amount),
                )
            )
            self._defer(
                lambda: self.notifier.crm_conversion(
                    user_id=sub.user_id,
                    conversion_type="subscription",
                    plan_name=plan_name(plan_id),
                    amount_cents=_to_cents(amount),
                    provider=event.provider,
                )
            )

        return HandleResult(handled=True, action="subscription_activated", user_id=sub.user_id, duplicate=not is_new)

    async def _current_paypal_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        """What the current PayPal account reports for *subscription_id*, if reachable."""
        provider = self.providers.get(BillingProvider.PAYPAL.value)
        if provider is None or not provider.is_configured:
            return None
        try:
            return await provider.get_subscription(subscription_id)
        except Exception as e:
            logger.warning(f"Could not look up {subscription_id} on the current PayPal account: {e}")
            return None

    async def _adopt_paypal_renewal(self, event: RenewalPaid, now: datetime) -> Optional[Subscription]:
        """
        Create the row for a PayPal renewal of a subscription we have no row for.

        The row belongs to the current account when the event carries its
        owner or the current account knows the id. Otherwise the owner must
        come from earlier payments and the subscription is a legacy one.
        """
        remote = None
        if event.provider == BillingProvider.PAYPAL.value:
            remote = await self._current_paypal_subscription(event.provider_subscription_id)

        if event.provider == BillingProvider.PAYPAL_LEGACY.value:
            provider = BillingProvider.PAYPAL_LEGACY.value
        elif event.user_id or remote is not None:
            provider = BillingProvider.PAYPAL.value
        else:
            provider = BillingProvider.PAYPAL_LEGACY.value

        user_id = (
            event.user_id
            or (remote.user_id if remote else None)
            or await self.ledger.find_user_for_identifier(event.provider_subscription_id)
        )
        if user_id is None or await self.projector.get_profile(user_id) is None:
            return None

        cents = _to_cents(event.amount)
        plan_id = (remote.plan_id if remote else None) or (plan_for_amount(cents) if cents else DEFAULT_PLAN_ID)
        values = {
            "user_id": user_id,
            "provider": provider,
            "provider_subscription_id": event.provider_subscription_id,
            "provider_customer_id": remote.customer_id if remote else None,
            "status": SubscriptionStatus.ACTIVE.value,
            "plan_id": plan_id,
            "plan_name": plan_name(plan_id),
            "price_amount": cents,
            "price_currency": event.currency,
            "billing_interval": (remote.billing_interval if remote else None) or "month",
            "current_period_start": remote.current_period_start if remote else None,
            "current_period_end": event.current_period_end or (remote.current_period_end if remote else None),
            "is_legacy": provider == BillingProvider.PAYPAL_LEGACY.value,
        }
        await self.store.insert_if_absent({key: value for key, value in values.items() if value is not None}, now=now)
        logger.info(
            f"Adopted renewal of unknown PayPal subscription for user {user_id}",
            extra={"provider": provider, "subscription_id": event.provider_subscription_id},
        )
        return await self.store.get(provider, event.provider_subscription_id)

    async def _on_renewal(self, event: RenewalPaid, now: datetime) -> HandleResult:
        sub = await self._find(event.provider, event.provider_subscription_id)

        if sub is None and event.provider in PAYPAL_PROVIDERS:
            sub = await self._adopt_paypal_renewal(event, now)

        if sub is None:
            return self._unknown(event, event.provider_subscription_id)

        is_new = await self._record_payment(
            PaymentRecord(
                user_id=sub.user_id,
                transaction_type=TransactionType.RENEWAL.value,
                gateway=sub.provider,
                gateway_identifier=event.gateway_identifier,
                gateway_event_id=event.event_id,
                amount=event.amount,
                currency=event.currency,
                item_name=sub.plan_name,
                metadata={"plan_id": sub.plan_id, "subscription_id": sub.provider_subscription_id},
            ),
            now,
        )

        changes = {}
        if event.current_period_end is not None:
            changes["current_period_end"] = event.current_period_end
        if sub.status == SubscriptionStatus.CANCELED.value:
            # Charged again: the cancellation no longer applies
            changes.update(cancel_at=None, canceled_at=None, cancellation_reason=None)
        await self._set_status(sub, SubscriptionStatus.ACTIVE.value, now, **changes)
        await self.projector.grant(sub.user_id)

        if is_new:
            profile = await self.projector.get_profile(sub.user_id)
            self._notify_payment(
                "renewal", profile, event.amount, event.currency, sub.provider,
                sub.plan_id, sub.provider_subscription_id,
            )
            self._defer(
                lambda: self.notifier.track(
                    sub.user_id,
                    "subscription_renewed",
                    {"plan_id": sub.plan_id, "provider": sub.provider},
                    revenue=float(event.amount),
                )
            )

        return HandleResult(handled=True, action="renewal_recorded", user_id=sub.user_id, duplicate=not is_new)

    async def _on_updated(self, event: SubscriptionUpdated, now: datetime) -> HandleResult:
        sub = await self._find(event.provider, event.provider_subscription_id)
        if sub is None:
            return self._unknown(event, event.provider_subscription_id)

        changes = {
            "current_period_start": event.current_period_start or sub.current_period_start,
            "current_period_end": event.current_period_end or sub.current_period_end,
            "cancel_at": event.cancel_at,
        }
        if event.canceled_at is not None:
            changes["canceled_at"] = event.canceled_at
        if event.plan_id and get_plan(event.plan_id):
            changes.update(plan_id=event.plan_id, plan_name=plan_name(event.plan_id))

        await self._set_status(sub, event.status, now, **changes)

        if sub.status == SubscriptionStatus.ACTIVE.value:
            await self.projector.grant(sub.user_id)
        elif sub.status in (SubscriptionStatus.CANCELED.value, SubscriptionStatus.PAUSED.value):
            await self.projector.apply_grace_rule(sub, now)

        return HandleResult(handled=True, action="subscription_updated", user_id=sub.user_id)

    async def _on_canceled(self, event: SubscriptionCanceled, now: datetime) -> HandleResult:
        sub = await self._find(event.provider, event.provider_subscription_id)
        if sub is None:
            return self._unknown(event, event.provider_subscription_id)

        already_canceled = sub.status == SubscriptionStatus.CANCELED.value
        changes = {
            "canceled_at": event.canceled_at or sub.canceled_at or now,
            "cancellation_reason": event.reason or sub.cancellation_reason,
            "cancellation_feedback": event.feedback or sub.cancellation_feedback,
            "cancellation_comment": event.comment or sub.cancellation_comment,
        }
        if event.cancel_at is not None:
            changes["cancel_at"] = event.cancel_at
        if event.current_period_end is not None:
            changes["current_period_end"] = event.current_period_end

        await self._set_status(sub, SubscriptionStatus.CANCELED.value, now, **changes)
        decision = await self.projector.apply_grace_rule(sub, now)

        if not already_canceled:
            profile = await self.projector.get_profile(sub.user_id)
            details = f"{event.reason or 'canceled'}; access until {decision.grace_end.isoformat()}"
            self._notify_payment(
                "cancellation", profile, Decimal(sub.price_amount) / 100, sub.price_currency,
                sub.provider, sub.plan_id, sub.provider_subscription_id, details,
            )
            self._defer(
                lambda: self.notifier.track(
                    sub.user_id,
                    "subscription_cancelled",
                    {"plan_id": sub.plan_id, "provider": sub.provider, "reason": event.reason},
                )
            )

        return HandleResult(
            handled=True,
            action=f"subscription_canceled_{decision.outcome.value}",
            user_id=sub.user_id,
            duplicate=already_canceled,
        )

    async def _on_paused(self, event: SubscriptionPaused, now: datetime) -> HandleResult:
        sub = await self._find(event.provider, event.provider_subscription_id)
        if sub is None:
            return self._unknown(event, event.provider_subscription_id)

        await self._set_status(sub, SubscriptionStatus.PAUSED.value, now)
        await self.projector.apply_grace_rule(sub, now)
        return HandleResult(handled=True, action="subscription_paused", user_id=sub.user_id)

    async def _on_reactivated(self, event: SubscriptionReactivated, now: datetime) -> HandleResult:
        sub = await self._find(event.provider, event.provider_subscription_id)
        if sub is None:
            return self._unknown(event, event.provider_subscription_id)

        changes = {"cancel_at": None, "canceled_at": None, "cancellation_reason": None}
        if event.current_period_end is not None:
            changes["current_period_end"] = event.current_period_end
        await self._set_status(sub, SubscriptionStatus.ACTIVE.value, now, **changes)
        await self.projector.grant(sub.user_id)

        self._defer(
            lambda: self.notifier.track(
                sub.user_id, "subscription_reactivated", {"plan_id": sub.plan_id, "provider": sub.provider}
            )
        )
        return HandleResult(handled=True, action="subscription_reactivated", user_id=sub.user_id)

    async def _on_payment_failed(self, event: PaymentFailed, now: datetime) -> HandleResult:
        sub = await self._find(event.provider, event.provider_subscription_id)
        if sub is None:
            return self._unknown(event, event.provider_subscription_id)

        is_new = await self._record_payment(
            PaymentRecord(
                user_id=sub.user_id,
                transaction_type=TransactionType.PAYMENT_FAILED.value,
                gateway=sub.provider,
                gateway_identifier=event.gateway_identifier,
                gateway_event_id=event.event_id,
                amount=event.amount,
                currency=event.currency,
                item_name=sub.plan_name,
                metadata={"subscription_id": sub.provider_subscription_id},
            ),
            now,
        )
        # Access continues through the past_due grace; the sweep revokes later
        await self._set_status(sub, SubscriptionStatus.PAST_DUE.value, now)

        if is_new:
            profile = await self.projector.get_profile(sub.user_id)
            self._notify_payment(
                "payment_failed", profile, event.amount, event.currency, sub.provider,
                sub.plan_id, sub.provider_subscription_id,
            )

        return HandleResult(handled=True, action="payment_failed", user_id=sub.user_id, duplicate=not is_new)

    async def _on_one_time(self, event: OneTimePurchase, now: datetime) -> HandleResult:
        profile = await self.projector.get_profile(event.user_id)
        if profile is None:
            raise MissingCorrelationError(f"User {event.user_id} not found")

        purchase_id = event.provider_subscription_id or event.gateway_identifier
        amount = event.amount or Decimal(str(get_plan(LIFETIME_PLAN_ID)["price"]))
        await self.store.insert_if_absent(
            {
                "user_id": event.user_id,
                "provider": event.provider,
                "provider_subscription_id": purchase_id,
                "provider_customer_id": event.provider_customer_id,
                "status": SubscriptionStatus.ACTIVE.value,
                "plan_id": LIFETIME_PLAN_ID,
                "plan_name": plan_name(LIFETIME_PLAN_ID),
                "price_amount": _to_cents(amount),
                "price_currency": event.currency,
            },
            now=now,
        )

        is_new = await self._record_payment(
            PaymentRecord(
                user_id=event.user_id,
                transaction_type=TransactionType.ONE_TIME.value,
                gateway=event.provider,
                gateway_identifier=event.gateway_identifier,
                gateway_event_id=event.event_id,
                amount=amount,
                currency=event.currency,
                item_name=plan_name(LIFETIME_PLAN_ID),
                metadata={"plan_id": LIFETIME_PLAN_ID, "subscription_id": purchase_id},
            ),
            now,
        )
        await self.projector.grant(event.user_id)

        if is_new:
            self._notify_payment(
                "lifetime_purchase", profile, amount, event.currency, event.provider,
                LIFETIME_PLAN_ID, purchase_id,
            )
            self._defer(lambda: self.notifier.welcome(email=profile.email, name=profile.name, plan_id=LIFETIME_PLAN_ID))
            self._defer(
                lambda: self.notifier.track(
                    event.user_id,
                    "lifetime_purchased",
                    {"provider": event.provider},
                    revenue=float(amount),
                )
            )
            self._defer(
                lambda: self.notifier.crm_conversion(
                    user_id=event.user_id,
                    conversion_type="lifetime",
                    plan_name=plan_name(LIFETIME_PLAN_ID),
                    amount_cents=_to_cents(amount),
                    provider=event.provider,
                )
            )

        return HandleResult(handled=True, action="lifetime_purchased", user_id=event.user_id, duplicate=not is_new)

    def _on_payment_issue(self, event: PaymentIssue) -> HandleResult:
        logger.warning(
            f"Payment {event.kind}: {event.gateway_identifier}",
            extra={"provider": event.provider, "subscription_id": event.provider_subscription_id},
        )
        self._defer(
            lambda: self.notifier.payment_notification(
                "payment_issue",
                user_email="unknown",
                amount=event.amount,
                currency=event.currency,
                provider=event.provider,
                plan_name="Subscription",
                subscription_id=event.provider_subscription_id,
                details=f"Sale {event.gateway_identifier} {event.kind}",
            )
        )
        return HandleResult(handled=True, action=f"payment_{event.kind}")
