"""
Stripe billing adapter.

Wraps the Stripe SDK (run in a worker thread, the SDK is synchronous) and
translates Stripe webhook payloads into normalized billing events.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Optional

import stripe

from core.domain.events import (
    BillingEvent,
    MissingCorrelationError,
    OneTimePurchase,
    PaymentFailed,
    RenewalPaid,
    SubscriptionActivated,
    SubscriptionCanceled,
    SubscriptionPaused,
    SubscriptionReactivated,
    SubscriptionUpdated,
    UnhandledEvent,
    WebhookPayloadError,
)
from core.domain.subscription import LIFETIME_PLAN_ID, BillingProvider, SubscriptionStatus
from core.interfaces.payments import (
    PaymentProvider,
    ProviderSubscription,
    SubscriptionPage,
    WebhookNotConfiguredError,
)
from core.plans import get_plan, plan_for_amount, plan_for_stripe_price
from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)


# Custom Exceptions
class StripeProviderError(Exception):
    """Base exception for Stripe adapter errors."""

    pass


class StripeAPIError(StripeProviderError):
    """Raised when the Stripe API returns an error."""

    pass


class StripeAuthError(StripeProviderError):
    """Raised when the Stripe secret key is missing."""

    pass


class StripeResourceMissingError(StripeProviderError):
    """Raised when Stripe reports the requested object does not exist."""

    pass


class StripeWebhookError(StripeProviderError, WebhookNotConfiguredError):
    """Raised when the webhook signing secret is not configured."""

    pass


# Stripe status -> local status
_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE.value,
    "trialing": SubscriptionStatus.ACTIVE.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "paused": SubscriptionStatus.PAUSED.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "incomplete_expired": SubscriptionStatus.CANCELED.value,
    "incomplete": SubscriptionStatus.INCOMPLETE.value,
}


def normalize_status(raw_status: Optional[str]) -> str:
    return _STATUS_MAP.get(raw_status or "", SubscriptionStatus.INCOMPLETE.value)


def _from_unix(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _cents_to_decimal(value: Any) -> Decimal:
    return (Decimal(int(value or 0)) / Decimal(100)).quantize(Decimal("0.01"))


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields may hold either an id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _as_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _require_user_id(metadata: dict[str, Any]) -> str:
    """Read and validate ``metadata.userId``."""
    user_id = (metadata or {}).get("userId")
    if not user_id:
        raise MissingCorrelationError("Missing userId in metadata")
    try:
        uuid.UUID(str(user_id))
    except (ValueError, AttributeError) as e:
        raise MissingCorrelationError(f"Invalid userId in metadata: {user_id}") from e
    return str(user_id)


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def _subscription_periods(data: dict[str, Any]) -> tuple[Optional[datetime], Optional[datetime]]:
    """Period bounds live on the subscription or, on newer API versions, on its items."""
    start = data.get("current_period_start")
    end = data.get("current_period_end")
    if start is None or end is None:
        items = (data.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return _from_unix(start), _from_unix(end)


def _first_price(data: dict[str, Any]) -> dict[str, Any]:
    items = (data.get("items") or {}).get("data") or []
    if not items:
        return {}
    return items[0].get("price") or {}


def _invoice_subscription_id(invoice: dict[str, Any]) -> Optional[str]:
    sub_id = _object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _object_id(details.get("subscription"))


def subscription_from_stripe(data: dict[str, Any]) -> ProviderSubscription:
    """Normalize a Stripe subscription object."""
    raw_status = data.get("status", "")
    status = normalize_status(raw_status)
    price = _first_price(data)
    amount = int(price.get("unit_amount") or 0)
    plan_id = plan_for_stripe_price(price.get("id")) or (plan_for_amount(amount) if amount else None)
    start, end = _subscription_periods(data)

    customer = data.get("customer")
    customer_email = customer.get("email") if isinstance(customer, dict) else None

    return ProviderSubscription(
        id=data.get("id", ""),
        provider=BillingProvider.STRIPE.value,
        raw_status=raw_status,
        is_active=status == SubscriptionStatus.ACTIVE.value,
        status=status,
        customer_id=_object_id(customer),
        customer_email=customer_email,
        plan_id=plan_id,
        price_amount=amount,
        currency=(price.get("currency") or "usd").upper(),
        billing_interval=(price.get("recurring") or {}).get("interval"),
        current_period_start=start,
        current_period_end=end,
        cancel_at=_from_unix(data.get("cancel_at")),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        canceled_at=_from_unix(data.get("canceled_at")),
        user_id=(data.get("metadata") or {}).get("userId"),
    )


class StripeProvider(PaymentProvider):
    """
    Stripe payment provider.

    Subscriptions are polled with ``stripe.Subscription`` and webhooks are
    verified with ``stripe.WebhookSignature``.
    """

    name = BillingProvider.STRIPE.value
    SIGNATURE_TOLERANCE_SECONDS = 300

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret key (defaults to settings)
            webhook_secret: Webhook signing secret (defaults to settings)
        """
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

        if not self.api_key:
            logger.warning("Stripe secret key not configured. Set stripe_secret_key in settings.")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def is_subscription_id(self, identifier: str) -> bool:
        # Lifetime purchases are keyed by payment intents / checkout sessions
        return bool(identifier) and identifier.startswith("sub_")

    async def _call(self, func, *args, **kwargs) -> Any:
        """Run a blocking SDK call in a worker thread, translating SDK errors."""
        if not self.api_key:
            raise StripeAuthError("Stripe secret key not configured. Set stripe_secret_key in settings.")

        try:
            return await asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise StripeResourceMissingError(str(e)) from e
            logger.error(f"Stripe request rejected: {e}")
            raise StripeAPIError(f"API request failed: {e}") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe API error: {e}")
            raise StripeAPIError(f"API request failed: {e}") from e

    async def get_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        """
        Fetch a subscription by id.

        Returns:
            Normalized subscription, or None if Stripe has no such object

        Raises:
            StripeAPIError: On any other API failure
        """
        logger.info(f"Fetching Stripe subscription {subscription_id}")
        try:
            sub = await self._call(stripe.Subscription.retrieve, subscription_id, expand=["customer"])
        except StripeResourceMissingError:
            logger.info(f"Stripe subscription {subscription_id} no longer exists")
            return None
        return subscription_from_stripe(_as_dict(sub))

    async def list_active_subscriptions(self, cursor: Optional[str] = None) -> SubscriptionPage:
        params: dict[str, Any] = {
            "status": "active",
            "limit": 100,
            "expand": ["data.customer"],
        }
        if cursor:
            params["starting_after"] = cursor

        result = _as_dict(await self._call(stripe.Subscription.list, **params))
        items = [subscription_from_stripe(item) for item in result.get("data", [])]
        next_cursor = items[-1].id if result.get("has_more") and items else None
        return SubscriptionPage(items=items, next_cursor=next_cursor)

    async def cancel(self, subscription_id: str, reason: str) -> bool:
        logger.info(f"Cancelling Stripe subscription {subscription_id}: {reason}")
        await self._call(
            stripe.Subscription.cancel,
            subscription_id,
            cancellation_details={"comment": reason},
        )
        return True

    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """
        Verify the ``Stripe-Signature`` header over the raw body.

        Raises:
            StripeWebhookError: If the signing secret is not configured
        """
        if not self.webhook_secret:
            raise StripeWebhookError(
                "Webhook secret not configured. Set stripe_webhook_secret in settings."
            )

        signature = _header(headers, "stripe-signature")
        if not signature:
            logger.warning("Stripe webhook received without signature header")
            return False

        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"),
                signature,
                self.webhook_secret,
                tolerance=self.SIGNATURE_TOLERANCE_SECONDS,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning(f"Stripe webhook signature verification failed: {e}")
            return False

        return True

    def parse_event(self, raw_body: bytes) -> BillingEvent:
        """
        Translate a verified Stripe event into a normalized billing event.

        Raises:
            WebhookPayloadError: Malformed body or missing object
            MissingCorrelationError: Checkout without a usable userId
        """
        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise WebhookPayloadError("Invalid JSON payload") from e

        if not isinstance(payload, dict) or not payload.get("type"):
            raise WebhookPayloadError("Missing event type")

        obj = (payload.get("data") or {}).get("object")
        if not isinstance(obj, dict):
            raise WebhookPayloadError("Missing data.object")

        event_type = payload["type"]
        common = {
            "provider": self.name,
            "event_type": event_type,
            "event_id": payload.get("id"),
            "raw": payload,
        }

        if event_type == "checkout.session.completed":
            return self._parse_checkout(obj, common)

        if event_type == "customer.subscription.updated":
            start, end = _subscription_periods(obj)
            cancel_at = _from_unix(obj.get("cancel_at"))
            if cancel_at is None and obj.get("cancel_at_period_end"):
                cancel_at = end
            return SubscriptionUpdated(
                provider_subscription_id=self._required(obj.get("id"), "subscription id"),
                status=normalize_status(obj.get("status")),
                current_period_start=start,
                current_period_end=end,
                cancel_at=cancel_at,
                canceled_at=_from_unix(obj.get("canceled_at")),
                plan_id=plan_for_stripe_price(_first_price(obj).get("id")),
                **common,
            )

        if event_type == "customer.subscription.deleted":
            details = obj.get("cancellation_details") or {}
            _, end = _subscription_periods(obj)
            return SubscriptionCanceled(
                provider_subscription_id=self._required(obj.get("id"), "subscription id"),
                reason=details.get("reason") or "canceled",
                feedback=details.get("feedback"),
                comment=details.get("comment"),
                canceled_at=_from_unix(obj.get("canceled_at") or obj.get("ended_at")),
                cancel_at=_from_unix(obj.get("cancel_at")),
                current_period_end=end,
                user_id=(obj.get("metadata") or {}).get("userId"),
                **common,
            )

        if event_type == "customer.subscription.paused":
            return SubscriptionPaused(
                provider_subscription_id=self._required(obj.get("id"), "subscription id"),
                **common,
            )

        if event_type == "customer.subscription.resumed":
            _, end = _subscription_periods(obj)
            return SubscriptionReactivated(
                provider_subscription_id=self._required(obj.get("id"), "subscription id"),
                user_id=(obj.get("metadata") or {}).get("userId"),
                current_period_end=end,
                **common,
            )

        if event_type == "invoice.paid":
            billing_reason = obj.get("billing_reason")
            sub_id = _invoice_subscription_id(obj)
            if billing_reason != "subscription_cycle" or not sub_id:
                # First invoice is covered by checkout.session.completed
                return UnhandledEvent(reason=f"invoice billing_reason={billing_reason}", **common)
            lines = (obj.get("lines") or {}).get("data") or []
            period_end = _from_unix((lines[0].get("period") or {}).get("end")) if lines else None
            return RenewalPaid(
                provider_subscription_id=sub_id,
                gateway_identifier=self._required(obj.get("id"), "invoice id"),
                amount=_cents_to_decimal(obj.get("amount_paid")),
                currency=(obj.get("currency") or "usd").upper(),
                current_period_end=period_end,
                **common,
            )

        if event_type == "invoice.payment_failed":
            sub_id = _invoice_subscription_id(obj)
            if not sub_id:
                return UnhandledEvent(reason="invoice not linked to a subscription", **common)
            invoice_id = self._required(obj.get("id"), "invoice id")
            return PaymentFailed(
                provider_subscription_id=sub_id,
                # Keyed per attempt so the eventual invoice.paid row is not shadowed
                gateway_identifier=f"{invoice_id}:failed:{obj.get('attempt_count') or 1}",
                amount=_cents_to_decimal(obj.get("amount_due")),
                currency=(obj.get("currency") or "usd").upper(),
                **common,
            )

        logger.info(f"Unhandled Stripe event type: {event_type}")
        return UnhandledEvent(**common)

    def _parse_checkout(self, session: dict[str, Any], common: dict[str, Any]) -> BillingEvent:
        metadata = session.get("metadata") or {}
        user_id = _require_user_id(metadata)
        plan_id = metadata.get("planId")
        customer_email = session.get("customer_email") or (session.get("customer_details") or {}).get("email")
        amount = _cents_to_decimal(session.get("amount_total"))
        currency = (session.get("currency") or "usd").upper()
        session_id = self._required(session.get("id"), "checkout session id")

        if session.get("mode") == "payment":
            purchase_id = _object_id(session.get("payment_intent")) or session_id
            return OneTimePurchase(
                user_id=user_id,
                gateway_identifier=session_id,
                provider_subscription_id=purchase_id,
                amount=amount,
                currency=currency,
                provider_customer_id=_object_id(session.get("customer")),
                customer_email=customer_email,
                **common,
            )

        sub_id = _object_id(session.get("subscription"))
        if not sub_id:
            raise WebhookPayloadError("Checkout session has no subscription")

        plan = get_plan(plan_id)
        return SubscriptionActivated(
            user_id=user_id,
            provider_subscription_id=sub_id,
            status=SubscriptionStatus.ACTIVE.value,
            provider_customer_id=_object_id(session.get("customer")),
            customer_email=customer_email,
            plan_id=plan_id if plan_id != LIFETIME_PLAN_ID else None,
            amount=amount,
            currency=currency,
            billing_interval=plan["interval"] if plan else "month",
            gateway_identifier=session_id,
            **common,
        )

    @staticmethod
    def _required(value: Optional[str], label: str) -> str:
        if not value:
            raise WebhookPayloadError(f"Missing {label}")
        return value

    # Checkout helpers used by the payment pages

    async def create_checkout_session(
        self,
        user_id: str,
        plan_id: str,
        success_url: str,
        cancel_url: str,
        email: str | None = None,
    ) -> str:
        """
        Create a Checkout session and return its URL.

        Lifetime plans use payment mode, everything else subscription mode.
        """
        price_ids = {
            "monthly": settings.stripe_price_monthly,
            "monthly_pro": settings.stripe_price_monthly_pro,
            LIFETIME_PLAN_ID: settings.stripe_price_lifetime,
        }
        price_id = price_ids.get(plan_id)
        if not price_id:
            raise StripeAPIError(f"No Stripe price configured for plan {plan_id}")

        metadata = {"userId": user_id, "planId": plan_id}
        params: dict[str, Any] = {
            "mode": "payment" if plan_id == LIFETIME_PLAN_ID else "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if plan_id != LIFETIME_PLAN_ID:
            params["subscription_data"] = {"metadata": metadata}
        if email:
            params["customer_email"] = email

        session = _as_dict(await self._call(stripe.checkout.Session.create, **params))
        logger.info(f"Created Stripe checkout session for user {user_id}, plan {plan_id}")
        return session.get("url", "")

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a billing-portal session and return its URL."""
        session = _as_dict(
            await self._call(
                stripe.billing_portal.Session.create,
                customer=customer_id,
                return_url=return_url,
            )
        )
        return session.get("url", "")


def create_stripe_provider(
    api_key: str | None = None,
    webhook_secret: str | None = None,
) -> StripeProvider:
    """Create a Stripe provider instance."""
    return StripeProvider(api_key=api_key, webhook_secret=webhook_secret)
