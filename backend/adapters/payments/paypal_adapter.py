"""
PayPal billing adapter.

One class serves both the current PayPal account and the legacy account
(read-only: status polling and cancellation). Talks to the PayPal REST API
over httpx with a cached OAuth client-credentials token.
"""

import json
import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from core.domain.events import (
    BillingEvent,
    MissingCorrelationError,
    OneTimePurchase,
    PaymentFailed,
    PaymentIssue,
    RenewalPaid,
    SubscriptionActivated,
    SubscriptionCanceled,
    SubscriptionReactivated,
    UnhandledEvent,
    WebhookPayloadError,
)
from core.domain.subscription import BillingProvider, SubscriptionStatus
from core.interfaces.payments import (
    PaymentProvider,
    ProviderSubscription,
    SubscriptionPage,
    WebhookNotConfiguredError,
)
from core.plans import get_plan, plan_for_amount, plan_for_paypal_plan
from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)


# Custom Exceptions
class PayPalError(Exception):
    """Base exception for PayPal adapter errors."""

    pass


class PayPalAPIError(PayPalError):
    """Raised when the PayPal API returns an error."""

    pass


class PayPalAuthError(PayPalError):
    """Raised when credentials are missing or rejected."""

    pass


class PayPalWebhookError(PayPalError, WebhookNotConfiguredError):
    """Raised when no webhook id is configured for verification."""

    pass


# PayPal subscription status -> local status
_STATUS_MAP = {
    "ACTIVE": SubscriptionStatus.ACTIVE.value,
    "APPROVAL_PENDING": SubscriptionStatus.INCOMPLETE.value,
    "APPROVED": SubscriptionStatus.INCOMPLETE.value,
    "SUSPENDED": SubscriptionStatus.CANCELED.value,
    "CANCELLED": SubscriptionStatus.CANCELED.value,
    "EXPIRED": SubscriptionStatus.CANCELED.value,
}

_CANCELLATION_REASONS = {
    "BILLING.SUBSCRIPTION.CANCELLED": "user_cancelled",
    "BILLING.SUBSCRIPTION.EXPIRED": "subscription_expired",
    "BILLING.SUBSCRIPTION.SUSPENDED": "payment_failed",
}

_PAYMENT_ISSUES = {
    "PAYMENT.SALE.DENIED": "denied",
    "PAYMENT.SALE.REFUNDED": "refunded",
    "PAYMENT.SALE.REVERSED": "reversed",
}

# Headers PayPal sends with every webhook delivery
VERIFICATION_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)
REQUIRED_WEBHOOK_HEADERS = ("paypal-transmission-id", "paypal-transmission-sig")

# The reporting API rejects ranges longer than 31 days
MAX_REPORTING_WINDOW_DAYS = 31


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable PayPal timestamp: {value}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _format_time(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _money(amount: Optional[dict[str, Any]]) -> tuple[Decimal, str]:
    """Read ``{"value"|"total": "9.99", "currency_code"|"currency": "USD"}``."""
    if not amount:
        return Decimal("0.00"), "USD"
    raw = amount.get("value") or amount.get("total") or "0"
    try:
        value = Decimal(str(raw)).quantize(Decimal("0.01"))
    except InvalidOperation:
        value = Decimal("0.00")
    currency = amount.get("currency_code") or amount.get("currency") or "USD"
    return value, currency.upper()


def _to_cents(value: Decimal) -> int:
    return int((value * 100).to_integral_value())


def _valid_user_id(value: Any) -> Optional[str]:
    if not value:
        return None
    try:
        uuid.UUID(str(value))
    except (ValueError, AttributeError):
        return None
    return str(value)


def _require_user_id(value: Any, event_type: str) -> str:
    user_id = _valid_user_id(value)
    if user_id is None:
        if value:
            raise MissingCorrelationError(f"Invalid custom_id on {event_type}: {value}")
        raise MissingCorrelationError(f"Missing custom_id on {event_type}")
    return user_id


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    for key, candidate in headers.items():
        if key.lower() == name:
            return candidate
    return None


def missing_webhook_headers(headers: Mapping[str, str]) -> list[str]:
    """Required PayPal transmission headers absent from *headers*."""
    return [name for name in REQUIRED_WEBHOOK_HEADERS if not _header(headers, name)]


def subscription_from_paypal(data: dict[str, Any], provider: str) -> ProviderSubscription:
    """Normalize a PayPal ``/v1/billing/subscriptions/{id}`` response."""
    raw_status = (data.get("status") or "").upper()
    status = _STATUS_MAP.get(raw_status, SubscriptionStatus.INCOMPLETE.value)
    billing_info = data.get("billing_info") or {}
    subscriber = data.get("subscriber") or {}

    last_payment = (billing_info.get("last_payment") or {}).get("amount")
    amount, currency = _money(last_payment)
    cents = _to_cents(amount)

    plan_id = plan_for_paypal_plan(data.get("plan_id"))
    if plan_id is None and cents:
        plan_id = plan_for_amount(cents)
    plan = get_plan(plan_id)
    if not cents and plan:
        cents = int(round(plan["price"] * 100))

    terminal = status == SubscriptionStatus.CANCELED.value
    return ProviderSubscription(
        id=data.get("id", ""),
        provider=provider,
        raw_status=raw_status,
        is_active=status == SubscriptionStatus.ACTIVE.value,
        status=status,
        customer_id=subscriber.get("payer_id"),
        customer_email=subscriber.get("email_address"),
        plan_id=plan_id,
        price_amount=cents,
        currency=currency,
        billing_interval=plan["interval"] if plan else "month",
        current_period_start=_parse_time(data.get("start_time")),
        current_period_end=_parse_time(billing_info.get("next_billing_time")),
        canceled_at=_parse_time(data.get("status_update_time")) if terminal else None,
        user_id=_valid_user_id(data.get("custom_id")),
    )


class PayPalProvider(PaymentProvider):
    """
    PayPal REST API provider.

    Instantiated once for the current account (``paypal``) and once for the
    legacy account (``paypal_legacy``).
    """

    def __init__(
        self,
        name: str = BillingProvider.PAYPAL.value,
        client_id: str | None = None,
        client_secret: str | None = None,
        webhook_id: str | None = None,
        api_base: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize PayPal provider.

        Args:
            name: Provider name stored on subscription rows
            client_id: REST app client id
            client_secret: REST app secret
            webhook_id: Webhook id used for signature verification
            api_base: API base URL (defaults to settings.paypal_api_base)
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.name = name
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.api_base = (api_base or settings.paypal_api_base).rstrip("/")
        self._transport = transport
        self._access_token: str | None = None
        self._token_expires_at: datetime | None = None

        if not self.is_configured:
            logger.warning(f"PayPal credentials not configured for {name}")

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def is_legacy(self) -> bool:
        return self.name == BillingProvider.PAYPAL_LEGACY.value

    def is_subscription_id(self, identifier: str) -> bool:
        # Billing agreements are I-...; capture and order ids are not pollable
        return bool(identifier) and identifier.startswith("I-")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.api_base, timeout=30.0, transport=self._transport)

    async def _get_access_token(self) -> str:
        """Client-credentials token, cached until shortly before expiry."""
        if not self.is_configured:
            raise PayPalAuthError(f"PayPal credentials not configured for {self.name}")

        now = datetime.now(UTC)
        if self._access_token and self._token_expires_at and now < self._token_expires_at:
            return self._access_token

        try:
            async with self._client() as client:
                response = await client.post(
                    "/v1/oauth2/token",
                    auth=(self.client_id, self.client_secret),
                    data={"grant_type": "client_credentials"},
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"PayPal token request failed for {self.name}: {e.response.status_code}")
            raise PayPalAuthError(f"Failed to get PayPal access token: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"PayPal token request error for {self.name}: {e}")
            raise PayPalAPIError(f"Token request failed: {e}") from e

        self._access_token = data["access_token"]
        expires_in = int(data.get("expires_in", 3600))
        self._token_expires_at = now + timedelta(seconds=max(expires_in - 60, 0))
        return self._access_token

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> Optional[dict[str, Any]]:
        """
        Make an authenticated request to the PayPal API.

        Returns:
            Parsed JSON body, ``{}`` for empty responses, or None for a 404
            when ``allow_not_found`` is set

        Raises:
            PayPalAPIError: If the request fails
        """
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            async with self._client() as client:
                logger.info(f"Making {method} request to PayPal {endpoint}")
                response = await client.request(method, endpoint, headers=headers, json=data, params=params)

                if response.status_code == 404 and allow_not_found:
                    return None

                response.raise_for_status()

                if response.status_code == 204 or not response.content:
                    return {}

                return response.json()

        except httpx.HTTPStatusError as e:
            error_detail = str(e)
            try:
                error_data = e.response.json()
                error_detail = error_data.get("message") or error_data.get("name") or error_detail
            except ValueError:
                pass

            logger.error(f"PayPal API error: {error_detail}")
            raise PayPalAPIError(f"API request failed: {error_detail}") from e
        except httpx.RequestError as e:
            logger.error(f"HTTP request error: {e}")
            raise PayPalAPIError(f"Request failed: {e}") from e

    async def get_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        logger.info(f"Fetching {self.name} subscription {subscription_id}")
        data = await self._make_request(
            "GET", f"/v1/billing/subscriptions/{subscription_id}", allow_not_found=True
        )
        if data is None:
            logger.info(f"{self.name} subscription {subscription_id} not found")
            return None
        return subscription_from_paypal(data, self.name)

    async def cancel(self, subscription_id: str, reason: str) -> bool:
        logger.info(f"Cancelling {self.name} subscription {subscription_id}")
        await self._make_request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/cancel",
            data={"reason": reason[:128]},
        )
        return True

    async def list_active_subscriptions(self, cursor: Optional[str] = None) -> SubscriptionPage:
        """
        One page of active subscriptions found in recent transactions.

        PayPal has no "list subscriptions" endpoint, so this walks the
        reporting API for the discovery window and resolves every
        subscription id it sees. The cursor is the reporting page number.
        """
        page = int(cursor or 1)
        end = datetime.now(UTC)
        window = min(settings.paypal_discovery_window_days, MAX_REPORTING_WINDOW_DAYS)
        start = end - timedelta(days=window)

        data = await self._make_request(
            "GET",
            "/v1/reporting/transactions",
            params={
                "start_date": _format_time(start),
                "end_date": _format_time(end),
                "page_size": 100,
                "page": page,
                "fields": "all",
                "transaction_status": "S",
            },
            allow_not_found=True,
        )
        if not data:
            return SubscriptionPage()

        subscription_ids: list[str] = []
        for detail in data.get("transaction_details", []):
            info = detail.get("transaction_info") or {}
            reference = info.get("paypal_reference_id")
            if (
                info.get("paypal_reference_id_type") == "SUB"
                and self.is_subscription_id(reference or "")
                and reference not in subscription_ids
            ):
                subscription_ids.append(reference)

        items = []
        for subscription_id in subscription_ids:
            sub = await self.get_subscription(subscription_id)
            if sub is not None and sub.is_active:
                items.append(sub)

        total_pages = int(data.get("total_pages") or 1)
        next_cursor = str(page + 1) if page < total_pages else None
        return SubscriptionPage(items=items, next_cursor=next_cursor)

    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """
        Verify a delivery with PayPal's verify-webhook-signature API.

        Raises:
            PayPalWebhookError: If no webhook id is configured
        """
        if not self.webhook_id:
            raise PayPalWebhookError(f"Webhook id not configured for {self.name}")

        if missing_webhook_headers(headers):
            return False

        try:
            webhook_event = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("PayPal webhook body is not valid JSON")
            return False

        payload = {name.removeprefix("paypal-").replace("-", "_"): _header(headers, name) for name in VERIFICATION_HEADERS}
        payload["webhook_id"] = self.webhook_id
        payload["webhook_event"] = webhook_event

        try:
            result = await self._make_request("POST", "/v1/notifications/verify-webhook-signature", data=payload)
        except PayPalError as e:
            logger.error(f"PayPal webhook verification request failed: {e}")
            return False

        verified = (result or {}).get("verification_status") == "SUCCESS"
        if not verified:
            logger.warning(f"PayPal webhook verification status: {(result or {}).get('verification_status')}")
        return verified

    def parse_event(self, raw_body: bytes) -> BillingEvent:
        """
        Translate a verified PayPal event into a normalized billing event.

        Raises:
            WebhookPayloadError: Malformed body or missing resource
            MissingCorrelationError: Activation or capture without a usable custom_id
        """
        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise WebhookPayloadError("Invalid JSON payload") from e

        if not isinstance(payload, dict) or not payload.get("event_type"):
            raise WebhookPayloadError("Missing event_type")

        resource = payload.get("resource")
        if not isinstance(resource, dict):
            raise WebhookPayloadError("Missing resource")

        event_type = payload["event_type"]
        common = {
            "provider": self.name,
            "event_type": event_type,
            "event_id": payload.get("id"),
            "raw": payload,
        }
        billing_info = resource.get("billing_info") or {}

        if event_type in ("BILLING.SUBSCRIPTION.CREATED", "BILLING.SUBSCRIPTION.ACTIVATED"):
            sub_id = self._required(resource.get("id"), "subscription id")
            user_id = _require_user_id(resource.get("custom_id"), event_type)
            plan_id = plan_for_paypal_plan(resource.get("plan_id")) or "monthly"
            plan = get_plan(plan_id)
            active = event_type == "BILLING.SUBSCRIPTION.ACTIVATED" or resource.get("status") == "ACTIVE"
            subscriber = resource.get("subscriber") or {}
            return SubscriptionActivated(
                user_id=user_id,
                provider_subscription_id=sub_id,
                status=SubscriptionStatus.ACTIVE.value if active else SubscriptionStatus.INCOMPLETE.value,
                provider_customer_id=subscriber.get("payer_id"),
                customer_email=subscriber.get("email_address"),
                plan_id=plan_id,
                amount=Decimal(str(plan["price"])).quantize(Decimal("0.01")),
                currency=plan["currency"],
                billing_interval=plan["interval"],
                current_period_start=_parse_time(resource.get("start_time")),
                current_period_end=_parse_time(billing_info.get("next_billing_time")),
                gateway_identifier=sub_id,
                **common,
            )

        if event_type in _CANCELLATION_REASONS:
            return SubscriptionCanceled(
                provider_subscription_id=self._required(resource.get("id"), "subscription id"),
                reason=_CANCELLATION_REASONS[event_type],
                canceled_at=_parse_time(resource.get("status_update_time")),
                current_period_end=_parse_time(billing_info.get("next_billing_time")),
                user_id=_valid_user_id(resource.get("custom_id")),
                **common,
            )

        if event_type == "BILLING.SUBSCRIPTION.RE-ACTIVATED":
            return SubscriptionReactivated(
                provider_subscription_id=self._required(resource.get("id"), "subscription id"),
                user_id=_valid_user_id(resource.get("custom_id")),
                current_period_end=_parse_time(billing_info.get("next_billing_time")),
                **common,
            )

        if event_type == "BILLING.SUBSCRIPTION.RENEWED":
            sub_id = self._required(resource.get("id"), "subscription id")
            last_payment = billing_info.get("last_payment") or {}
            amount, currency = _money(last_payment.get("amount"))
            paid_at = last_payment.get("time")
            return RenewalPaid(
                provider_subscription_id=sub_id,
                gateway_identifier=f"{sub_id}:{paid_at}" if paid_at else sub_id,
                amount=amount,
                currency=currency,
                current_period_end=_parse_time(billing_info.get("next_billing_time")),
                user_id=_valid_user_id(resource.get("custom_id")),
                **common,
            )

        if event_type == "PAYMENT.SALE.COMPLETED":
            sub_id = resource.get("billing_agreement_id")
            if not sub_id or not self.is_subscription_id(sub_id):
                return UnhandledEvent(reason="sale not linked to a subscription", **common)
            amount, currency = _money(resource.get("amount"))
            return RenewalPaid(
                provider_subscription_id=sub_id,
                gateway_identifier=self._required(resource.get("id"), "sale id"),
                amount=amount,
                currency=currency,
                user_id=_valid_user_id(resource.get("custom") or resource.get("custom_id")),
                **common,
            )

        if event_type == "BILLING.SUBSCRIPTION.PAYMENT.FAILED":
            sub_id = self._required(resource.get("id"), "subscription id")
            failed = billing_info.get("last_failed_payment") or {}
            amount, currency = _money(failed.get("amount"))
            attempt = failed.get("time") or payload.get("id") or "unknown"
            return PaymentFailed(
                provider_subscription_id=sub_id,
                gateway_identifier=f"{sub_id}:failed:{attempt}",
                amount=amount,
                currency=currency,
                **common,
            )

        if event_type in _PAYMENT_ISSUES:
            amount, currency = _money(resource.get("amount"))
            return PaymentIssue(
                kind=_PAYMENT_ISSUES[event_type],
                gateway_identifier=resource.get("id"),
                amount=amount,
                currency=currency,
                provider_subscription_id=resource.get("billing_agreement_id"),
                **common,
            )

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            capture_id = self._required(resource.get("id"), "capture id")
            units = resource.get("purchase_units") or [{}]
            user_id = _require_user_id(resource.get("custom_id") or units[0].get("custom_id"), event_type)
            amount, currency = _money(resource.get("amount"))
            payer = resource.get("payer") or {}
            return OneTimePurchase(
                user_id=user_id,
                gateway_identifier=capture_id,
                provider_subscription_id=capture_id,
                amount=amount,
                currency=currency,
                provider_customer_id=payer.get("payer_id"),
                customer_email=payer.get("email_address"),
                **common,
            )

        logger.info(f"Unhandled PayPal event type: {event_type}")
        return UnhandledEvent(**common)

    @staticmethod
    def _required(value: Optional[str], label: str) -> str:
        if not value:
            raise WebhookPayloadError(f"Missing {label}")
        return value

    # Checkout helpers used by the payment pages

    @staticmethod
    def _approval_link(data: dict[str, Any]) -> str:
        for link in data.get("links", []):
            if link.get("rel") in ("approve", "payer-action"):
                return link.get("href", "")
        raise PayPalAPIError("No approval link in PayPal response")

    async def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        return_url: str,
        cancel_url: str,
        email: str | None = None,
    ) -> tuple[str, str]:
        """
        Create a subscription awaiting buyer approval.

        Returns:
            (subscription id, approval URL)
        """
        if self.is_legacy:
            raise PayPalError("The legacy PayPal account does not accept new subscriptions")

        paypal_plans = {
            "monthly": settings.paypal_plan_monthly,
            "monthly_pro": settings.paypal_plan_monthly_pro,
        }
        paypal_plan_id = paypal_plans.get(plan_id)
        if not paypal_plan_id:
            raise PayPalAPIError(f"No PayPal plan configured for {plan_id}")

        body: dict[str, Any] = {
            "plan_id": paypal_plan_id,
            "custom_id": user_id,
            "application_context": {
                "brand_name": settings.app_name,
                "user_action": "SUBSCRIBE_NOW",
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        }
        if email:
            body["subscriber"] = {"email_address": email}

        data = await self._make_request("POST", "/v1/billing/subscriptions", data=body)
        logger.info(f"Created PayPal subscription {data.get('id')} for user {user_id}")
        return data.get("id", ""), self._approval_link(data)

    async def create_order(
        self,
        user_id: str,
        plan_id: str,
        return_url: str,
        cancel_url: str,
    ) -> tuple[str, str]:
        """
        Create a one-time order (lifetime plan).

        Returns:
            (order id, approval URL)
        """
        plan = get_plan(plan_id)
        if plan is None:
            raise PayPalAPIError(f"Unknown plan {plan_id}")

        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "custom_id": user_id,
                    "description": plan["name"],
                    "amount": {"currency_code": plan["currency"], "value": f"{plan['price']:.2f}"},
                }
            ],
            "application_context": {"return_url": return_url, "cancel_url": cancel_url},
        }
        data = await self._make_request("POST", "/v2/checkout/orders", data=body)
        return data.get("id", ""), self._approval_link(data)

    async def capture_order(self, order_id: str) -> dict[str, Any]:
        """Capture an approved order; the capture webhook does the bookkeeping."""
        return await self._make_request("POST", f"/v2/checkout/orders/{order_id}/capture", data={})


def create_paypal_provider(transport: httpx.AsyncBaseTransport | None = None) -> PayPalProvider:
    """PayPal provider for the current account."""
    return PayPalProvider(
        name=BillingProvider.PAYPAL.value,
        client_id=settings.paypal_client_id,
        client_secret=settings.paypal_client_secret,
        webhook_id=settings.paypal_webhook_id,
        transport=transport,
    )


def create_paypal_legacy_provider(transport: httpx.AsyncBaseTransport | None = None) -> PayPalProvider:
    """PayPal provider for the legacy account."""
    return PayPalProvider(
        name=BillingProvider.PAYPAL_LEGACY.value,
        client_id=settings.paypal_legacy_client_id,
        client_secret=settings.paypal_legacy_client_secret,
        webhook_id=settings.paypal_legacy_webhook_id,
        transport=transport,
    )
