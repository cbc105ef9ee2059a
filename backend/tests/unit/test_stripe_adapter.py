"""
Unit tests for the Stripe adapter.

Covers:
- Webhook signature verification (valid, tampered, stale, missing, unconfigured)
- Event parsing for checkout, subscription lifecycle and invoices
- Subscription normalization
- SDK calls (retrieve, missing objects, listing, errors)
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
import stripe

from adapters.payments.stripe_adapter import (
    StripeAPIError,
    StripeAuthError,
    StripeProvider,
    StripeWebhookError,
    normalize_status,
    subscription_from_stripe,
)
from core.domain.events import (
    MissingCorrelationError,
    OneTimePurchase,
    PaymentFailed,
    RenewalPaid,
    SubscriptionActivated,
    SubscriptionCanceled,
    SubscriptionPaused,
    SubscriptionUpdated,
    UnhandledEvent,
    WebhookPayloadError,
)

WEBHOOK_SECRET = "whsec_test_secret"


def _sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{body.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _event(event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": "evt_123", "type": event_type, "data": {"object": obj}}).encode()


@pytest.fixture
def provider() -> StripeProvider:
    return StripeProvider(api_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------


class TestVerifyWebhook:
    @pytest.mark.asyncio
    async def test_valid_signature(self, provider):
        body = _event("invoice.paid", {"id": "in_1"})
        assert await provider.verify_webhook(body, {"Stripe-Signature": _sign(body)}) is True

    @pytest.mark.asyncio
    async def test_header_lookup_is_case_insensitive(self, provider):
        body = _event("invoice.paid", {"id": "in_1"})
        assert await provider.verify_webhook(body, {"stripe-signature": _sign(body)}) is True

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, provider):
        body = _event("invoice.paid", {"id": "in_1"})
        signature = _sign(body)
        tampered = body.replace(b"in_1", b"in_2")
        assert await provider.verify_webhook(tampered, {"Stripe-Signature": signature}) is False

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, provider):
        body = _event("invoice.paid", {"id": "in_1"})
        signature = _sign(body, secret="whsec_other")
        assert await provider.verify_webhook(body, {"Stripe-Signature": signature}) is False

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, provider):
        body = _event("invoice.paid", {"id": "in_1"})
        signature = _sign(body, timestamp=int(time.time()) - 3600)
        assert await provider.verify_webhook(body, {"Stripe-Signature": signature}) is False

    @pytest.mark.asyncio
    async def test_missing_header_rejected(self, provider):
        body = _event("invoice.paid", {"id": "in_1"})
        assert await provider.verify_webhook(body, {}) is False

    @pytest.mark.asyncio
    async def test_missing_secret_raises(self):
        provider = StripeProvider(api_key="sk_test_123", webhook_secret=None)
        provider.webhook_secret = None
        body = _event("invoice.paid", {"id": "in_1"})
        with pytest.raises(StripeWebhookError):
            await provider.verify_webhook(body, {"Stripe-Signature": _sign(body)})


# ---------------------------------------------------------------------------
# Event parsing
# ---------------------------------------------------------------------------


class TestParseCheckout:
    def test_subscription_checkout(self, provider):
        user_id = str(uuid4())
        body = _event(
            "checkout.session.completed",
            {
                "id": "cs_123",
                "mode": "subscription",
                "subscription": "sub_123",
                "customer": "cus_123",
                "customer_details": {"email": "buyer@example.com"},
                "amount_total": 999,
                "currency": "usd",
                "metadata": {"userId": user_id, "planId": "monthly"},
            },
        )

        event = provider.parse_event(body)

        assert isinstance(event, SubscriptionActivated)
        assert event.user_id == user_id
        assert event.provider_subscription_id == "sub_123"
        assert event.gateway_identifier == "cs_123"
        assert event.plan_id == "monthly"
        assert event.amount == Decimal("9.99")
        assert event.currency == "USD"
        assert event.customer_email == "buyer@example.com"
        assert event.event_id == "evt_123"

    def test_payment_mode_checkout_is_lifetime_purchase(self, provider):
        user_id = str(uuid4())
        body = _event(
            "checkout.session.completed",
            {
                "id": "cs_life",
                "mode": "payment",
                "payment_intent": "pi_123",
                "amount_total": 9900,
                "currency": "usd",
                "metadata": {"userId": user_id, "planId": "lifetime"},
            },
        )

        event = provider.parse_event(body)

        assert isinstance(event, OneTimePurchase)
        assert event.gateway_identifier == "cs_life"
        assert event.provider_subscription_id == "pi_123"
        assert event.amount == Decimal("99.00")

    def test_missing_user_id_raises(self, provider):
        body = _event(
            "checkout.session.completed",
            {"id": "cs_1", "mode": "subscription", "subscription": "sub_1", "metadata": {}},
        )
        with pytest.raises(MissingCorrelationError):
            provider.parse_event(body)

    def test_invalid_user_id_raises(self, provider):
        body = _event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "mode": "subscription",
                "subscription": "sub_1",
                "metadata": {"userId": "not-a-uuid"},
            },
        )
        with pytest.raises(MissingCorrelationError):
            provider.parse_event(body)


class TestParseSubscriptionEvents:
    def test_updated_with_cancel_at_period_end(self, provider):
        body = _event(
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "status": "active",
                "cancel_at_period_end": True,
                "current_period_start": 1_700_000_000,
                "current_period_end": 1_702_592_000,
            },
        )

        event = provider.parse_event(body)

        assert isinstance(event, SubscriptionUpdated)
        assert event.status == "active"
        assert event.cancel_at == event.current_period_end
        assert event.current_period_end.timestamp() == 1_702_592_000

    def test_updated_reads_periods_from_items(self, provider):
        body = _event(
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "status": "past_due",
                "items": {"data": [{"current_period_start": 1_700_000_000, "current_period_end": 1_702_592_000}]},
            },
        )

        event = provider.parse_event(body)

        assert event.status == "past_due"
        assert event.current_period_end.timestamp() == 1_702_592_000
        assert event.cancel_at is None

    def test_deleted(self, provider):
        body = _event(
            "customer.subscription.deleted",
            {
                "id": "sub_1",
                "status": "canceled",
                "canceled_at": 1_700_000_000,
                "cancellation_details": {"reason": "cancellation_requested", "feedback": "too_expensive"},
            },
        )

        event = provider.parse_event(body)

        assert isinstance(event, SubscriptionCanceled)
        assert event.reason == "cancellation_requested"
        assert event.feedback == "too_expensive"
        assert event.canceled_at.timestamp() == 1_700_000_000

    def test_paused(self, provider):
        event = provider.parse_event(_event("customer.subscription.paused", {"id": "sub_1"}))
        assert isinstance(event, SubscriptionPaused)


class TestParseInvoices:
    def test_cycle_invoice_is_renewal(self, provider):
        body = _event(
            "invoice.paid",
            {
                "id": "in_1",
                "billing_reason": "subscription_cycle",
                "subscription": "sub_1",
                "amount_paid": 999,
                "currency": "usd",
                "lines": {"data": [{"period": {"end": 1_702_592_000}}]},
            },
        )

        event = provider.parse_event(body)

        assert isinstance(event, RenewalPaid)
        assert event.gateway_identifier == "in_1"
        assert event.provider_subscription_id == "sub_1"
        assert event.amount == Decimal("9.99")
        assert event.current_period_end.timestamp() == 1_702_592_000

    def test_subscription_id_from_invoice_parent(self, provider):
        body = _event(
            "invoice.paid",
            {
                "id": "in_2",
                "billing_reason": "subscription_cycle",
                "parent": {"subscription_details": {"subscription": "sub_9"}},
                "amount_paid": 999,
            },
        )
        assert provider.parse_event(body).provider_subscription_id == "sub_9"

    def test_first_invoice_is_ignored(self, provider):
        body = _event(
            "invoice.paid",
            {"id": "in_1", "billing_reason": "subscription_create", "subscription": "sub_1"},
        )
        assert isinstance(provider.parse_event(body), UnhandledEvent)

    def test_payment_failed_keyed_per_attempt(self, provider):
        body = _event(
            "invoice.payment_failed",
            {"id": "in_1", "subscription": "sub_1", "amount_due": 999, "attempt_count": 2},
        )

        event = provider.parse_event(body)

        assert isinstance(event, PaymentFailed)
        assert event.gateway_identifier == "in_1:failed:2"


class TestParseErrors:
    def test_unknown_event_type(self, provider):
        event = provider.parse_event(_event("customer.created", {"id": "cus_1"}))
        assert isinstance(event, UnhandledEvent)
        assert event.event_type == "customer.created"

    def test_invalid_json(self, provider):
        with pytest.raises(WebhookPayloadError):
            provider.parse_event(b"{not json")

    def test_missing_type(self, provider):
        with pytest.raises(WebhookPayloadError):
            provider.parse_event(json.dumps({"data": {"object": {}}}).encode())

    def test_missing_object(self, provider):
        with pytest.raises(WebhookPayloadError):
            provider.parse_event(json.dumps({"type": "invoice.paid", "data": {}}).encode())


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestNormalization:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("active", "active"),
            ("trialing", "active"),
            ("past_due", "past_due"),
            ("unpaid", "past_due"),
            ("canceled", "canceled"),
            ("incomplete_expired", "canceled"),
            ("something_new", "incomplete"),
        ],
    )
    def test_normalize_status(self, raw, expected):
        assert normalize_status(raw) == expected

    def test_subscription_from_stripe(self):
        remote = subscription_from_stripe(
            {
                "id": "sub_1",
                "status": "active",
                "customer": {"id": "cus_1", "email": "a@example.com"},
                "items": {
                    "data": [
                        {
                            "current_period_start": 1_700_000_000,
                            "current_period_end": 1_702_592_000,
                            "price": {"id": "price_x", "unit_amount": 999, "currency": "usd", "recurring": {"interval": "month"}},
                        }
                    ]
                },
                "metadata": {"userId": "u-1"},
            }
        )

        assert remote.is_active is True
        assert remote.customer_id == "cus_1"
        assert remote.customer_email == "a@example.com"
        assert remote.price_amount == 999
        assert remote.plan_id == "monthly"
        assert remote.billing_interval == "month"
        assert remote.user_id == "u-1"
        assert remote.cancel_scheduled is False

    def test_subscription_ids(self, provider):
        assert provider.is_subscription_id("sub_123") is True
        assert provider.is_subscription_id("pi_123") is False
        assert provider.is_subscription_id("cs_123") is False


# ---------------------------------------------------------------------------
# SDK calls
# ---------------------------------------------------------------------------


def _stripe_subscription(sub_id: str, status: str = "active") -> dict:
    return {
        "id": sub_id,
        "status": status,
        "customer": {"id": "cus_1", "email": "payer@example.com"},
        "current_period_end": 1_702_592_000,
        "items": {"data": [{"price": {"id": "price_x", "unit_amount": 999, "currency": "usd"}}]},
        "metadata": {},
    }


class TestSdkCalls:
    @pytest.mark.asyncio
    async def test_get_subscription(self, provider):
        retrieve = MagicMock(return_value=_stripe_subscription("sub_1"))
        with patch.object(stripe.Subscription, "retrieve", retrieve):
            remote = await provider.get_subscription("sub_1")

        assert remote.id == "sub_1"
        assert remote.is_active is True
        assert remote.customer_email == "payer@example.com"
        retrieve.assert_called_once_with("sub_1", api_key="sk_test_123", expand=["customer"])

    @pytest.mark.asyncio
    async def test_missing_subscription_returns_none(self, provider):
        error = stripe.InvalidRequestError("No such subscription", "id", code="resource_missing")
        with patch.object(stripe.Subscription, "retrieve", MagicMock(side_effect=error)):
            assert await provider.get_subscription("sub_gone") is None

    @pytest.mark.asyncio
    async def test_other_api_errors_raise(self, provider):
        error = stripe.APIConnectionError("network down")
        with patch.object(stripe.Subscription, "retrieve", MagicMock(side_effect=error)):
            with pytest.raises(StripeAPIError):
                await provider.get_subscription("sub_1")

    @pytest.mark.asyncio
    async def test_unconfigured_key_raises(self, monkeypatch):
        from infrastructure.config.settings import settings

        monkeypatch.setattr(settings, "stripe_secret_key", None)
        unconfigured = StripeProvider(api_key=None, webhook_secret=WEBHOOK_SECRET)

        assert unconfigured.is_configured is False
        with pytest.raises(StripeAuthError):
            await unconfigured.get_subscription("sub_1")

    @pytest.mark.asyncio
    async def test_listing_pages_by_last_id(self, provider):
        page = {
            "data": [_stripe_subscription("sub_a"), _stripe_subscription("sub_b")],
            "has_more": True,
        }
        list_call = MagicMock(return_value=page)
        with patch.object(stripe.Subscription, "list", list_call):
            result = await provider.list_active_subscriptions(cursor="sub_prev")

        assert [item.id for item in result.items] == ["sub_a", "sub_b"]
        assert result.next_cursor == "sub_b"
        assert list_call.call_args.kwargs["starting_after"] == "sub_prev"
        assert list_call.call_args.kwargs["status"] == "active"

    @pytest.mark.asyncio
    async def test_last_page_has_no_cursor(self, provider):
        page = {"data": [_stripe_subscription("sub_z")], "has_more": False}
        with patch.object(stripe.Subscription, "list", MagicMock(return_value=page)):
            result = await provider.list_active_subscriptions()

        assert result.next_cursor is None


class TestCheckout:
    @pytest.mark.asyncio
    async def test_subscription_checkout(self, provider, monkeypatch):
        from infrastructure.config.settings import settings

        monkeypatch.setattr(settings, "stripe_price_monthly", "price_monthly")
        create = MagicMock(return_value={"url": "https://checkout.stripe.com/c/pay_1"})
        with patch.object(stripe.checkout.Session, "create", create):
            url = await provider.create_checkout_session(
                "user-1", "monthly", "https://app/success", "https://app/cancel", email="buyer@example.com"
            )

        assert url == "https://checkout.stripe.com/c/pay_1"
        params = create.call_args.kwargs
        assert params["mode"] == "subscription"
        assert params["line_items"] == [{"price": "price_monthly", "quantity": 1}]
        assert params["subscription_data"]["metadata"] == {"userId": "user-1", "planId": "monthly"}
        assert params["customer_email"] == "buyer@example.com"

    @pytest.mark.asyncio
    async def test_lifetime_checkout_uses_payment_mode(self, provider, monkeypatch):
        from infrastructure.config.settings import settings

        monkeypatch.setattr(settings, "stripe_price_lifetime", "price_lifetime")
        create = MagicMock(return_value={"url": "https://checkout.stripe.com/c/pay_2"})
        with patch.object(stripe.checkout.Session, "create", create):
            await provider.create_checkout_session("user-1", "lifetime", "https://app/s", "https://app/c")

        params = create.call_args.kwargs
        assert params["mode"] == "payment"
        assert "subscription_data" not in params
        assert "customer_email" not in params

    @pytest.mark.asyncio
    async def test_unpriced_plan_raises(self, provider, monkeypatch):
        from infrastructure.config.settings import settings

        monkeypatch.setattr(settings, "stripe_price_monthly_pro", None)
        with pytest.raises(StripeAPIError):
            await provider.create_checkout_session("user-1", "monthly_pro", "https://app/s", "https://app/c")

    @pytest.mark.asyncio
    async def test_portal_session(self, provider):
        create = MagicMock(return_value={"url": "https://billing.stripe.com/p/session_1"})
        with patch.object(stripe.billing_portal.Session, "create", create):
            url = await provider.create_portal_session("cus_1", "https://app/settings")

        assert url == "https://billing.stripe.com/p/session_1"
        create.assert_called_once_with(customer="cus_1", return_url="https://app/settings", api_key="sk_test_123")
