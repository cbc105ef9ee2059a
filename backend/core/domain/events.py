"""Normalized billing events.

Provider adapters translate raw webhook payloads into one of these
variants; the billing event handler only ever sees these types.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


class WebhookPayloadError(Exception):
    """Raised when a webhook body is malformed or lacks a required field."""


class MissingCorrelationError(WebhookPayloadError):
    """Raised when an event cannot be tied to a user (no or invalid userId)."""


@dataclass(kw_only=True)
class BillingEvent:
    """Fields shared by every event variant."""

    provider: str
    event_type: str
    event_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(kw_only=True)
class SubscriptionActivated(BillingEvent):
    """A subscription was created or activated (first charge succeeded)."""

    user_id: str
    provider_subscription_id: str
    status: str = "active"  # active or incomplete
    provider_customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    plan_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    billing_interval: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    # Ledger dedup key; defaults to the subscription id
    gateway_identifier: Optional[str] = None


@dataclass(kw_only=True)
class RenewalPaid(BillingEvent):
    """A recurring charge succeeded."""

    provider_subscription_id: str
    gateway_identifier: str
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    current_period_end: Optional[datetime] = None
    user_id: Optional[str] = None


@dataclass(kw_only=True)
class SubscriptionUpdated(BillingEvent):
    """Provider-side status or period change."""

    provider_subscription_id: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    plan_id: Optional[str] = None


@dataclass(kw_only=True)
class SubscriptionCanceled(BillingEvent):
    """Cancellation, expiration or suspension."""

    provider_subscription_id: str
    reason: Optional[str] = None
    feedback: Optional[str] = None
    comment: Optional[str] = None
    canceled_at: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    user_id: Optional[str] = None


@dataclass(kw_only=True)
class SubscriptionPaused(BillingEvent):
    provider_subscription_id: str


@dataclass(kw_only=True)
class SubscriptionReactivated(BillingEvent):
    """A canceled, suspended or paused subscription came back."""

    provider_subscription_id: str
    user_id: Optional[str] = None
    current_period_end: Optional[datetime] = None


@dataclass(kw_only=True)
class PaymentFailed(BillingEvent):
    provider_subscription_id: str
    gateway_identifier: str
    amount: Decimal = Decimal("0")
    currency: str = "USD"


@dataclass(kw_only=True)
class OneTimePurchase(BillingEvent):
    """Lifetime purchase (checkout in payment mode, PayPal capture)."""

    user_id: str
    gateway_identifier: str
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    provider_customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    # Key of the lifetime subscription row; defaults to the gateway identifier
    provider_subscription_id: Optional[str] = None


@dataclass(kw_only=True)
class PaymentIssue(BillingEvent):
    """Denied, refunded or reversed sale; notification only."""

    kind: str  # denied, refunded, reversed
    gateway_identifier: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    provider_subscription_id: Optional[str] = None


@dataclass(kw_only=True)
class UnhandledEvent(BillingEvent):
    """Event type this service does not consume; acknowledged, not processed."""

    reason: str = "unsupported event type"
