"""Payment provider interface.

Stripe, PayPal and legacy PayPal all implement ``PaymentProvider``; the
webhook handler and the reconciliation sweep only talk to this contract.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..domain.events import BillingEvent


class WebhookNotConfiguredError(Exception):
    """Raised when a provider has no secret or webhook id to verify deliveries with."""


@dataclass
class ProviderSubscription:
    """Provider-reported subscription state, normalized across providers."""

    id: str
    provider: str
    raw_status: str
    is_active: bool
    status: str = "active"  # normalized local status
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    plan_id: Optional[str] = None
    price_amount: int = 0  # cents
    currency: str = "USD"
    billing_interval: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    user_id: Optional[str] = None  # from provider metadata / custom_id

    @property
    def cancel_scheduled(self) -> bool:
        """Cancellation requested but not yet effective."""
        return self.is_active and (self.cancel_at_period_end or self.cancel_at is not None)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "status": self.raw_status,
            "is_active": self.is_active,
            "customer_email": self.customer_email,
            "plan_id": self.plan_id,
            "price_amount": self.price_amount,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at": self.cancel_at.isoformat() if self.cancel_at else None,
        }


@dataclass
class SubscriptionPage:
    """One page of a provider listing."""

    items: list[ProviderSubscription] = field(default_factory=list)
    next_cursor: Optional[str] = None


class PaymentProvider(ABC):
    """Abstract payment provider capability."""

    name: str

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether API credentials are present."""
        ...

    @abstractmethod
    def is_subscription_id(self, identifier: str) -> bool:
        """Whether *identifier* is a pollable subscription id (not a one-time artifact)."""
        ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        """Fetch a subscription; ``None`` if the provider reports it does not exist."""
        ...

    @abstractmethod
    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """Verify a webhook delivery's signature."""
        ...

    @abstractmethod
    def parse_event(self, raw_body: bytes) -> BillingEvent:
        """Translate a verified webhook body into a normalized event."""
        ...

    @abstractmethod
    async def cancel(self, subscription_id: str, reason: str) -> bool:
        """Cancel a subscription at the provider."""
        ...

    @abstractmethod
    async def list_active_subscriptions(self, cursor: Optional[str] = None) -> SubscriptionPage:
        """List active subscriptions, one page at a time."""
        ...
