"""Payment provider adapters for subscription billing."""

from core.domain.subscription import BillingProvider
from core.interfaces.payments import PaymentProvider

from .paypal_adapter import (
    PayPalAPIError,
    PayPalAuthError,
    PayPalError,
    PayPalProvider,
    PayPalWebhookError,
    create_paypal_legacy_provider,
    create_paypal_provider,
    missing_webhook_headers,
)
from .stripe_adapter import (
    StripeAPIError,
    StripeAuthError,
    StripeProvider,
    StripeProviderError,
    StripeWebhookError,
    create_stripe_provider,
)


def build_payment_providers() -> dict[str, PaymentProvider]:
    """One provider per configured account, keyed by provider name."""
    return {
        BillingProvider.STRIPE.value: create_stripe_provider(),
        BillingProvider.PAYPAL.value: create_paypal_provider(),
        BillingProvider.PAYPAL_LEGACY.value: create_paypal_legacy_provider(),
    }


__all__ = [
    "PayPalProvider",
    "PayPalError",
    "PayPalAPIError",
    "PayPalAuthError",
    "PayPalWebhookError",
    "StripeProvider",
    "StripeProviderError",
    "StripeAPIError",
    "StripeAuthError",
    "StripeWebhookError",
    "build_payment_providers",
    "create_paypal_provider",
    "create_paypal_legacy_provider",
    "create_stripe_provider",
    "missing_webhook_headers",
]
