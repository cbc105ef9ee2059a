# Interfaces (Abstract Contracts)
# Adapters implement these interfaces
from .payments import (
    PaymentProvider,
    ProviderSubscription,
    SubscriptionPage,
    WebhookNotConfiguredError,
)

__all__ = [
    "PaymentProvider",
    "ProviderSubscription",
    "SubscriptionPage",
    "WebhookNotConfiguredError",
]
