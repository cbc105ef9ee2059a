# Domain Entities
# Pure business rules with no external dependencies
from .events import (
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
    WebhookPayloadError,
)
from .subscription import (
    BillingProvider,
    GraceOutcome,
    SubscriptionStatus,
    TransactionType,
)

__all__ = [
    "BillingEvent",
    "BillingProvider",
    "GraceOutcome",
    "MissingCorrelationError",
    "OneTimePurchase",
    "PaymentFailed",
    "PaymentIssue",
    "RenewalPaid",
    "SubscriptionActivated",
    "SubscriptionCanceled",
    "SubscriptionPaused",
    "SubscriptionReactivated",
    "SubscriptionStatus",
    "SubscriptionUpdated",
    "TransactionType",
    "UnhandledEvent",
    "WebhookPayloadError",
]
