"""Subscription domain rules.

Pure functions over subscription state: the status state machine, the
grace-period rule, and whether a subscription currently grants paid access.
Nothing here touches the database or a provider.
"""
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Optional, Protocol


class BillingProvider(str, Enum):
    """Payment providers a subscription can live on."""
    STRIPE = "stripe"
    PAYPAL = "paypal"
    PAYPAL_LEGACY = "paypal_legacy"


class SubscriptionStatus(str, Enum):
    """Local subscription lifecycle states."""
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"


class TransactionType(str, Enum):
    """Payment history entry kinds."""
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    ONE_TIME = "one_time"
    PAYMENT_FAILED = "payment_failed"


class GraceOutcome(str, Enum):
    """Result of applying the grace-period rule to a terminal status."""
    REVOKED = "revoked"
    DEFERRED = "deferred"
    PROTECTED = "protected"  # admin, or another subscription still entitles


LIFETIME_PLAN_ID = "lifetime"

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.INCOMPLETE: frozenset({SubscriptionStatus.ACTIVE}),
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.PAST_DUE, SubscriptionStatus.PAUSED}),
    SubscriptionStatus.PAST_DUE: frozenset({SubscriptionStatus.ACTIVE}),
    SubscriptionStatus.PAUSED: frozenset({SubscriptionStatus.ACTIVE}),
    # Reactivation of a canceled subscription (PayPal RE-ACTIVATED, Stripe resume)
    SubscriptionStatus.CANCELED: frozenset({SubscriptionStatus.ACTIVE}),
}


class SubscriptionLike(Protocol):
    """The attributes the rules read; satisfied by the ORM model."""
    status: str
    plan_id: str
    current_period_end: Optional[datetime]
    cancel_at: Optional[datetime]


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def can_transition(current: str, target: str) -> bool:
    """Whether *current* may move to *target*.

    Any state may move to canceled, and re-asserting the same state is a
    metadata refresh, so both are always allowed.
    """
    current_status = SubscriptionStatus(current)
    target_status = SubscriptionStatus(target)
    if target_status == current_status or target_status == SubscriptionStatus.CANCELED:
        return True
    return target_status in ALLOWED_TRANSITIONS[current_status]


def grace_period_end(
    cancel_at: Optional[datetime],
    current_period_end: Optional[datetime],
    now: datetime,
) -> datetime:
    """``cancel_at ?? current_period_end ?? now``."""
    return ensure_utc(cancel_at) or ensure_utc(current_period_end) or now


def grace_expired(grace_end: datetime, now: datetime, tolerance: timedelta = timedelta(0)) -> bool:
    """True once *now* has reached the grace boundary plus tolerance.

    A boundary equal to *now* (no cancel_at and no period end) has no grace
    left, so it counts as expired.
    """
    return now >= ensure_utc(grace_end) + tolerance


def past_due_access_until(current_period_end: Optional[datetime], now: datetime, grace_days: int) -> datetime:
    """Last moment a past_due subscription still grants access."""
    base = ensure_utc(current_period_end) or now
    return base + timedelta(days=grace_days)


def access_until(sub: SubscriptionLike, now: datetime, past_due_grace_days: int = 7) -> Optional[datetime]:
    """When paid access from *sub* ends; ``None`` means open-ended."""
    if sub.plan_id == LIFETIME_PLAN_ID and sub.status != SubscriptionStatus.CANCELED.value:
        return None
    if sub.status == SubscriptionStatus.ACTIVE.value:
        return ensure_utc(sub.cancel_at)
    if sub.status == SubscriptionStatus.PAST_DUE.value:
        return past_due_access_until(sub.current_period_end, now, past_due_grace_days)
    return grace_period_end(sub.cancel_at, sub.current_period_end, now)


def is_entitling(
    sub: SubscriptionLike,
    now: datetime,
    past_due_grace_days: int = 7,
    tolerance: timedelta = timedelta(0),
) -> bool:
    """Whether *sub* grants paid access at *now*."""
    status = SubscriptionStatus(sub.status)
    if status == SubscriptionStatus.INCOMPLETE:
        return False
    if status == SubscriptionStatus.ACTIVE:
        return True
    if sub.plan_id == LIFETIME_PLAN_ID and status != SubscriptionStatus.CANCELED:
        return True
    if status == SubscriptionStatus.PAST_DUE:
        until = past_due_access_until(sub.current_period_end, now, past_due_grace_days)
        return not grace_expired(until, now, tolerance)
    # canceled / paused: access runs until the grace boundary
    end = grace_period_end(sub.cancel_at, sub.current_period_end, now)
    return not grace_expired(end, now, tolerance)
