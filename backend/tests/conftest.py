"""
Pytest configuration and shared fixtures for backend tests.
"""

import sys
from pathlib import Path

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

import json
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Import after path is set
from core.domain.events import (
    BillingEvent,
    RenewalPaid,
    SubscriptionActivated,
    SubscriptionCanceled,
    UnhandledEvent,
    WebhookPayloadError,
)
from core.interfaces.payments import (
    PaymentProvider,
    ProviderSubscription,
    SubscriptionPage,
    WebhookNotConfiguredError,
)
from infrastructure.database.connection import get_db
from infrastructure.database.models import Base, PaymentHistory, Profile, Subscription
from services.notifications import NullNotifier


# Database URL for testing (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed clock so grace-period tests do not depend on wall time
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


# ============================================================================
# Test doubles
# ============================================================================


class FakeProvider(PaymentProvider):
    """
    In-memory payment provider.

    ``remote`` holds what the provider "knows"; ``listing`` is returned by
    discovery. Webhook bodies are plain JSON of the form
    ``{"kind": ..., ...fields}`` and verify when the ``x-test-signature``
    header equals ``"valid"``.
    """

    def __init__(self, name: str, prefix: str = "sub_", configured: bool = True, secret: bool = True):
        self.name = name
        self.prefix = prefix
        self.configured = configured
        self.secret = secret
        self.remote: dict[str, Optional[ProviderSubscription]] = {}
        self.listing: list[ProviderSubscription] = []
        self.fail_on: set[str] = set()
        self.calls: list[str] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    def is_subscription_id(self, identifier: str) -> bool:
        return bool(identifier) and identifier.startswith(self.prefix)

    async def get_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        self.calls.append(subscription_id)
        if subscription_id in self.fail_on:
            raise RuntimeError(f"provider error for {subscription_id}")
        return self.remote.get(subscription_id)

    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.secret:
            raise WebhookNotConfiguredError(f"{self.name} webhook secret not configured")
        return headers.get("x-test-signature") == "valid"

    def parse_event(self, raw_body: bytes) -> BillingEvent:
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise WebhookPayloadError(f"Invalid JSON: {e}") from e
        kind = payload.pop("kind", None)
        if kind is None:
            raise WebhookPayloadError("missing kind")
        common = {"provider": self.name, "event_type": kind, "event_id": payload.pop("event_id", None)}
        for key in ("current_period_start", "current_period_end", "cancel_at"):
            if payload.get(key):
                payload[key] = datetime.fromisoformat(payload[key])
        if "amount" in payload:
            payload["amount"] = Decimal(payload["amount"])
        if kind == "activated":
            return SubscriptionActivated(**common, **payload)
        if kind == "renewal":
            return RenewalPaid(**common, **payload)
        if kind == "canceled":
            return SubscriptionCanceled(**common, **payload)
        return UnhandledEvent(**common)

    async def cancel(self, subscription_id: str, reason: str) -> bool:
        return True

    async def list_active_subscriptions(self, cursor: Optional[str] = None) -> SubscriptionPage:
        return SubscriptionPage(items=list(self.listing), next_cursor=None)


class RecordingNotifier(NullNotifier):
    """Notifier that records every side effect instead of sending it."""

    def __init__(self):
        self.payments: list[tuple[str, dict[str, Any]]] = []
        self.welcomes: list[dict[str, Any]] = []
        self.events: list[tuple[str, str]] = []
        self.conversions: list[dict[str, Any]] = []

    def payment_notification(self, kind: str, **kwargs) -> None:
        self.payments.append((kind, kwargs))

    def welcome(self, **kwargs) -> None:
        self.welcomes.append(kwargs)

    def track(self, user_id, event_type, properties=None, revenue=None) -> None:
        self.events.append((user_id, event_type))

    def crm_conversion(self, **kwargs) -> None:
        self.conversions.append(kwargs)

    @property
    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.payments]


def remote_subscription(
    sub_id: str,
    provider: str = "stripe",
    status: str = "active",
    raw_status: Optional[str] = None,
    period_end: Optional[datetime] = None,
    cancel_at: Optional[datetime] = None,
    email: Optional[str] = None,
    price_amount: int = 999,
) -> ProviderSubscription:
    """Provider-side subscription as an adapter would normalize it."""
    return ProviderSubscription(
        id=sub_id,
        provider=provider,
        raw_status=raw_status or status,
        is_active=status == "active",
        status=status,
        customer_email=email,
        plan_id="monthly",
        price_amount=price_amount,
        billing_interval="month",
        current_period_start=(period_end - timedelta(days=30)) if period_end else None,
        current_period_end=period_end,
        cancel_at=cancel_at,
    )


# ============================================================================
# Database and app fixtures
# ============================================================================


@pytest.fixture
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN and breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session = sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def stripe_provider() -> FakeProvider:
    return FakeProvider("stripe", prefix="sub_")


@pytest.fixture
def paypal_provider() -> FakeProvider:
    return FakeProvider("paypal", prefix="I-")


@pytest.fixture
def paypal_legacy_provider() -> FakeProvider:
    return FakeProvider("paypal_legacy", prefix="I-")


@pytest.fixture
def providers(stripe_provider, paypal_provider, paypal_legacy_provider) -> dict[str, FakeProvider]:
    return {
        "stripe": stripe_provider,
        "paypal": paypal_provider,
        "paypal_legacy": paypal_legacy_provider,
    }


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def cron_secret(monkeypatch) -> str:
    from infrastructure.config.settings import settings

    secret = "test-cron-secret-that-is-long-enough"
    monkeypatch.setattr(settings, "cron_secret", secret)
    return secret


@pytest.fixture
async def async_client(
    db_session: AsyncSession,
    providers: dict[str, FakeProvider],
    notifier: RecordingNotifier,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    # Import app here to avoid circular imports
    from api.dependencies import get_billing_notifier, get_payment_providers
    from main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_providers] = lambda: providers
    app.dependency_overrides[get_billing_notifier] = lambda: notifier

    # Reset rate limiter state between tests to prevent cross-test 429s
    app.state.limiter.reset()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Billing data fixtures
# ============================================================================


async def make_profile(db: AsyncSession, role: str = "user", email: Optional[str] = None) -> Profile:
    profile = Profile(
        id=str(uuid4()),
        email=email or f"{uuid4().hex[:10]}@example.com",
        name="Test User",
        role=role,
    )
    db.add(profile)
    await db.commit()
    return profile


async def make_subscription(
    db: AsyncSession,
    user_id: str,
    provider: str = "stripe",
    sub_id: Optional[str] = None,
    status: str = "active",
    plan_id: str = "monthly",
    period_end: Optional[datetime] = None,
    cancel_at: Optional[datetime] = None,
    is_legacy: bool = False,
) -> Subscription:
    sub = Subscription(
        user_id=user_id,
        provider=provider,
        provider_subscription_id=sub_id or f"sub_{uuid4().hex[:14]}",
        status=status,
        plan_id=plan_id,
        plan_name="Basic Plan",
        price_amount=999,
        price_currency="USD",
        billing_interval="month",
        current_period_end=period_end,
        cancel_at=cancel_at,
        is_legacy=is_legacy,
        created_at=NOW - timedelta(days=40),
    )
    db.add(sub)
    await db.commit()
    return sub


async def make_payment(
    db: AsyncSession,
    user_id: str,
    gateway: str,
    gateway_identifier: str,
    amount: str = "9.99",
    transaction_type: str = "subscription",
    created_at: Optional[datetime] = None,
    metadata: Optional[dict] = None,
) -> PaymentHistory:
    entry = PaymentHistory(
        user_id=user_id,
        transaction_type=transaction_type,
        gateway=gateway,
        gateway_identifier=gateway_identifier,
        amount=Decimal(amount),
        currency="USD",
        extra_data=metadata,
        created_at=created_at or NOW - timedelta(days=1),
    )
    db.add(entry)
    await db.commit()
    return entry


@pytest.fixture
async def user_profile(db_session: AsyncSession) -> Profile:
    """A regular user with no subscription."""
    return await make_profile(db_session, role="user", email="user@example.com")


@pytest.fixture
async def pro_profile(db_session: AsyncSession) -> Profile:
    """A paying user."""
    return await make_profile(db_session, role="pro", email="pro@example.com")


@pytest.fixture
async def admin_profile(db_session: AsyncSession) -> Profile:
    """An admin; billing must never downgrade this user."""
    return await make_profile(db_session, role="admin", email="admin@example.com")
