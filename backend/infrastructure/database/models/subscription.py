"""
Subscription database model.

One row per (user, provider) subscription lifecycle. Rows are never
hard-deleted; canceled rows stay for history and churn analytics.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from core.domain.subscription import SubscriptionStatus

from .base import Base, TimestampMixin


class Subscription(Base, TimestampMixin):
    """Provider subscription mirrored locally."""

    __tablename__ = "subscriptions"

    # Primary key
    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    user_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Provider identity: stripe, paypal, paypal_legacy
    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    provider_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default=SubscriptionStatus.INCOMPLETE.value,
        nullable=False,
    )

    # Plan
    plan_id: Mapped[str] = mapped_column(String(100), nullable=False)
    plan_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    price_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # cents
    price_currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    billing_interval: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)  # month, year

    # Billing period
    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Cancellation: cancel_at is the access boundary, canceled_at is when it was recorded
    cancel_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancellation_feedback: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancellation_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_legacy: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "provider",
            "provider_subscription_id",
            name="uq_subscriptions_provider_subscription",
        ),
        Index("ix_subscriptions_user_status", "user_id", "status"),
        Index("ix_subscriptions_provider_status", "provider", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(provider={self.provider}, id={self.provider_subscription_id}, "
            f"status={self.status}, plan={self.plan_id})>"
        )
