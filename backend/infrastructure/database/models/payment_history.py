"""
Payment history ledger model.

Insert-only. ``gateway_identifier`` is the dedup key (invoice id, capture
id, sale id, checkout session id).
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class PaymentHistory(Base, TimestampMixin):
    """One monetary event."""

    __tablename__ = "payment_history"

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

    # subscription, renewal, one_time, payment_failed
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False)
    gateway: Mapped[str] = mapped_column(String(30), nullable=False)
    gateway_identifier: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    gateway_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    item_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # ``metadata`` is reserved on declarative classes
    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    """
    Structure:
    {
        "plan_id": "monthly",
        "subscription_id": "sub_123",
        "customer_id": "cus_123"
    }
    """

    __table_args__ = (
        Index("ix_payment_history_dedup", "user_id", "amount", "created_at"),
        Index("ix_payment_history_type_created", "transaction_type", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentHistory(type={self.transaction_type}, gateway={self.gateway}, "
            f"identifier={self.gateway_identifier}, amount={self.amount})>"
        )
