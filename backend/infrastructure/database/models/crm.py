"""
CRM conversion attribution model.
"""

from typing import Optional
from uuid import uuid4

from sqlalchemy import ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class CrmConversion(Base, TimestampMixin):
    """A paid conversion attributed to a user for drip-campaign reporting."""

    __tablename__ = "crm_conversions"

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

    conversion_type: Mapped[str] = mapped_column(String(30), nullable=False)  # subscription, lifetime
    plan_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    provider: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    __table_args__ = (Index("ix_crm_conversions_type_created", "conversion_type", "created_at"),)

    def __repr__(self) -> str:
        return f"<CrmConversion(user_id={self.user_id}, type={self.conversion_type!r}, amount_cents={self.amount_cents})>"
