"""
User profile database model.

Only the columns the billing core reads or writes live here; the rest of
the user directory belongs to the auth service.
"""

from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Index, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class UserRole(str, Enum):
    """Entitlement flag checked by the rest of the application."""

    USER = "user"
    PRO = "pro"
    ADMIN = "admin"


class Profile(Base, TimestampMixin):
    """User profile model."""

    __tablename__ = "profiles"

    # Primary key
    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    role: Mapped[str] = mapped_column(
        String(20),
        default=UserRole.USER.value,
        nullable=False,
    )

    __table_args__ = (Index("ix_profiles_role", "role"),)

    def __repr__(self) -> str:
        return f"<Profile(id={self.id}, email={self.email}, role={self.role})>"

    @property
    def is_admin(self) -> bool:
        """Admins are never downgraded by billing."""
        return self.role == UserRole.ADMIN.value

    @property
    def is_pro(self) -> bool:
        return self.role == UserRole.PRO.value
