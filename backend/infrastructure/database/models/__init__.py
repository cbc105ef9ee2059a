"""
SQLAlchemy database models.
"""

from .base import Base, TimestampMixin
from .crm import CrmConversion
from .payment_history import PaymentHistory
from .subscription import Subscription
from .user import Profile, UserRole

__all__ = [
    "Base",
    "TimestampMixin",
    "Profile",
    "UserRole",
    "Subscription",
    "PaymentHistory",
    "CrmConversion",
]
