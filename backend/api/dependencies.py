"""
API dependencies for provider access and internal authorization.
"""

import hmac
import logging
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Header, HTTPException, status

from adapters.payments import build_payment_providers
from core.interfaces.payments import PaymentProvider
from infrastructure.config.settings import settings
from services.notifications import NullNotifier, billing_notifier

logger = logging.getLogger(__name__)


@lru_cache
def _providers() -> dict[str, PaymentProvider]:
    # One instance per process so PayPal tokens stay cached between requests
    return build_payment_providers()


def get_payment_providers() -> dict[str, PaymentProvider]:
    """All payment providers keyed by name."""
    return _providers()


def get_billing_notifier() -> NullNotifier:
    """Side-effect notifier used by webhooks and the sweep."""
    return billing_notifier


async def require_cron_secret(
    authorization: Annotated[Optional[str], Header()] = None,
) -> None:
    """
    Dependency guarding internal endpoints with ``Authorization: Bearer <CRON_SECRET>``.

    Returns 503 when no secret is configured and 401 on a wrong or missing token.
    """
    if not settings.cron_secret:
        logger.error("Internal endpoint called but CRON_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron secret not configured",
        )

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        logger.warning("Internal endpoint called with invalid authorization")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
