"""
Payment provider webhook endpoints.

Each delivery is verified, parsed into a billing event and applied in one
transaction. The response status tells the provider whether to retry.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from adapters.payments.paypal_adapter import missing_webhook_headers
from api.dependencies import get_billing_notifier, get_payment_providers
from api.middleware.rate_limit import limiter
from api.schemas.billing import WebhookAckResponse
from core.interfaces.payments import PaymentProvider
from infrastructure.database.connection import get_db
from services.billing_events import BillingEventHandler
from services.notifications import NullNotifier
from services.webhook_ingestor import WebhookIngestor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


async def _ingest(
    request: Request,
    provider_name: str,
    db: AsyncSession,
    providers: dict[str, PaymentProvider],
    notifier: NullNotifier,
) -> dict:
    # Signature checks need the exact bytes the provider sent
    body = await request.body()

    handler = BillingEventHandler(db, providers=providers, notifier=notifier)
    ingestor = WebhookIngestor(db, providers[provider_name], handler)
    result = await ingestor.handle_webhook(body, request.headers)

    if not result.success:
        raise HTTPException(status_code=result.status_code, detail=result.error)
    return result.to_response()


def _require_paypal_headers(request: Request) -> None:
    missing = missing_webhook_headers(request.headers)
    if missing:
        logger.warning(f"PayPal webhook missing headers: {', '.join(missing)}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing required headers: {', '.join(missing)}",
        )


@router.post("/stripe", response_model=WebhookAckResponse)
@limiter.limit("100/minute")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_payment_providers),
    notifier: NullNotifier = Depends(get_billing_notifier),
):
    """
    Handle Stripe webhook events.

    - checkout.session.completed: subscription activation or one-time purchase
    - customer.subscription.updated / deleted / paused / resumed
    - invoice.paid: renewal payments
    - invoice.payment_failed: dunning

    Anything else is acknowledged with ``handled: false``.
    """
    return await _ingest(request, "stripe", db, providers, notifier)


@router.post("/paypal", response_model=WebhookAckResponse)
@limiter.limit("100/minute")
async def paypal_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_payment_providers),
    notifier: NullNotifier = Depends(get_billing_notifier),
):
    """
    Handle PayPal webhook events for the current account.

    Renewals of legacy-account subscriptions can arrive here too and are
    matched against ``paypal_legacy`` rows.
    """
    _require_paypal_headers(request)
    return await _ingest(request, "paypal", db, providers, notifier)


@router.post("/paypal-legacy", response_model=WebhookAckResponse)
@limiter.limit("100/minute")
async def paypal_legacy_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_payment_providers),
    notifier: NullNotifier = Depends(get_billing_notifier),
):
    """Handle PayPal webhook events for the legacy account, verified with its own webhook id."""
    _require_paypal_headers(request)
    return await _ingest(request, "paypal_legacy", db, providers, notifier)
