"""
Scheduled job endpoints, called by the platform cron with the shared secret.
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_billing_notifier, get_payment_providers, require_cron_secret
from api.middleware.rate_limit import limiter
from api.schemas.billing import SweepReportResponse
from core.interfaces.payments import PaymentProvider
from infrastructure.database.connection import get_db
from services.notifications import NullNotifier
from services.reconciliation import ReconciliationSweep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


@router.get(
    "/sync-subscriptions",
    response_model=SweepReportResponse,
    dependencies=[Depends(require_cron_secret)],
)
@limiter.limit("10/minute")
async def sync_subscriptions(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_payment_providers),
    notifier: NullNotifier = Depends(get_billing_notifier),
):
    """
    Run one reconciliation sweep.

    Syncs local subscriptions with every configured provider, revokes
    access whose grace has run out, heals ledger rows without a
    subscription and discovers provider subscriptions missing locally.
    """
    sweep = ReconciliationSweep(db, providers, notifier)
    report = await sweep.run()
    return report.to_dict()
