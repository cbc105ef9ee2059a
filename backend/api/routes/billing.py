"""
Billing read endpoints: public pricing and per-user entitlements.
"""

import logging
import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import require_cron_secret
from api.middleware.rate_limit import limiter
from api.schemas.billing import (
    EntitlementResponse,
    PlanFeatures,
    PlanInfo,
    PricingResponse,
)
from core.plans import PLANS
from infrastructure.database.connection import get_db
from services.entitlements import EntitlementProjector

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/pricing", response_model=PricingResponse)
async def get_pricing():
    """
    Get all available plans and their pricing.

    This endpoint is public and does not require authentication.
    """
    plans = [
        PlanInfo(
            id=plan_id,
            name=plan["name"],
            price=plan["price"],
            currency=plan["currency"],
            interval=plan["interval"],
            features=PlanFeatures(**plan["features"]),
        )
        for plan_id, plan in PLANS.items()
    ]
    return PricingResponse(plans=plans)


@router.get(
    "/entitlements/{user_id}",
    response_model=EntitlementResponse,
    dependencies=[Depends(require_cron_secret)],
)
@limiter.limit("120/minute")
async def get_entitlements(
    request: Request,
    user_id: str,
    db: AsyncSession = Depends(get_db),
):
    """
    Get a user's current access level.

    Internal endpoint for other services; guarded by the cron secret.
    """
    try:
        uuid.UUID(user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid user id")

    projector = EntitlementProjector(db)
    level = await projector.access_level(user_id, datetime.now(UTC))
    if level is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return level.to_dict()
