"""
Billing request/response schemas.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class PlanFeatures(BaseModel):
    """Feature flags for a plan."""

    characters_per_month: int = Field(..., description="Monthly character allowance (-1 for unlimited)")
    all_languages: bool
    api_access: bool
    commercial_use: bool


class PlanInfo(BaseModel):
    """Information about a plan."""

    id: str = Field(..., description="Plan ID (free, monthly, monthly_pro, lifetime)")
    name: str = Field(..., description="Display name of the plan")
    price: float = Field(..., description="Price in the plan currency")
    currency: str
    interval: Optional[str] = Field(None, description="Billing interval; null for one-time plans")
    features: PlanFeatures


class PricingResponse(BaseModel):
    plans: list[PlanInfo]


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the provider."""

    received: bool = True
    handled: bool = Field(..., description="False for event types this service ignores")
    event_type: Optional[str] = None
    duplicate: bool = False


class EntitlementResponse(BaseModel):
    """A user's current access level."""

    user_id: str
    role: str = Field(..., description="user, pro or admin")
    has_access: bool = Field(..., description="Whether the user currently has paid access")
    plan_id: Optional[str] = None
    status: Optional[str] = Field(None, description="Status of the subscription describing the access")
    provider: Optional[str] = None
    access_until: Optional[datetime] = Field(None, description="End of access; null when open-ended")
    features: PlanFeatures


class ProviderSyncTally(BaseModel):
    checked: int
    synced: int
    errors: int
    skipped: bool


class ExpiryTally(BaseModel):
    checked: int
    revoked: int
    errors: int


class HealTally(BaseModel):
    checked: int
    created: int
    activated: int
    errors: int


class DiscoveryAnomaly(BaseModel):
    provider: str
    subscription_id: str
    email: Optional[str] = None
    reason: str = Field(..., description="no_customer_email or user_not_found")


class DiscoveryTally(BaseModel):
    checked: int
    found: int
    created: int
    errors: int
    anomalies: list[DiscoveryAnomaly]


class SweepReportResponse(BaseModel):
    """Reconciliation summary; stable shape for monitoring."""

    success: bool
    timestamp: datetime
    duration_ms: int
    providers: dict[str, ProviderSyncTally]
    expired: ExpiryTally
    healed: HealTally
    discovered: DiscoveryTally
    cancelled: list[str] = Field(..., description="User ids downgraded by this run")
