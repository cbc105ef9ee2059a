"""
API request and response schemas.
"""

from .billing import (
    EntitlementResponse,
    PricingResponse,
    SweepReportResponse,
    WebhookAckResponse,
)

__all__ = [
    "EntitlementResponse",
    "PricingResponse",
    "SweepReportResponse",
    "WebhookAckResponse",
]
