"""
Webhook ingestion pipeline: verify, parse, apply, commit, then side effects.

Turns one raw provider delivery into a ``WebhookResult`` whose status code
the route returns as-is. Providers retry on non-2xx, so anything that a
retry could fix (persistence failures) is a 5xx, and anything a retry
cannot fix (bad signature, malformed body) is a 4xx.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.domain.events import MissingCorrelationError, WebhookPayloadError
from core.interfaces.payments import PaymentProvider, WebhookNotConfiguredError
from services.billing_events import BillingEventHandler

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    success: bool
    status_code: int = 200
    error: Optional[str] = None
    event_type: Optional[str] = None
    handled: bool = False
    duplicate: bool = False

    def to_response(self) -> dict[str, Any]:
        if not self.success:
            return {"detail": self.error}
        return {
            "received": True,
            "handled": self.handled,
            "event_type": self.event_type,
            "duplicate": self.duplicate,
        }


class WebhookIngestor:
    """Runs one provider's webhook deliveries through the billing handler."""

    def __init__(self, db: AsyncSession, provider: PaymentProvider, handler: BillingEventHandler):
        self.db = db
        self.provider = provider
        self.handler = handler

    async def handle_webhook(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        now: datetime | None = None,
    ) -> WebhookResult:
        now = now or datetime.now(UTC)
        log_extra = {"provider": self.provider.name}

        try:
            verified = await self.provider.verify_webhook(raw_body, headers)
        except WebhookNotConfiguredError as e:
            logger.error(f"Webhook verification not configured: {e}", extra=log_extra)
            return WebhookResult(success=False, status_code=403, error="Webhook verification not configured")

        if not verified:
            logger.warning("Invalid webhook signature", extra=log_extra)
            return WebhookResult(success=False, status_code=401, error="Invalid webhook signature")

        try:
            event = self.provider.parse_event(raw_body)
        except MissingCorrelationError as e:
            logger.error(f"Webhook missing user correlation: {e}", extra=log_extra)
            return WebhookResult(success=False, status_code=422, error=str(e))
        except WebhookPayloadError as e:
            logger.error(f"Malformed webhook payload: {e}", extra=log_extra)
            return WebhookResult(success=False, status_code=400, error=str(e))

        log_extra["event_type"] = event.event_type
        try:
            result = await self.handler.handle(event, now)
            await self.db.commit()
        except MissingCorrelationError as e:
            await self.db.rollback()
            self.handler.discard_side_effects()
            logger.error(f"Webhook references unknown user: {e}", extra=log_extra)
            return WebhookResult(success=False, status_code=422, error=str(e), event_type=event.event_type)
        except Exception as e:
            await self.db.rollback()
            self.handler.discard_side_effects()
            logger.error(f"Failed to process webhook: {e}", extra=log_extra, exc_info=True)
            return WebhookResult(
                success=False,
                status_code=500,
                error="Webhook processing failed",
                event_type=event.event_type,
            )

        self.handler.run_side_effects()
        logger.info(f"Webhook processed: {result.action}", extra=log_extra)
        return WebhookResult(
            success=True,
            event_type=event.event_type,
            handled=result.handled,
            duplicate=result.duplicate,
        )
