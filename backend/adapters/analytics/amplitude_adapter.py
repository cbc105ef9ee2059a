"""
Amplitude HTTP API adapter for server-side billing events.
"""

import logging
import time
from typing import Any

import httpx

from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)


class AmplitudeClient:
    """Sends events to Amplitude's HTTP V2 API."""

    API_URL = "https://api2.amplitude.com/2/httpapi"

    def __init__(
        self,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.amplitude_api_key
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def track(
        self,
        user_id: str,
        event_type: str,
        properties: dict[str, Any] | None = None,
        revenue: float | None = None,
    ) -> bool:
        """
        Track one event.

        Returns:
            True if Amplitude accepted the event, False if skipped or rejected
        """
        if not self.is_configured:
            logger.debug(f"Amplitude not configured, skipping event {event_type}")
            return False

        event: dict[str, Any] = {
            "user_id": user_id,
            "event_type": event_type,
            "event_properties": properties or {},
            "time": int(time.time() * 1000),
        }
        if revenue is not None:
            event["revenue"] = revenue

        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.post(
                    self.API_URL,
                    json={"api_key": self.api_key, "events": [event]},
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Amplitude event {event_type} failed: {e}")
            return False

        return True


amplitude_client = AmplitudeClient()
