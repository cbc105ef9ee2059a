"""Product analytics adapters."""

from .amplitude_adapter import AmplitudeClient, amplitude_client

__all__ = ["AmplitudeClient", "amplitude_client"]
