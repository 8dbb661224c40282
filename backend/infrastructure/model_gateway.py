"""Seam between the agents and the external text/vision generation service.

Agents only depend on :class:`ModelGateway`.  The production implementation is
:class:`backend.infrastructure.gemini.GeminiModelGateway`, installed during
application start-up when ``GOOGLE_API_KEY`` is present; tests install
scripted gateways through :func:`configure_model_gateway`.
"""
from __future__ import annotations

from typing import AsyncIterator, Protocol

from backend.domain import InvoiceImage


class ModelGatewayError(RuntimeError):
    """Raised when the generation service fails after all retries."""


class ModelGateway(Protocol):
    """Contract for generation back-ends."""

    async def generate(self, prompt: str, image: InvoiceImage | None = None) -> str:
        """Return the complete response text for ``prompt``."""

    def generate_stream(self, prompt: str, image: InvoiceImage | None = None) -> AsyncIterator[str]:
        """Yield the response text incrementally as chunks arrive."""


_gateway: ModelGateway | None = None


def configure_model_gateway(gateway: ModelGateway | None) -> None:
    """Install the gateway used by the workflow agents."""

    global _gateway
    _gateway = gateway


def get_model_gateway() -> ModelGateway | None:
    """Return the configured gateway, or ``None`` when generation is unavailable."""

    return _gateway
