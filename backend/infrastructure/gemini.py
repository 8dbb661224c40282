"""Integration with the Google Gemini API via the ``google-genai`` SDK."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from google import genai
from google.genai import types

from backend.domain import InvoiceImage

from .model_gateway import ModelGatewayError

logger = logging.getLogger(__name__)


class GeminiModelGateway:
    """Gemini-backed :class:`~backend.infrastructure.model_gateway.ModelGateway`.

    Failed calls are retried with exponential backoff.  Streaming calls are
    only retried while no chunk has been delivered yet, so a caller never sees
    the same text twice.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-2.5-flash",
        max_retries: int = 3,
        retry_delay: float = 1.0,
        client: Any | None = None,
    ) -> None:
        if client is None and not api_key:
            raise ValueError("api_key is required when no client is provided")
        self._model = model
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay
        self._client = client or genai.Client(api_key=api_key)

    @property
    def model(self) -> str:
        return self._model

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _contents(prompt: str, image: InvoiceImage | None) -> list[Any]:
        contents: list[Any] = [prompt]
        if image is not None:
            contents.append(types.Part.from_bytes(data=image.raw, mime_type=image.mime_type))
        return contents

    async def _backoff(self, attempt: int, exc: Exception) -> None:
        logger.warning("Gemini API error (attempt %s/%s): %s", attempt + 1, self._max_retries, exc)
        if attempt >= self._max_retries - 1:
            raise ModelGatewayError(f"Gemini generation failed: {exc}") from exc
        await asyncio.sleep(self._retry_delay * (2**attempt))

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    async def generate(self, prompt: str, image: InvoiceImage | None = None) -> str:
        contents = self._contents(prompt, image)
        for attempt in range(self._max_retries):
            try:
                response = await self._client.aio.models.generate_content(model=self._model, contents=contents)
            except Exception as exc:  # noqa: BLE001 - SDK surfaces transport and API errors alike
                await self._backoff(attempt, exc)
                continue
            if not response.text:
                logger.warning("Empty response from Gemini")
                return ""
            return response.text
        raise ModelGatewayError("Gemini generation failed")

    async def generate_stream(self, prompt: str, image: InvoiceImage | None = None) -> AsyncIterator[str]:
        contents = self._contents(prompt, image)
        for attempt in range(self._max_retries):
            delivered = False
            try:
                stream = await self._client.aio.models.generate_content_stream(model=self._model, contents=contents)
                async for chunk in stream:
                    text = chunk.text
                    if text:
                        delivered = True
                        yield text
                return
            except Exception as exc:  # noqa: BLE001
                if delivered:
                    raise ModelGatewayError(f"Gemini stream interrupted: {exc}") from exc
                await self._backoff(attempt, exc)


__all__ = ["GeminiModelGateway"]
