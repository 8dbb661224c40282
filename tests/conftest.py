from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from backend.application import reset_workflow_state
from backend.core.settings import reset_settings
from backend.infrastructure import EventChannel, configure_model_gateway


def today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def invoice_payload(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "vendor": "Acme Office Supplies",
        "invoiceNumber": "INV-1001",
        "date": today(),
        "dueDate": today(),
        "subtotal": 100.0,
        "tax": 8.0,
        "taxRate": 0.08,
        "total": 108.0,
        "currency": "USD",
        "lineItems": [{"description": "Copy paper", "quantity": 10, "unitPrice": 10.0, "amount": 100.0}],
    }
    data.update(overrides)
    return data


class ScriptedGateway:
    """Answers agent prompts with canned text and records every call."""

    def __init__(
        self,
        invoice: dict[str, Any] | str | None = None,
        *,
        intake: dict[str, Any] | str | None = None,
        mapping: dict[str, Any] | str | None = None,
        corrective: str = "Escalate to CFO for sign-off",
        reasoning: tuple[str, ...] = ("Checking ", "the invoice."),
        fail_on: str | None = None,
    ) -> None:
        self.invoice = invoice if invoice is not None else invoice_payload()
        self.intake = intake if intake is not None else {
            "status": "valid",
            "fileIntegrity": True,
            "isDuplicate": False,
            "isBlurry": False,
            "warnings": [],
            "sanitized": True,
        }
        self.mapping = mapping if mapping is not None else {
            "glCode": "6001",
            "glCategory": "OFFICE_SUPPLIES",
            "confidence": 92,
            "reasoning": "Paper purchases are office supplies.",
        }
        self.corrective = corrective
        self.reasoning = reasoning
        self.fail_on = fail_on
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def _render(value: dict[str, Any] | str) -> str:
        if isinstance(value, str):
            return value
        return "Here is the result:\n```json\n" + json.dumps(value) + "\n```"

    async def generate(self, prompt: str, image: Any = None) -> str:
        self.calls.append(("generate", prompt))
        if self.fail_on and self.fail_on in prompt:
            raise RuntimeError("upstream unavailable")
        if "Extract all invoice data" in prompt:
            return self._render(self.invoice)
        if '"fileIntegrity"' in prompt:
            return self._render(self.intake)
        if '"glCode"' in prompt:
            return self._render(self.mapping)
        if "corrective action" in prompt:
            return self.corrective
        return ""

    async def generate_stream(self, prompt: str, image: Any = None):
        self.calls.append(("stream", prompt))
        for chunk in self.reasoning:
            yield chunk

    def count(self, marker: str) -> int:
        return sum(1 for _, prompt in self.calls if marker in prompt)


def parse_frames(frames: list[str] | str) -> list[dict[str, Any]]:
    if isinstance(frames, str):
        frames = [chunk for chunk in frames.split("\n\n") if chunk.strip()]
    events = []
    for frame in frames:
        frame = frame.strip()
        assert frame.startswith("data: ")
        events.append(json.loads(frame[len("data: "):]))
    return events


class StreamRecorder:
    """Drains a channel in the background the way the HTTP response does."""

    def __init__(self, channel: EventChannel) -> None:
        self.channel = channel
        self.frames: list[str] = []
        self._task: asyncio.Task | None = None

    def start(self) -> "StreamRecorder":
        self._task = asyncio.get_running_loop().create_task(self._drain())
        return self

    async def _drain(self) -> None:
        async for frame in self.channel.frames():
            self.frames.append(frame)

    async def settle(self) -> list[dict[str, Any]]:
        for _ in range(10):
            await asyncio.sleep(0)
        return self.events

    async def finished(self) -> list[dict[str, Any]]:
        assert self._task is not None
        await asyncio.wait_for(self._task, timeout=5)
        return self.events

    @property
    def events(self) -> list[dict[str, Any]]:
        return parse_frames(self.frames)


def event_types(events: list[dict[str, Any]]) -> list[str]:
    return [event["type"] for event in events]


@pytest.fixture(autouse=True)
def reset_state(monkeypatch):
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    monkeypatch.setenv("PUBLISH_CONNECT_DELAY", "0")
    monkeypatch.setenv("PUBLISH_APPEND_DELAY", "0")
    reset_settings()
    reset_workflow_state()
    configure_model_gateway(None)
    yield
    configure_model_gateway(None)
    reset_workflow_state()
    reset_settings()
