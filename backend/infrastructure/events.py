"""Output channel and typed event envelope for workflow streams.

A run writes frames into an :class:`EventChannel`; the HTTP layer drains the
channel into a streaming response.  The channel outlives any single request
handler so that a run suspended for human review can keep writing to the
original stream once it is resumed from another request.
"""
from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, AsyncIterator

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    WORKFLOW_START = "workflow_start"
    AGENT_START = "agent_start"
    REASONING = "reasoning"
    AGENT_ACTION = "agent_action"
    AGENT_RESULT = "agent_result"
    HUMAN_INTERVENTION_REQUIRED = "human_intervention_required"
    INTERVENTION_PENDING = "intervention_pending"
    AGENT_COMPLETE = "agent_complete"
    WORKFLOW_COMPLETE = "workflow_complete"
    INTERVENTION_DECISION = "intervention_decision"
    WORKFLOW_STOPPED = "workflow_stopped"
    ERROR = "error"
    DONE = "done"


class EventChannel:
    """Single-consumer frame queue that tolerates a vanished consumer."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False
        self._detached = False

    @property
    def closed(self) -> bool:
        return self._closed or self._detached

    def write(self, frame: str) -> bool:
        """Queue ``frame``; returns ``False`` when nobody will read it."""

        if self.closed:
            return False
        self._queue.put_nowait(frame)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def detach(self) -> None:
        """Mark the consumer as gone; later writes are dropped."""

        self._detached = True

    async def frames(self) -> AsyncIterator[str]:
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            self.detach()


class EventEmitter:
    """Serialises ``{"type": ..., **payload}`` envelopes onto a channel."""

    def __init__(self, channel: EventChannel) -> None:
        self._channel = channel

    @property
    def channel(self) -> EventChannel:
        return self._channel

    @staticmethod
    def _json_sanitise(value: Any) -> Any:
        if isinstance(value, BaseModel):
            return value.model_dump(by_alias=True, mode="json")
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (list, tuple)):
            return [EventEmitter._json_sanitise(item) for item in value]
        if isinstance(value, dict):
            return {key: EventEmitter._json_sanitise(val) for key, val in value.items()}
        return value

    @staticmethod
    def encode(event_type: EventType | str, payload: dict[str, Any]) -> str:
        envelope = {"type": EventType(event_type).value}
        envelope.update({key: EventEmitter._json_sanitise(value) for key, value in payload.items()})
        return f"data: {json.dumps(envelope, ensure_ascii=False, default=str)}\n\n"

    def emit(self, event_type: EventType | str, **payload: Any) -> None:
        frame = self.encode(event_type, payload)
        if not self._channel.write(frame):
            logger.debug("Dropped %s event for closed channel", EventType(event_type).value)

    def finish(self) -> None:
        """Write the terminal ``done`` frame and close the channel."""

        self.emit(EventType.DONE)
        self._channel.close()
