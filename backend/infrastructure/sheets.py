"""Publishing sink for finished invoice rows.

No spreadsheet provider is connected yet.  :class:`SimulatedSheetsPublisher`
narrates the two phases a real integration goes through (connect, append)
and acknowledges a synthetic row so the rest of the workflow can be
exercised end to end.  A real integration only needs to implement
:class:`SheetsPublisher` and keep calling ``progress`` for both phases.
"""
from __future__ import annotations

import asyncio
import itertools
from typing import Callable, Protocol

from backend.core.schema import PublishReceipt, SheetsPayload
from backend.core.settings import get_settings


class SheetsPublisher(Protocol):
    async def append(self, payload: SheetsPayload, progress: Callable[[str], None]) -> PublishReceipt: ...


class SimulatedSheetsPublisher:
    """Stand-in sink; row numbers start below a header row."""

    destination = "Google Sheets (simulated)"

    def __init__(self, *, connect_delay: float | None = None, append_delay: float | None = None) -> None:
        self._connect_delay = connect_delay
        self._append_delay = append_delay
        self._rows = itertools.count(2)

    async def append(self, payload: SheetsPayload, progress: Callable[[str], None]) -> PublishReceipt:
        settings = get_settings()
        connect_delay = settings.publish_connect_delay if self._connect_delay is None else self._connect_delay
        append_delay = settings.publish_append_delay if self._append_delay is None else self._append_delay

        progress("Connecting to Google Sheets...")
        await asyncio.sleep(connect_delay)
        progress(f"Appending row for invoice {payload.invoice_number or 'N/A'}...")
        await asyncio.sleep(append_delay)

        return PublishReceipt(
            success=True,
            row_number=next(self._rows),
            destination=self.destination,
            payload=payload,
        )
