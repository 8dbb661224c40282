"""Storage for suspended workflow runs awaiting a human decision."""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Protocol

from backend.domain import Intervention


class InterventionStore(Protocol):
    """Key-value contract keyed by intervention id."""

    def save(self, intervention: Intervention) -> None: ...

    def get(self, intervention_id: str) -> Intervention | None: ...

    def claim(self, intervention_id: str) -> Intervention | None: ...

    def delete(self, intervention_id: str) -> bool: ...

    def list_expired(self, created_before: datetime) -> list[Intervention]: ...

    def count(self) -> int: ...

    def reset(self) -> None: ...


class InMemoryInterventionStore:
    """Process-local store; entries are lost on restart."""

    def __init__(self) -> None:
        self._items: dict[str, Intervention] = {}
        self._lock = threading.Lock()

    def save(self, intervention: Intervention) -> None:
        with self._lock:
            if intervention.intervention_id in self._items:
                raise KeyError(f"intervention {intervention.intervention_id} already stored")
            self._items[intervention.intervention_id] = intervention

    def get(self, intervention_id: str) -> Intervention | None:
        with self._lock:
            return self._items.get(intervention_id)

    def claim(self, intervention_id: str) -> Intervention | None:
        """Mark an entry as being resolved; only the first caller gets it."""

        with self._lock:
            intervention = self._items.get(intervention_id)
            if intervention is None or intervention.claimed:
                return None
            intervention.claimed = True
            return intervention

    def delete(self, intervention_id: str) -> bool:
        with self._lock:
            return self._items.pop(intervention_id, None) is not None

    def list_expired(self, created_before: datetime) -> list[Intervention]:
        with self._lock:
            return [
                item
                for item in self._items.values()
                if not item.claimed and item.created_at < created_before
            ]

    def count(self) -> int:
        with self._lock:
            return len(self._items)

    def reset(self) -> None:
        with self._lock:
            self._items.clear()
