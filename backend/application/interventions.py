"""Application service layer for human intervention decisions."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from backend.core.errors import NotFoundError
from backend.core.schema import AgenticDecision
from backend.core.settings import get_settings
from backend.domain import Intervention, Stage
from backend.infrastructure import EventEmitter, EventType, InMemoryInterventionStore, InterventionStore
from backend.workers.pipeline import PipelineCoordinator

logger = logging.getLogger(__name__)

Decision = Literal["accept", "decline"]
DECISIONS: tuple[str, ...] = ("accept", "decline")

STOP_REASONS = {
    Stage.POLICY: "Workflow stopped by user due to policy violations",
    Stage.QUALITY: "Workflow stopped by user due to calculation errors",
}


class InterventionResolver:
    """Applies accept/decline decisions to suspended runs."""

    def __init__(self, store: InterventionStore, coordinator: PipelineCoordinator) -> None:
        self._store = store
        self._coordinator = coordinator

    def claim(self, intervention_id: str) -> Intervention:
        intervention = self._store.claim(intervention_id)
        if intervention is None:
            raise NotFoundError(intervention_id)
        return intervention

    async def apply(self, intervention: Intervention, decision: Decision) -> Stage:
        """Run the accept or decline branch for an already claimed intervention."""

        continuation = intervention.continuation
        run = continuation.run
        emitter = EventEmitter(continuation.channel)
        try:
            run.open_intervention = None
            if decision == "accept":
                emitter.emit(
                    EventType.INTERVENTION_DECISION,
                    interventionId=intervention.intervention_id,
                    decision="accepted",
                )
                emitter.emit(EventType.AGENT_COMPLETE, agent=intervention.agent, status="completed")
                run.record_decision(
                    AgenticDecision(
                        agent="Human Reviewer",
                        decision=f"Approved override at {intervention.agent}",
                        details="; ".join(intervention.issues),
                        impact=f"Workflow resumed at {continuation.resume_at.value}",
                    )
                )
                logger.info(
                    "Intervention %s accepted; resuming %s at %s",
                    intervention.intervention_id,
                    run.workflow_id,
                    continuation.resume_at.value,
                )
                return await self._coordinator.run_from(continuation)

            emitter.emit(
                EventType.INTERVENTION_DECISION,
                interventionId=intervention.intervention_id,
                decision="declined",
            )
            emitter.emit(EventType.AGENT_COMPLETE, agent=intervention.agent, status="stopped")
            emitter.emit(
                EventType.WORKFLOW_STOPPED,
                reason=STOP_REASONS.get(intervention.stage, "Workflow stopped by user"),
            )
            emitter.finish()
            run.stage = Stage.STOPPED
            logger.info("Intervention %s declined; %s stopped", intervention.intervention_id, run.workflow_id)
            return Stage.STOPPED
        finally:
            self._store.delete(intervention.intervention_id)

    async def resolve(self, intervention_id: str, decision: Decision) -> Stage:
        """Claim and apply in one step; raises ``NotFoundError`` for unknown ids."""

        return await self.apply(self.claim(intervention_id), decision)

    def submit(self, intervention_id: str, decision: Decision) -> dict[str, Any]:
        """Claim now, branch in the background, and acknowledge immediately."""

        intervention = self.claim(intervention_id)
        self._coordinator.spawn(self.apply(intervention, decision))
        return {
            "success": True,
            "interventionId": intervention.intervention_id,
            "decision": decision,
            "stage": intervention.stage.value,
        }

    def reap_expired(self, now: datetime | None = None) -> int:
        """Stop runs whose intervention has waited longer than the configured TTL."""

        ttl = get_settings().intervention_ttl_seconds
        if ttl <= 0:
            return 0
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=ttl)

        reaped = 0
        for candidate in self._store.list_expired(cutoff):
            intervention = self._store.claim(candidate.intervention_id)
            if intervention is None:
                continue
            try:
                run = intervention.continuation.run
                run.open_intervention = None
                run.stage = Stage.STOPPED
                emitter = EventEmitter(intervention.continuation.channel)
                emitter.emit(
                    EventType.WORKFLOW_STOPPED,
                    reason=f"Intervention expired after {ttl:g} seconds without a decision",
                )
                emitter.finish()
                logger.info("Reaped intervention %s for %s", intervention.intervention_id, run.workflow_id)
                reaped += 1
            finally:
                self._store.delete(intervention.intervention_id)
        return reaped

    # ------------------------------------------------------------------
    # testing helpers
    # ------------------------------------------------------------------
    def reset(self) -> None:
        self._store.reset()


_store = InMemoryInterventionStore()
_coordinator = PipelineCoordinator(_store)
_resolver = InterventionResolver(_store, _coordinator)


def get_pipeline_coordinator() -> PipelineCoordinator:
    """Return the singleton coordinator for the process."""

    return _coordinator


def get_intervention_resolver() -> InterventionResolver:
    return _resolver


def reset_workflow_state() -> None:
    """Reset the in-memory store (used in tests)."""

    _resolver.reset()
