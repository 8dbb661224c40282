from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Any, Coroutine, Sequence

from backend.core.errors import InterventionConflictError
from backend.domain import PIPELINE_ORDER, Continuation, Intervention, Stage, WorkflowRun, next_stage
from backend.infrastructure import (
    EventChannel,
    EventEmitter,
    EventType,
    InterventionStore,
    ModelGatewayError,
    get_model_gateway,
)
from backend.infrastructure.sheets import SheetsPublisher

from .agents import AgentStep, StepContext, default_steps

logger = logging.getLogger(__name__)

INTERVENTION_MESSAGES = {
    Stage.POLICY: "Policy violations detected. Human approval is required before continuing.",
    Stage.QUALITY: "Calculation errors detected. Human review is required before publishing.",
}


def new_intervention_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class PipelineCoordinator:
    """Drives a run through the six agents and parks it at suspension points."""

    def __init__(
        self,
        store: InterventionStore,
        *,
        steps: Sequence[AgentStep] | None = None,
        publisher: SheetsPublisher | None = None,
    ) -> None:
        self._store = store
        self._steps = list(steps) if steps is not None else default_steps(publisher)
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def store(self) -> InterventionStore:
        return self._store

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Schedule ``coro`` and keep a strong reference until it finishes."""

        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start(self, run: WorkflowRun, channel: EventChannel) -> asyncio.Task[Any]:
        emitter = EventEmitter(channel)
        emitter.emit(EventType.WORKFLOW_START, message="Starting 6-agent workflow", workflowId=run.workflow_id)
        logger.info("Workflow %s started", run.workflow_id)
        return self.spawn(self.run_from(Continuation(resume_at=Stage.INTAKE, run=run, channel=channel)))

    def resume(self, continuation: Continuation) -> asyncio.Task[Any]:
        return self.spawn(self.run_from(continuation))

    def _steps_from(self, stage: Stage) -> list[AgentStep]:
        start = PIPELINE_ORDER.index(stage)
        return [step for step in self._steps if PIPELINE_ORDER.index(step.stage) >= start]

    async def run_from(self, continuation: Continuation) -> Stage:
        """Execute steps from ``continuation.resume_at`` until done or suspended."""

        run = continuation.run
        emitter = EventEmitter(continuation.channel)
        current: AgentStep | None = None

        try:
            gateway = get_model_gateway()
            if gateway is None:
                raise ModelGatewayError("No model gateway configured")

            for step in self._steps_from(continuation.resume_at):
                current = step
                run.stage = step.stage
                outcome = await step.execute(StepContext(run=run, emitter=emitter, gateway=gateway))
                if outcome.requires_intervention:
                    resume = Continuation(
                        resume_at=next_stage(step.stage),
                        run=run,
                        channel=continuation.channel,
                    )
                    self.request_intervention(run, step, outcome.issues, resume, emitter)
                    return step.stage
        except Exception as exc:
            agent = current.name if current is not None else "Workflow"
            logger.exception("Workflow %s failed in %s", run.workflow_id, agent)
            run.stage = Stage.STOPPED
            emitter.emit(EventType.ERROR, agent=agent, message=str(exc) or exc.__class__.__name__)
            emitter.finish()
            return Stage.STOPPED

        run.stage = Stage.DONE
        receipt = run.receipt
        emitter.emit(
            EventType.WORKFLOW_COMPLETE,
            payload=receipt.payload if receipt is not None else None,
            receipt=receipt,
            agenticDecisions=run.agentic_decisions,
        )
        emitter.finish()
        logger.info("Workflow %s completed", run.workflow_id)
        return Stage.DONE

    def request_intervention(
        self,
        run: WorkflowRun,
        step: AgentStep,
        issues: list[str],
        continuation: Continuation,
        emitter: EventEmitter,
    ) -> Intervention:
        """Park the run and ask the client for a decision."""

        if run.open_intervention is not None:
            raise InterventionConflictError(
                f"workflow {run.workflow_id} already waits on intervention {run.open_intervention}"
            )

        intervention = Intervention(
            intervention_id=new_intervention_id(),
            stage=step.stage,
            agent=step.name,
            issues=list(issues),
            snapshot=run.extracted_data.display_snapshot(),
            continuation=continuation,
        )
        self._store.save(intervention)
        run.open_intervention = intervention.intervention_id

        message = INTERVENTION_MESSAGES.get(step.stage, "Human review is required before continuing.")
        payload: dict[str, Any] = {
            "agent": step.name,
            "interventionId": intervention.intervention_id,
            "stage": step.stage,
            "message": message,
            "extractedData": intervention.snapshot,
        }
        if step.stage is Stage.POLICY and run.policy is not None:
            payload["violations"] = run.policy.violations
            payload["correctiveActions"] = run.policy.corrective_actions
        else:
            payload["errors"] = intervention.issues

        emitter.emit(EventType.HUMAN_INTERVENTION_REQUIRED, **payload)
        emitter.emit(
            EventType.INTERVENTION_PENDING,
            agent=step.name,
            interventionId=intervention.intervention_id,
            message="Waiting for human decision...",
        )
        logger.info(
            "Workflow %s suspended at %s awaiting intervention %s",
            run.workflow_id,
            step.stage.value,
            intervention.intervention_id,
        )
        return intervention
