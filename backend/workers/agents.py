"""The six workflow agents.

Every agent follows the same protocol around the model gateway:

* **Reason**: one streaming call; each chunk is forwarded immediately as a
  ``reasoning`` event.
* **Act**: one non-streaming call that must answer with a JSON block.  When
  the block cannot be parsed the agent falls back to a deterministic heuristic
  and records a warning instead of failing.
* **Reflect**: optional second streaming call (Intake, Extraction,
  Publisher); informational only.

Policy and Quality may ask the coordinator to suspend the run; in that case
the agent does not emit ``agent_complete`` and the resolver emits it once a
human decision arrives.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar

from pydantic import BaseModel, ValidationError

from backend.core import ledger_codes, policy_rules
from backend.core.schema import AgenticDecision, IntakeResult, InvoiceData, LedgerMapping, PolicyCheckResult
from backend.core.sheets import build_sheets_payload
from backend.core.verification import verify_invoice
from backend.domain import InvoiceImage, Stage, WorkflowRun
from backend.extractors import model_output
from backend.infrastructure.events import EventEmitter, EventType
from backend.infrastructure.model_gateway import ModelGateway
from backend.infrastructure.sheets import SheetsPublisher, SimulatedSheetsPublisher

from . import prompts

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    run: WorkflowRun
    emitter: EventEmitter
    gateway: ModelGateway


@dataclass
class StepOutcome:
    result: BaseModel
    reasoning: str = ""
    reflection: str = ""
    warnings: list[str] = field(default_factory=list)
    requires_intervention: bool = False
    issues: list[str] = field(default_factory=list)


class AgentStep:
    """Base class implementing the Reason → Act → Reflect protocol."""

    name: ClassVar[str]
    ordinal: ClassVar[int]
    stage: ClassVar[Stage]
    reasons_over_image: ClassVar[bool] = False
    reflects: ClassVar[bool] = False

    async def execute(self, context: StepContext) -> StepOutcome:
        emitter = context.emitter
        emitter.emit(EventType.AGENT_START, agent=self.name, step=self.ordinal)

        image = context.run.image if self.reasons_over_image else None
        reasoning = await self.stream(context, self.reasoning_prompt(context), phase="Reasoning", image=image)

        outcome = await self.act(context, reasoning)
        outcome.reasoning = reasoning
        emitter.emit(EventType.AGENT_RESULT, agent=self.name, result=outcome.result, warnings=outcome.warnings)

        if self.reflects:
            outcome.reflection = await self.stream(
                context,
                self.reflection_prompt(context, outcome),
                phase="Reflection",
                image=self.reflection_image(context),
            )
            self.after_reflection(context, outcome)

        if not outcome.requires_intervention:
            emitter.emit(EventType.AGENT_COMPLETE, agent=self.name, status="completed")
        return outcome

    # ------------------------------------------------------------------
    # helpers shared by all agents
    # ------------------------------------------------------------------
    async def stream(
        self,
        context: StepContext,
        prompt: str,
        *,
        phase: str,
        image: InvoiceImage | None = None,
    ) -> str:
        transcript: list[str] = []
        async for chunk in context.gateway.generate_stream(prompts.framed(self.name, phase, prompt), image):
            transcript.append(chunk)
            context.emitter.emit(EventType.REASONING, agent=self.name, phase=phase, content=chunk)
        return "".join(transcript)

    def action(self, context: StepContext, message: str) -> None:
        context.emitter.emit(EventType.AGENT_ACTION, agent=self.name, message=message)

    def parse_model(self, model: type[BaseModel], text: str) -> BaseModel | None:
        block = model_output.extract_json_block(text)
        if block is None:
            return None
        known = set(model.model_fields) | {info.alias for info in model.model_fields.values() if info.alias}
        if not known.intersection(block):
            logger.warning("%s returned JSON without any %s field: %s", self.name, model.__name__, sorted(block))
            return None
        try:
            return model.model_validate(block)
        except ValidationError as exc:
            logger.warning("%s returned JSON that does not match %s: %s", self.name, model.__name__, exc)
            return None

    @staticmethod
    def invoice_context(run: WorkflowRun) -> dict[str, Any]:
        return run.extracted_data.to_wire()

    # ------------------------------------------------------------------
    # hooks
    # ------------------------------------------------------------------
    def reasoning_prompt(self, context: StepContext) -> str:
        raise NotImplementedError

    async def act(self, context: StepContext, reasoning: str) -> StepOutcome:
        raise NotImplementedError

    def reflection_prompt(self, context: StepContext, outcome: StepOutcome) -> str:
        raise NotImplementedError

    def reflection_image(self, context: StepContext) -> InvoiceImage | None:
        return None

    def after_reflection(self, context: StepContext, outcome: StepOutcome) -> None:
        return None


class IntakeAgent(AgentStep):
    name = "Intake Agent"
    ordinal = 1
    stage = Stage.INTAKE
    reasons_over_image = True
    reflects = True

    def reasoning_prompt(self, context: StepContext) -> str:
        return prompts.INTAKE_REASONING

    async def act(self, context: StepContext, reasoning: str) -> StepOutcome:
        self.action(context, "Performing file validation and quality checks...")
        text = await context.gateway.generate(prompts.INTAKE_ACTION, context.run.image)

        warnings: list[str] = []
        result = self.parse_model(IntakeResult, text)
        if result is None:
            logger.warning("Intake response for %s not parseable; inferring flags", context.run.workflow_id)
            result = model_output.infer_intake_result(text)
            warnings.append("Intake response could not be parsed; flags inferred from response text")

        context.run.intake = result
        if result.warnings:
            context.run.record_decision(
                AgenticDecision(
                    agent=self.name,
                    decision="Proceeded despite intake warnings",
                    details="; ".join(result.warnings),
                    impact="Extraction accuracy may be reduced",
                )
            )
        return StepOutcome(result=result, warnings=warnings)

    def reflection_prompt(self, context: StepContext, outcome: StepOutcome) -> str:
        return prompts.INTAKE_REFLECTION


class ExtractionAgent(AgentStep):
    name = "Extraction Agent"
    ordinal = 2
    stage = Stage.EXTRACTION
    reasons_over_image = True
    reflects = True

    def reasoning_prompt(self, context: StepContext) -> str:
        return prompts.EXTRACTION_REASONING

    async def act(self, context: StepContext, reasoning: str) -> StepOutcome:
        self.action(context, "Extracting structured data from invoice...")
        text = await context.gateway.generate(prompts.EXTRACTION_ACTION, context.run.image)

        warnings: list[str] = []
        data = self.parse_model(InvoiceData, text)
        if data is None:
            logger.warning("Extraction response for %s not parseable; using text heuristics", context.run.workflow_id)
            self.action(context, "Structured output could not be parsed. Recovering labelled fields from text...")
            data = model_output.infer_invoice_fields(text, reasoning)
            warnings.append("Extraction response could not be parsed; fields recovered from text heuristics")

        context.run.extracted_data = data
        return StepOutcome(result=data, warnings=warnings)

    def reflection_prompt(self, context: StepContext, outcome: StepOutcome) -> str:
        return prompts.EXTRACTION_REFLECTION

    def reflection_image(self, context: StepContext) -> InvoiceImage | None:
        return context.run.image

    def after_reflection(self, context: StepContext, outcome: StepOutcome) -> None:
        present = [key for key, value in self.invoice_context(context.run).items() if value not in (None, [], "")]
        ambiguous = model_output.find_ambiguous_fields(outcome.reflection, present)
        context.run.ambiguous_fields = ambiguous
        context.emitter.emit(EventType.AGENT_RESULT, agent=self.name, ambiguousFields=ambiguous)


class PolicyAgent(AgentStep):
    name = "Policy Agent"
    ordinal = 3
    stage = Stage.POLICY

    def reasoning_prompt(self, context: StepContext) -> str:
        return prompts.policy_reasoning(policy_rules.describe_rules(), self.invoice_context(context.run))

    async def act(self, context: StepContext, reasoning: str) -> StepOutcome:
        self.action(context, "Checking invoice against policy rules...")
        data = context.run.extracted_data
        result = policy_rules.evaluate_policies(data)

        if result.violations:
            suggestion = await context.gateway.generate(
                prompts.policy_corrective_actions(result.violations, data.total)
            )
            result.corrective_actions = policy_rules.build_corrective_actions(result, data, suggestion)
            self.action(
                context,
                f"Found {len(result.violations)} policy violation(s). Requesting human review...",
            )
        else:
            self.action(context, "All policy checks passed.")

        context.run.policy = result
        return StepOutcome(
            result=result,
            requires_intervention=result.requires_intervention,
            issues=list(result.violations),
        )


class LedgerMapperAgent(AgentStep):
    name = "GL Mapper Agent"
    ordinal = 4
    stage = Stage.LEDGER_MAPPING

    def reasoning_prompt(self, context: StepContext) -> str:
        return prompts.ledger_reasoning(ledger_codes.describe_codes(), self.invoice_context(context.run))

    async def act(self, context: StepContext, reasoning: str) -> StepOutcome:
        self.action(context, "Predicting GL code based on invoice context...")
        data = context.run.extracted_data
        text = await context.gateway.generate(
            prompts.ledger_action(ledger_codes.describe_codes(), self.invoice_context(context.run), reasoning)
        )

        warnings: list[str] = []
        mapping = self.parse_model(LedgerMapping, text)
        if mapping is None:
            logger.warning("GL mapping for %s not parseable; inferring from vendor", context.run.workflow_id)
            mapping = ledger_codes.infer_mapping(data)
            warnings.append("GL mapping response could not be parsed; inferred from vendor/description")
        else:
            mapping, normalised = ledger_codes.normalise_mapping(mapping)
            warnings.extend(normalised)

        mapping = mapping.model_copy(
            update={
                "used_historical_context": ledger_codes.mentions_history(mapping.reasoning),
                "warnings": warnings,
            }
        )
        logger.info(
            "Run %s mapped to GL %s (historical context referenced: %s)",
            context.run.workflow_id,
            mapping.gl_code,
            mapping.used_historical_context,
        )

        context.run.ledger_mapping = mapping
        context.run.record_decision(
            AgenticDecision(
                agent=self.name,
                decision=f"Assigned GL code {mapping.gl_code} ({mapping.gl_category})",
                details=mapping.reasoning,
                impact=f"Invoice will be booked under {mapping.gl_category}",
                confidence=mapping.confidence,
            )
        )
        return StepOutcome(result=mapping, warnings=warnings)


class QualityAgent(AgentStep):
    name = "Quality Agent"
    ordinal = 5
    stage = Stage.QUALITY

    def reasoning_prompt(self, context: StepContext) -> str:
        return prompts.quality_reasoning(self.invoice_context(context.run))

    async def act(self, context: StepContext, reasoning: str) -> StepOutcome:
        self.action(context, "Verifying calculations and data integrity...")
        result = verify_invoice(context.run.extracted_data)
        if result.errors:
            self.action(
                context,
                f"Found {len(result.errors)} calculation error(s). Escalating for human review...",
            )
        else:
            self.action(context, "All calculations verified. No errors found.")

        context.run.quality = result
        return StepOutcome(
            result=result,
            requires_intervention=result.requires_intervention,
            issues=list(result.errors),
        )


class PublisherAgent(AgentStep):
    name = "Publisher Agent"
    ordinal = 6
    stage = Stage.PUBLISH
    reflects = True

    def __init__(self, publisher: SheetsPublisher | None = None) -> None:
        self._publisher = publisher or SimulatedSheetsPublisher()

    @staticmethod
    def _inputs(run: WorkflowRun) -> tuple[LedgerMapping, PolicyCheckResult]:
        mapping = run.ledger_mapping or ledger_codes.default_mapping()
        policy = run.policy or policy_rules.evaluate_policies(run.extracted_data)
        return mapping, policy

    def reasoning_prompt(self, context: StepContext) -> str:
        mapping, policy = self._inputs(context.run)
        return prompts.publisher_reasoning(
            {
                "finalData": self.invoice_context(context.run),
                "glMapping": mapping.to_wire(),
                "policyResult": policy.to_wire(),
            }
        )

    async def act(self, context: StepContext, reasoning: str) -> StepOutcome:
        self.action(context, "Formatting final payload for Google Sheets...")
        mapping, policy = self._inputs(context.run)
        payload = build_sheets_payload(context.run.extracted_data, mapping, policy)

        receipt = await self._publisher.append(payload, lambda message: self.action(context, message))
        self.action(context, f"Row {receipt.row_number} appended to {receipt.destination}.")

        context.run.receipt = receipt
        return StepOutcome(result=receipt)

    def reflection_prompt(self, context: StepContext, outcome: StepOutcome) -> str:
        return prompts.PUBLISHER_REFLECTION


def default_steps(publisher: SheetsPublisher | None = None) -> list[AgentStep]:
    return [
        IntakeAgent(),
        ExtractionAgent(),
        PolicyAgent(),
        LedgerMapperAgent(),
        QualityAgent(),
        PublisherAgent(publisher),
    ]
