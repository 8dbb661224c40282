from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import ScriptedGateway, StreamRecorder, event_types, invoice_payload, parse_frames

from backend.application.interventions import InterventionResolver
from backend.core.errors import InterventionConflictError, NotFoundError
from backend.core.schema import InvoiceData
from backend.domain import Continuation, InvoiceImage, Stage, WorkflowRun
from backend.infrastructure import EventChannel, EventEmitter, InMemoryInterventionStore, configure_model_gateway
from backend.infrastructure.sheets import SimulatedSheetsPublisher
from backend.workers.agents import ExtractionAgent, PolicyAgent
from backend.workers.pipeline import PipelineCoordinator


PNG_BASE64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z8BQDwAEhQGAhKmMIQAAAABJRU5ErkJggg=="


def _build():
    store = InMemoryInterventionStore()
    coordinator = PipelineCoordinator(store, publisher=SimulatedSheetsPublisher(connect_delay=0, append_delay=0))
    resolver = InterventionResolver(store, coordinator)
    return store, coordinator, resolver


def _new_run() -> WorkflowRun:
    return WorkflowRun(workflow_id="wf-test", image=InvoiceImage.from_upload(PNG_BASE64))


def _started_agents(events):
    return [event["agent"] for event in events if event["type"] == "agent_start"]


def _pending_id(events) -> str:
    required = [event for event in events if event["type"] == "human_intervention_required"]
    assert len(required) == 1
    return required[0]["interventionId"]


def test_clean_run_streams_all_agents_and_completes():
    gateway = ScriptedGateway()
    configure_model_gateway(gateway)
    store, coordinator, _ = _build()

    async def scenario():
        channel = EventChannel()
        recorder = StreamRecorder(channel).start()
        run = _new_run()
        await coordinator.start(run, channel)
        return run, await recorder.finished()

    run, events = asyncio.run(scenario())
    types = event_types(events)

    assert types[0] == "workflow_start"
    assert types[-2:] == ["workflow_complete", "done"]
    assert "human_intervention_required" not in types
    assert [event["step"] for event in events if event["type"] == "agent_start"] == [1, 2, 3, 4, 5, 6]
    assert run.stage is Stage.DONE
    assert store.count() == 0

    complete = events[-2]
    assert complete["payload"]["glCode"] == "6001"
    assert complete["payload"]["policyApproved"] is True
    assert complete["payload"]["lineItems"][0]["row"] == 1
    assert complete["receipt"]["rowNumber"] == 2
    assert [decision["agent"] for decision in complete["agenticDecisions"]] == ["GL Mapper Agent"]

    reasoning = [event for event in events if event["type"] == "reasoning"]
    assert {event["phase"] for event in reasoning} == {"Reasoning", "Reflection"}
    assert reasoning[0]["content"] == "Checking "


def test_events_keep_production_order_per_agent():
    configure_model_gateway(ScriptedGateway())
    _, coordinator, _ = _build()

    async def scenario():
        channel = EventChannel()
        recorder = StreamRecorder(channel).start()
        await coordinator.start(_new_run(), channel)
        return await recorder.finished()

    events = asyncio.run(scenario())
    intake = [event["type"] for event in events if event.get("agent") == "Intake Agent"]
    assert intake[0] == "agent_start"
    assert intake[-1] == "agent_complete"
    assert intake.index("agent_action") < intake.index("agent_result")


def test_policy_decline_stops_before_ledger_mapping():
    invoice = invoice_payload(subtotal=15000 / 1.08, tax=15000 - 15000 / 1.08, total=15000.0, lineItems=[])
    gateway = ScriptedGateway(invoice, corrective="Escalate to CFO")
    configure_model_gateway(gateway)
    store, coordinator, resolver = _build()

    async def scenario():
        channel = EventChannel()
        recorder = StreamRecorder(channel).start()
        run = _new_run()
        stage = await coordinator.run_from(Continuation(resume_at=Stage.INTAKE, run=run, channel=channel))
        suspended = await recorder.settle()
        intervention_id = _pending_id(suspended)
        assert store.count() == 1
        outcome = await resolver.resolve(intervention_id, "decline")
        return stage, outcome, suspended, await recorder.finished()

    stage, outcome, suspended, events = asyncio.run(scenario())

    assert stage is Stage.POLICY
    assert outcome is Stage.STOPPED
    assert store.count() == 0

    required = next(event for event in suspended if event["type"] == "human_intervention_required")
    assert required["stage"] == "policy"
    assert required["violations"] == [
        "Senior approval needed for amounts > $5000",
        "CFO approval needed for amounts > $10000",
    ]
    actions = {item["violation"]: item["action"] for item in required["correctiveActions"]}
    assert actions["CFO approval needed for amounts > $10000"] == "Forwarding to CFO for exception approval"
    assert required["extractedData"]["total"] == 15000.0
    assert suspended[-1]["type"] == "intervention_pending"

    types = event_types(events)
    assert types[-4:] == ["intervention_decision", "agent_complete", "workflow_stopped", "done"]
    assert events[-4]["decision"] == "declined"
    assert events[-3]["status"] == "stopped"
    assert "policy violations" in events[-2]["reason"]
    assert _started_agents(events) == ["Intake Agent", "Extraction Agent", "Policy Agent"]
    assert gateway.count('"glCode"') == 0


def test_quality_accept_resumes_directly_at_publisher():
    invoice = invoice_payload(tax=9.0, total=109.0)
    gateway = ScriptedGateway(invoice)
    configure_model_gateway(gateway)
    store, coordinator, resolver = _build()

    async def scenario():
        channel = EventChannel()
        recorder = StreamRecorder(channel).start()
        run = _new_run()
        await coordinator.run_from(Continuation(resume_at=Stage.INTAKE, run=run, channel=channel))
        suspended = await recorder.settle()
        decisions_before = len(run.agentic_decisions)
        intake_calls = gateway.count('"fileIntegrity"')
        await resolver.resolve(_pending_id(suspended), "accept")
        return run, suspended, decisions_before, intake_calls, await recorder.finished()

    run, suspended, decisions_before, intake_calls, events = asyncio.run(scenario())

    required = next(event for event in suspended if event["type"] == "human_intervention_required")
    assert required["stage"] == "quality"
    assert len(required["errors"]) == 1
    assert required["errors"][0].startswith("Tax calculation error")

    resumed = events[len(suspended):]
    assert resumed[0] == {"type": "intervention_decision", "interventionId": required["interventionId"], "decision": "accepted"}
    assert resumed[1]["type"] == "agent_complete" and resumed[1]["agent"] == "Quality Agent"
    assert _started_agents(resumed) == ["Publisher Agent"]
    assert gateway.count('"fileIntegrity"') == intake_calls
    assert event_types(events)[-2:] == ["workflow_complete", "done"]

    overrides = [decision for decision in run.agentic_decisions if decision.agent == "Human Reviewer"]
    assert len(overrides) == 1
    assert len(run.agentic_decisions) == decisions_before + 1
    assert run.agentic_decisions[-1].agent == "Human Reviewer"
    assert store.count() == 0


def test_policy_accept_can_suspend_again_at_quality():
    invoice = invoice_payload(
        subtotal=15000.0,
        tax=1300.0,
        total=16300.0,
        lineItems=[{"description": "Annual license", "quantity": 1, "unitPrice": 15000.0, "amount": 15000.0}],
    )
    configure_model_gateway(ScriptedGateway(invoice))
    store, coordinator, resolver = _build()

    async def scenario():
        channel = EventChannel()
        recorder = StreamRecorder(channel).start()
        run = _new_run()
        await coordinator.run_from(Continuation(resume_at=Stage.INTAKE, run=run, channel=channel))
        first = await recorder.settle()
        second_stage = await resolver.resolve(_pending_id(first), "accept")
        after_policy = (await recorder.settle())[len(first):]
        await resolver.resolve(_pending_id(after_policy), "decline")
        return second_stage, after_policy, await recorder.finished()

    second_stage, after_policy, events = asyncio.run(scenario())

    assert second_stage is Stage.QUALITY
    assert _started_agents(after_policy) == ["GL Mapper Agent", "Quality Agent"]
    assert "calculation errors" in events[-2]["reason"]
    assert "Publisher Agent" not in _started_agents(events)
    assert store.count() == 0


def test_resolving_twice_is_not_found_and_emits_nothing():
    configure_model_gateway(ScriptedGateway(invoice_payload(total=7000.0)))
    store, coordinator, resolver = _build()

    async def scenario():
        channel = EventChannel()
        recorder = StreamRecorder(channel).start()
        await coordinator.run_from(Continuation(resume_at=Stage.INTAKE, run=_new_run(), channel=channel))
        intervention_id = _pending_id(await recorder.settle())
        await resolver.resolve(intervention_id, "decline")
        events = await recorder.finished()
        with pytest.raises(NotFoundError):
            await resolver.resolve(intervention_id, "accept")
        return events, recorder.events

    events, after = asyncio.run(scenario())
    assert events == after
    assert store.count() == 0


def test_unknown_intervention_is_not_found():
    _, _, resolver = _build()
    with pytest.raises(NotFoundError):
        asyncio.run(resolver.resolve("missing", "accept"))


def test_submit_claims_before_branching():
    configure_model_gateway(ScriptedGateway(invoice_payload(total=7000.0)))
    store, coordinator, resolver = _build()

    async def scenario():
        channel = EventChannel()
        recorder = StreamRecorder(channel).start()
        await coordinator.run_from(Continuation(resume_at=Stage.INTAKE, run=_new_run(), channel=channel))
        intervention_id = _pending_id(await recorder.settle())
        ack = resolver.submit(intervention_id, "decline")
        with pytest.raises(NotFoundError):
            resolver.submit(intervention_id, "accept")
        return ack, await recorder.finished()

    ack, events = asyncio.run(scenario())
    assert ack == {"success": True, "interventionId": ack["interventionId"], "decision": "decline", "stage": "policy"}
    assert event_types(events)[-1] == "done"
    assert store.count() == 0


def test_expired_interventions_are_reaped():
    configure_model_gateway(ScriptedGateway(invoice_payload(total=7000.0)))
    store, coordinator, resolver = _build()

    async def scenario():
        channel = EventChannel()
        recorder = StreamRecorder(channel).start()
        run = _new_run()
        await coordinator.run_from(Continuation(resume_at=Stage.INTAKE, run=run, channel=channel))
        await recorder.settle()
        assert resolver.reap_expired() == 0
        reaped = resolver.reap_expired(now=datetime.now(timezone.utc) + timedelta(hours=1))
        return run, reaped, await recorder.finished()

    run, reaped, events = asyncio.run(scenario())
    assert reaped == 1
    assert store.count() == 0
    assert run.stage is Stage.STOPPED
    assert event_types(events)[-2:] == ["workflow_stopped", "done"]
    assert events[-2]["reason"].startswith("Intervention expired")


def test_upstream_failure_emits_error_then_done():
    configure_model_gateway(ScriptedGateway(fail_on="Extract all invoice data"))
    _, coordinator, _ = _build()

    async def scenario():
        channel = EventChannel()
        recorder = StreamRecorder(channel).start()
        run = _new_run()
        stage = await coordinator.run_from(Continuation(resume_at=Stage.INTAKE, run=run, channel=channel))
        return stage, await recorder.finished()

    stage, events = asyncio.run(scenario())
    assert stage is Stage.STOPPED
    assert event_types(events)[-2:] == ["error", "done"]
    assert events[-2]["agent"] == "Extraction Agent"
    assert "upstream unavailable" in events[-2]["message"]


def test_unparseable_outputs_fall_back_with_warnings():
    text = (
        "Vendor: Acme Office Supplies\nInvoice Number: INV-77\nDate: {today}\n"
        "Subtotal: $100.00\nTax Rate: 8%\nTax: $8.00\nTotal: $108.00\n"
    ).format(today=invoice_payload()["date"])
    gateway = ScriptedGateway(text, intake="The scan looks blurry in the corner.", mapping="no idea")
    configure_model_gateway(gateway)
    _, coordinator, _ = _build()

    async def scenario():
        channel = EventChannel()
        recorder = StreamRecorder(channel).start()
        run = _new_run()
        await coordinator.run_from(Continuation(resume_at=Stage.INTAKE, run=run, channel=channel))
        return run, await recorder.settle()

    run, events = asyncio.run(scenario())
    results = {
        event["agent"]: event
        for event in events
        if event["type"] == "agent_result" and "result" in event
    }

    assert results["Intake Agent"]["result"]["isBlurry"] is True
    assert results["Intake Agent"]["warnings"]
    assert results["Extraction Agent"]["result"]["invoiceNumber"] == "INV-77"
    assert results["Extraction Agent"]["result"]["taxRate"] == pytest.approx(0.08)
    assert results["Extraction Agent"]["warnings"]
    assert results["GL Mapper Agent"]["result"]["glCode"] == "6001"
    assert results["GL Mapper Agent"]["result"]["confidence"] == 70
    assert run.intake is not None and run.intake.status == "warning"

    # Text recovery yields no line items, so Quality escalates the stated subtotal.
    assert run.stage is Stage.QUALITY
    required = next(event for event in events if event["type"] == "human_intervention_required")
    assert required["errors"] == ["Subtotal mismatch: Calculated 0.00, Found 100.00"]
    assert event_types(events)[-1] == "intervention_pending"


def test_second_open_intervention_is_rejected():
    store, coordinator, _ = _build()
    run = _new_run()
    run.open_intervention = "already-open"
    channel = EventChannel()
    continuation = Continuation(resume_at=Stage.LEDGER_MAPPING, run=run, channel=channel)

    with pytest.raises(InterventionConflictError):
        coordinator.request_intervention(run, PolicyAgent(), ["x"], continuation, EventEmitter(channel))
    assert store.count() == 0


class DisconnectingGateway(ScriptedGateway):
    """Drops the client the moment extraction asks for structured output."""

    def __init__(self, channel: EventChannel) -> None:
        super().__init__()
        self.channel = channel

    async def generate(self, prompt, image=None):
        if "Extract all invoice data" in prompt:
            self.channel.detach()
        return await super().generate(prompt, image)


def test_run_survives_client_disconnect_mid_stream():
    _, coordinator, _ = _build()

    async def scenario():
        channel = EventChannel()
        configure_model_gateway(DisconnectingGateway(channel))
        run = _new_run()
        stage = await coordinator.run_from(Continuation(resume_at=Stage.INTAKE, run=run, channel=channel))
        delivered = [frame async for frame in channel.frames()]
        return run, stage, channel, delivered

    run, stage, channel, delivered = asyncio.run(scenario())
    events = parse_frames(delivered)

    assert stage is Stage.DONE
    assert run.receipt is not None and run.receipt.success is True
    assert channel.closed
    assert [event["step"] for event in events if event["type"] == "agent_start"] == [1, 2]
    assert "workflow_complete" not in event_types(events)
    assert "done" not in event_types(events)


def test_emitter_drops_events_for_detached_channel():
    channel = EventChannel()
    channel.detach()

    assert channel.write("data: {}\n\n") is False
    EventEmitter(channel).emit("agent_action", agent="Intake Agent", message="ignored")
    EventEmitter(channel).finish()
    assert channel.closed


def test_json_without_known_fields_is_treated_as_unparseable():
    agent = ExtractionAgent()

    assert agent.parse_model(InvoiceData, '{"invoice": {"vendor": "Acme"}}') is None
    assert agent.parse_model(InvoiceData, '{"error": "image unreadable"}') is None
    parsed = agent.parse_model(InvoiceData, '{"invoiceNumber": "INV-5", "total": "$12.00"}')
    assert isinstance(parsed, InvoiceData)
    assert parsed.invoice_number == "INV-5"
    assert parsed.total == 12.0


def test_extraction_with_unrelated_json_falls_back_with_warning():
    text = "```json\n{\"error\": \"could not read\"}\n```\nVendor: Acme Office Supplies\nInvoice Number: INV-88\n"
    configure_model_gateway(ScriptedGateway(text))
    _, coordinator, _ = _build()

    async def scenario():
        channel = EventChannel()
        recorder = StreamRecorder(channel).start()
        run = _new_run()
        await coordinator.run_from(Continuation(resume_at=Stage.INTAKE, run=run, channel=channel))
        return run, await recorder.settle()

    run, events = asyncio.run(scenario())
    extraction = next(
        event
        for event in events
        if event["type"] == "agent_result" and event["agent"] == "Extraction Agent" and "result" in event
    )
    assert extraction["warnings"]
    assert run.extracted_data.invoice_number == "INV-88"
    assert run.extracted_data.vendor == "Acme Office Supplies"
