"""Domain entities for invoice workflow runs and their suspension points."""
from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from backend.core.schema import (
    AgenticDecision,
    IntakeResult,
    InvoiceData,
    LedgerMapping,
    PolicyCheckResult,
    PublishReceipt,
    QualityResult,
)

if TYPE_CHECKING:
    from backend.infrastructure.events import EventChannel


DATA_URI_PATTERN = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)
DEFAULT_MIME_TYPE = "image/png"


class Stage(str, Enum):
    INTAKE = "intake"
    EXTRACTION = "extraction"
    POLICY = "policy"
    LEDGER_MAPPING = "ledger_mapping"
    QUALITY = "quality"
    PUBLISH = "publish"
    DONE = "done"
    STOPPED = "stopped"


PIPELINE_ORDER: tuple[Stage, ...] = (
    Stage.INTAKE,
    Stage.EXTRACTION,
    Stage.POLICY,
    Stage.LEDGER_MAPPING,
    Stage.QUALITY,
    Stage.PUBLISH,
)


def next_stage(stage: Stage) -> Stage:
    """Stage that follows ``stage`` in the fixed pipeline."""

    index = PIPELINE_ORDER.index(stage)
    if index + 1 >= len(PIPELINE_ORDER):
        return Stage.DONE
    return PIPELINE_ORDER[index + 1]


@dataclass(slots=True)
class InvoiceImage:
    """Uploaded invoice image; ``data`` keeps the base64 form, ``raw`` the bytes."""

    data: str
    mime_type: str
    raw: bytes

    @classmethod
    def from_upload(cls, value: str) -> "InvoiceImage":
        """Parse a data URI or bare base64 string.

        Raises ``ValueError`` when the payload is not valid base64.
        """

        mime_type = DEFAULT_MIME_TYPE
        data = value.strip()
        match = DATA_URI_PATTERN.match(data)
        if match:
            mime_type, data = match.group(1), match.group(2)
        data = "".join(data.split())
        if not data:
            raise ValueError("image payload is empty")
        try:
            raw = base64.b64decode(data, validate=True)
        except binascii.Error as exc:
            raise ValueError("image is not valid base64") from exc
        return cls(data=data, mime_type=mime_type, raw=raw)


@dataclass(slots=True)
class WorkflowRun:
    """State of one pipeline invocation for one uploaded image."""

    workflow_id: str
    image: InvoiceImage
    extracted_data: InvoiceData = field(default_factory=InvoiceData)
    agentic_decisions: list[AgenticDecision] = field(default_factory=list)
    stage: Stage = Stage.INTAKE
    intake: IntakeResult | None = None
    ambiguous_fields: list[str] = field(default_factory=list)
    policy: PolicyCheckResult | None = None
    ledger_mapping: LedgerMapping | None = None
    quality: QualityResult | None = None
    receipt: PublishReceipt | None = None
    open_intervention: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record_decision(self, decision: AgenticDecision) -> None:
        self.agentic_decisions.append(decision)


@dataclass(slots=True)
class Continuation:
    """Everything needed to re-enter the pipeline at ``resume_at``."""

    resume_at: Stage
    run: WorkflowRun
    channel: "EventChannel"


@dataclass(slots=True)
class Intervention:
    intervention_id: str
    stage: Stage
    agent: str
    issues: list[str]
    snapshot: dict
    continuation: Continuation
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    claimed: bool = False
