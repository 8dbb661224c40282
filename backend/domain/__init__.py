"""Domain layer definitions."""

from .workflows import (
    PIPELINE_ORDER,
    Continuation,
    Intervention,
    InvoiceImage,
    Stage,
    WorkflowRun,
    next_stage,
)

__all__ = [
    "PIPELINE_ORDER",
    "Continuation",
    "Intervention",
    "InvoiceImage",
    "Stage",
    "WorkflowRun",
    "next_stage",
]
