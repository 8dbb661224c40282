"""Application services."""

from .interventions import (
    DECISIONS,
    InterventionResolver,
    get_intervention_resolver,
    get_pipeline_coordinator,
    reset_workflow_state,
)

__all__ = [
    "DECISIONS",
    "InterventionResolver",
    "get_intervention_resolver",
    "get_pipeline_coordinator",
    "reset_workflow_state",
]
