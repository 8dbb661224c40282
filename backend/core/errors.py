from __future__ import annotations


class WorkflowError(Exception):
    """Base class for workflow orchestration failures."""


class NotFoundError(WorkflowError):
    """Raised when an intervention id is unknown or already resolved."""

    def __init__(self, intervention_id: str) -> None:
        super().__init__(f"intervention {intervention_id} not found")
        self.intervention_id = intervention_id


class InterventionConflictError(WorkflowError):
    """Raised when a run already has an open intervention."""
