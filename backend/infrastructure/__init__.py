"""Infrastructure layer exports."""

from .events import EventChannel, EventEmitter, EventType
from .interventions import InMemoryInterventionStore, InterventionStore
from .model_gateway import (
    ModelGateway,
    ModelGatewayError,
    configure_model_gateway,
    get_model_gateway,
)

__all__ = [
    "EventChannel",
    "EventEmitter",
    "EventType",
    "InMemoryInterventionStore",
    "InterventionStore",
    "ModelGateway",
    "ModelGatewayError",
    "configure_model_gateway",
    "get_model_gateway",
]
