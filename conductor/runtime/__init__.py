"""Runtime plumbing: session-scoped event bus and service lifecycle."""

from conductor.runtime.event_bus import ConductorEvent, EventBus, EventHandler, EventType
from conductor.runtime.lifecycle import ManagedService, ServiceGroup

__all__ = [
    "ConductorEvent",
    "EventBus",
    "EventHandler",
    "EventType",
    "ManagedService",
    "ServiceGroup",
]
