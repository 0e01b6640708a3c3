"""Event system for pipeline observability.

Key Components:
    - EventType: Enum of all event types in the system
    - PipelineEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution

Usage:
    >>> from events import EventType, get_event_bus
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("sess_abc123def456")
    >>> await bus.emit(EventType.FEEDBACK_SENT, "sess_abc123def456", score=72)
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    LLMMetrics,
    PipelineEvent,
)

__all__ = [
    "EventType",
    "LLMMetrics",
    "PipelineEvent",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
