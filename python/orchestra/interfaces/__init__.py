"""Orchestra interface contracts (Protocol-based dependency injection)."""

from orchestra.interfaces.event_bus import Event, EventHandler, EventType, IEventBus
from orchestra.interfaces.store import ITaskStore

__all__ = [
    "Event",
    "EventHandler",
    "EventType",
    "IEventBus",
    "ITaskStore",
]
