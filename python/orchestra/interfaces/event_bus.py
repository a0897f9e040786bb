"""Interface for the execution lifecycle event bus.

Decouples the runner, the scheduler and observers (audit, notifications,
SSE streams) by letting them communicate through published events.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union


class EventType(Enum):
    """Lifecycle events emitted by the scheduler stack."""
    # Task
    TASK_READY = "task.ready"
    # Execution lifecycle
    EXECUTION_STARTED = "execution.started"
    EXECUTION_PROGRESS = "execution.progress"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_FAILED = "execution.failed"
    EXECUTION_PAUSED = "execution.paused"
    EXECUTION_RESUMED = "execution.resumed"
    EXECUTION_CANCELLED = "execution.cancelled"
    # Scheduler
    RETRY_SCHEDULED = "retry.scheduled"
    # Orchestration
    ORCHESTRATION_STARTED = "orchestration.started"
    ORCHESTRATION_COMPLETED = "orchestration.completed"
    ORCHESTRATION_FAILED = "orchestration.failed"
    # Agents
    AGENT_BUSY = "agent.busy"
    AGENT_IDLE = "agent.idle"


# Terminal execution events and the outcome they carry.
TERMINAL_EXECUTION_EVENTS: Dict[EventType, str] = {
    EventType.EXECUTION_COMPLETED: "COMPLETED",
    EventType.EXECUTION_FAILED: "FAILED",
    EventType.EXECUTION_CANCELLED: "CANCELLED",
}


@dataclass(frozen=True)
class Event:
    """A published lifecycle event."""

    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    execution_id: Optional[str] = None
    task_id: Optional[str] = None
    agent_id: Optional[str] = None
    orchestration_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def outcome(self) -> Optional[str]:
        """COMPLETED / FAILED / CANCELLED for terminal execution events."""
        return TERMINAL_EXECUTION_EVENTS.get(self.type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
            "execution_id": self.execution_id,
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "orchestration_id": self.orchestration_id,
        }


EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


class IEventBus(Protocol):
    """Interface for publish-subscribe event messaging."""

    async def publish(self, event: Event) -> None:
        """Publish an event to every matching subscriber.

        Args:
            event: The event to deliver
        """
        ...

    def subscribe(self, event_type: EventType, handler: EventHandler) -> str:
        """Subscribe to events of a type.

        Args:
            event_type: Type of events to listen for
            handler: Sync or async callable receiving the event

        Returns:
            Subscription ID for later unsubscribe
        """
        ...

    def subscribe_all(self, handler: EventHandler) -> str:
        """Subscribe to every event type."""
        ...

    def unsubscribe(self, subscription_id: str) -> None:
        """Unsubscribe from events.

        Args:
            subscription_id: ID from subscribe()
        """
        ...
