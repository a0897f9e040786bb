"""Lightweight in-memory event bus satisfying the IEventBus protocol.

Used for intra-process pub/sub between the execution runner, the scheduler
loop and observers (audit log, SSE stream). Delivery is best-effort and does
not survive a process restart; the scheduler polls the store as a fallback.
"""

import asyncio
import inspect
import logging
import uuid
from collections import deque
from typing import Deque, Dict, List, Optional, Set

from orchestra.interfaces.event_bus import Event, EventHandler, EventType

logger = logging.getLogger(__name__)

_ALL = "*"


class InMemoryEventBus:
    """Async event bus for single-process use.

    Sync handlers run inline; coroutine handlers are scheduled as background
    tasks so a slow consumer never blocks the publisher. Handler failures are
    logged and swallowed.

    Satisfies ``orchestra.interfaces.IEventBus`` via structural subtyping.
    """

    def __init__(self, history_size: int = 1000) -> None:
        self._subscribers: Dict[object, Dict[str, EventHandler]] = {}
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._pending: Set[asyncio.Task] = set()

    async def publish(self, event: Event) -> None:
        self._history.append(event)
        handlers = list(self._subscribers.get(event.type, {}).values())
        handlers += list(self._subscribers.get(_ALL, {}).values())
        for handler in handlers:
            self._dispatch(handler, event)

    def _dispatch(self, handler: EventHandler, event: Event) -> None:
        try:
            if inspect.iscoroutinefunction(handler):
                task = asyncio.create_task(self._run_async(handler, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            else:
                result = handler(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(self._run_async_awaitable(result, event))
                    self._pending.add(task)
                    task.add_done_callback(self._pending.discard)
        except Exception:
            logger.exception("Event handler failed for %s", event.type.value)

    async def _run_async(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception("Async event handler failed for %s", event.type.value)

    async def _run_async_awaitable(self, awaitable, event: Event) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Async event handler failed for %s", event.type.value)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> str:
        sub_id = uuid.uuid4().hex[:12]
        self._subscribers.setdefault(event_type, {})[sub_id] = handler
        return sub_id

    def subscribe_all(self, handler: EventHandler) -> str:
        sub_id = uuid.uuid4().hex[:12]
        self._subscribers.setdefault(_ALL, {})[sub_id] = handler
        return sub_id

    def unsubscribe(self, subscription_id: str) -> None:
        for handlers in self._subscribers.values():
            handlers.pop(subscription_id, None)

    def subscriber_count(self, event_type: Optional[EventType] = None) -> int:
        if event_type is None:
            return sum(len(h) for h in self._subscribers.values())
        return len(self._subscribers.get(event_type, {}))

    def history(self, limit: int = 100, event_type: Optional[EventType] = None) -> List[Event]:
        """Most recent events, oldest first."""
        events = [e for e in self._history if event_type is None or e.type == event_type]
        return events[-limit:] if limit > 0 else []

    async def drain(self) -> None:
        """Wait for outstanding async handler tasks."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
