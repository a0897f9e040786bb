"""Audit trail: records every bus event to JSONL with an in-memory ring buffer."""

import json
import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from orchestra.interfaces.event_bus import Event, IEventBus

logger = logging.getLogger(__name__)


class AuditLog:
    """Structured event recorder with JSONL persistence and ring buffer.

    Recording never raises: a failed write is logged and the entry is still
    kept in memory.
    """

    def __init__(self, path: Optional[str] = None, buffer_size: int = 1000):
        self._path = path or None
        self._buffer: deque = deque(maxlen=buffer_size)
        self._subscription: Optional[str] = None
        self._event_bus: Optional[IEventBus] = None
        if self._path:
            try:
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            except OSError:
                logger.exception("Cannot create audit directory for %s", self._path)

    @property
    def path(self) -> Optional[str]:
        return self._path

    def attach(self, event_bus: IEventBus) -> None:
        """Record every event published on ``event_bus``."""
        if self._subscription is not None:
            return
        self._event_bus = event_bus
        self._subscription = event_bus.subscribe_all(self.record)

    def detach(self) -> None:
        if self._subscription is not None and self._event_bus is not None:
            self._event_bus.unsubscribe(self._subscription)
        self._subscription = None
        self._event_bus = None

    def record(self, event: Event) -> Dict[str, Any]:
        entry = event.to_dict()
        self._buffer.append(entry)

        if self._path:
            try:
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, default=str) + "\n")
            except Exception:
                logger.exception("Failed to write audit event to %s", self._path)
        return entry

    def get_recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent entries, oldest first."""
        if limit <= 0:
            return []
        return list(self._buffer)[-limit:]

    def get_summary(self, hours: float = 1.0) -> Dict[str, int]:
        """Count events by type within a time window."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        counts: Dict[str, int] = {}
        for entry in self._buffer:
            try:
                ts = datetime.fromisoformat(entry["timestamp"])
            except (KeyError, TypeError, ValueError):
                continue
            if ts >= cutoff:
                et = entry.get("type", "unknown")
                counts[et] = counts.get(et, 0) + 1
        return counts
