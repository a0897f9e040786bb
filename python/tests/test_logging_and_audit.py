"""Tests for logging setup (orchestra/enhanced_logging.py) and the audit trail."""

import json
import logging
import sys

from orchestra.enhanced_logging import JsonFormatter, configure_logging, track_performance
from orchestra.event_bus import InMemoryEventBus
from orchestra.interfaces.event_bus import Event, EventType
from orchestra.observability import AuditLog


# --- Logging ---


def test_configure_logging_with_file(tmp_path):
    root = logging.getLogger()
    saved = (root.level, list(root.handlers))
    log_file = tmp_path / "logs" / "orchestra.log"
    try:
        configure_logging(level="warning", fmt="json", log_file=str(log_file))
        assert root.level == logging.WARNING
        assert len(root.handlers) == 2
        assert all(isinstance(h.formatter, JsonFormatter) for h in root.handlers)

        logging.getLogger("orchestra.test").warning("disk %s", "full")
        for handler in root.handlers:
            handler.flush()
        entry = json.loads(log_file.read_text().splitlines()[-1])
        assert entry["level"] == "WARNING"
        assert entry["message"] == "disk full"
        assert entry["logger"] == "orchestra.test"
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved[1]
        root.setLevel(saved[0])


def test_json_formatter_includes_exception():
    try:
        raise ValueError("bad")
    except ValueError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, exc_info=sys.exc_info())
    entry = json.loads(JsonFormatter().format(record))
    assert "ValueError: bad" in entry["exc"]


async def test_track_performance_keeps_results(caplog):
    @track_performance(operation="demo.async")
    async def doubled(x):
        return x * 2

    @track_performance
    def tripled(x):
        return x * 3

    with caplog.at_level(logging.DEBUG):
        assert await doubled(2) == 4
        assert tripled(2) == 6
    assert any("demo.async completed" in r.getMessage() for r in caplog.records)


# --- AuditLog ---


async def test_audit_log_records_bus_events(tmp_path):
    path = tmp_path / "audit" / "events.jsonl"
    audit = AuditLog(path=str(path), buffer_size=10)
    bus = InMemoryEventBus()
    audit.attach(bus)
    audit.attach(bus)

    await bus.publish(Event(type=EventType.EXECUTION_STARTED, execution_id="e1"))
    await bus.publish(Event(type=EventType.EXECUTION_COMPLETED, execution_id="e1"))

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [entry["type"] for entry in lines] == ["execution.started", "execution.completed"]
    assert audit.get_summary() == {"execution.started": 1, "execution.completed": 1}
    assert [e["execution_id"] for e in audit.get_recent(1)] == ["e1"]

    audit.detach()
    await bus.publish(Event(type=EventType.TASK_READY))
    assert len(audit.get_recent()) == 2


def test_audit_log_ring_buffer_without_file():
    audit = AuditLog(path=None, buffer_size=3)
    for i in range(5):
        audit.record(Event(type=EventType.EXECUTION_PROGRESS, data={"progress": i * 10}))
    recent = audit.get_recent()
    assert [e["data"]["progress"] for e in recent] == [20, 30, 40]
    assert audit.get_recent(0) == []
    assert audit.path is None


def test_audit_log_write_failure_is_not_raised(tmp_path):
    target = tmp_path / "is_a_dir"
    target.mkdir()
    audit = AuditLog(path=str(target))
    entry = audit.record(Event(type=EventType.AGENT_IDLE))
    assert entry["type"] == "agent.idle"
    assert len(audit.get_recent()) == 1
