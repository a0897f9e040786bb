"""Tests for ExecutionRunner (orchestra/scheduling/execution_runner.py)."""

import asyncio

import pytest

from orchestra.exceptions import CompletionTimeoutError, InactiveAgentError, InvalidStateError, NotFoundError
from orchestra.interfaces.event_bus import EventType
from orchestra.models import Agent, AgentRole, ExecutionStatus, Task, TaskStatus


@pytest.fixture
async def task(store, agent):
    return await store.create_task(Task(title="Build API", agent_id=agent.id, orchestration_id="o1"))


def _types(bus):
    return [e.type for e in bus.history()]


async def _settle():
    await asyncio.sleep(0.01)


# --- Dispatch ---


async def test_execute_task_success(store, bus, runner, agent, task):
    execution = await runner.execute_task(task.id, agent.id)

    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.progress == 100
    assert execution.result == "done: Build API"
    assert execution.started_at is not None and execution.completed_at is not None
    stored = await store.get_task(task.id)
    assert stored.status is TaskStatus.DONE
    assert stored.completed_at is not None
    assert _types(bus) == [
        EventType.EXECUTION_STARTED,
        EventType.AGENT_BUSY,
        EventType.EXECUTION_PROGRESS,
        EventType.EXECUTION_PROGRESS,
        EventType.EXECUTION_COMPLETED,
        EventType.AGENT_IDLE,
    ]
    completed = bus.history(event_type=EventType.EXECUTION_COMPLETED)[0]
    assert completed.orchestration_id == "o1"
    assert completed.agent_id == agent.id


async def test_execute_task_failure_keeps_task_in_progress(store, bus, runner, capability, agent, task):
    capability.outcomes["Build API"] = [False]

    execution = await runner.execute_task(task.id, agent.id)

    assert execution.status is ExecutionStatus.FAILED
    assert execution.error == "Build API failed"
    assert (await store.get_task(task.id)).status is TaskStatus.IN_PROGRESS
    assert len(bus.history(event_type=EventType.EXECUTION_FAILED)) == 1
    assert bus.history(event_type=EventType.EXECUTION_COMPLETED) == []


async def test_capability_exception_becomes_failed_execution(runner, capability, agent, task):
    capability.outcomes["Build API"] = [RuntimeError("agent crashed")]
    execution = await runner.execute_task(task.id, agent.id)
    assert execution.status is ExecutionStatus.FAILED
    assert execution.error == "agent crashed"


async def test_store_error_on_success_still_emits_one_terminal_event(store, bus, runner, agent, task, monkeypatch):
    original = store.update_task
    calls = {"done": 0}

    async def flaky_update_task(task_id, **changes):
        if changes.get("status") is TaskStatus.DONE and calls["done"] == 0:
            calls["done"] += 1
            raise RuntimeError("database is locked")
        return await original(task_id, **changes)

    monkeypatch.setattr(store, "update_task", flaky_update_task)

    execution = await runner.execute_task(task.id, agent.id)

    assert execution.status is ExecutionStatus.FAILED
    assert "database is locked" in execution.error
    assert execution.completed_at is not None
    assert (await store.get_task(task.id)).status is TaskStatus.IN_PROGRESS
    terminal = [e for e in bus.history() if e.outcome is not None]
    assert [e.type for e in terminal] == [EventType.EXECUTION_FAILED]
    assert _types(bus)[-1] is EventType.AGENT_IDLE


async def test_store_error_after_completion_reports_completed(store, bus, runner, agent, task, monkeypatch):
    original = store.get_execution
    calls = {"n": 0}

    async def flaky_get_execution(execution_id):
        calls["n"] += 1
        # First read inside _finalize fails; the execution is then completed out of band
        if calls["n"] == 1:
            await store.update_execution(execution_id, status=ExecutionStatus.COMPLETED, result="ok")
            raise RuntimeError("connection reset")
        return await original(execution_id)

    handle = await runner.start_execution(task.id, agent.id)
    monkeypatch.setattr(store, "get_execution", flaky_get_execution)
    record = await handle.wait()

    assert record.status is ExecutionStatus.COMPLETED
    terminal = [e for e in bus.history() if e.outcome is not None]
    assert [e.type for e in terminal] == [EventType.EXECUTION_COMPLETED]


async def test_role_without_capability_fails_execution(store, bus):
    from orchestra.agents import CapabilityRegistry
    from orchestra.scheduling.execution_runner import ExecutionRunner

    bare = ExecutionRunner(store, bus, CapabilityRegistry())
    agent = await store.create_agent(Agent(name="pixel-1", role=AgentRole.PIXEL))
    other = await store.create_task(Task(title="UI", agent_id=agent.id))

    execution = await bare.execute_task(other.id, agent.id)

    assert execution.status is ExecutionStatus.FAILED
    assert "No capability registered for role PIXEL" in execution.error


async def test_dispatch_validation(store, runner, agent, task):
    with pytest.raises(NotFoundError):
        await runner.start_execution("missing", agent.id)
    with pytest.raises(NotFoundError):
        await runner.start_execution(task.id, "missing")

    idle = await store.create_agent(Agent(name="off", role=AgentRole.MAESTRO, is_active=False))
    with pytest.raises(InactiveAgentError):
        await runner.start_execution(task.id, idle.id)

    await store.update_task(task.id, status=TaskStatus.REVIEW)
    with pytest.raises(InvalidStateError) as exc_info:
        await runner.start_execution(task.id, agent.id)
    assert exc_info.value.status == "REVIEW"
    assert exc_info.value.action == "execute"


async def test_second_dispatch_while_in_flight_is_rejected(store, runner, capability, agent, task):
    gate = capability.gate("Build API")
    handle = await runner.start_execution(task.id, agent.id)
    # Simulates a stale TODO snapshot racing the first dispatch
    await store.update_task(task.id, status=TaskStatus.TODO)

    with pytest.raises(InvalidStateError) as exc_info:
        await runner.start_execution(task.id, agent.id)
    assert exc_info.value.status == "RUNNING"

    gate.set()
    await handle.wait()


async def test_execute_task_timeout_leaves_attempt_running(store, runner, capability, agent, task):
    gate = capability.gate("Build API")

    with pytest.raises(CompletionTimeoutError) as exc_info:
        await runner.execute_task(task.id, agent.id, timeout=0.05)

    execution_id = exc_info.value.details["execution_id"]
    assert (await store.get_execution(execution_id)).status is ExecutionStatus.RUNNING
    gate.set()
    assert (await runner.get_handle(execution_id).wait()).status is ExecutionStatus.COMPLETED


# --- Control ---


async def test_pause_then_resume(store, bus, runner, capability, agent, task):
    gate = capability.gate("Build API")
    handle = await runner.start_execution(task.id, agent.id)
    await _settle()

    paused = await runner.pause_execution(handle.execution_id)

    assert paused.status is ExecutionStatus.PAUSED
    assert await handle.wait() is None
    assert runner.get_handle(handle.execution_id) is None
    assert len(bus.history(event_type=EventType.EXECUTION_PAUSED)) == 1

    resumed = await runner.resume_execution(handle.execution_id)
    assert resumed.execution_id == handle.execution_id
    assert (await store.get_execution(handle.execution_id)).status is ExecutionStatus.RUNNING
    gate.set()
    final = await resumed.wait()

    assert final.status is ExecutionStatus.COMPLETED
    assert capability.calls == ["Build API", "Build API"]
    assert len(bus.history(event_type=EventType.EXECUTION_RESUMED)) == 1
    assert (await store.get_task(task.id)).status is TaskStatus.DONE


async def test_cancel_running_execution(store, bus, runner, capability, agent, task):
    capability.gate("Build API")
    handle = await runner.start_execution(task.id, agent.id)
    await _settle()

    cancelled = await runner.cancel_execution(handle.execution_id)

    assert cancelled.status is ExecutionStatus.CANCELLED
    assert cancelled.completed_at is not None
    assert await handle.wait() is None
    terminal = [e for e in bus.history() if e.outcome]
    assert [e.outcome for e in terminal] == ["CANCELLED"]


async def test_control_rejects_wrong_status(runner, agent, task):
    execution = await runner.execute_task(task.id, agent.id)

    for action in (runner.pause_execution, runner.resume_execution, runner.cancel_execution):
        with pytest.raises(InvalidStateError):
            await action(execution.id)
    with pytest.raises(NotFoundError):
        await runner.pause_execution("missing")


async def test_settled_attempt_cannot_be_interrupted(runner, capability, agent, task):
    gate = capability.gate("Build API")
    handle = await runner.start_execution(task.id, agent.id)
    await _settle()
    handle.settled = True

    with pytest.raises(InvalidStateError) as exc_info:
        await runner.cancel_execution(handle.execution_id)
    assert exc_info.value.status == "COMPLETING"

    gate.set()
    assert (await handle.wait()).status is ExecutionStatus.COMPLETED


async def test_shutdown_cancels_calls_without_touching_status(store, runner, capability, agent, task):
    capability.gate("Build API")
    handle = await runner.start_execution(task.id, agent.id)
    await _settle()

    await runner.shutdown()

    assert runner.active_handles() == []
    assert (await store.get_execution(handle.execution_id)).status is ExecutionStatus.RUNNING
