"""Tests for agent capabilities (orchestra/agents/capabilities.py)."""

import json

import httpx
import pytest

from orchestra.agents import CallableCapability, CapabilityRegistry, CapabilityResult, ExecutionContext, HttpCapability
from orchestra.exceptions import ExecutionFailureError
from orchestra.interfaces.event_bus import EventType
from orchestra.models import Agent, AgentRole, Execution, ExecutionStatus, Task


@pytest.fixture
async def context(store, bus):
    agent = await store.create_agent(Agent(name="sentinel-1", role=AgentRole.SENTINEL))
    task = await store.create_task(Task(title="Review API", orchestration_id="o1"))
    execution = await store.create_execution(
        Execution(task_id=task.id, agent_id=agent.id, status=ExecutionStatus.RUNNING)
    )
    return ExecutionContext(execution, agent, task, store, bus)


def _fixed(name, result):
    async def run(task, context):
        return result
    return CallableCapability(name, run)


# --- ExecutionContext ---


async def test_update_progress_clamps_and_publishes(context, store, bus):
    assert await context.update_progress(150) == 100
    assert await context.update_progress(-5) == 0

    assert (await store.get_execution(context.execution.id)).progress == 0
    events = bus.history(event_type=EventType.EXECUTION_PROGRESS)
    assert [e.data["progress"] for e in events] == [100, 0]
    assert events[0].orchestration_id == "o1"


def test_context_log_keeps_entries(context):
    context.log("warning", "slow response", {"ms": 900})
    assert context.logs[-1].level == "WARNING"
    assert context.logs[-1].data == {"ms": 900}


# --- CapabilityRegistry ---


async def test_registry_runs_capabilities_in_order(context, store, bus):
    registry = CapabilityRegistry()
    registry.register(AgentRole.SENTINEL, _fixed("lint", CapabilityResult(True, result="lint ok", artifacts=["lint.txt"])))
    registry.register(AgentRole.SENTINEL, _fixed("tests", CapabilityResult(True, result="tests ok")))

    result = await registry.run(context.task, context)

    assert result.success
    assert result.result == "lint ok\n\n---\n\ntests ok"
    assert result.artifacts == ["lint.txt"]
    progress = [e.data["progress"] for e in bus.history(event_type=EventType.EXECUTION_PROGRESS)]
    assert progress == [10, 50, 90]
    assert registry.roles() == [AgentRole.SENTINEL]


async def test_registry_short_circuits_on_failure(context):
    calls = []

    async def never(task, ctx):
        calls.append("never")
        return CapabilityResult(True)

    registry = CapabilityRegistry()
    registry.register(AgentRole.SENTINEL, _fixed("lint", CapabilityResult(False, error="lint failed")))
    registry.register(AgentRole.SENTINEL, CallableCapability("tests", never))

    result = await registry.run(context.task, context)

    assert not result.success
    assert result.error == "lint failed"
    assert calls == []


async def test_registry_without_role_capability(context):
    registry = CapabilityRegistry()
    registry.register(AgentRole.PIXEL, _fixed("ui", CapabilityResult(True)))
    with pytest.raises(ExecutionFailureError) as exc_info:
        await registry.run(context.task, context)
    assert exc_info.value.details == {"role": "SENTINEL"}


# --- HttpCapability ---


async def test_http_capability_success(context):
    seen = {}

    def handler(request):
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "result": "reviewed", "artifacts": ["report.md"]})

    capability = HttpCapability("sentinel-service", "http://agents/sentinel", transport=httpx.MockTransport(handler))
    result = await capability.execute(context.task, context)

    assert result == CapabilityResult(True, result="reviewed", artifacts=["report.md"])
    assert seen["execution_id"] == context.execution.id
    assert seen["agent"]["role"] == "SENTINEL"
    assert seen["task"]["title"] == "Review API"


async def test_http_capability_reported_failure(context):
    transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"success": False}))
    result = await HttpCapability("svc", "http://agents/x", transport=transport).execute(context.task, context)
    assert not result.success
    assert result.error == "svc reported failure"


@pytest.mark.parametrize("response, fragment", [
    (httpx.Response(500, text="oops"), "error: 500"),
    (httpx.Response(200, text="not json"), "non-JSON"),
    (httpx.Response(200, json=["a", "list"]), "invalid payload"),
])
async def test_http_capability_bad_responses_fail(context, response, fragment):
    transport = httpx.MockTransport(lambda r: response)
    result = await HttpCapability("svc", "http://agents/x", transport=transport).execute(context.task, context)
    assert not result.success
    assert fragment in result.error


async def test_http_capability_transport_error(context):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    capability = HttpCapability("svc", "http://agents/x", max_attempts=1, transport=httpx.MockTransport(handler))
    result = await capability.execute(context.task, context)
    assert not result.success
    assert "request failed" in result.error
