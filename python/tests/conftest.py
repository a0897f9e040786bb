"""Shared fixtures: in-memory store, bus, scripted capabilities and graph builders."""

import asyncio
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from orchestra.agents.capabilities import CapabilityRegistry, CapabilityResult
from orchestra.event_bus import InMemoryEventBus
from orchestra.models import Agent, AgentRole, Orchestration, OrchestrationStatus, Task, TaskPriority
from orchestra.scheduling.auto_executor import AutoExecutor, SchedulerConfig
from orchestra.scheduling.dependency_resolver import DependencyResolver
from orchestra.scheduling.execution_runner import ExecutionRunner
from orchestra.storage.memory_store import InMemoryTaskStore


@pytest.fixture(autouse=True)
def _reset_container():
    """Reset DI container between tests."""
    from orchestra import di_container
    di_container._container = None
    yield
    di_container._container = None


class ScriptedCapability:
    """Test capability driven by per-title scripts.

    ``outcomes[title]`` lists results for consecutive calls (True succeeds,
    False fails, an exception instance is raised); titles without a script
    succeed. ``gates[title]`` holds the call until the event is set.
    """

    def __init__(self, name: str = "scripted", delay: float = 0.0):
        self.name = name
        self.delay = delay
        self.outcomes: Dict[str, List[object]] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []
        self.trace: List[Tuple[str, str]] = []
        self.running = 0
        self.max_running = 0

    def gate(self, title: str) -> asyncio.Event:
        self.gates[title] = asyncio.Event()
        return self.gates[title]

    async def execute(self, task, context) -> CapabilityResult:
        self.calls.append(task.title)
        self.trace.append(("start", task.title))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if task.title in self.gates:
                await self.gates[task.title].wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            script = self.outcomes.get(task.title)
            outcome = script.pop(0) if script else True
            if isinstance(outcome, Exception):
                raise outcome
            if outcome:
                return CapabilityResult(success=True, result=f"done: {task.title}")
            return CapabilityResult(success=False, error=f"{task.title} failed")
        finally:
            self.running -= 1
            self.trace.append(("end", task.title))


@pytest.fixture
def store():
    return InMemoryTaskStore()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def capability():
    return ScriptedCapability()


@pytest.fixture
def registry(capability):
    reg = CapabilityRegistry()
    for role in AgentRole:
        reg.register(role, capability)
    return reg


@pytest.fixture
def resolver(store, bus):
    return DependencyResolver(store, bus)


@pytest.fixture
def runner(store, bus, registry):
    return ExecutionRunner(store, bus, registry)


@pytest.fixture
def config():
    return SchedulerConfig(max_parallel_executions=2, retry_attempts=3, execution_timeout=5.0, poll_interval=0.01)


@pytest.fixture
async def scheduler(store, resolver, runner, bus, config):
    executor = AutoExecutor(store, resolver, runner, bus, config=config)
    yield executor
    await executor.shutdown()
    await runner.shutdown()


@pytest.fixture
async def agent(store):
    return await store.create_agent(Agent(name="architecton-1", role=AgentRole.ARCHITECTON))


async def make_graph(
    store,
    edges: Dict[str, Iterable[str]],
    agent_id: Optional[str],
    priorities: Optional[Dict[str, TaskPriority]] = None,
    status: OrchestrationStatus = OrchestrationStatus.EXECUTING,
) -> Tuple[Orchestration, Dict[str, Task]]:
    """Create a parent task, an orchestration and one subtask per key of
    ``edges`` (title -> titles it depends on). Returns fresh snapshots."""
    priorities = priorities or {}
    parent = await store.create_task(Task(title="parent"))
    orchestration = await store.create_orchestration(
        Orchestration(parent_task_id=parent.id, status=status, total_subtasks=len(edges))
    )
    ids = {}
    for title in edges:
        task = await store.create_task(Task(
            title=title,
            agent_id=agent_id,
            orchestration_id=orchestration.id,
            parent_id=parent.id,
            priority=priorities.get(title, TaskPriority.MEDIUM),
        ))
        ids[title] = task.id
    for title, deps in edges.items():
        for dep in deps:
            await store.add_dependency(ids[title], ids[dep])
    tasks = {title: await store.get_task(tid) for title, tid in ids.items()}
    return orchestration, tasks


@pytest.fixture
def graph(store):
    """``await graph({"A": [], "B": ["A"]}, agent.id)`` builds an orchestration."""
    async def _make(edges, agent_id, priorities=None, status=OrchestrationStatus.EXECUTING):
        return await make_graph(store, edges, agent_id, priorities=priorities, status=status)
    return _make
