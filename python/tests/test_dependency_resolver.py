"""Tests for DependencyResolver (orchestra/scheduling/dependency_resolver.py)."""

import random

import pytest

from conftest import make_graph
from orchestra.exceptions import DependencyCycleError
from orchestra.interfaces.event_bus import EventType
from orchestra.models import (
    Agent,
    AgentRole,
    Execution,
    ExecutionStatus,
    OrchestrationStatus,
    Task,
    TaskPriority,
    TaskStatus,
)
from orchestra.scheduling.dependency_resolver import DependencyResolver


async def _done(store, *tasks):
    for task in tasks:
        await store.update_task(task.id, status=TaskStatus.DONE)


# --- Ready tasks ---


async def test_ready_tasks_follow_dependencies(store, resolver, agent, graph):
    orch, t = await graph({"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]}, agent.id)

    assert [x.title for x in await resolver.get_ready_tasks(orch.id)] == ["A"]

    await _done(store, t["A"])
    assert {x.title for x in await resolver.get_ready_tasks(orch.id)} == {"B", "C"}

    await _done(store, t["B"])
    assert [x.title for x in await resolver.get_ready_tasks(orch.id)] == ["C"]


async def test_ready_tasks_sorted_by_priority_then_creation(resolver, agent, graph):
    orch, _ = await graph(
        {"low": [], "first": [], "urgent": [], "second": []},
        agent.id,
        priorities={"low": TaskPriority.LOW, "urgent": TaskPriority.URGENT},
    )
    titles = [x.title for x in await resolver.get_ready_tasks(orch.id)]
    assert titles == ["urgent", "first", "second", "low"]


async def test_ready_tasks_exclude_in_flight_and_unassigned(store, resolver, agent, graph):
    orch, t = await graph({"A": [], "B": [], "C": []}, agent.id)
    await store.create_execution(Execution(task_id=t["A"].id, agent_id=agent.id, status=ExecutionStatus.PAUSED))
    await store.update_task(t["B"].id, agent_id=None)

    assert [x.title for x in await resolver.get_ready_tasks(orch.id)] == ["C"]
    assert [x.title for x in await resolver.get_ready_tasks(orch.id, include_unassigned=True)] == ["B", "C"]


async def test_ready_tasks_skip_inactive_agent(store, resolver, agent, graph):
    orch, _ = await graph({"A": []}, agent.id)
    await store.update_agent(agent.id, is_active=False)
    assert await resolver.get_ready_tasks(orch.id) == []


async def test_unknown_dependency_counts_as_unmet(store, resolver, agent, graph):
    orch, t = await graph({"A": []}, agent.id)
    outside = await store.create_task(Task(title="elsewhere"))
    await store.add_dependency(t["A"].id, outside.id)

    assert await resolver.get_ready_tasks(orch.id) == []
    assert await resolver.get_blocked_tasks(orch.id) == {t["A"].id: {outside.id}}

    await _done(store, outside)
    assert [x.title for x in await resolver.get_ready_tasks(orch.id)] == ["A"]


@pytest.mark.parametrize("seed", [1, 7, 42])
async def test_ready_tasks_on_random_dags(store, resolver, agent, seed):
    rng = random.Random(seed)
    titles = [f"T{i}" for i in range(12)]
    edges = {title: [d for d in titles[:i] if rng.random() < 0.3] for i, title in enumerate(titles)}
    orch, tasks = await make_graph(store, edges, agent.id)

    done = set()
    while len(done) < len(titles):
        ready = await resolver.get_ready_tasks(orch.id)
        assert ready, "graph stalled before completion"
        for task in ready:
            assert set(edges[task.title]) <= done
            assert task.title not in done
        pick = ready[0]
        await store.update_task(pick.id, status=TaskStatus.DONE)
        await resolver.on_task_completed(pick.id)
        done.add(pick.title)

    final = await store.get_orchestration(orch.id)
    assert final.status is OrchestrationStatus.COMPLETED


# --- Completion ---


async def test_completion_releases_dependents(store, bus, resolver, agent, graph):
    orch, t = await graph({"A": [], "B": ["A"], "C": ["A", "B"]}, agent.id)
    await _done(store, t["A"])

    released = await resolver.on_task_completed(t["A"].id)

    assert released == [t["B"].id]
    ready_events = bus.history(event_type=EventType.TASK_READY)
    assert [e.task_id for e in ready_events] == [t["B"].id]
    assert ready_events[0].data["released_by"] == t["A"].id
    refreshed = await store.get_orchestration(orch.id)
    assert refreshed.completed_subtasks == 1
    assert refreshed.current_phase == "1/3 subtasks completed"


async def test_completion_is_idempotent_and_ignores_unfinished(store, resolver, agent, graph):
    orch, t = await graph({"A": [], "B": ["A"]}, agent.id)
    assert await resolver.on_task_completed(t["A"].id) == []
    assert await resolver.on_task_completed("missing") == []

    await _done(store, t["A"])
    assert await resolver.on_task_completed(t["A"].id) == [t["B"].id]
    assert await resolver.on_task_completed(t["A"].id) == [t["B"].id]


async def test_dependent_without_agent_is_not_released(store, resolver, graph):
    orch, t = await graph({"A": [], "B": ["A"]}, None)
    await _done(store, t["A"])
    assert await resolver.on_task_completed(t["A"].id) == []


async def test_last_completion_finishes_orchestration_and_parent(store, bus, resolver, agent, graph):
    orch, t = await graph({"A": [], "B": ["A"]}, agent.id)
    await _done(store, t["A"], t["B"])

    await resolver.on_task_completed(t["B"].id)

    final = await store.get_orchestration(orch.id)
    assert final.status is OrchestrationStatus.COMPLETED
    assert final.completed_at is not None
    assert final.current_phase == "All 2 subtasks completed"
    parent = await store.get_task(final.parent_task_id)
    assert parent.status is TaskStatus.DONE
    assert len(bus.history(event_type=EventType.ORCHESTRATION_COMPLETED)) == 1


async def test_refresh_keeps_terminal_status(store, resolver, agent, graph):
    orch, t = await graph({"A": []}, agent.id, status=OrchestrationStatus.FAILED)
    await _done(store, t["A"])

    refreshed = await resolver.refresh_progress(orch.id)

    assert refreshed.status is OrchestrationStatus.FAILED
    assert refreshed.completed_subtasks == 1
    assert await resolver.refresh_progress("missing") is None


async def test_blocked_subtask_prevents_completion(store, resolver, agent, graph):
    orch, t = await graph({"A": [], "B": []}, agent.id)
    await _done(store, t["A"])
    await store.update_task(t["B"].id, status=TaskStatus.BLOCKED)

    refreshed = await resolver.refresh_progress(orch.id)
    assert refreshed.status is OrchestrationStatus.EXECUTING


# --- Graph building ---


def test_build_graph_levels_and_nodes():
    a = Task(title="A")
    b = Task(title="B", depends_on={a.id}, priority=TaskPriority.HIGH)
    c = Task(title="C", depends_on={a.id})
    d = Task(title="D", depends_on={b.id, c.id, "outside"})

    graph = DependencyResolver.build_graph([a, b, c, d])

    assert not graph.has_cycle
    assert graph.total_levels == 3
    assert graph.can_parallelize
    assert graph.levels[1] == [b.id, c.id]
    assert graph.nodes[d.id].depends_on == frozenset({b.id, c.id})
    assert graph.nodes[a.id].dependents == frozenset({b.id, c.id})
    assert graph.nodes[d.id].level == 2


def test_build_graph_reports_cycle_by_title(resolver):
    a = Task(title="A")
    b = Task(title="B", depends_on={a.id})
    a.depends_on.add(b.id)

    graph = DependencyResolver.build_graph([a, b])
    assert graph.has_cycle
    assert graph.levels == []
    assert set(graph.cycle) == {"A", "B"}
    assert all(node.level == -1 for node in graph.nodes.values())

    with pytest.raises(DependencyCycleError):
        resolver.get_execution_order([a, b])


def test_execution_order(resolver):
    a = Task(title="A")
    b = Task(title="B", depends_on={a.id})
    assert [t.title for t in resolver.get_execution_order([b, a])] == ["A", "B"]


async def test_has_usable_agent(store, resolver):
    active = await store.create_agent(Agent(name="p", role=AgentRole.PIXEL))
    inactive = await store.create_agent(Agent(name="q", role=AgentRole.PIXEL, is_active=False))
    assert await resolver.has_usable_agent(Task(title="x", agent_id=active.id))
    assert not await resolver.has_usable_agent(Task(title="x", agent_id=inactive.id))
    assert not await resolver.has_usable_agent(Task(title="x", agent_id="gone"))
    assert not await resolver.has_usable_agent(Task(title="x"))
