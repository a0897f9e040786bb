"""Tests for the task stores (orchestra/storage/*), run against both backends."""

import pytest

from orchestra.exceptions import NotFoundError
from orchestra.models import (
    Agent,
    AgentRole,
    Execution,
    ExecutionStatus,
    Orchestration,
    OrchestrationStatus,
    Task,
    TaskPriority,
    TaskStatus,
    utcnow,
)
from orchestra.storage.memory_store import InMemoryTaskStore
from orchestra.storage.sqlite_store import SQLiteTaskStore


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteTaskStore(str(tmp_path / "orchestra.db"))
    return InMemoryTaskStore()


# --- Tasks ---


async def test_task_roundtrip(any_store):
    created = await any_store.create_task(Task(
        title="Design schema",
        description="tables and indexes",
        priority=TaskPriority.HIGH,
        estimated_hours=2.5,
    ))
    fetched = await any_store.get_task(created.id)

    assert fetched.title == "Design schema"
    assert fetched.priority is TaskPriority.HIGH
    assert fetched.status is TaskStatus.TODO
    assert fetched.estimated_hours == 2.5
    assert fetched.created_at == created.created_at
    assert await any_store.get_task("missing") is None


async def test_returned_records_are_snapshots(any_store):
    created = await any_store.create_task(Task(title="A"))
    created.status = TaskStatus.DONE

    assert (await any_store.get_task(created.id)).status is TaskStatus.TODO


async def test_update_task(any_store):
    task = await any_store.create_task(Task(title="A"))
    now = utcnow()

    updated = await any_store.update_task(task.id, status=TaskStatus.DONE, completed_at=now)

    assert updated.status is TaskStatus.DONE
    assert updated.completed_at == now


async def test_update_rejects_missing_and_read_only(any_store):
    task = await any_store.create_task(Task(title="A"))
    with pytest.raises(NotFoundError):
        await any_store.update_task("missing", status=TaskStatus.DONE)
    with pytest.raises(ValueError):
        await any_store.update_task(task.id, depends_on={"x"})
    with pytest.raises(ValueError):
        await any_store.update_task(task.id, id="other")


async def test_dependencies_are_kept_in_both_directions(any_store):
    a = await any_store.create_task(Task(title="A"))
    b = await any_store.create_task(Task(title="B"))
    await any_store.add_dependency(b.id, a.id)

    assert (await any_store.get_task(b.id)).depends_on == {a.id}
    assert (await any_store.get_task(a.id)).dependents == {b.id}
    with pytest.raises(NotFoundError):
        await any_store.add_dependency(b.id, "missing")


async def test_list_tasks_filters_and_orders(any_store):
    a = await any_store.create_task(Task(title="A", orchestration_id="o1"))
    b = await any_store.create_task(Task(title="B", orchestration_id="o1", status=TaskStatus.DONE))
    await any_store.create_task(Task(title="C", orchestration_id="o2"))

    assert [t.title for t in await any_store.list_tasks(orchestration_id="o1")] == ["A", "B"]
    done = await any_store.list_tasks(orchestration_id="o1", statuses=[TaskStatus.DONE])
    assert [t.id for t in done] == [b.id]
    assert [t.id for t in await any_store.list_tasks(ids=[a.id])] == [a.id]
    assert await any_store.list_tasks(ids=[]) == []


# --- Agents ---


async def test_agents(any_store):
    one = await any_store.create_agent(Agent(name="pixel-1", role=AgentRole.PIXEL))
    await any_store.create_agent(Agent(name="sentinel-1", role=AgentRole.SENTINEL))
    await any_store.update_agent(one.id, is_active=False)

    assert (await any_store.get_agent(one.id)).is_active is False
    assert [a.name for a in await any_store.list_agents(role=AgentRole.PIXEL)] == ["pixel-1"]
    assert [a.name for a in await any_store.list_agents(active_only=True)] == ["sentinel-1"]


# --- Orchestrations ---


async def test_orchestration_plan_and_lookup_by_parent(any_store):
    parent = await any_store.create_task(Task(title="parent"))
    orch = await any_store.create_orchestration(Orchestration(parent_task_id=parent.id))
    plan = {"summary": "s", "subtasks": [{"title": "A", "agent_role": "MAESTRO"}]}

    await any_store.update_orchestration(orch.id, status=OrchestrationStatus.EXECUTING, plan=plan)
    fetched = await any_store.get_orchestration_by_parent(parent.id)

    assert fetched.id == orch.id
    assert fetched.status is OrchestrationStatus.EXECUTING
    assert fetched.plan == plan
    assert await any_store.get_orchestration_by_parent("missing") is None


# --- Executions ---


async def test_executions_filter_through_owning_task(any_store):
    t1 = await any_store.create_task(Task(title="A", orchestration_id="o1"))
    t2 = await any_store.create_task(Task(title="B", orchestration_id="o2"))
    e1 = await any_store.create_execution(Execution(task_id=t1.id, agent_id="a", status=ExecutionStatus.RUNNING))
    await any_store.create_execution(Execution(task_id=t1.id, agent_id="a", status=ExecutionStatus.FAILED))
    await any_store.create_execution(Execution(task_id=t2.id, agent_id="a", status=ExecutionStatus.RUNNING))

    running = await any_store.list_executions(orchestration_id="o1", statuses=[ExecutionStatus.RUNNING])
    assert [e.id for e in running] == [e1.id]
    assert await any_store.count_executions("o1") == 2
    assert await any_store.count_executions("o1", statuses=[ExecutionStatus.FAILED]) == 1
    assert len(await any_store.list_executions(task_id=t2.id)) == 1


async def test_update_and_delete_execution(any_store):
    task = await any_store.create_task(Task(title="A"))
    execution = await any_store.create_execution(Execution(task_id=task.id, agent_id="a"))

    updated = await any_store.update_execution(execution.id, status=ExecutionStatus.COMPLETED, progress=100, result="ok")
    assert updated.status is ExecutionStatus.COMPLETED
    assert updated.result == "ok"

    await any_store.delete_execution(execution.id)
    assert await any_store.get_execution(execution.id) is None
    with pytest.raises(NotFoundError):
        await any_store.delete_execution(execution.id)


def test_sqlite_store_persists_across_instances(tmp_path):
    import asyncio

    path = str(tmp_path / "nested" / "orchestra.db")

    async def scenario():
        first = SQLiteTaskStore(path)
        task = await first.create_task(Task(title="persisted"))
        second = SQLiteTaskStore(path)
        return await second.get_task(task.id)

    assert asyncio.run(scenario()).title == "persisted"


async def test_sqlite_create_task_is_atomic(tmp_path):
    store = SQLiteTaskStore(str(tmp_path / "orchestra.db"))
    schema = await store.create_task(Task(title="Schema"))

    api = await store.create_task(Task(title="API", depends_on={schema.id}))
    assert api.depends_on == {schema.id}
    assert (await store.get_task(schema.id)).dependents == {api.id}

    orphan = Task(title="UI", depends_on={schema.id, "missing"})
    with pytest.raises(NotFoundError):
        await store.create_task(orphan)
    assert await store.get_task(orphan.id) is None
    assert (await store.get_task(schema.id)).dependents == {api.id}


async def test_sqlite_io_runs_off_the_event_loop(tmp_path, monkeypatch):
    import threading

    store = SQLiteTaskStore(str(tmp_path / "orchestra.db"))
    connect = store._connect
    threads = set()

    def recording_connect():
        threads.add(threading.get_ident())
        return connect()

    monkeypatch.setattr(store, "_connect", recording_connect)
    task = await store.create_task(Task(title="Schema"))
    await store.list_executions(task_id=task.id)
    await store.count_executions("o1")

    assert threads
    assert threading.get_ident() not in threads
