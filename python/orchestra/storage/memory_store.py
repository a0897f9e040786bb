"""Dict-backed task store for tests and single-process deployments."""

import copy
import dataclasses
import logging
from typing import Any, Dict, Iterable, List, Optional, TypeVar

from orchestra.exceptions import NotFoundError
from orchestra.models import (
    Agent,
    AgentRole,
    Execution,
    ExecutionStatus,
    Orchestration,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Graph edges only change through add_dependency.
READ_ONLY_FIELDS = frozenset({"id", "depends_on", "dependents"})


def _apply(record: T, changes: Dict[str, Any]) -> None:
    names = {f.name for f in dataclasses.fields(record)} - READ_ONLY_FIELDS
    bad = sorted(k for k in changes if k not in names)
    if bad:
        raise ValueError(f"Cannot update fields {bad}")
    for key, value in changes.items():
        setattr(record, key, value)


class InMemoryTaskStore:
    """In-memory ``ITaskStore``.

    Records are deep-copied on the way in and out, so callers always work on
    snapshots just as they would with a database-backed store.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._agents: Dict[str, Agent] = {}
        self._orchestrations: Dict[str, Orchestration] = {}
        self._executions: Dict[str, Execution] = {}

    # ── Tasks ────────────────────────────────────────────────────────

    async def create_task(self, task: Task) -> Task:
        self._tasks[task.id] = copy.deepcopy(task)
        return copy.deepcopy(task)

    async def get_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return copy.deepcopy(task) if task else None

    async def update_task(self, task_id: str, **changes: Any) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        _apply(task, changes)
        return copy.deepcopy(task)

    async def list_tasks(
        self,
        orchestration_id: Optional[str] = None,
        statuses: Optional[Iterable[TaskStatus]] = None,
        ids: Optional[Iterable[str]] = None,
    ) -> List[Task]:
        status_set = set(statuses) if statuses is not None else None
        id_set = set(ids) if ids is not None else None
        result = [
            t for t in self._tasks.values()
            if (orchestration_id is None or t.orchestration_id == orchestration_id)
            and (status_set is None or t.status in status_set)
            and (id_set is None or t.id in id_set)
        ]
        result.sort(key=lambda t: t.created_at)
        return copy.deepcopy(result)

    async def add_dependency(self, task_id: str, depends_on_id: str) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        dependency = self._tasks.get(depends_on_id)
        if dependency is None:
            raise NotFoundError("Task", depends_on_id)
        task.depends_on.add(depends_on_id)
        dependency.dependents.add(task_id)
        logger.debug("Dependency added: %s -> %s", task_id, depends_on_id)

    # ── Agents ───────────────────────────────────────────────────────

    async def create_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = copy.deepcopy(agent)
        return copy.deepcopy(agent)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return copy.deepcopy(agent) if agent else None

    async def update_agent(self, agent_id: str, **changes: Any) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        _apply(agent, changes)
        return copy.deepcopy(agent)

    async def list_agents(self, role: Optional[AgentRole] = None, active_only: bool = False) -> List[Agent]:
        return [
            copy.deepcopy(a) for a in self._agents.values()
            if (role is None or a.role == role) and (not active_only or a.is_active)
        ]

    # ── Orchestrations ───────────────────────────────────────────────

    async def create_orchestration(self, orchestration: Orchestration) -> Orchestration:
        self._orchestrations[orchestration.id] = copy.deepcopy(orchestration)
        return copy.deepcopy(orchestration)

    async def get_orchestration(self, orchestration_id: str) -> Optional[Orchestration]:
        orch = self._orchestrations.get(orchestration_id)
        return copy.deepcopy(orch) if orch else None

    async def get_orchestration_by_parent(self, parent_task_id: str) -> Optional[Orchestration]:
        matches = [o for o in self._orchestrations.values() if o.parent_task_id == parent_task_id]
        if not matches:
            return None
        return copy.deepcopy(max(matches, key=lambda o: o.created_at))

    async def update_orchestration(self, orchestration_id: str, **changes: Any) -> Orchestration:
        orch = self._orchestrations.get(orchestration_id)
        if orch is None:
            raise NotFoundError("Orchestration", orchestration_id)
        _apply(orch, changes)
        return copy.deepcopy(orch)

    # ── Executions ───────────────────────────────────────────────────

    async def create_execution(self, execution: Execution) -> Execution:
        self._executions[execution.id] = copy.deepcopy(execution)
        return copy.deepcopy(execution)

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        execution = self._executions.get(execution_id)
        return copy.deepcopy(execution) if execution else None

    async def update_execution(self, execution_id: str, **changes: Any) -> Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        _apply(execution, changes)
        return copy.deepcopy(execution)

    async def delete_execution(self, execution_id: str) -> None:
        if self._executions.pop(execution_id, None) is None:
            raise NotFoundError("Execution", execution_id)

    async def list_executions(
        self,
        orchestration_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        ids: Optional[Iterable[str]] = None,
        task_id: Optional[str] = None,
    ) -> List[Execution]:
        status_set = set(statuses) if statuses is not None else None
        id_set = set(ids) if ids is not None else None
        result = []
        for e in self._executions.values():
            if orchestration_id is not None:
                task = self._tasks.get(e.task_id)
                if task is None or task.orchestration_id != orchestration_id:
                    continue
            if status_set is not None and e.status not in status_set:
                continue
            if id_set is not None and e.id not in id_set:
                continue
            if task_id is not None and e.task_id != task_id:
                continue
            result.append(e)
        result.sort(key=lambda e: e.created_at)
        return copy.deepcopy(result)

    async def count_executions(
        self,
        orchestration_id: str,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
    ) -> int:
        return len(await self.list_executions(orchestration_id=orchestration_id, statuses=statuses))
