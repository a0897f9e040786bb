"""Interface for the persistent task store.

The store is the single source of truth for tasks, agents, orchestrations and
executions. Can be in-memory, SQLite, or another backend. Implementations
return snapshots: mutating a returned record never changes stored state,
changes go through the ``update_*`` methods.
"""

from typing import Any, Iterable, List, Optional, Protocol

from orchestra.models import (
    Agent,
    AgentRole,
    Execution,
    ExecutionStatus,
    Orchestration,
    Task,
    TaskStatus,
)


class ITaskStore(Protocol):
    """Interface for task/orchestration/execution persistence."""

    # ── Tasks ────────────────────────────────────────────────────────

    async def create_task(self, task: Task) -> Task:
        ...

    async def get_task(self, task_id: str) -> Optional[Task]:
        ...

    async def update_task(self, task_id: str, **changes: Any) -> Task:
        """Apply field changes to a task.

        Raises:
            NotFoundError: if the task does not exist
        """
        ...

    async def list_tasks(
        self,
        orchestration_id: Optional[str] = None,
        statuses: Optional[Iterable[TaskStatus]] = None,
        ids: Optional[Iterable[str]] = None,
    ) -> List[Task]:
        """List tasks, filtered by orchestration, status and/or id.

        Results are ordered by creation time so repeated reads of the same
        graph snapshot are deterministic.
        """
        ...

    async def add_dependency(self, task_id: str, depends_on_id: str) -> None:
        """Record that ``task_id`` depends on ``depends_on_id``.

        Keeps the reverse ``dependents`` set of the dependency in sync.
        """
        ...

    # ── Agents ───────────────────────────────────────────────────────

    async def create_agent(self, agent: Agent) -> Agent:
        ...

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        ...

    async def update_agent(self, agent_id: str, **changes: Any) -> Agent:
        ...

    async def list_agents(
        self, role: Optional[AgentRole] = None, active_only: bool = False
    ) -> List[Agent]:
        ...

    # ── Orchestrations ───────────────────────────────────────────────

    async def create_orchestration(self, orchestration: Orchestration) -> Orchestration:
        ...

    async def get_orchestration(self, orchestration_id: str) -> Optional[Orchestration]:
        ...

    async def get_orchestration_by_parent(self, parent_task_id: str) -> Optional[Orchestration]:
        ...

    async def update_orchestration(self, orchestration_id: str, **changes: Any) -> Orchestration:
        ...

    # ── Executions ───────────────────────────────────────────────────

    async def create_execution(self, execution: Execution) -> Execution:
        ...

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        ...

    async def update_execution(self, execution_id: str, **changes: Any) -> Execution:
        ...

    async def delete_execution(self, execution_id: str) -> None:
        ...

    async def list_executions(
        self,
        orchestration_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        ids: Optional[Iterable[str]] = None,
        task_id: Optional[str] = None,
    ) -> List[Execution]:
        """List executions; ``orchestration_id`` filters through the owning task."""
        ...

    async def count_executions(
        self,
        orchestration_id: str,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
    ) -> int:
        ...
