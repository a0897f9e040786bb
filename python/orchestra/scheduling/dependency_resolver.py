"""Dependency resolution over an orchestration's task graph.

Stateless: every query reads the store, so the answer always reflects the
current graph snapshot.

Provides:
- Ready-task queries (TODO, every dependency DONE, active agent assigned)
- Dependent release on completion (idempotent)
- Orchestration progress refresh and completion detection
- Graph building: tricolour DFS cycle detection, Kahn execution levels
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from orchestra.exceptions import DependencyCycleError
from orchestra.interfaces.event_bus import Event, EventType, IEventBus
from orchestra.interfaces.store import ITaskStore
from orchestra.models import (
    NON_TERMINAL_EXECUTION_STATUSES,
    Orchestration,
    OrchestrationStatus,
    Task,
    TaskPriority,
    TaskStatus,
    utcnow,
)
from orchestra.scheduling.graph import execution_levels, find_cycle, reverse_edges

logger = logging.getLogger(__name__)


# ── Value objects ────────────────────────────────────────────────────


@dataclass(frozen=True)
class DependencyNode:
    """Immutable snapshot of a task's position in the graph."""

    task_id: str
    title: str
    priority: TaskPriority
    level: int  # -1 when unreachable (cycle)
    depends_on: frozenset
    dependents: frozenset


@dataclass
class DependencyGraph:
    nodes: Dict[str, DependencyNode] = field(default_factory=dict)
    levels: List[List[str]] = field(default_factory=list)
    cycle: Optional[List[str]] = None

    @property
    def has_cycle(self) -> bool:
        return self.cycle is not None

    @property
    def total_levels(self) -> int:
        return len(self.levels)

    @property
    def can_parallelize(self) -> bool:
        return any(len(level) > 1 for level in self.levels)


def _sort_key(task: Task):
    # Higher priority first; creation order breaks ties
    return (-task.priority.weight, task.created_at)


# ── Resolver ─────────────────────────────────────────────────────────


class DependencyResolver:
    """Answers "what can run now" for an orchestration and releases
    dependents when a task finishes."""

    def __init__(self, store: ITaskStore, event_bus: Optional[IEventBus] = None) -> None:
        self._store = store
        self._event_bus = event_bus

    # ── Graph building ───────────────────────────────────────────────

    @staticmethod
    def build_graph(tasks: Iterable[Task]) -> DependencyGraph:
        """Build the dependency graph for a set of tasks.

        Edges to tasks outside the set are ignored. On a cycle, ``levels``
        is empty and ``cycle`` holds the path by title.
        """
        tasks = list(tasks)
        by_id = {t.id: t for t in tasks}
        edges = {t.id: [d for d in t.depends_on if d in by_id] for t in tasks}
        rev = reverse_edges(edges)

        cycle = find_cycle(edges)
        levels: List[List[str]] = []
        if cycle is None:
            levels = execution_levels(edges, weight=lambda tid: by_id[tid].priority.weight)
        level_of = {tid: i for i, level in enumerate(levels) for tid in level}

        nodes = {
            t.id: DependencyNode(
                task_id=t.id,
                title=t.title,
                priority=t.priority,
                level=level_of.get(t.id, -1),
                depends_on=frozenset(edges[t.id]),
                dependents=frozenset(rev[t.id]),
            )
            for t in tasks
        }
        return DependencyGraph(
            nodes=nodes,
            levels=levels,
            cycle=[by_id[tid].title for tid in cycle] if cycle else None,
        )

    def get_execution_order(self, tasks: Iterable[Task]) -> List[Task]:
        """Tasks in topological order, priority-sorted within each level.

        Raises:
            DependencyCycleError: if the tasks contain a cycle
        """
        tasks = list(tasks)
        graph = self.build_graph(tasks)
        if graph.has_cycle:
            raise DependencyCycleError(graph.cycle)
        by_id = {t.id: t for t in tasks}
        return [by_id[tid] for level in graph.levels for tid in level]

    # ── Queries ──────────────────────────────────────────────────────

    async def _dependency_statuses(self, tasks: List[Task]) -> Dict[str, TaskStatus]:
        statuses = {t.id: t.status for t in tasks}
        missing = {d for t in tasks for d in t.depends_on if d not in statuses}
        if missing:
            for dep in await self._store.list_tasks(ids=missing):
                statuses[dep.id] = dep.status
        return statuses

    async def _busy_task_ids(self, orchestration_id: str) -> Set[str]:
        executions = await self._store.list_executions(
            orchestration_id=orchestration_id, statuses=NON_TERMINAL_EXECUTION_STATUSES
        )
        return {e.task_id for e in executions}

    async def _active_agent_ids(self) -> Set[str]:
        return {a.id for a in await self._store.list_agents(active_only=True)}

    async def get_ready_tasks(self, orchestration_id: str, include_unassigned: bool = False) -> List[Task]:
        """TODO tasks whose dependencies are all DONE and which have no
        execution in flight, highest priority first.

        Only tasks assigned to an active agent are returned unless
        ``include_unassigned`` is set, in which case tasks without a usable
        agent are included so the caller can report them.
        """
        tasks = await self._store.list_tasks(orchestration_id=orchestration_id)
        statuses = await self._dependency_statuses(tasks)
        busy = await self._busy_task_ids(orchestration_id)
        active_agents = await self._active_agent_ids()

        ready = [
            t for t in tasks
            if t.status == TaskStatus.TODO
            and t.id not in busy
            # Unknown dependencies count as unmet
            and all(statuses.get(d) == TaskStatus.DONE for d in t.depends_on)
            and (include_unassigned or t.agent_id in active_agents)
        ]
        ready.sort(key=_sort_key)
        return ready

    async def has_usable_agent(self, task: Task) -> bool:
        if not task.agent_id:
            return False
        agent = await self._store.get_agent(task.agent_id)
        return agent is not None and agent.is_active

    async def get_blocked_tasks(self, orchestration_id: str) -> Dict[str, Set[str]]:
        """TODO tasks mapped to their unmet dependencies."""
        tasks = await self._store.list_tasks(orchestration_id=orchestration_id)
        statuses = await self._dependency_statuses(tasks)
        blocked: Dict[str, Set[str]] = {}
        for t in tasks:
            if t.status != TaskStatus.TODO:
                continue
            unmet = {d for d in t.depends_on if statuses.get(d) != TaskStatus.DONE}
            if unmet:
                blocked[t.id] = unmet
        return blocked

    # ── Completion ───────────────────────────────────────────────────

    async def on_task_completed(self, task_id: str) -> List[str]:
        """Release dependents of a DONE task and refresh orchestration progress.

        Idempotent; safe to call redundantly. Returns ids of dependents that
        are ready now.
        """
        task = await self._store.get_task(task_id)
        if task is None or task.status != TaskStatus.DONE:
            return []

        released: List[str] = []
        if task.dependents:
            dependents = await self._store.list_tasks(ids=task.dependents)
            statuses = await self._dependency_statuses(dependents)
            busy = await self._busy_task_ids(task.orchestration_id) if task.orchestration_id else set()
            for dependent in sorted(dependents, key=_sort_key):
                if dependent.status != TaskStatus.TODO or dependent.id in busy:
                    continue
                if not all(statuses.get(d) == TaskStatus.DONE for d in dependent.depends_on):
                    continue
                if not await self.has_usable_agent(dependent):
                    logger.info("Dependent %r unblocked but has no active agent", dependent.title)
                    continue
                released.append(dependent.id)
                logger.info("%r completed, released %r", task.title, dependent.title)
                await self._publish(Event(
                    type=EventType.TASK_READY,
                    data={"title": dependent.title, "released_by": task.id},
                    task_id=dependent.id,
                    agent_id=dependent.agent_id,
                    orchestration_id=dependent.orchestration_id,
                ))

        if task.orchestration_id:
            await self.refresh_progress(task.orchestration_id)
        return released

    async def refresh_progress(self, orchestration_id: str) -> Optional[Orchestration]:
        """Recount DONE subtasks; complete the orchestration when all are DONE
        and none is BLOCKED."""
        orchestration = await self._store.get_orchestration(orchestration_id)
        if orchestration is None:
            return None

        tasks = await self._store.list_tasks(orchestration_id=orchestration_id)
        total = len(tasks)
        done = sum(1 for t in tasks if t.status == TaskStatus.DONE)
        blocked = sum(1 for t in tasks if t.status == TaskStatus.BLOCKED)

        changes = {"completed_subtasks": done, "total_subtasks": total}
        finished = total > 0 and done == total and blocked == 0
        if orchestration.status.is_terminal:
            return await self._store.update_orchestration(orchestration_id, **changes)

        if finished:
            changes.update(
                status=OrchestrationStatus.COMPLETED,
                completed_at=utcnow(),
                current_phase=f"All {total} subtasks completed",
            )
        else:
            changes["current_phase"] = f"{done}/{total} subtasks completed"
        orchestration = await self._store.update_orchestration(orchestration_id, **changes)

        if finished:
            await self._complete_parent(orchestration, total)
        return orchestration

    async def _complete_parent(self, orchestration: Orchestration, total: int) -> None:
        parent = await self._store.get_task(orchestration.parent_task_id)
        if parent is not None and parent.status != TaskStatus.DONE:
            await self._store.update_task(parent.id, status=TaskStatus.DONE, completed_at=utcnow())
            logger.info("Parent task %r auto-completed (%d subtasks done)", parent.title, total)
        logger.info("Orchestration %s COMPLETED (%d subtasks)", orchestration.id, total)
        await self._publish(Event(
            type=EventType.ORCHESTRATION_COMPLETED,
            data={"total_subtasks": total},
            task_id=orchestration.parent_task_id,
            orchestration_id=orchestration.id,
        ))

    async def _publish(self, event: Event) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(event)
        except Exception:
            logger.exception("Failed to publish %s", event.type.value)
