"""
Orchestrator: owns the orchestration lifecycle.

Turns a parent task into a graph of subtasks and hands the graph to the
scheduler:

    PLANNING -> CREATING_SUBTASKS -> ASSIGNING_AGENTS -> EXECUTING
             -> {COMPLETED | FAILED}

Completion is detected by the dependency resolver once every subtask is
DONE; permanent failures and cancellation mark the orchestration FAILED.
Also exposes the external control surface: start, monitor, pause, resume,
cancel, manual task transitions and per-execution control.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from orchestra.exceptions import InvalidStateError, NotFoundError, PlanningError
from orchestra.interfaces.event_bus import Event, EventType, IEventBus
from orchestra.interfaces.store import ITaskStore
from orchestra.models import (
    NON_TERMINAL_EXECUTION_STATUSES,
    AgentRole,
    Execution,
    ExecutionStatus,
    Orchestration,
    OrchestrationStatus,
    Task,
    TaskStatus,
    utcnow,
)
from orchestra.planning.plan import OrchestrationPlan, validate_plan
from orchestra.planning.planner import IPlanner
from orchestra.scheduling.auto_executor import AutoExecutor, LoopStats, MonitorResult
from orchestra.scheduling.dependency_resolver import DependencyResolver
from orchestra.scheduling.execution_runner import ExecutionRunner
from orchestra.workflow.state_machine import validate_transition

logger = logging.getLogger(__name__)

# States from which an orchestration can be resumed
_RESUMABLE = frozenset({OrchestrationStatus.EXECUTING, OrchestrationStatus.REVIEWING})


# ============================================================================
# RESULT TYPES
# ============================================================================


@dataclass
class OrchestrationResult:
    orchestration_id: str
    subtasks_created: int
    plan: OrchestrationPlan
    restarted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "subtasks_created": self.subtasks_created,
            "plan": self.plan.model_dump(mode="json"),
            "restarted": self.restarted,
        }


@dataclass
class ControlResult:
    """Outcome of a pause/resume/cancel request."""

    orchestration: Orchestration
    action: str
    affected_executions: int = 0
    reset_tasks: int = 0


@dataclass
class SubtaskSnapshot:
    task: Task
    is_ready: bool
    is_blocked: bool
    latest_execution: Optional[Execution] = None

    def to_dict(self) -> Dict[str, Any]:
        t = self.task
        latest = self.latest_execution
        return {
            "id": t.id,
            "title": t.title,
            "description": t.description,
            "status": t.status.value,
            "priority": t.priority.value,
            "agent_id": t.agent_id,
            "estimated_hours": t.estimated_hours,
            "depends_on": sorted(t.depends_on),
            "dependents": sorted(t.dependents),
            "created_at": t.created_at.isoformat(),
            "completed_at": t.completed_at.isoformat() if t.completed_at else None,
            "is_ready": self.is_ready,
            "is_blocked": self.is_blocked,
            "latest_execution": {
                "id": latest.id,
                "status": latest.status.value,
                "progress": latest.progress,
                "error": latest.error,
            } if latest else None,
        }


@dataclass
class OrchestrationSnapshot:
    """Point-in-time view of an orchestration and its subtasks."""

    orchestration: Orchestration
    parent_task: Optional[Task]
    subtasks: List[SubtaskSnapshot] = field(default_factory=list)
    loop_active: bool = False
    paused: bool = False

    @property
    def total(self) -> int:
        return len(self.subtasks)

    @property
    def done(self) -> int:
        return sum(1 for s in self.subtasks if s.task.status == TaskStatus.DONE)

    @property
    def in_progress(self) -> int:
        return sum(1 for s in self.subtasks if s.task.status == TaskStatus.IN_PROGRESS)

    @property
    def percent(self) -> int:
        return round(self.done / self.total * 100) if self.total else 0

    def to_dict(self) -> Dict[str, Any]:
        o = self.orchestration
        return {
            "id": o.id,
            "parent_task_id": o.parent_task_id,
            "parent_task": {
                "id": self.parent_task.id,
                "title": self.parent_task.title,
                "status": self.parent_task.status.value,
                "priority": self.parent_task.priority.value,
            } if self.parent_task else None,
            "status": o.status.value,
            "current_phase": o.current_phase,
            "total_subtasks": o.total_subtasks,
            "completed_subtasks": o.completed_subtasks,
            "plan": o.plan,
            "created_at": o.created_at.isoformat(),
            "completed_at": o.completed_at.isoformat() if o.completed_at else None,
            "loop_active": self.loop_active,
            "paused": self.paused,
            "progress": {
                "percent": self.percent,
                "done": self.done,
                "in_progress": self.in_progress,
                "total": self.total,
                "remaining": self.total - self.done,
            },
            "subtasks": [s.to_dict() for s in self.subtasks],
        }


# ============================================================================
# ORCHESTRATOR
# ============================================================================


class Orchestrator:
    """Creates orchestrations from parent tasks and controls them."""

    def __init__(
        self,
        store: ITaskStore,
        event_bus: IEventBus,
        planner: IPlanner,
        resolver: DependencyResolver,
        runner: ExecutionRunner,
        scheduler: AutoExecutor,
    ):
        self.store = store
        self.event_bus = event_bus
        self.planner = planner
        self.resolver = resolver
        self.runner = runner
        self.scheduler = scheduler

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def orchestrate(self, task_id: str, plan: Optional[OrchestrationPlan] = None) -> OrchestrationResult:
        """Plan a parent task, create its subtask graph and mark it EXECUTING.

        ``plan`` bypasses the planner. A FAILED orchestration for the same
        parent is restarted: when it already has subtasks, the existing graph
        is reused and every subtask that is not DONE goes back to TODO.

        Raises:
            NotFoundError: parent task missing
            InvalidStateError: parent DONE, or a non-FAILED orchestration exists
            PlanningError / PlanValidationError / DependencyCycleError: bad plan
        """
        task = await self.store.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        if task.status == TaskStatus.DONE:
            raise InvalidStateError("Task", task_id, task.status.value, "orchestrate")

        existing = await self.store.get_orchestration_by_parent(task_id)
        if existing is not None and existing.status != OrchestrationStatus.FAILED:
            raise InvalidStateError("Orchestration", existing.id, existing.status.value, "orchestrate")

        if existing is not None:
            orchestration = await self.store.update_orchestration(
                existing.id,
                status=OrchestrationStatus.PLANNING,
                current_phase="Restarting",
                completed_at=None,
            )
        else:
            orchestration = await self.store.create_orchestration(Orchestration(
                parent_task_id=task_id,
                status=OrchestrationStatus.PLANNING,
                current_phase="Starting analysis",
            ))
        logger.info("Orchestration %s started for %r", orchestration.id, task.title)

        try:
            return await self._run_phases(orchestration, task, plan)
        except Exception as e:
            logger.error("Orchestration %s failed during setup: %s", orchestration.id, e)
            try:
                await self.store.update_orchestration(
                    orchestration.id,
                    status=OrchestrationStatus.FAILED,
                    current_phase=f"Error: {e}",
                    completed_at=utcnow(),
                )
            except Exception:
                logger.exception("Marking orchestration %s FAILED failed", orchestration.id)
            raise

    async def _run_phases(
        self, orchestration: Orchestration, task: Task, plan: Optional[OrchestrationPlan]
    ) -> OrchestrationResult:
        oid = orchestration.id
        subtasks = await self.store.list_tasks(orchestration_id=oid)
        restarted = bool(subtasks)

        if restarted:
            if orchestration.plan is None:
                raise PlanningError(f"Orchestration {oid} has subtasks but no stored plan")
            if plan is not None:
                logger.warning("Orchestration %s restarts its existing graph, supplied plan ignored", oid)
            plan = OrchestrationPlan.model_validate(orchestration.plan)
            subtasks = await self._reset_subtasks(subtasks)
        else:
            # Phase 1: planning
            await self.store.update_orchestration(oid, current_phase="Analysing task")
            if plan is None:
                plan = await self.planner.plan(task)
            if not plan.subtasks:
                raise PlanningError("Plan has no subtasks")
            validation = validate_plan(plan)
            for warning in validation.warnings:
                logger.warning("Plan for %r: %s", task.title, warning)
            await self.store.update_orchestration(
                oid, plan=plan.model_dump(mode="json"), current_phase="Plan created"
            )

            # Phase 2: subtasks
            await self.store.update_orchestration(
                oid, status=OrchestrationStatus.CREATING_SUBTASKS, current_phase="Creating subtasks"
            )
            subtasks = await self._create_subtasks(oid, task, plan)

        await self.store.update_orchestration(
            oid,
            total_subtasks=len(subtasks),
            completed_subtasks=sum(1 for t in subtasks if t.status == TaskStatus.DONE),
            current_phase=f"{len(subtasks)} subtasks created",
        )

        # Phase 3: agents
        await self.store.update_orchestration(
            oid, status=OrchestrationStatus.ASSIGNING_AGENTS, current_phase="Assigning agents"
        )
        await self._assign_agents(subtasks, plan)

        # Phase 4: hand over to the scheduler
        done = sum(1 for t in subtasks if t.status == TaskStatus.DONE)
        await self.store.update_orchestration(
            oid,
            status=OrchestrationStatus.EXECUTING,
            current_phase=f"{done}/{len(subtasks)} subtasks completed",
        )
        self.scheduler.resume(oid)
        await self._publish(EventType.ORCHESTRATION_STARTED, orchestration, subtasks=len(subtasks), restarted=restarted)
        logger.info("Orchestration %s executing with %d subtasks", oid, len(subtasks))
        return OrchestrationResult(
            orchestration_id=oid,
            subtasks_created=0 if restarted else len(subtasks),
            plan=plan,
            restarted=restarted,
        )

    async def _create_subtasks(self, orchestration_id: str, parent: Task, plan: OrchestrationPlan) -> List[Task]:
        agents_by_role = await self._agents_by_role()

        # First pass: every task, no edges yet
        created: List[Task] = []
        title_to_id: Dict[str, str] = {}
        for sub in plan.subtasks:
            agent_id = agents_by_role.get(sub.agent)
            task = await self.store.create_task(Task(
                title=sub.title,
                description=sub.description,
                priority=sub.priority,
                status=TaskStatus.TODO,
                parent_id=parent.id,
                orchestration_id=orchestration_id,
                estimated_hours=sub.estimated_hours,
                agent_id=agent_id,
            ))
            created.append(task)
            title_to_id[sub.title] = task.id

        # Second pass: connect dependencies by title
        for sub in plan.subtasks:
            for dep_title in sub.depends_on:
                await self.store.add_dependency(title_to_id[sub.title], title_to_id[dep_title])
            if sub.depends_on:
                logger.debug("Dependency: %r -> %s", sub.title, sub.depends_on)

        return await self.store.list_tasks(orchestration_id=orchestration_id)

    async def _reset_subtasks(self, subtasks: List[Task]) -> List[Task]:
        """Put every unfinished subtask of a restarted orchestration back to TODO."""
        for task in subtasks:
            stale = await self.store.list_executions(task_id=task.id, statuses=NON_TERMINAL_EXECUTION_STATUSES)
            for execution in stale:
                await self.store.update_execution(
                    execution.id, status=ExecutionStatus.CANCELLED, completed_at=utcnow()
                )
            if task.status not in (TaskStatus.DONE, TaskStatus.TODO):
                await self.store.update_task(task.id, status=TaskStatus.TODO)
        self.scheduler.reset_retries(t.id for t in subtasks)
        logger.info("Restart: %d subtask(s) reset", sum(1 for t in subtasks if t.status != TaskStatus.DONE))
        return await self.store.list_tasks(ids=[t.id for t in subtasks])

    async def _agents_by_role(self) -> Dict[AgentRole, str]:
        """First active agent per role."""
        by_role: Dict[AgentRole, str] = {}
        for agent in await self.store.list_agents(active_only=True):
            by_role.setdefault(agent.role, agent.id)
        return by_role

    async def _assign_agents(self, subtasks: List[Task], plan: OrchestrationPlan) -> None:
        """Fill in or replace missing and inactive agents by planned role."""
        role_by_title = {s.title: s.agent for s in plan.subtasks}
        agents_by_role = await self._agents_by_role()
        active = {a.id for a in await self.store.list_agents(active_only=True)}

        unassigned = []
        for task in subtasks:
            if task.agent_id in active:
                continue
            agent_id = agents_by_role.get(role_by_title.get(task.title))
            if agent_id is None:
                unassigned.append(task.title)
                continue
            await self.store.update_task(task.id, agent_id=agent_id)

        if unassigned:
            logger.warning(
                "%d subtask(s) without an active agent, they will not be dispatched: %s",
                len(unassigned), ", ".join(repr(t) for t in unassigned),
            )
        else:
            logger.info("All %d subtasks assigned", len(subtasks))

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    async def _get(self, orchestration_id: str) -> Orchestration:
        orchestration = await self.store.get_orchestration(orchestration_id)
        if orchestration is None:
            raise NotFoundError("Orchestration", orchestration_id)
        return orchestration

    async def start(self, orchestration_id: str) -> bool:
        """Start the scheduling loop in the background.

        Returns False when a loop is already active (idempotent).
        """
        orchestration = await self._get(orchestration_id)
        if orchestration.status.is_terminal:
            raise InvalidStateError("Orchestration", orchestration_id, orchestration.status.value, "start")
        return self.scheduler.run_in_background(orchestration_id) is not None

    async def run(self, orchestration_id: str) -> LoopStats:
        """Run the scheduling loop in the foreground until it stops."""
        orchestration = await self._get(orchestration_id)
        if orchestration.status.is_terminal:
            raise InvalidStateError("Orchestration", orchestration_id, orchestration.status.value, "start")
        return await self.scheduler.start_orchestration_loop(orchestration_id)

    async def monitor(self, orchestration_id: str) -> MonitorResult:
        await self._get(orchestration_id)
        return await self.scheduler.monitor(orchestration_id)

    async def pause(self, orchestration_id: str) -> ControlResult:
        """Pause RUNNING executions and drop queued work; status stays EXECUTING."""
        orchestration = await self._get(orchestration_id)
        if orchestration.status != OrchestrationStatus.EXECUTING:
            raise InvalidStateError("Orchestration", orchestration_id, orchestration.status.value, "pause")

        self.scheduler.pause(orchestration_id)
        executions = await self.store.list_executions(
            orchestration_id=orchestration_id,
            statuses={ExecutionStatus.RUNNING, ExecutionStatus.QUEUED},
        )
        paused = 0
        reset = 0
        for execution in executions:
            if execution.status == ExecutionStatus.RUNNING:
                try:
                    await self.runner.pause_execution(execution.id)
                    paused += 1
                except InvalidStateError as e:
                    # Finished while we were pausing
                    logger.info("Execution %s not paused: %s", execution.id, e)
            else:
                await self.store.delete_execution(execution.id)
                task = await self.store.get_task(execution.task_id)
                if task is not None and task.status == TaskStatus.IN_PROGRESS:
                    await self.store.update_task(task.id, status=TaskStatus.TODO)
                    reset += 1

        orchestration = await self.store.update_orchestration(orchestration_id, current_phase="Paused by user")
        logger.info("Orchestration %s paused (%d execution(s) paused)", orchestration_id, paused)
        return ControlResult(orchestration, "pause", affected_executions=paused, reset_tasks=reset)

    async def resume(self, orchestration_id: str) -> ControlResult:
        """Resume paused executions, re-offer ready work and restart the loop."""
        orchestration = await self._get(orchestration_id)
        if orchestration.status not in _RESUMABLE:
            raise InvalidStateError("Orchestration", orchestration_id, orchestration.status.value, "resume")

        self.scheduler.resume(orchestration_id)
        resumed = 0
        paused = await self.store.list_executions(
            orchestration_id=orchestration_id, statuses={ExecutionStatus.PAUSED}
        )
        for execution in paused:
            try:
                handle = await self.runner.resume_execution(execution.id)
            except (InvalidStateError, NotFoundError) as e:
                logger.warning("Execution %s not resumed: %s", execution.id, e)
                continue
            self.scheduler.track(orchestration_id, handle)
            resumed += 1

        # IN_PROGRESS tasks without an execution in flight would never be
        # dispatched again
        live = {
            e.task_id for e in await self.store.list_executions(
                orchestration_id=orchestration_id, statuses=NON_TERMINAL_EXECUTION_STATUSES
            )
        }
        reset = 0
        for task in await self.store.list_tasks(orchestration_id=orchestration_id, statuses={TaskStatus.IN_PROGRESS}):
            if task.id not in live:
                await self.store.update_task(task.id, status=TaskStatus.TODO)
                reset += 1

        orchestration = await self.store.update_orchestration(
            orchestration_id, status=OrchestrationStatus.EXECUTING, current_phase="Resumed by user"
        )
        self.scheduler.run_in_background(orchestration_id)
        logger.info("Orchestration %s resumed (%d execution(s) resumed)", orchestration_id, resumed)
        return ControlResult(orchestration, "resume", affected_executions=resumed, reset_tasks=reset)

    async def cancel(self, orchestration_id: str) -> ControlResult:
        """Cancel every in-flight execution and mark the orchestration FAILED."""
        orchestration = await self._get(orchestration_id)
        if orchestration.status.is_terminal:
            raise InvalidStateError("Orchestration", orchestration_id, orchestration.status.value, "cancel")

        self.scheduler.pause(orchestration_id)
        # Terminal first so failure handling of the cancelled attempts does not retry
        orchestration = await self.store.update_orchestration(
            orchestration_id,
            status=OrchestrationStatus.FAILED,
            current_phase="Cancelled by user",
            completed_at=utcnow(),
        )

        cancelled = 0
        for execution in await self.store.list_executions(
            orchestration_id=orchestration_id, statuses=NON_TERMINAL_EXECUTION_STATUSES
        ):
            try:
                await self.runner.cancel_execution(execution.id)
                cancelled += 1
            except InvalidStateError as e:
                logger.info("Execution %s not cancelled: %s", execution.id, e)

        await self._publish(
            EventType.ORCHESTRATION_FAILED, orchestration,
            cancelled=True, cancelled_executions=cancelled,
        )
        logger.warning("Orchestration %s cancelled (%d execution(s))", orchestration_id, cancelled)
        return ControlResult(orchestration, "cancel", affected_executions=cancelled)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self, orchestration_id: str) -> OrchestrationSnapshot:
        orchestration = await self._get(orchestration_id)
        parent = await self.store.get_task(orchestration.parent_task_id)
        subtasks = await self.store.list_tasks(orchestration_id=orchestration_id)

        statuses = {t.id: t.status for t in subtasks}
        outside = {d for t in subtasks for d in t.depends_on if d not in statuses}
        if outside:
            statuses.update({t.id: t.status for t in await self.store.list_tasks(ids=outside)})

        latest: Dict[str, Execution] = {}
        for execution in await self.store.list_executions(orchestration_id=orchestration_id):
            current = latest.get(execution.task_id)
            if current is None or execution.created_at >= current.created_at:
                latest[execution.task_id] = execution

        snapshots = []
        for t in subtasks:
            deps_done = all(statuses.get(d) == TaskStatus.DONE for d in t.depends_on)
            snapshots.append(SubtaskSnapshot(
                task=t,
                is_ready=t.status == TaskStatus.TODO and deps_done,
                is_blocked=not deps_done,
                latest_execution=latest.get(t.id),
            ))
        return OrchestrationSnapshot(
            orchestration=orchestration,
            parent_task=parent,
            subtasks=snapshots,
            loop_active=self.scheduler.is_loop_active(orchestration_id),
            paused=self.scheduler.is_paused(orchestration_id),
        )

    # ------------------------------------------------------------------
    # Task and execution control
    # ------------------------------------------------------------------

    async def transition_task(self, task_id: str, to_status: Union[TaskStatus, str]) -> Task:
        """Manual status change, validated against the workflow table.

        Raises:
            NotFoundError: task missing
            InvalidTransitionError: transition not allowed
        """
        task = await self.store.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        target = validate_transition(task.status, to_status)

        changes: Dict[str, Any] = {"status": target}
        if target == TaskStatus.DONE:
            changes["completed_at"] = utcnow()
        task = await self.store.update_task(task_id, **changes)
        logger.info("Task %r moved to %s", task.title, target.value)

        if target == TaskStatus.DONE and task.orchestration_id:
            await self.resolver.on_task_completed(task_id)
        return task

    async def pause_execution(self, execution_id: str) -> Execution:
        return await self.runner.pause_execution(execution_id)

    async def resume_execution(self, execution_id: str) -> Execution:
        handle = await self.runner.resume_execution(execution_id)
        task = await self.store.get_task(handle.task_id)
        if task is not None and task.orchestration_id:
            self.scheduler.track(task.orchestration_id, handle)
        return await self.store.get_execution(execution_id)

    async def cancel_execution(self, execution_id: str) -> Execution:
        return await self.runner.cancel_execution(execution_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _publish(self, event_type: EventType, orchestration: Orchestration, **data: Any) -> None:
        try:
            await self.event_bus.publish(Event(
                type=event_type,
                data=data,
                task_id=orchestration.parent_task_id,
                orchestration_id=orchestration.id,
            ))
        except Exception:
            logger.exception("Failed to publish %s", event_type.value)
