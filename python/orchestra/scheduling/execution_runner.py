"""Execution runner: executes one task through its agent's capabilities.

Owns the lifecycle of a single Execution record. Dispatch returns an
``ExecutionHandle`` wrapping the background asyncio task so callers can await
or cancel the call itself. Capability failures never escape the runner: they
become a FAILED execution plus exactly one terminal event per attempt.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from orchestra.agents.capabilities import CapabilityRegistry, CapabilityResult, ExecutionContext
from orchestra.exceptions import CompletionTimeoutError, InactiveAgentError, InvalidStateError, NotFoundError
from orchestra.interfaces.event_bus import Event, EventType, IEventBus
from orchestra.interfaces.store import ITaskStore
from orchestra.models import (
    NON_TERMINAL_EXECUTION_STATUSES,
    Agent,
    Execution,
    ExecutionStatus,
    Task,
    TaskStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class ExecutionHandle:
    """Cancellable handle for one dispatched execution attempt."""

    def __init__(self, execution: Execution, task: "asyncio.Task[Optional[Execution]]"):
        self.execution_id = execution.id
        self.task_id = execution.task_id
        self.agent_id = execution.agent_id
        self._task = task
        # Set once the capability returned; the attempt can no longer be
        # paused or cancelled, only finalized.
        self.settled = False

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> bool:
        return self._task.cancel()

    async def wait(self) -> Optional[Execution]:
        """Await the attempt. Returns the final record, or ``None`` when the
        attempt was paused or cancelled."""
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled():
                return None
            raise


class ExecutionRunner:
    """Runs tasks through the capability registry and records the outcome."""

    def __init__(self, store: ITaskStore, event_bus: IEventBus, registry: CapabilityRegistry):
        self._store = store
        self._event_bus = event_bus
        self._registry = registry
        self._handles: Dict[str, ExecutionHandle] = {}

    # ── Dispatch ─────────────────────────────────────────────────────

    async def start_execution(self, task_id: str, agent_id: str) -> ExecutionHandle:
        """Validate, create a RUNNING execution and start it in the background.

        Raises:
            NotFoundError: task or agent missing
            InactiveAgentError: agent not active
            InvalidStateError: task not TODO, or already has an execution in flight
        """
        task = await self._store.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        agent = await self._store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        if not agent.is_active:
            raise InactiveAgentError(agent_id)
        if task.status != TaskStatus.TODO:
            raise InvalidStateError("Task", task_id, task.status.value, "execute")
        in_flight = await self._store.list_executions(task_id=task_id, statuses=NON_TERMINAL_EXECUTION_STATUSES)
        if in_flight:
            raise InvalidStateError("Task", task_id, in_flight[0].status.value, "execute")

        task = await self._store.update_task(task_id, status=TaskStatus.IN_PROGRESS)
        now = utcnow()
        execution = await self._store.create_execution(Execution(
            task_id=task_id,
            agent_id=agent_id,
            status=ExecutionStatus.RUNNING,
            progress=0,
            started_at=now,
        ))
        logger.info("Execution %s started: %r by %s", execution.id, task.title, agent.name)

        await self._publish(EventType.EXECUTION_STARTED, execution, task, agent_name=agent.name, task_title=task.title)
        await self._publish(EventType.AGENT_BUSY, execution, task, agent_name=agent.name)
        return self._spawn(execution, agent, task)

    async def execute_task(self, task_id: str, agent_id: str, timeout: Optional[float] = None) -> Execution:
        """Dispatch and wait for the attempt to finish.

        Raises:
            CompletionTimeoutError: no outcome within ``timeout`` seconds; the
                attempt keeps running in the background
        """
        handle = await self.start_execution(task_id, agent_id)
        try:
            result = await asyncio.wait_for(handle.wait(), timeout)
        except asyncio.TimeoutError:
            raise CompletionTimeoutError(
                f"Execution {handle.execution_id} did not finish within {timeout}s",
                details={"execution_id": handle.execution_id, "timeout": timeout},
            ) from None
        if result is None:
            result = await self._store.get_execution(handle.execution_id)
        return result

    def _spawn(self, execution: Execution, agent: Agent, task: Task) -> ExecutionHandle:
        future = asyncio.create_task(self._run(execution, agent, task))
        handle = ExecutionHandle(execution, future)
        self._handles[execution.id] = handle
        future.add_done_callback(lambda _: self._forget(handle))
        return handle

    def _forget(self, handle: ExecutionHandle) -> None:
        if self._handles.get(handle.execution_id) is handle:
            del self._handles[handle.execution_id]

    async def _run(self, execution: Execution, agent: Agent, task: Task) -> Optional[Execution]:
        context = ExecutionContext(execution, agent, task, self._store, self._event_bus)
        context.log("INFO", f"Execution started by agent {agent.name}")
        try:
            result = await self._registry.run(task, context)
        except Exception as e:
            logger.warning("Capability error in execution %s: %s", execution.id, e)
            result = CapabilityResult(success=False, error=str(e) or type(e).__name__)

        handle = self._handles.get(execution.id)
        if handle is not None:
            handle.settled = True

        try:
            return await self._finalize(execution, agent, task, result)
        except Exception as e:
            logger.exception("Failed to record outcome of execution %s", execution.id)
            return await self._finalize_after_store_error(execution, agent, task, e)

    async def _finalize(
        self, execution: Execution, agent: Agent, task: Task, result: CapabilityResult
    ) -> Optional[Execution]:
        current = await self._store.get_execution(execution.id)
        if current is None or current.status != ExecutionStatus.RUNNING:
            # Paused or cancelled under us; that path already emitted its event
            return current

        now = utcnow()
        if result.success:
            # Task first: a COMPLETED execution must never leave its task IN_PROGRESS
            await self._store.update_task(task.id, status=TaskStatus.DONE, completed_at=now)
            record = await self._store.update_execution(
                execution.id,
                status=ExecutionStatus.COMPLETED,
                progress=100,
                result=result.result,
                error=None,
                completed_at=now,
            )
            logger.info("Execution %s COMPLETED: %r", execution.id, task.title)
            await self._publish(
                EventType.EXECUTION_COMPLETED, record, task,
                result=result.result, artifacts=list(result.artifacts),
            )
        else:
            record = await self._store.update_execution(
                execution.id,
                status=ExecutionStatus.FAILED,
                error=result.error,
                completed_at=now,
            )
            logger.warning("Execution %s FAILED: %r: %s", execution.id, task.title, result.error)
            await self._publish(EventType.EXECUTION_FAILED, record, task, error=result.error)

        await self._publish(EventType.AGENT_IDLE, record, task, agent_name=agent.name)
        return record

    async def _finalize_after_store_error(
        self, execution: Execution, agent: Agent, task: Task, error: Exception
    ) -> Optional[Execution]:
        """Best-effort terminal event for an attempt whose outcome could not be
        stored. Marks the execution FAILED unless it is already terminal."""
        record = None
        try:
            record = await self._store.get_execution(execution.id)
            if record is not None and not record.status.is_terminal:
                record = await self._store.update_execution(
                    execution.id,
                    status=ExecutionStatus.FAILED,
                    error=f"Recording the outcome failed: {error}",
                    completed_at=utcnow(),
                )
        except Exception:
            logger.exception("Could not mark execution %s FAILED", execution.id)

        if record is not None and record.status == ExecutionStatus.CANCELLED:
            # cancel_execution emitted the terminal event
            return record
        if record is not None and record.status == ExecutionStatus.COMPLETED:
            await self._publish(EventType.EXECUTION_COMPLETED, record, task, result=record.result, artifacts=[])
        else:
            await self._publish(
                EventType.EXECUTION_FAILED, record or execution, task,
                error=record.error if record is not None and record.error else str(error),
            )
        await self._publish(EventType.AGENT_IDLE, record or execution, task, agent_name=agent.name)
        return record

    # ── Control ──────────────────────────────────────────────────────

    async def _get(self, execution_id: str) -> Execution:
        execution = await self._store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    def _interrupt(self, execution: Execution, action: str) -> None:
        handle = self._handles.get(execution.id)
        if handle is None:
            return
        if handle.settled:
            raise InvalidStateError("Execution", execution.id, "COMPLETING", action)
        handle.cancel()
        self._forget(handle)

    async def pause_execution(self, execution_id: str) -> Execution:
        """Pause a RUNNING execution; the in-flight call is cancelled."""
        execution = await self._get(execution_id)
        if execution.status != ExecutionStatus.RUNNING:
            raise InvalidStateError("Execution", execution_id, execution.status.value, "pause")
        self._interrupt(execution, "pause")

        record = await self._store.update_execution(execution_id, status=ExecutionStatus.PAUSED)
        task = await self._store.get_task(execution.task_id)
        logger.info("Execution %s paused", execution_id)
        await self._publish(EventType.EXECUTION_PAUSED, record, task)
        await self._publish(EventType.AGENT_IDLE, record, task)
        return record

    async def resume_execution(self, execution_id: str) -> ExecutionHandle:
        """Start a new attempt on a PAUSED execution record."""
        execution = await self._get(execution_id)
        if execution.status != ExecutionStatus.PAUSED:
            raise InvalidStateError("Execution", execution_id, execution.status.value, "resume")
        task = await self._store.get_task(execution.task_id)
        if task is None:
            raise NotFoundError("Task", execution.task_id)
        agent = await self._store.get_agent(execution.agent_id)
        if agent is None:
            raise NotFoundError("Agent", execution.agent_id)
        if not agent.is_active:
            raise InactiveAgentError(agent.id)

        if task.status != TaskStatus.IN_PROGRESS:
            task = await self._store.update_task(task.id, status=TaskStatus.IN_PROGRESS)
        record = await self._store.update_execution(execution_id, status=ExecutionStatus.RUNNING)
        logger.info("Execution %s resumed", execution_id)
        await self._publish(EventType.EXECUTION_RESUMED, record, task)
        await self._publish(EventType.AGENT_BUSY, record, task, agent_name=agent.name)
        return self._spawn(record, agent, task)

    async def cancel_execution(self, execution_id: str) -> Execution:
        """Cancel a non-terminal execution and emit its terminal event."""
        execution = await self._get(execution_id)
        if execution.status.is_terminal:
            raise InvalidStateError("Execution", execution_id, execution.status.value, "cancel")
        self._interrupt(execution, "cancel")

        record = await self._store.update_execution(
            execution_id, status=ExecutionStatus.CANCELLED, completed_at=utcnow()
        )
        task = await self._store.get_task(execution.task_id)
        logger.warning("Execution %s cancelled", execution_id)
        await self._publish(EventType.EXECUTION_CANCELLED, record, task)
        return record

    # ── Introspection ────────────────────────────────────────────────

    def get_handle(self, execution_id: str) -> Optional[ExecutionHandle]:
        return self._handles.get(execution_id)

    def active_handles(self) -> List[ExecutionHandle]:
        return list(self._handles.values())

    async def shutdown(self) -> None:
        """Cancel every in-flight call without touching stored status."""
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        for handle in handles:
            await handle.wait()
        self._handles.clear()

    # ── Events ───────────────────────────────────────────────────────

    async def _publish(self, event_type: EventType, execution: Execution, task: Optional[Task], **data) -> None:
        try:
            await self._event_bus.publish(Event(
                type=event_type,
                data=data,
                execution_id=execution.id,
                task_id=execution.task_id,
                agent_id=execution.agent_id,
                orchestration_id=task.orchestration_id if task else None,
            ))
        except Exception:
            logger.exception("Failed to publish %s for execution %s", event_type.value, execution.id)
