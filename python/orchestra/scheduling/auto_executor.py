"""Auto-executor: the per-orchestration scheduling loop.

Each iteration:
  1. Reads the orchestration; stops once it is missing or terminal
  2. Handles executions this loop dispatched that already finished
  3. Fills free concurrency slots with ready tasks (dispatch is not awaited)
  4. Stops on a stall: nothing started and nothing in flight
  5. Otherwise waits for one in-flight execution to finish (event or poll)
     and routes it through the completion/retry policy

Retry counters, active-loop markers and pause flags are process-local and do
not survive a restart.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Set

from orchestra.enhanced_logging import track_performance
from orchestra.exceptions import RetryExhaustedError
from orchestra.interfaces.event_bus import TERMINAL_EXECUTION_EVENTS, Event, EventType, IEventBus
from orchestra.interfaces.store import ITaskStore
from orchestra.models import (
    IN_FLIGHT_EXECUTION_STATUSES,
    TERMINAL_EXECUTION_STATUSES,
    ExecutionStatus,
    OrchestrationStatus,
    TaskStatus,
    utcnow,
)
from orchestra.scheduling.dependency_resolver import DependencyResolver
from orchestra.scheduling.execution_runner import ExecutionHandle, ExecutionRunner

logger = logging.getLogger(__name__)

# configure() bounds
MIN_PARALLEL, MAX_PARALLEL = 1, 10
MIN_RETRIES, MAX_RETRIES = 0, 10
MIN_TIMEOUT, MAX_TIMEOUT = 30.0, 30 * 60.0

HANDLED_HISTORY = 10000


def _clamp(value, low, high):
    return max(low, min(high, value))


# ── Value objects ────────────────────────────────────────────────────


@dataclass(frozen=True)
class SchedulerConfig:
    max_parallel_executions: int = 2
    retry_attempts: int = 3
    execution_timeout: float = 300.0  # seconds
    poll_interval: float = 3.0  # seconds

    def clamped(self) -> "SchedulerConfig":
        return replace(
            self,
            max_parallel_executions=int(_clamp(self.max_parallel_executions, MIN_PARALLEL, MAX_PARALLEL)),
            retry_attempts=int(_clamp(self.retry_attempts, MIN_RETRIES, MAX_RETRIES)),
            execution_timeout=float(_clamp(self.execution_timeout, MIN_TIMEOUT, MAX_TIMEOUT)),
            poll_interval=max(0.01, float(self.poll_interval)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LoopStats:
    orchestration_id: str
    started: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    elapsed: float = 0.0  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BatchResult:
    started: int = 0
    skipped_no_agent: int = 0
    skipped_at_limit: int = 0
    # dispatch failures routed through the retry policy
    retried: int = 0
    failed: int = 0
    execution_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CompletionResult:
    execution_id: str
    status: ExecutionStatus


@dataclass(frozen=True)
class HandledCompletion:
    success: bool
    retried: bool = False


@dataclass
class MonitorResult:
    handled: int = 0
    batch: BatchResult = field(default_factory=BatchResult)
    status: Optional[OrchestrationStatus] = None


# ── Scheduler ────────────────────────────────────────────────────────


class AutoExecutor:
    """Drives an orchestration's task graph to completion."""

    def __init__(
        self,
        store: ITaskStore,
        resolver: DependencyResolver,
        runner: ExecutionRunner,
        event_bus: IEventBus,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._runner = runner
        self._event_bus = event_bus
        self._config = config or SchedulerConfig()
        # task_id -> attempts consumed
        self._retry_counts: Dict[str, int] = {}
        self._active_loops: Set[str] = set()
        self._paused: Set[str] = set()
        # orchestration_id -> execution_id -> handle, until the completion is handled
        self._dispatched: Dict[str, Dict[str, ExecutionHandle]] = {}
        self._background: Set[asyncio.Task] = set()
        # execution_id -> outcome, so a completion is handled at most once
        self._handled: "OrderedDict[str, HandledCompletion]" = OrderedDict()

    # ── Loop ─────────────────────────────────────────────────────────

    async def start_orchestration_loop(self, orchestration_id: str) -> LoopStats:
        """Run the loop until the orchestration is terminal or stalls.

        A no-op returning zeroed stats when a loop is already active for the
        orchestration.
        """
        stats = LoopStats(orchestration_id=orchestration_id)
        if orchestration_id in self._active_loops:
            logger.info("Loop already active for %s, ignored", orchestration_id)
            return stats

        self._active_loops.add(orchestration_id)
        start = time.monotonic()
        logger.info("Loop started for orchestration %s", orchestration_id)

        try:
            await self._run_loop(orchestration_id, stats)
        except Exception:
            logger.exception("Loop for %s crashed", orchestration_id)
        finally:
            self._active_loops.discard(orchestration_id)
            self._dispatched.pop(orchestration_id, None)
            stats.elapsed = time.monotonic() - start

        logger.info("Loop finished for %s: %s", orchestration_id, stats.to_dict())
        return stats

    async def _run_loop(self, orchestration_id: str, stats: LoopStats) -> None:
        while True:
            orchestration = await self._store.get_orchestration(orchestration_id)
            if orchestration is None or orchestration.status.is_terminal:
                # Completions that landed in the same tick still clear retries and count
                for execution_id in await self._finished_dispatches(orchestration_id):
                    self._tally(stats, await self.handle_completion(execution_id))
                if orchestration is None:
                    logger.warning("Orchestration %s not found, stopping", orchestration_id)
                else:
                    logger.info("Loop stopping, final status %s", orchestration.status.value)
                return

            finished = await self._finished_dispatches(orchestration_id)
            if finished:
                for execution_id in finished:
                    self._tally(stats, await self.handle_completion(execution_id))
                continue

            in_flight = await self._store.count_executions(orchestration_id, IN_FLIGHT_EXECUTION_STATUSES)
            started = 0
            if in_flight < self._config.max_parallel_executions:
                batch = await self.execute_next_batch(orchestration_id)
                started = batch.started + batch.retried
                stats.started += batch.started
                stats.retried += batch.retried
                stats.failed += batch.failed

            waiting = await self._in_flight_ids(orchestration_id)
            if started == 0 and not waiting:
                await self._on_stall(orchestration_id)
                return
            if not waiting:
                # Everything dispatched this round already finished
                continue

            result = await self.wait_for_completion(waiting)
            if result is None:
                logger.debug("No completion among %d execution(s), re-evaluating", len(waiting))
                continue
            self._tally(stats, await self.handle_completion(result.execution_id))

    async def _on_stall(self, orchestration_id: str) -> None:
        tasks = await self._store.list_tasks(orchestration_id=orchestration_id)
        pending = [t for t in tasks if t.status != TaskStatus.DONE]
        if not pending:
            await self._resolver.refresh_progress(orchestration_id)
            logger.info("All %d subtasks of %s are done", len(tasks), orchestration_id)
        elif orchestration_id in self._paused:
            logger.info("Orchestration %s is paused, loop stalls", orchestration_id)
        else:
            blocked = await self._resolver.get_blocked_tasks(orchestration_id)
            logger.warning(
                "Orchestration %s stalled: %d task(s) pending, %d waiting on dependencies, "
                "the rest lack an active agent or are blocked",
                orchestration_id, len(pending), len(blocked),
            )

    @staticmethod
    def _tally(stats: LoopStats, handled: HandledCompletion) -> None:
        if handled.success:
            stats.completed += 1
        elif handled.retried:
            stats.retried += 1
        else:
            stats.failed += 1

    async def _in_flight_ids(self, orchestration_id: str) -> List[str]:
        executions = await self._store.list_executions(
            orchestration_id=orchestration_id, statuses=IN_FLIGHT_EXECUTION_STATUSES
        )
        return [e.id for e in executions]

    async def _finished_dispatches(self, orchestration_id: str) -> List[str]:
        """Dispatched executions that reached a terminal state but were not
        handled yet, oldest completion first. Drops tracked ids that were
        paused or removed."""
        tracked = self._dispatched.get(orchestration_id)
        if not tracked:
            return []
        executions = await self._store.list_executions(ids=list(tracked))
        found = {e.id for e in executions}
        for execution_id in list(tracked):
            if execution_id not in found:
                tracked.pop(execution_id, None)
        finished = []
        for e in executions:
            if e.status in TERMINAL_EXECUTION_STATUSES:
                finished.append(e)
            elif e.status == ExecutionStatus.PAUSED:
                tracked.pop(e.id, None)
        finished.sort(key=lambda e: e.completed_at or e.created_at)
        return [e.id for e in finished]

    def track(self, orchestration_id: str, handle: ExecutionHandle) -> None:
        """Watch a dispatched execution until its completion is handled."""
        self._dispatched.setdefault(orchestration_id, {})[handle.execution_id] = handle

    def _untrack(self, execution_id: str) -> None:
        for tracked in self._dispatched.values():
            tracked.pop(execution_id, None)

    def dispatched(self, orchestration_id: str) -> List[ExecutionHandle]:
        return list(self._dispatched.get(orchestration_id, {}).values())

    # ── Batch dispatch ───────────────────────────────────────────────

    @track_performance(operation="scheduler.execute_next_batch")
    async def execute_next_batch(self, orchestration_id: str) -> BatchResult:
        """Dispatch ready tasks into the free concurrency slots.

        Dispatch is not awaited; synchronous dispatch failures go through
        ``handle_failure`` instead of propagating.
        """
        result = BatchResult()
        if orchestration_id in self._paused:
            return result

        ready = await self._resolver.get_ready_tasks(orchestration_id, include_unassigned=True)
        if not ready:
            return result

        running = await self._store.count_executions(orchestration_id, IN_FLIGHT_EXECUTION_STATUSES)
        slots = self._config.max_parallel_executions - running
        if slots <= 0:
            result.skipped_at_limit = len(ready)
            return result

        active_agents = {a.id for a in await self._store.list_agents(active_only=True)}
        with_agent = [t for t in ready if t.agent_id in active_agents]
        without_agent = [t for t in ready if t.agent_id not in active_agents]

        result.skipped_no_agent = len(without_agent)
        if without_agent:
            logger.warning(
                "%d task(s) without an active agent skipped: %s",
                len(without_agent), ", ".join(repr(t.title) for t in without_agent),
            )

        to_start = with_agent[:slots]
        result.skipped_at_limit = max(0, len(with_agent) - slots)

        for task in to_start:
            logger.info("Dispatching %r (agent %s)", task.title, task.agent_id)
            try:
                handle = await self._runner.start_execution(task.id, task.agent_id)
            except Exception as e:
                logger.error("Dispatch of %r failed: %s", task.title, e)
                if await self.handle_failure(task.id, str(e)):
                    result.retried += 1
                else:
                    result.failed += 1
                continue
            self.track(orchestration_id, handle)
            result.started += 1
            result.execution_ids.append(handle.execution_id)

        return result

    # ── Completion detection ─────────────────────────────────────────

    async def wait_for_completion(
        self, execution_ids: Iterable[str], timeout: Optional[float] = None
    ) -> Optional[CompletionResult]:
        """Wait until one of the executions reaches a terminal state.

        Subscribes to terminal execution events and polls the store in
        parallel; the first signal wins. Returns ``None`` after the execution
        timeout, or early once none of the executions is in flight any more
        (paused or removed). The timeout does not cancel the executions
        themselves.
        """
        ids = set(execution_ids)
        if not ids:
            return None
        timeout = self._config.execution_timeout if timeout is None else timeout

        done: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_terminal(event: Event) -> None:
            if event.execution_id in ids and not done.done():
                done.set_result(CompletionResult(event.execution_id, ExecutionStatus(event.outcome)))

        subscriptions = [self._event_bus.subscribe(t, on_terminal) for t in TERMINAL_EXECUTION_EVENTS]
        poller = asyncio.create_task(self._poll_terminal(ids, done))
        try:
            return await asyncio.wait_for(done, timeout)
        except asyncio.TimeoutError:
            logger.warning("Timeout (%.0fs) waiting on executions", timeout)
            return None
        finally:
            for sub_id in subscriptions:
                self._event_bus.unsubscribe(sub_id)
            poller.cancel()

    async def _poll_terminal(self, ids: Set[str], done: asyncio.Future) -> None:
        while not done.done():
            try:
                executions = await self._store.list_executions(ids=ids)
            except Exception:
                logger.debug("Completion poll failed, retrying", exc_info=True)
                executions = None
            if executions is not None and not done.done():
                finished = [e for e in executions if e.status in TERMINAL_EXECUTION_STATUSES]
                if finished:
                    first = min(finished, key=lambda e: e.completed_at or e.created_at)
                    done.set_result(CompletionResult(first.id, first.status))
                    return
                if not any(e.status in IN_FLIGHT_EXECUTION_STATUSES for e in executions):
                    # Paused or removed; nothing left to wait on
                    done.set_result(None)
                    return
            await asyncio.sleep(self._config.poll_interval)

    # ── Completion / failure policy ──────────────────────────────────

    async def handle_completion(self, execution_id: str) -> HandledCompletion:
        """Clear retries and release dependents on success; otherwise apply
        the failure policy."""
        self._untrack(execution_id)
        if execution_id in self._handled:
            return self._handled[execution_id]
        # Claimed before any await so a concurrent caller does not handle it again
        self._remember(execution_id, HandledCompletion(success=False))

        execution = await self._store.get_execution(execution_id)
        if execution is None or execution.status not in TERMINAL_EXECUTION_STATUSES:
            self._handled.pop(execution_id, None)
            logger.warning(
                "handle_completion: execution %s is %s", execution_id,
                execution.status.value if execution else "missing",
            )
            return HandledCompletion(success=False)

        if execution.status == ExecutionStatus.COMPLETED:
            self._remember(execution_id, HandledCompletion(success=True))
            self._retry_counts.pop(execution.task_id, None)
            logger.info("Execution %s completed", execution_id)
            try:
                await self._resolver.on_task_completed(execution.task_id)
            except Exception:
                logger.exception("Releasing dependents of %s failed", execution.task_id)
            return self._handled[execution_id]

        error = execution.error or f"Execution {execution.status.value.lower()} without an error message"
        logger.warning("Execution %s %s: %s", execution_id, execution.status.value, error)
        retried = await self.handle_failure(execution.task_id, error)
        handled = HandledCompletion(success=False, retried=retried)
        self._remember(execution_id, handled)
        return handled

    def _remember(self, execution_id: str, handled: HandledCompletion) -> None:
        self._handled[execution_id] = handled
        while len(self._handled) > HANDLED_HISTORY:
            self._handled.popitem(last=False)

    async def handle_failure(self, task_id: str, error: str) -> bool:
        """Schedule a retry, or fail permanently once retries are exhausted.

        Returns True when a retry was scheduled.
        """
        task = await self._store.get_task(task_id)
        if task is None:
            logger.warning("handle_failure: task %s not found", task_id)
            return False
        if task.orchestration_id:
            orchestration = await self._store.get_orchestration(task.orchestration_id)
            if orchestration is not None and orchestration.status.is_terminal:
                logger.info(
                    "Failure of %r ignored, orchestration already %s",
                    task.title, orchestration.status.value,
                )
                return False

        attempts = self._retry_counts.get(task_id, 0)
        max_retries = self._config.retry_attempts

        if attempts < max_retries:
            self._retry_counts[task_id] = attempts + 1
            logger.info("Retry %d/%d for %r", attempts + 1, max_retries, task.title)
            if task.status != TaskStatus.TODO:
                try:
                    await self._store.update_task(task_id, status=TaskStatus.TODO)
                except Exception:
                    logger.exception("Resetting %s to TODO failed", task_id)
            await self._publish(Event(
                type=EventType.RETRY_SCHEDULED,
                data={"attempt": attempts + 1, "max_attempts": max_retries, "error": error},
                task_id=task_id,
                agent_id=task.agent_id,
                orchestration_id=task.orchestration_id,
            ))
            return True

        self._retry_counts.pop(task_id, None)
        exhausted = RetryExhaustedError(task_id, attempts + 1, error)
        logger.error("%r failed permanently: %s", task.title, exhausted)

        try:
            await self._store.update_task(task_id, status=TaskStatus.BLOCKED)
        except Exception:
            logger.exception("Marking %s BLOCKED failed", task_id)

        if task.orchestration_id:
            try:
                await self._store.update_orchestration(
                    task.orchestration_id,
                    status=OrchestrationStatus.FAILED,
                    current_phase=f'Permanent failure in "{task.title}" after {attempts + 1} attempt(s)',
                    completed_at=utcnow(),
                )
            except Exception:
                logger.exception("Marking orchestration %s FAILED failed", task.orchestration_id)
            await self._publish(Event(
                type=EventType.ORCHESTRATION_FAILED,
                data={
                    "task_title": task.title,
                    "error": error,
                    "retries_exhausted": True,
                    "attempts": attempts + 1,
                    "kind": exhausted.kind.value,
                },
                task_id=task_id,
                agent_id=task.agent_id,
                orchestration_id=task.orchestration_id,
            ))
            logger.error("Orchestration %s marked FAILED", task.orchestration_id)
        return False

    # ── Control ──────────────────────────────────────────────────────

    def pause(self, orchestration_id: str) -> None:
        """Stop dispatching for the orchestration; an active loop stalls."""
        self._paused.add(orchestration_id)

    def resume(self, orchestration_id: str) -> None:
        self._paused.discard(orchestration_id)

    def is_paused(self, orchestration_id: str) -> bool:
        return orchestration_id in self._paused

    async def monitor(self, orchestration_id: str) -> MonitorResult:
        """One forced iteration without waiting: handle finished dispatches,
        refresh progress and dispatch a batch."""
        result = MonitorResult()
        orchestration = await self._store.get_orchestration(orchestration_id)
        if orchestration is None:
            return result

        if not orchestration.status.is_terminal:
            for execution_id in await self._finished_dispatches(orchestration_id):
                await self.handle_completion(execution_id)
                result.handled += 1
            orchestration = await self._resolver.refresh_progress(orchestration_id)
            if orchestration is not None and not orchestration.status.is_terminal:
                result.batch = await self.execute_next_batch(orchestration_id)
                orchestration = await self._store.get_orchestration(orchestration_id)

        result.status = orchestration.status if orchestration else None
        return result

    def run_in_background(self, orchestration_id: str) -> Optional[asyncio.Task]:
        """Spawn the loop as a background task; ``None`` if already active."""
        if orchestration_id in self._active_loops:
            return None
        task = asyncio.create_task(self.start_orchestration_loop(orchestration_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

    # ── Configuration & introspection ────────────────────────────────

    def configure(self, **overrides: Any) -> SchedulerConfig:
        """Apply overrides; out-of-range values are clamped, not rejected."""
        unknown = set(overrides) - set(SchedulerConfig.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown scheduler settings: {sorted(unknown)}")
        values = {k: v for k, v in overrides.items() if v is not None}
        self._config = replace(self._config, **values).clamped()
        logger.info("Scheduler configuration updated: %s", self._config.to_dict())
        return self._config

    def get_config(self) -> SchedulerConfig:
        return self._config

    def is_loop_active(self, orchestration_id: str) -> bool:
        return orchestration_id in self._active_loops

    def active_loops(self) -> List[str]:
        return sorted(self._active_loops)

    def get_retry_count(self, task_id: str) -> int:
        return self._retry_counts.get(task_id, 0)

    def reset_retries(self, task_ids: Iterable[str]) -> None:
        """Forget consumed attempts, giving each task a full retry budget."""
        for task_id in task_ids:
            self._retry_counts.pop(task_id, None)

    async def _publish(self, event: Event) -> None:
        try:
            await self._event_bus.publish(event)
        except Exception:
            logger.exception("Failed to publish %s", event.type.value)
