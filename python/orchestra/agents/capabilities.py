"""Agent capabilities: the executors that perform a subtask's work.

Capabilities are registered per ``AgentRole``. The execution runner looks up
the capabilities for the dispatched agent's role and runs them in order.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from orchestra.exceptions import ExecutionFailureError
from orchestra.interfaces.event_bus import Event, EventType, IEventBus
from orchestra.interfaces.store import ITaskStore
from orchestra.models import Agent, AgentRole, Execution, Task, utcnow

logger = logging.getLogger(__name__)

# Progress reported before the first capability runs and after the last one.
PROGRESS_START = 10
PROGRESS_SPAN = 80

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


@dataclass
class CapabilityResult:
    success: bool
    result: Optional[str] = None
    error: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)


@dataclass
class ExecutionLogEntry:
    level: str
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utcnow)


class ExecutionContext:
    """What a capability sees of its execution: the records plus progress
    reporting and a per-execution log."""

    def __init__(
        self,
        execution: Execution,
        agent: Agent,
        task: Task,
        store: ITaskStore,
        event_bus: IEventBus,
    ):
        self.execution = execution
        self.agent = agent
        self.task = task
        self.logs: List[ExecutionLogEntry] = []
        self._store = store
        self._event_bus = event_bus

    async def update_progress(self, progress: int) -> int:
        """Persist progress clamped to [0, 100] and publish EXECUTION_PROGRESS."""
        clamped = max(0, min(100, int(progress)))
        await self._store.update_execution(self.execution.id, progress=clamped)
        self.execution.progress = clamped
        await self._event_bus.publish(Event(
            type=EventType.EXECUTION_PROGRESS,
            data={"progress": clamped},
            execution_id=self.execution.id,
            task_id=self.task.id,
            agent_id=self.agent.id,
            orchestration_id=self.task.orchestration_id,
        ))
        return clamped

    def log(self, level: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        level = level.upper()
        self.logs.append(ExecutionLogEntry(level=level, message=message, data=data))
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "[%s] %s", self.execution.id[:8], message)


class AgentCapability(Protocol):
    """A unit of agent work.

    ``execute`` returns a CapabilityResult; raising is also allowed and is
    treated as a failed result by the runner.
    """

    name: str

    async def execute(self, task: Task, context: ExecutionContext) -> CapabilityResult:
        ...


class CallableCapability:
    """Adapts an ``async (task, context) -> CapabilityResult`` function."""

    def __init__(
        self,
        name: str,
        func: Callable[[Task, ExecutionContext], Awaitable[CapabilityResult]],
        description: str = "",
    ):
        self.name = name
        self.description = description
        self._func = func

    async def execute(self, task: Task, context: ExecutionContext) -> CapabilityResult:
        return await self._func(task, context)


class HttpCapability:
    """Capability backed by a remote agent service.

    POSTs the task to ``url`` and expects ``{"success", "result", "error",
    "artifacts"}`` back. Transport errors are retried; HTTP errors and
    malformed payloads become a failed result.
    """

    def __init__(
        self,
        name: str,
        url: str,
        timeout: float = 300.0,
        api_key: Optional[str] = None,
        max_attempts: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.url = url
        self.timeout = timeout
        self.api_key = api_key
        self.max_attempts = max_attempts
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    async def execute(self, task: Task, context: ExecutionContext) -> CapabilityResult:
        body = {
            "execution_id": context.execution.id,
            "agent": {"id": context.agent.id, "name": context.agent.name, "role": context.agent.role.value},
            "task": {
                "id": task.id,
                "title": task.title,
                "description": task.description or "",
                "priority": task.priority.value,
                "estimated_hours": task.estimated_hours,
            },
        }
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                        r = await client.post(self.url, headers=self._headers(), json=body)
        except httpx.HTTPError as e:
            return CapabilityResult(success=False, error=f"{self.name} request failed: {e}")

        if r.status_code != 200:
            return CapabilityResult(success=False, error=f"{self.name} error: {r.status_code}")
        try:
            payload = r.json()
        except ValueError:
            return CapabilityResult(success=False, error=f"{self.name} returned non-JSON response")
        if not isinstance(payload, dict):
            return CapabilityResult(success=False, error=f"{self.name} returned an invalid payload")

        success = bool(payload.get("success", False))
        return CapabilityResult(
            success=success,
            result=payload.get("result"),
            error=None if success else payload.get("error") or f"{self.name} reported failure",
            artifacts=[str(a) for a in payload.get("artifacts") or []],
        )


class CapabilityRegistry:
    """Capabilities per agent role, run in registration order."""

    def __init__(self) -> None:
        self._capabilities: Dict[AgentRole, List[AgentCapability]] = {}

    def register(self, role: AgentRole, capability: AgentCapability) -> None:
        self._capabilities.setdefault(role, []).append(capability)
        logger.info("Registered capability %s for %s", capability.name, role.value)

    def get(self, role: AgentRole) -> List[AgentCapability]:
        return list(self._capabilities.get(role, []))

    def roles(self) -> List[AgentRole]:
        return [role for role, caps in self._capabilities.items() if caps]

    async def run(self, task: Task, context: ExecutionContext) -> CapabilityResult:
        """Run every capability for the agent's role.

        Progress advances from 10 to 90 across the capabilities; the first
        failing capability short-circuits.

        Raises:
            ExecutionFailureError: if the role has no capability
        """
        capabilities = self.get(context.agent.role)
        if not capabilities:
            raise ExecutionFailureError(
                f"No capability registered for role {context.agent.role.value}",
                details={"role": context.agent.role.value},
            )

        results: List[str] = []
        artifacts: List[str] = []
        step = PROGRESS_SPAN / len(capabilities)
        await context.update_progress(PROGRESS_START)

        for i, capability in enumerate(capabilities):
            context.log("INFO", f"Running capability {capability.name}")
            result = await capability.execute(task, context)
            if not result.success:
                return result
            if result.result:
                results.append(result.result)
            artifacts.extend(result.artifacts)
            await context.update_progress(PROGRESS_START + round(step * (i + 1)))

        return CapabilityResult(success=True, result="\n\n---\n\n".join(results), artifacts=artifacts)
