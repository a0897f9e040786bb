"""Planning collaborators: turn a task description into an OrchestrationPlan."""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from orchestra.exceptions import PlanningError
from orchestra.models import Task
from orchestra.planning.plan import OrchestrationPlan

logger = logging.getLogger(__name__)


class IPlanner(Protocol):
    """Interface for the planning service.

    Consumed once per orchestration, before any subtask exists.
    """

    async def plan(self, task: Task) -> OrchestrationPlan:
        """Decompose a task into phases of subtasks.

        Args:
            task: The parent task (title, description, priority)

        Returns:
            Plan with suggested agent role, priority, estimated effort and
            intra-plan dependencies (by title) per subtask

        Raises:
            PlanningError: if the service fails or returns an unusable plan
        """
        ...


def parse_plan(payload: Any) -> OrchestrationPlan:
    """Validate a raw plan payload, unwrapping ``{"plan": {...}}``."""
    if isinstance(payload, dict) and "plan" in payload and "phases" not in payload:
        payload = payload["plan"]
    if not isinstance(payload, dict) or not isinstance(payload.get("phases"), list):
        raise PlanningError('Invalid plan: "phases" missing or not a list')
    try:
        return OrchestrationPlan.model_validate(payload)
    except ValidationError as e:
        raise PlanningError(
            f"Invalid plan: {e.error_count()} validation error(s)",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e


class HttpPlanner:
    """Planner backed by a remote planning service.

    POSTs ``{title, description, priority, estimated_hours}`` to ``url`` and
    expects a plan document back. Transport errors are retried with
    exponential backoff.
    """

    def __init__(
        self,
        url: Optional[str],
        timeout: float = 120.0,
        api_key: Optional[str] = None,
        max_attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
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

    async def plan(self, task: Task) -> OrchestrationPlan:
        if not self.url:
            raise PlanningError("Planner URL not configured")

        body = {
            "title": task.title,
            "description": task.description or "",
            "priority": task.priority.value,
            "estimated_hours": task.estimated_hours,
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
            raise PlanningError(f"Planner request failed: {e}") from e

        if r.status_code != 200:
            raise PlanningError(f"Planner error: {r.status_code}", details={"status_code": r.status_code})
        try:
            payload = r.json()
        except ValueError as e:
            raise PlanningError("Planner returned non-JSON response") from e

        plan = parse_plan(payload)
        logger.info("Planned %d subtask(s) in %d phase(s) for %r", len(plan.subtasks), len(plan.phases), task.title)
        return plan


class StaticPlanner:
    """Planner returning a predefined plan, for caller-supplied plans."""

    def __init__(self, plan: OrchestrationPlan):
        self._plan = plan

    async def plan(self, task: Task) -> OrchestrationPlan:
        return self._plan.model_copy(deep=True)
