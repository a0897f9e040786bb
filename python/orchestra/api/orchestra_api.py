"""
Orchestra: FastAPI application entry point.

Control API for the scheduler:
- /health: service health status
- /api/agents, /api/tasks: agents and tasks the orchestrations work on
- /api/orchestrations: create, inspect and control orchestrations
- /api/executions: per-execution control
- /api/scheduler/config: scheduler settings
- /api/events, /api/events/stream: event history and live SSE stream
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from orchestra import __version__
from orchestra.config.settings import get_settings
from orchestra.di_container import get_container, init_container, shutdown_container
from orchestra.enhanced_logging import configure_logging
from orchestra.exceptions import InvalidStateError, NotFoundError, OrchestraException, PlanningError, PlanValidationError
from orchestra.interfaces.event_bus import Event, EventType
from orchestra.models import Agent, AgentRole, Execution, Task, TaskPriority, TaskStatus
from orchestra.planning.planner import parse_plan

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class AgentRequest(BaseModel):
    name: str = Field(min_length=1)
    role: AgentRole
    is_active: bool = True


class AgentUpdateRequest(BaseModel):
    is_active: bool


class TaskRequest(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    agent_id: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)


class TaskStatusRequest(BaseModel):
    status: TaskStatus


class OrchestrateRequest(BaseModel):
    task_id: str
    # Skips the planner when given
    plan: Optional[Dict[str, Any]] = None
    auto_start: bool = True


class OrchestrationActionRequest(BaseModel):
    action: Literal["monitor", "pause", "resume", "cancel"]


class ExecutionRequest(BaseModel):
    task_id: str
    agent_id: Optional[str] = None


class ExecutionActionRequest(BaseModel):
    action: Literal["pause", "resume", "cancel"]


class SchedulerConfigRequest(BaseModel):
    max_parallel_executions: Optional[int] = None
    retry_attempts: Optional[int] = None
    execution_timeout: Optional[float] = None
    poll_interval: Optional[float] = Field(default=None, gt=0)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _agent_dict(agent: Agent) -> Dict[str, Any]:
    return {"id": agent.id, "name": agent.name, "role": agent.role.value, "is_active": agent.is_active}


def _task_dict(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status.value,
        "priority": task.priority.value,
        "agent_id": task.agent_id,
        "orchestration_id": task.orchestration_id,
        "parent_id": task.parent_id,
        "estimated_hours": task.estimated_hours,
        "depends_on": sorted(task.depends_on),
        "dependents": sorted(task.dependents),
        "created_at": _iso(task.created_at),
        "completed_at": _iso(task.completed_at),
    }


def _execution_dict(execution: Execution) -> Dict[str, Any]:
    return {
        "id": execution.id,
        "task_id": execution.task_id,
        "agent_id": execution.agent_id,
        "status": execution.status.value,
        "progress": execution.progress,
        "error": execution.error,
        "result": execution.result,
        "created_at": _iso(execution.created_at),
        "started_at": _iso(execution.started_at),
        "completed_at": _iso(execution.completed_at),
    }


# ---------------------------------------------------------------------------
# Application lifecycle
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(application: FastAPI):
    settings = get_settings()
    configure_logging(level=settings.log_level, fmt=settings.log_format, log_file=settings.log_file)
    logger.info("Orchestra %s starting up (%s)", __version__, settings.environment)
    container = init_container(settings)
    logger.info("DI container initialized with %d services", len(container.status()))
    yield
    await shutdown_container()
    logger.info("Orchestra shutting down")


app = FastAPI(
    title="Orchestra",
    version=__version__,
    description="Autonomous orchestration scheduler",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OrchestraException)
async def orchestra_exception_handler(request: Request, exc: OrchestraException):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.http_status, content=exc.to_api_response())


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    container = get_container()
    return {
        "status": "ok",
        "version": __version__,
        "services": container.status(),
        "active_loops": container.scheduler.active_loops(),
    }


# --- Agents ---


@app.post("/api/agents", status_code=201)
async def create_agent(req: AgentRequest):
    container = get_container()
    agent = await container.store.create_agent(Agent(name=req.name, role=req.role, is_active=req.is_active))
    return _agent_dict(agent)


@app.get("/api/agents")
async def list_agents(role: Optional[AgentRole] = None, active_only: bool = False):
    container = get_container()
    return [_agent_dict(a) for a in await container.store.list_agents(role=role, active_only=active_only)]


@app.patch("/api/agents/{agent_id}")
async def update_agent(agent_id: str, req: AgentUpdateRequest):
    container = get_container()
    agent = await container.store.update_agent(agent_id, is_active=req.is_active)
    return _agent_dict(agent)


# --- Tasks ---


@app.post("/api/tasks", status_code=201)
async def create_task(req: TaskRequest):
    container = get_container()
    store = container.store
    for dep_id in req.depends_on:
        if await store.get_task(dep_id) is None:
            raise NotFoundError("Task", dep_id)
    task = await store.create_task(Task(
        title=req.title,
        description=req.description,
        priority=req.priority,
        estimated_hours=req.estimated_hours,
        agent_id=req.agent_id,
    ))
    for dep_id in req.depends_on:
        await store.add_dependency(task.id, dep_id)
    return _task_dict(await store.get_task(task.id))


@app.get("/api/tasks/{task_id}")
async def get_task(task_id: str):
    container = get_container()
    task = await container.store.get_task(task_id)
    if task is None:
        raise NotFoundError("Task", task_id)
    return _task_dict(task)


@app.patch("/api/tasks/{task_id}/status")
async def transition_task(task_id: str, req: TaskStatusRequest):
    """Manual status change, validated against the workflow transitions."""
    container = get_container()
    task = await container.orchestrator.transition_task(task_id, req.status)
    return _task_dict(task)


# --- Orchestrations ---


@app.post("/api/orchestrations", status_code=201)
async def create_orchestration(req: OrchestrateRequest):
    container = get_container()
    plan = None
    if req.plan is not None:
        try:
            plan = parse_plan(req.plan)
        except PlanningError as e:
            raise PlanValidationError([e.message]) from e

    result = await container.orchestrator.orchestrate(req.task_id, plan=plan)
    started = False
    if req.auto_start:
        started = await container.orchestrator.start(result.orchestration_id)
    return {**result.to_dict(), "started": started}


@app.get("/api/orchestrations/{orchestration_id}")
async def get_orchestration(orchestration_id: str):
    container = get_container()
    snapshot = await container.orchestrator.get_status(orchestration_id)
    return snapshot.to_dict()


@app.post("/api/orchestrations/{orchestration_id}/start")
async def start_orchestration(orchestration_id: str):
    """Start the scheduling loop; a no-op when one is already running."""
    container = get_container()
    started = await container.orchestrator.start(orchestration_id)
    return {"orchestration_id": orchestration_id, "started": started}


@app.patch("/api/orchestrations/{orchestration_id}")
async def control_orchestration(orchestration_id: str, req: OrchestrationActionRequest):
    container = get_container()
    orchestrator = container.orchestrator

    if req.action == "monitor":
        result = await orchestrator.monitor(orchestration_id)
        return {
            "action": "monitor",
            "status": result.status.value if result.status else None,
            "handled": result.handled,
            "started": result.batch.started,
            "skipped_no_agent": result.batch.skipped_no_agent,
            "skipped_at_limit": result.batch.skipped_at_limit,
        }

    handlers = {
        "pause": orchestrator.pause,
        "resume": orchestrator.resume,
        "cancel": orchestrator.cancel,
    }
    result = await handlers[req.action](orchestration_id)
    return {
        "action": result.action,
        "status": result.orchestration.status.value,
        "current_phase": result.orchestration.current_phase,
        "affected_executions": result.affected_executions,
        "reset_tasks": result.reset_tasks,
    }


# --- Executions ---


@app.post("/api/executions", status_code=201)
async def start_execution(req: ExecutionRequest):
    """Run a single task outside any orchestration loop."""
    container = get_container()
    agent_id = req.agent_id
    if agent_id is None:
        task = await container.store.get_task(req.task_id)
        if task is None:
            raise NotFoundError("Task", req.task_id)
        agent_id = task.agent_id
    if agent_id is None:
        raise InvalidStateError("Task", req.task_id, "UNASSIGNED", "execute")
    handle = await container.runner.start_execution(req.task_id, agent_id)
    return _execution_dict(await container.store.get_execution(handle.execution_id))


@app.get("/api/executions/{execution_id}")
async def get_execution(execution_id: str):
    container = get_container()
    execution = await container.store.get_execution(execution_id)
    if execution is None:
        raise NotFoundError("Execution", execution_id)
    return _execution_dict(execution)


@app.patch("/api/executions/{execution_id}")
async def control_execution(execution_id: str, req: ExecutionActionRequest):
    container = get_container()
    orchestrator = container.orchestrator
    handlers = {
        "pause": orchestrator.pause_execution,
        "resume": orchestrator.resume_execution,
        "cancel": orchestrator.cancel_execution,
    }
    execution = await handlers[req.action](execution_id)
    return _execution_dict(execution)


# --- Scheduler ---


@app.get("/api/scheduler/config")
async def get_scheduler_config():
    container = get_container()
    return container.scheduler.get_config().to_dict()


@app.put("/api/scheduler/config")
async def update_scheduler_config(req: SchedulerConfigRequest):
    """Apply overrides; out-of-range values are clamped."""
    container = get_container()
    config = container.scheduler.configure(**req.model_dump(exclude_none=True))
    return config.to_dict()


# --- Events ---


@app.get("/api/events")
async def recent_events(limit: int = 100, type: Optional[EventType] = None):
    container = get_container()
    limit = min(max(1, limit), 1000)
    return {"events": [e.to_dict() for e in container.event_bus.history(limit=limit, event_type=type)]}


@app.get("/api/audit")
async def audit_trail(limit: int = 100, hours: float = 1.0):
    container = get_container()
    limit = min(max(1, limit), 1000)
    audit = container.audit_log
    return {"events": audit.get_recent(limit=limit), "summary": audit.get_summary(hours=hours)}


STREAM_BUFFER_SIZE = 256


async def event_stream(
    event_bus,
    orchestration_id: Optional[str] = None,
    buffer_size: int = STREAM_BUFFER_SIZE,
    ping_interval: float = 30.0,
):
    """Yield SSE messages for bus events. A slow client loses the oldest
    buffered events, never the newest; the subscription lives only while the
    generator runs."""
    queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)

    def on_event(event: Event) -> None:
        if orchestration_id is not None and event.orchestration_id != orchestration_id:
            return
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(event)

    sub_id = event_bus.subscribe_all(on_event)
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=ping_interval)
                yield {"event": event.type.value, "data": json.dumps(event.to_dict(), default=str)}
            except asyncio.TimeoutError:
                yield {"event": "ping", "data": ""}
    finally:
        event_bus.unsubscribe(sub_id)


@app.get("/api/events/stream")
async def stream_events(orchestration_id: Optional[str] = None):
    """Stream bus events as Server-Sent Events, optionally for one orchestration."""
    return EventSourceResponse(event_stream(get_container().event_bus, orchestration_id))


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
