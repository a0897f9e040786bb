"""Domain records shared by the scheduler, the runner and the stores."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Set


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────


class TaskStatus(str, Enum):
    """Workflow status of a task."""

    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    DONE = "DONE"
    BLOCKED = "BLOCKED"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @property
    def weight(self) -> int:
        """Numeric weight, higher runs first."""
        return _PRIORITY_WEIGHTS[self]


_PRIORITY_WEIGHTS = {
    TaskPriority.URGENT: 10,
    TaskPriority.HIGH: 7,
    TaskPriority.MEDIUM: 4,
    TaskPriority.LOW: 1,
}


class OrchestrationStatus(str, Enum):
    PLANNING = "PLANNING"
    CREATING_SUBTASKS = "CREATING_SUBTASKS"
    ASSIGNING_AGENTS = "ASSIGNING_AGENTS"
    EXECUTING = "EXECUTING"
    REVIEWING = "REVIEWING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORCHESTRATION_STATUSES


class ExecutionStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


class AgentRole(str, Enum):
    """Capability classes of execution agents."""

    MAESTRO = "MAESTRO"  # planning, coordination, documentation
    SENTINEL = "SENTINEL"  # review, tests, security
    ARCHITECTON = "ARCHITECTON"  # architecture, data, infrastructure
    PIXEL = "PIXEL"  # UI/UX
    FINISH = "FINISH"  # packaging, delivery


TERMINAL_ORCHESTRATION_STATUSES: FrozenSet[OrchestrationStatus] = frozenset(
    {OrchestrationStatus.COMPLETED, OrchestrationStatus.FAILED}
)
TERMINAL_EXECUTION_STATUSES: FrozenSet[ExecutionStatus] = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)
NON_TERMINAL_EXECUTION_STATUSES: FrozenSet[ExecutionStatus] = frozenset(
    {ExecutionStatus.QUEUED, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED}
)
# Executions that occupy a concurrency slot.
IN_FLIGHT_EXECUTION_STATUSES: FrozenSet[ExecutionStatus] = frozenset(
    {ExecutionStatus.RUNNING, ExecutionStatus.QUEUED}
)


# ── Records ──────────────────────────────────────────────────────────


@dataclass
class Task:
    """A unit of work, standalone or a subtask of an orchestration."""

    title: str
    id: str = field(default_factory=new_id)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    depends_on: Set[str] = field(default_factory=set)
    dependents: Set[str] = field(default_factory=set)
    agent_id: Optional[str] = None
    orchestration_id: Optional[str] = None
    parent_id: Optional[str] = None
    estimated_hours: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


@dataclass
class Agent:
    """An execution agent; dispatch is only allowed to active agents."""

    name: str
    role: AgentRole
    id: str = field(default_factory=new_id)
    is_active: bool = True


@dataclass
class Orchestration:
    """One run of decomposing and executing a parent task's subtask graph."""

    parent_task_id: str
    id: str = field(default_factory=new_id)
    status: OrchestrationStatus = OrchestrationStatus.PLANNING
    current_phase: str = ""
    total_subtasks: int = 0
    completed_subtasks: int = 0
    plan: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


@dataclass
class Execution:
    """A single attempt of an agent at a task."""

    task_id: str
    agent_id: str
    id: str = field(default_factory=new_id)
    status: ExecutionStatus = ExecutionStatus.QUEUED
    progress: int = 0
    error: Optional[str] = None
    result: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
