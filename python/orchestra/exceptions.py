"""
Orchestra error system.

Every error raised by the scheduler stack derives from ``OrchestraException``
and carries an explicit ``ErrorKind`` tag. Callers branch on the kind (or the
exception type), never on message text.

Kinds:
- NOT_FOUND           referenced task/orchestration/agent/execution absent
- INACTIVE_AGENT      dispatch target is not active
- INVALID_TRANSITION  task status change outside the workflow table
- INVALID_STATE       control action not allowed in the current status
- DEPENDENCY_CYCLE    plan contains a cycle (rejected at creation)
- EXECUTION_FAILURE   agent capability error, local to one task
- TIMEOUT             no completion observed within the wait window
- RETRY_EXHAUSTED     permanent task failure after the attempt bound
- PLANNING            planning collaborator failed or returned garbage
- VALIDATION          malformed input
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================================
# Enums
# ============================================================================

class ErrorKind(str, Enum):
    """Discriminator carried by every Orchestra error."""
    NOT_FOUND = "not_found"
    INACTIVE_AGENT = "inactive_agent"
    INVALID_TRANSITION = "invalid_transition"
    INVALID_STATE = "invalid_state"
    DEPENDENCY_CYCLE = "dependency_cycle"
    EXECUTION_FAILURE = "execution_failure"
    TIMEOUT = "timeout"
    RETRY_EXHAUSTED = "retry_exhausted"
    PLANNING = "planning"
    VALIDATION = "validation"


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


# ============================================================================
# Error context
# ============================================================================

@dataclass
class ErrorContext:
    """Error metadata exposed to API callers."""
    error_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    kind: ErrorKind = ErrorKind.VALIDATION
    severity: ErrorSeverity = ErrorSeverity.ERROR
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    is_recoverable: bool = True
    http_status: int = 500

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
            "http_status": self.http_status,
        }


# ============================================================================
# Exception hierarchy
# ============================================================================

class OrchestraException(Exception):
    """Base exception for all Orchestra errors."""

    kind: ErrorKind = ErrorKind.VALIDATION
    default_status: int = 500
    default_severity: ErrorSeverity = ErrorSeverity.ERROR
    recoverable: bool = True

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        http_status: Optional[int] = None,
        severity: Optional[ErrorSeverity] = None,
    ):
        self.message = message
        self.details = details or {}
        self.http_status = http_status or self.default_status
        self.severity = severity or self.default_severity
        self.context = ErrorContext(
            kind=self.kind,
            severity=self.severity,
            message=message,
            details=self.details,
            is_recoverable=self.recoverable,
            http_status=self.http_status,
        )
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return self.context.to_dict()

    def to_api_response(self) -> Dict[str, Any]:
        """Response body for HTTP callers."""
        return {"success": False, "error": self.context.to_dict()}


class NotFoundError(OrchestraException):
    """Referenced entity does not exist."""
    kind = ErrorKind.NOT_FOUND
    default_status = 404
    default_severity = ErrorSeverity.WARNING

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} {entity_id} not found",
            details={"entity": entity, "id": entity_id},
        )


class InactiveAgentError(OrchestraException):
    """Dispatch target agent is not active."""
    kind = ErrorKind.INACTIVE_AGENT
    default_status = 409
    default_severity = ErrorSeverity.WARNING

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} is not active", details={"agent_id": agent_id})


class InvalidTransitionError(OrchestraException):
    """Task status change violates the workflow table."""
    kind = ErrorKind.INVALID_TRANSITION
    default_status = 400
    default_severity = ErrorSeverity.WARNING

    def __init__(self, from_status: str, to_status: str, allowed: Optional[List[str]] = None):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Transition {from_status} -> {to_status} is not allowed",
            details={"from": from_status, "to": to_status, "allowed": allowed or []},
        )


class InvalidStateError(OrchestraException):
    """Control action is not allowed in the current status."""
    kind = ErrorKind.INVALID_STATE
    default_status = 409
    default_severity = ErrorSeverity.WARNING

    def __init__(self, entity: str, entity_id: str, status: str, action: str):
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action} {entity} {entity_id} with status {status}",
            details={"entity": entity, "id": entity_id, "status": status, "action": action},
        )


class PlanValidationError(OrchestraException):
    """Plan failed structural validation."""
    kind = ErrorKind.VALIDATION
    default_status = 422
    default_severity = ErrorSeverity.WARNING

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid plan: " + "; ".join(self.errors), details={"errors": self.errors})


class DependencyCycleError(PlanValidationError):
    """Plan or graph contains a dependency cycle."""
    kind = ErrorKind.DEPENDENCY_CYCLE

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__([f"Dependency cycle detected: {' -> '.join(self.cycle)}"])
        self.details["cycle"] = self.cycle
        self.context.details = self.details


class ExecutionFailureError(OrchestraException):
    """Agent capability failed; local to one task."""
    kind = ErrorKind.EXECUTION_FAILURE
    default_status = 500


class CompletionTimeoutError(OrchestraException):
    """No completion observed within the wait window."""
    kind = ErrorKind.TIMEOUT
    default_status = 504
    default_severity = ErrorSeverity.WARNING


class RetryExhaustedError(OrchestraException):
    """Task failed permanently after the configured attempt bound."""
    kind = ErrorKind.RETRY_EXHAUSTED
    default_status = 500
    recoverable = False

    def __init__(self, task_id: str, attempts: int, error: str):
        self.task_id = task_id
        self.attempts = attempts
        super().__init__(
            f"Task {task_id} failed after {attempts} attempt(s): {error}",
            details={"task_id": task_id, "attempts": attempts, "error": error},
        )


class PlanningError(OrchestraException):
    """Planning collaborator failed."""
    kind = ErrorKind.PLANNING
    default_status = 502
