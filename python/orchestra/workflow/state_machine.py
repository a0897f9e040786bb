"""Task status workflow: valid transitions and helpers for status handling."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Union

from orchestra.exceptions import InvalidTransitionError
from orchestra.models import TaskStatus


class ActionVariant(str, Enum):
    DEFAULT = "default"
    SECONDARY = "secondary"
    DESTRUCTIVE = "destructive"


@dataclass(frozen=True)
class NextAction:
    action: str
    target_status: TaskStatus
    label: str
    variant: ActionVariant = ActionVariant.DEFAULT


# Current status -> statuses it may move to. DONE is final.
VALID_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.TODO: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.REVIEW, TaskStatus.BLOCKED, TaskStatus.TODO}),
    TaskStatus.REVIEW: frozenset({TaskStatus.DONE, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED}),
    TaskStatus.DONE: frozenset(),
    TaskStatus.BLOCKED: frozenset({TaskStatus.TODO, TaskStatus.IN_PROGRESS}),
}

_ACTIONS: Dict[TaskStatus, List[NextAction]] = {
    TaskStatus.TODO: [
        NextAction("start", TaskStatus.IN_PROGRESS, "Start task"),
        NextAction("block", TaskStatus.BLOCKED, "Block", ActionVariant.DESTRUCTIVE),
    ],
    TaskStatus.IN_PROGRESS: [
        NextAction("submit_review", TaskStatus.REVIEW, "Submit for review"),
        NextAction("revert_todo", TaskStatus.TODO, "Back to queue", ActionVariant.SECONDARY),
        NextAction("block", TaskStatus.BLOCKED, "Block", ActionVariant.DESTRUCTIVE),
    ],
    TaskStatus.REVIEW: [
        NextAction("complete", TaskStatus.DONE, "Complete"),
        NextAction("request_changes", TaskStatus.IN_PROGRESS, "Request changes", ActionVariant.SECONDARY),
        NextAction("block", TaskStatus.BLOCKED, "Block", ActionVariant.DESTRUCTIVE),
    ],
    TaskStatus.DONE: [],
    TaskStatus.BLOCKED: [
        NextAction("unblock_todo", TaskStatus.TODO, "Unblock to queue"),
        NextAction("unblock_progress", TaskStatus.IN_PROGRESS, "Unblock and resume"),
    ],
}


def _coerce(status: Union[TaskStatus, str]) -> TaskStatus:
    if isinstance(status, TaskStatus):
        return status
    if not is_valid_status(status):
        raise InvalidTransitionError(str(status), str(status))
    return TaskStatus(status)


def is_valid_transition(from_status: Union[TaskStatus, str], to_status: Union[TaskStatus, str]) -> bool:
    if not (is_valid_status(from_status) and is_valid_status(to_status)):
        return False
    return TaskStatus(to_status) in VALID_TRANSITIONS[TaskStatus(from_status)]


def validate_transition(from_status: Union[TaskStatus, str], to_status: Union[TaskStatus, str]) -> TaskStatus:
    """Return the target status, or raise InvalidTransitionError naming the pair."""
    if not is_valid_transition(from_status, to_status):
        src = getattr(from_status, "value", from_status)
        dst = getattr(to_status, "value", to_status)
        allowed = []
        if is_valid_status(from_status):
            allowed = sorted(s.value for s in VALID_TRANSITIONS[TaskStatus(from_status)])
        raise InvalidTransitionError(str(src), str(dst), allowed)
    return _coerce(to_status)


def next_actions(status: Union[TaskStatus, str]) -> List[NextAction]:
    return list(_ACTIONS[_coerce(status)])


def is_final_status(status: Union[TaskStatus, str]) -> bool:
    return not VALID_TRANSITIONS[_coerce(status)]


def default_status() -> TaskStatus:
    return TaskStatus.TODO


def all_statuses() -> List[TaskStatus]:
    return list(TaskStatus)


def is_valid_status(status: Union[TaskStatus, str]) -> bool:
    try:
        TaskStatus(status)
    except ValueError:
        return False
    return True
