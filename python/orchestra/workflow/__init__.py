"""Task status workflow."""

from orchestra.workflow.state_machine import (
    VALID_TRANSITIONS,
    NextAction,
    is_final_status,
    is_valid_transition,
    next_actions,
    validate_transition,
)

__all__ = [
    "VALID_TRANSITIONS",
    "NextAction",
    "is_final_status",
    "is_valid_transition",
    "next_actions",
    "validate_transition",
]
