"""Orchestration planning: plan models, validation and planner collaborators."""

from orchestra.planning.plan import (
    OrchestrationPlan,
    Phase,
    PlanValidation,
    SubtaskPlan,
    validate_plan,
)
from orchestra.planning.planner import HttpPlanner, IPlanner, StaticPlanner, parse_plan

__all__ = [
    "HttpPlanner",
    "IPlanner",
    "OrchestrationPlan",
    "Phase",
    "PlanValidation",
    "StaticPlanner",
    "SubtaskPlan",
    "parse_plan",
    "validate_plan",
]
