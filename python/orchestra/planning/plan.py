"""Orchestration plan models and structural validation.

A plan references subtasks by title since the tasks do not exist yet when the
plan is produced. ``validate_plan`` runs before any subtask is created, so a
cyclic plan never reaches the scheduler.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

from orchestra.exceptions import DependencyCycleError, PlanValidationError
from orchestra.models import AgentRole, TaskPriority
from orchestra.scheduling.graph import execution_levels, find_cycle

logger = logging.getLogger(__name__)

# Dependency chains deeper than this are flagged as a sequential bottleneck.
MAX_RECOMMENDED_LEVELS = 5


class SubtaskPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    description: str = ""
    agent: AgentRole
    estimated_hours: float = Field(default=1.0, ge=0, alias="estimatedHours")
    priority: TaskPriority = TaskPriority.MEDIUM
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")


class Phase(BaseModel):
    name: str
    subtasks: List[SubtaskPlan] = Field(default_factory=list)


class OrchestrationPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    analysis: str = ""
    phases: List[Phase]
    estimated_total_hours: float = Field(default=0.0, ge=0, alias="estimatedTotalHours")
    recommended_order: List[str] = Field(default_factory=list, alias="recommendedOrder")

    @property
    def subtasks(self) -> List[SubtaskPlan]:
        """All subtasks across phases, in plan order."""
        return [s for phase in self.phases for s in phase.subtasks]


@dataclass
class PlanValidation:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    levels: List[List[str]] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_plan(plan: OrchestrationPlan, raise_on_error: bool = True) -> PlanValidation:
    """Check a plan's dependency structure.

    Errors: duplicate titles, dependencies on unknown titles, self
    dependencies, cycles. Warnings: several unrelated roots, chains deeper
    than ``MAX_RECOMMENDED_LEVELS``, no dependencies at all.

    Raises:
        DependencyCycleError: if the title graph has a cycle
        PlanValidationError: for other structural errors (when ``raise_on_error``)
    """
    result = PlanValidation()
    subtasks = plan.subtasks
    titles = {s.title for s in subtasks}

    counts: Dict[str, int] = {}
    for s in subtasks:
        counts[s.title] = counts.get(s.title, 0) + 1
    for title, count in counts.items():
        if count > 1:
            result.errors.append(f'Duplicate title "{title}" appears {count} times')

    for s in subtasks:
        for dep in s.depends_on:
            if dep == s.title:
                result.errors.append(f'"{s.title}" depends on itself')
            elif dep not in titles:
                result.errors.append(f'"{s.title}" depends on "{dep}" which is not in the plan')

    if result.errors:
        if raise_on_error:
            raise PlanValidationError(result.errors)
        return result

    edges = {s.title: list(s.depends_on) for s in subtasks}
    cycle = find_cycle(edges)
    if cycle:
        raise DependencyCycleError(cycle)

    weights = {s.title: s.priority.weight for s in subtasks}
    result.levels = execution_levels(edges, weight=weights.__getitem__)

    referenced = {dep for s in subtasks for dep in s.depends_on}
    orphans = [s.title for s in subtasks if not s.depends_on and s.title not in referenced]
    if len(orphans) > 1:
        result.warnings.append(
            f"{len(orphans)} subtasks without dependencies can run in parallel: "
            + ", ".join(f'"{t}"' for t in orphans)
        )
    if len(result.levels) > MAX_RECOMMENDED_LEVELS:
        result.warnings.append(
            f"Deep dependency chain ({len(result.levels)} levels), consider parallelising"
        )
    if len(subtasks) > 1 and not referenced:
        result.warnings.append("No dependencies defined, all subtasks will run in parallel")

    for warning in result.warnings:
        logger.info("Plan warning: %s", warning)
    return result
