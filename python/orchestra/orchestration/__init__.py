"""Orchestration lifecycle: planning, subtask graph creation and control."""

from orchestra.orchestration.orchestrator import OrchestrationSnapshot, Orchestrator, SubtaskSnapshot

__all__ = ["OrchestrationSnapshot", "Orchestrator", "SubtaskSnapshot"]
