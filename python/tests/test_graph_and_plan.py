"""Tests for DAG helpers (orchestra/scheduling/graph.py) and plan validation."""

import pytest

from orchestra.exceptions import DependencyCycleError, ErrorKind, PlanValidationError
from orchestra.planning import OrchestrationPlan, validate_plan
from orchestra.scheduling.graph import execution_levels, find_cycle, reverse_edges


def _plan(*subtasks, phases=1):
    """Build a one-phase plan from ``(title, deps[, priority])`` tuples."""
    items = []
    for spec in subtasks:
        title, deps = spec[0], spec[1]
        item = {"title": title, "agent": "ARCHITECTON", "dependsOn": list(deps)}
        if len(spec) > 2:
            item["priority"] = spec[2]
        items.append(item)
    return OrchestrationPlan.model_validate({"phases": [{"name": "Build", "subtasks": items}]})


# --- find_cycle ---


def test_find_cycle_acyclic():
    assert find_cycle({"A": [], "B": ["A"], "C": ["A", "B"]}) is None


def test_find_cycle_returns_closed_path():
    cycle = find_cycle({"A": ["B"], "B": ["A"]})
    assert cycle in (["A", "B", "A"], ["B", "A", "B"])


def test_find_cycle_longer_loop_behind_tail():
    cycle = find_cycle({"T": ["X"], "X": ["Y"], "Y": ["Z"], "Z": ["X"]})
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"X", "Y", "Z"}
    assert "T" not in cycle


def test_find_cycle_self_edge():
    assert find_cycle({"A": ["A"]}) == ["A", "A"]


def test_find_cycle_ignores_unknown_nodes():
    assert find_cycle({"A": ["outside"]}) is None


# --- execution_levels ---


def test_levels_diamond():
    edges = {"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]}
    assert execution_levels(edges) == [["A"], ["B", "C"], ["D"]]


def test_levels_sorted_by_weight_then_order():
    edges = {"low": [], "high": [], "mid": []}
    weights = {"low": 1, "high": 10, "mid": 4}
    assert execution_levels(edges, weight=weights.__getitem__) == [["high", "mid", "low"]]


def test_levels_leave_out_cycle_members():
    edges = {"A": [], "B": ["C"], "C": ["B"]}
    assert execution_levels(edges) == [["A"]]


def test_reverse_edges():
    assert reverse_edges({"A": [], "B": ["A"], "C": ["A", "gone"]}) == {"A": {"B", "C"}, "B": set(), "C": set()}


# --- validate_plan ---


def test_plan_accepts_aliases_and_snake_case():
    plan = OrchestrationPlan.model_validate({
        "analysis": "split by layer",
        "estimatedTotalHours": 6,
        "phases": [
            {"name": "Design", "subtasks": [{"title": "Schema", "agent": "ARCHITECTON", "estimatedHours": 2}]},
            {"name": "UI", "subtasks": [{"title": "Form", "agent": "PIXEL", "depends_on": ["Schema"]}]},
        ],
    })
    assert [s.title for s in plan.subtasks] == ["Schema", "Form"]
    assert plan.subtasks[0].estimated_hours == 2
    assert plan.subtasks[1].depends_on == ["Schema"]
    assert plan.estimated_total_hours == 6


def test_validate_plan_levels_by_priority():
    plan = _plan(("Schema", []), ("Docs", [], "LOW"), ("API", ["Schema"], "HIGH"), ("Tests", ["API"]))
    result = validate_plan(plan)
    assert result.valid
    assert result.levels == [["Schema", "Docs"], ["API"], ["Tests"]]


def test_validate_plan_cycle():
    plan = _plan(("A", ["C"]), ("B", ["A"]), ("C", ["B"]))
    with pytest.raises(DependencyCycleError) as exc_info:
        validate_plan(plan)
    err = exc_info.value
    assert err.kind is ErrorKind.DEPENDENCY_CYCLE
    assert err.cycle[0] == err.cycle[-1]
    assert " -> " in err.message


def test_validate_plan_structural_errors():
    plan = _plan(("A", ["A"]), ("B", ["missing"]), ("B", []))
    with pytest.raises(PlanValidationError) as exc_info:
        validate_plan(plan)
    errors = exc_info.value.errors
    assert any("depends on itself" in e for e in errors)
    assert any('"missing"' in e for e in errors)
    assert any("Duplicate" in e for e in errors)


def test_validate_plan_collects_errors_without_raising():
    result = validate_plan(_plan(("A", ["nope"])), raise_on_error=False)
    assert not result.valid
    assert result.levels == []


def test_validate_plan_warnings():
    flat = validate_plan(_plan(("A", []), ("B", []), ("C", [])))
    assert any("in parallel" in w for w in flat.warnings)
    assert any("No dependencies" in w for w in flat.warnings)

    chain = [("S0", [])] + [(f"S{i}", [f"S{i - 1}"]) for i in range(1, 7)]
    deep = validate_plan(_plan(*chain))
    assert any("Deep dependency chain" in w for w in deep.warnings)
