from __future__ import annotations

import pytest

from dagrun.config.schema import TaskSpec
from dagrun.dag.build import build_adjacency, build_graph
from dagrun.dag.validate import assert_acyclic
from dagrun.util.errors import (
    CycleDetectedError,
    DuplicateIdError,
    GraphError,
    UnknownDependencyError,
)


def test_assert_acyclic_returns_topological_order() -> None:
    tasks = [
        TaskSpec(id="a", cmd="echo a"),
        TaskSpec(id="b", cmd="echo b", depends_on=["a"]),
        TaskSpec(id="c", cmd="echo c", depends_on=["b"]),
    ]
    _, dependents, in_degree = build_adjacency(tasks)
    order = assert_acyclic([task.id for task in tasks], dependents, in_degree)
    assert order == ["a", "b", "c"]


def test_assert_acyclic_keeps_input_in_degree_unchanged() -> None:
    tasks = [
        TaskSpec(id="a", cmd="echo a"),
        TaskSpec(id="b", cmd="echo b", depends_on=["a"]),
    ]
    _, dependents, in_degree = build_adjacency(tasks)
    original = dict(in_degree)
    assert_acyclic([task.id for task in tasks], dependents, in_degree)
    assert in_degree == original


def test_build_graph_detects_cycle_and_lists_unordered_tasks() -> None:
    tasks = [
        TaskSpec(id="entry", cmd="true"),
        TaskSpec(id="a", cmd="echo a", depends_on=["c", "entry"]),
        TaskSpec(id="b", cmd="echo b", depends_on=["a"]),
        TaskSpec(id="c", cmd="echo c", depends_on=["b"]),
    ]
    with pytest.raises(CycleDetectedError) as excinfo:
        build_graph(tasks)
    assert excinfo.value.task_ids == ["a", "b", "c"]
    assert excinfo.value.kind == "cycle_detected"


def test_build_graph_reports_self_dependency_as_cycle() -> None:
    with pytest.raises(CycleDetectedError):
        build_graph([TaskSpec(id="a", cmd="true", depends_on=["a"])])


def test_build_graph_detects_cycle_through_references() -> None:
    tasks = [
        TaskSpec(id="a", cmd="echo {{b.output}}"),
        TaskSpec(id="b", cmd="echo {{a.output}}"),
    ]
    with pytest.raises(CycleDetectedError):
        build_graph(tasks)


def test_build_graph_rejects_duplicate_ids() -> None:
    with pytest.raises(DuplicateIdError) as excinfo:
        build_graph([TaskSpec(id="a", cmd="x"), TaskSpec(id="a", cmd="y")])
    assert excinfo.value.task_ids == ["a"]


def test_build_graph_rejects_unknown_dependency() -> None:
    with pytest.raises(UnknownDependencyError, match="missing") as excinfo:
        build_graph([TaskSpec(id="a", cmd="true", depends_on=["missing"])])
    assert excinfo.value.task_id == "a"


def test_build_graph_rejects_reference_to_unknown_task() -> None:
    with pytest.raises(GraphError):
        build_graph([TaskSpec(id="a", cmd="echo {{ghost.value}}")])
