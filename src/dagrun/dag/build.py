"""Build the immutable task graph from task specs."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType

from dagrun.config.schema import TaskSpec
from dagrun.dag.validate import assert_acyclic, assert_known_dependencies, assert_unique_ids
from dagrun.exec.interpolate import referenced_tasks


@dataclass(frozen=True, slots=True)
class Graph:
    """Validated DAG. Topology never changes once built."""

    tasks: tuple[TaskSpec, ...]
    upstream: Mapping[str, tuple[str, ...]]
    dependents: Mapping[str, tuple[str, ...]]
    in_degree: Mapping[str, int]
    order: tuple[str, ...]
    positions: Mapping[str, int]

    def task(self, task_id: str) -> TaskSpec:
        return self.tasks[self.index(task_id)]

    def index(self, task_id: str) -> int:
        return self.positions[task_id]

    @property
    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks]

    def components(self) -> dict[str, int]:
        """Label each task with the id of its weakly connected component."""
        labels: dict[str, int] = {}
        label = 0
        for task in self.tasks:
            if task.id in labels:
                continue
            stack = [task.id]
            while stack:
                current = stack.pop()
                if current in labels:
                    continue
                labels[current] = label
                stack.extend(self.upstream[current])
                stack.extend(self.dependents[current])
            label += 1
        return labels


def upstream_of(task: TaskSpec) -> list[str]:
    """Explicit dependencies followed by tasks referenced from the command template."""
    upstream = list(dict.fromkeys(task.depends_on))
    for ref in referenced_tasks(task.cmd):
        if ref not in upstream:
            upstream.append(ref)
    return upstream


def build_adjacency(
    tasks: Sequence[TaskSpec],
) -> tuple[dict[str, list[str]], dict[str, list[str]], dict[str, int]]:
    """Return upstream, dependents adjacency and in-degree by task id."""
    upstream: dict[str, list[str]] = {}
    dependents: dict[str, list[str]] = {}
    in_degree: dict[str, int] = {}

    for task in tasks:
        deps = upstream_of(task)
        upstream[task.id] = deps
        in_degree[task.id] = len(deps)
        dependents.setdefault(task.id, [])
        for dep in deps:
            dependents.setdefault(dep, []).append(task.id)

    return upstream, dependents, in_degree


def build_graph(tasks: Sequence[TaskSpec]) -> Graph:
    """Validate task specs and return the graph; raise ``GraphError`` otherwise."""
    task_ids = [task.id for task in tasks]
    assert_unique_ids(task_ids)
    upstream, dependents, in_degree = build_adjacency(tasks)
    assert_known_dependencies(upstream)
    order = assert_acyclic(task_ids, dependents, in_degree)
    return Graph(
        tasks=tuple(tasks),
        upstream=MappingProxyType({k: tuple(v) for k, v in upstream.items()}),
        dependents=MappingProxyType({k: tuple(v) for k, v in dependents.items()}),
        in_degree=MappingProxyType(dict(in_degree)),
        order=tuple(order),
        positions=MappingProxyType({task_id: idx for idx, task_id in enumerate(task_ids)}),
    )
