"""DAG validation helpers."""

from __future__ import annotations

from collections import Counter, deque
from collections.abc import Mapping, Sequence

from dagrun.util.errors import CycleDetectedError, DuplicateIdError, UnknownDependencyError


def assert_unique_ids(task_ids: Sequence[str]) -> None:
    counts = Counter(task_ids)
    duplicates = [task_id for task_id, count in counts.items() if count > 1]
    if duplicates:
        raise DuplicateIdError(duplicates)


def assert_known_dependencies(upstream: Mapping[str, Sequence[str]]) -> None:
    known = set(upstream)
    for task_id, deps in upstream.items():
        unknown = [dep for dep in deps if dep not in known]
        if unknown:
            raise UnknownDependencyError(task_id, unknown)


def assert_acyclic(
    task_ids: Sequence[str], dependents: Mapping[str, Sequence[str]], in_degree: Mapping[str, int]
) -> list[str]:
    """Validate graph has no cycle using Kahn's algorithm and return a topological order."""
    degrees = dict(in_degree)
    q = deque([task_id for task_id in task_ids if degrees.get(task_id, 0) == 0])
    order: list[str] = []

    while q:
        current = q.popleft()
        order.append(current)
        for nxt in dependents.get(current, []):
            degrees[nxt] = degrees[nxt] - 1
            if degrees[nxt] == 0:
                q.append(nxt)

    if len(order) != len(task_ids):
        ordered = set(order)
        raise CycleDetectedError([task_id for task_id in task_ids if task_id not in ordered])
    return order
