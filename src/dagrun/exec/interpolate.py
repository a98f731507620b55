"""Placeholder resolution between dependent tasks.

A command template may reference ``{{ <task_id>.<key> }}`` (an output captured
from an upstream task) or ``{{ vars.<name> }}`` (a plan variable). Resolution
fails closed: any placeholder that cannot be resolved raises
``UnresolvedReferenceError`` instead of being replaced with an empty string.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from dagrun.util.errors import UnresolvedReferenceError

VARS_NAMESPACE = "vars"
IMPLICIT_OUTPUT_KEY = "output"

_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}\s]+)\s*\}\}")
_OUTPUT_MARKER_PATTERN = re.compile(r"^::output\s+([A-Za-z_][A-Za-z0-9_-]*)=(.*)$")


def _split_reference(reference: str) -> tuple[str, str] | None:
    owner, sep, key = reference.rpartition(".")
    if not sep or not owner or not key:
        return None
    return owner, key


def find_references(template: str) -> list[tuple[str, str]]:
    """Return ``(task_id, key)`` pairs referenced by a template, in order, without vars."""
    refs: list[tuple[str, str]] = []
    for match in _PLACEHOLDER_PATTERN.finditer(template):
        parsed = _split_reference(match.group(1))
        if parsed is None or parsed[0] == VARS_NAMESPACE:
            continue
        if parsed not in refs:
            refs.append(parsed)
    return refs


def referenced_tasks(template: str) -> list[str]:
    task_ids: list[str] = []
    for task_id, _ in find_references(template):
        if task_id not in task_ids:
            task_ids.append(task_id)
    return task_ids


def resolve_command(
    task_id: str,
    template: str,
    outputs: Mapping[str, Mapping[str, str]],
    variables: Mapping[str, str] | None = None,
) -> str:
    """Substitute every placeholder in ``template``.

    ``outputs`` maps a task id to its captured outputs and must only contain
    tasks that reached SUCCEEDED.
    """
    variables = variables or {}
    unresolved: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        reference = match.group(1)
        parsed = _split_reference(reference)
        if parsed is None:
            unresolved.append(reference)
            return match.group(0)
        owner, key = parsed
        if owner == VARS_NAMESPACE:
            value = variables.get(key)
        else:
            value = outputs.get(owner, {}).get(key)
        if value is None:
            unresolved.append(reference)
            return match.group(0)
        return value

    resolved = _PLACEHOLDER_PATTERN.sub(_replace, template)
    if unresolved:
        raise UnresolvedReferenceError(task_id, unresolved)
    return resolved


def capture_outputs(stdout: str, declared: Iterable[str]) -> dict[str, str]:
    """Collect ``::output key=value`` lines for declared keys.

    The implicit ``output`` key always carries the trimmed full stdout unless
    the task declares and sets it explicitly.
    """
    wanted = set(declared)
    captured: dict[str, str] = {IMPLICIT_OUTPUT_KEY: stdout.strip()}
    for line in stdout.splitlines():
        match = _OUTPUT_MARKER_PATTERN.match(line.strip())
        if match is None:
            continue
        key, value = match.group(1), match.group(2)
        if key in wanted:
            captured[key] = value.strip()
    return captured
