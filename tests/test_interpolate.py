from __future__ import annotations

import pytest

from dagrun.exec.interpolate import (
    capture_outputs,
    find_references,
    referenced_tasks,
    resolve_command,
)
from dagrun.util.errors import UnresolvedReferenceError


def test_find_references_skips_vars_and_tolerates_whitespace() -> None:
    template = "run {{A.x}} {{  A.x }} {{ build.step.artifact }} {{ vars.ENV }}"
    assert find_references(template) == [("A", "x"), ("build.step", "artifact")]
    assert referenced_tasks(template) == ["A", "build.step"]


def test_resolve_command_substitutes_outputs_and_vars() -> None:
    resolved = resolve_command(
        "B",
        "echo {{ A.x }} to {{vars.TARGET}}",
        {"A": {"x": "42"}},
        {"TARGET": "prod"},
    )
    assert resolved == "echo 42 to prod"


def test_resolve_command_without_placeholders_is_identity() -> None:
    assert resolve_command("B", "echo {literal}", {}) == "echo {literal}"


def test_resolve_command_reports_every_unresolved_reference() -> None:
    with pytest.raises(UnresolvedReferenceError) as excinfo:
        resolve_command("B", "{{A.x}} {{A.y}} {{vars.MISSING}}", {"A": {"x": "1"}})
    assert excinfo.value.task_id == "B"
    assert excinfo.value.references == ["A.y", "vars.MISSING"]
    assert excinfo.value.kind == "unresolved_reference"


def test_resolve_command_never_substitutes_empty_for_missing_task() -> None:
    with pytest.raises(UnresolvedReferenceError):
        resolve_command("B", "echo {{A.x}}", {})


def test_capture_outputs_collects_declared_markers() -> None:
    stdout = "building\n::output version=1.2.3\n::output ignored=yes\n::output version=1.2.4\n"
    captured = capture_outputs(stdout, ["version"])
    assert captured["version"] == "1.2.4"
    assert "ignored" not in captured
    assert captured["output"].startswith("building")


def test_capture_outputs_implicit_output_is_trimmed_stdout() -> None:
    assert capture_outputs("  hello\n\n", []) == {"output": "hello"}
