from __future__ import annotations

import pytest

from dagrun.config.schema import FixedBackoff, RetryPolicy, TaskSpec
from dagrun.dag.build import build_graph
from dagrun.exec.runner import run_graph
from dagrun.state.model import RunResult
from dagrun.util.errors import ConnectionFailure
from fakes import Script, fail, ok

FAST_RETRY = RetryPolicy(max_attempts=3, backoff=FixedBackoff(delay_sec=0.01))


@pytest.mark.asyncio
async def test_diamond_runs_in_declaration_order_and_succeeds(script: Script) -> None:
    graph = build_graph(
        [
            TaskSpec(id="A", cmd="a"),
            TaskSpec(id="B", cmd="b", depends_on=["A"]),
            TaskSpec(id="C", cmd="c", depends_on=["A"]),
            TaskSpec(id="D", cmd="d", depends_on=["B", "C"]),
        ]
    )

    result = await run_graph(graph, concurrency=2, backend_factory=script.factory)

    assert result.status == "SUCCEEDED"
    assert script.started == ["A", "B", "C", "D"]
    assert {task_id: task.status for task_id, task in result.tasks.items()} == {
        "A": "SUCCEEDED",
        "B": "SUCCEEDED",
        "C": "SUCCEEDED",
        "D": "SUCCEEDED",
    }
    assert all(task.attempts == 1 for task in result.tasks.values())
    assert result.ended_at is not None


@pytest.mark.asyncio
async def test_concurrency_limit_bounds_in_flight_attempts(script: Script) -> None:
    tasks = [TaskSpec(id=f"t{i}", cmd="work") for i in range(6)]
    script.delays = {task.id: 0.05 for task in tasks}

    result = await run_graph(build_graph(tasks), concurrency=2, backend_factory=script.factory)

    assert result.status == "SUCCEEDED"
    assert script.peak == 2
    assert script.started == [task.id for task in tasks]


@pytest.mark.asyncio
async def test_concurrency_one_runs_serially(script: Script) -> None:
    tasks = [TaskSpec(id=name, cmd="work") for name in ("x", "y", "z")]
    script.delays = {"x": 0.02, "y": 0.02, "z": 0.02}

    await run_graph(build_graph(tasks), concurrency=1, backend_factory=script.factory)

    assert script.peak == 1


@pytest.mark.asyncio
async def test_retry_succeeds_on_third_attempt(script: Script) -> None:
    graph = build_graph([TaskSpec(id="flaky", cmd="try", retry=FAST_RETRY)])
    script.results["flaky"] = [fail(), fail(), ok("done")]

    result = await run_graph(graph, concurrency=1, backend_factory=script.factory)

    assert result.status == "SUCCEEDED"
    state = result.tasks["flaky"]
    assert state.status == "SUCCEEDED"
    assert state.attempts == 3
    assert state.error is None
    history = result.attempts_for("flaky")
    assert [record.attempt for record in history] == [1, 2, 3]
    assert [record.outcome for record in history] == ["failed", "failed", "succeeded"]
    assert history[0].error_kind == "non_zero_exit"


@pytest.mark.asyncio
async def test_retry_exhaustion_fails_task_and_skips_dependents(script: Script) -> None:
    graph = build_graph(
        [
            TaskSpec(id="unstable", cmd="x", retry=RetryPolicy(max_attempts=2)),
            TaskSpec(id="downstream", cmd="y", depends_on=["unstable"]),
            TaskSpec(id="leaf", cmd="z", depends_on=["downstream"]),
        ]
    )
    script.results["unstable"] = [fail(2), fail(3)]

    result = await run_graph(graph, concurrency=2, backend_factory=script.factory)

    assert result.status == "FAILED"
    assert result.tasks["unstable"].status == "FAILED"
    assert result.tasks["unstable"].attempts == 2
    assert result.tasks["unstable"].exit_code == 3
    assert result.tasks["unstable"].reason == "attempts_exhausted"
    assert result.tasks["downstream"].status == "SKIPPED"
    assert result.tasks["downstream"].reason == "dependency_failed"
    assert result.tasks["leaf"].status == "SKIPPED"
    assert "downstream" not in script.started


@pytest.mark.asyncio
async def test_run_default_retry_applies_to_backend_errors(script: Script) -> None:
    graph = build_graph([TaskSpec(id="remote", cmd="uptime")])
    script.results["remote"] = [ConnectionFailure("unreachable", exit_code=255), ok()]

    result = await run_graph(
        graph,
        concurrency=1,
        default_retry=RetryPolicy(max_attempts=2),
        backend_factory=script.factory,
    )

    assert result.status == "SUCCEEDED"
    first = result.attempts_for("remote")[0]
    assert first.error_kind == "connection_failure"
    assert first.exit_code == 255


@pytest.mark.asyncio
async def test_without_fail_fast_independent_branches_continue(script: Script) -> None:
    graph = build_graph(
        [
            TaskSpec(id="A", cmd="a"),
            TaskSpec(id="B", cmd="b"),
            TaskSpec(id="C", cmd="c", depends_on=["A"]),
        ]
    )
    script.results["A"] = [fail()]

    result = await run_graph(graph, concurrency=1, fail_fast=False, backend_factory=script.factory)

    assert result.status == "FAILED"
    assert result.tasks["B"].status == "SUCCEEDED"
    assert result.tasks["C"].status == "SKIPPED"


@pytest.mark.asyncio
async def test_fail_fast_stops_new_dispatch_but_lets_running_finish(script: Script) -> None:
    graph = build_graph(
        [
            TaskSpec(id="A", cmd="a"),
            TaskSpec(id="B", cmd="b"),
            TaskSpec(id="C", cmd="c"),
        ]
    )
    script.results["A"] = [fail()]
    script.delays["B"] = 0.1

    result = await run_graph(graph, concurrency=2, fail_fast=True, backend_factory=script.factory)

    assert result.status == "FAILED"
    assert result.tasks["A"].status == "FAILED"
    assert result.tasks["B"].status == "SUCCEEDED"
    assert result.tasks["C"].status == "SKIPPED"
    assert result.tasks["C"].reason == "fail_fast"
    assert "C" not in script.started


@pytest.mark.asyncio
async def test_fail_fast_fails_tasks_waiting_for_retry(script: Script) -> None:
    graph = build_graph(
        [
            TaskSpec(
                id="slow_retry",
                cmd="a",
                retry=RetryPolicy(max_attempts=3, backoff=FixedBackoff(delay_sec=5.0)),
            ),
            TaskSpec(id="breaker", cmd="b"),
        ]
    )
    script.results["slow_retry"] = [fail()]
    script.results["breaker"] = [fail()]
    script.delays["breaker"] = 0.05

    result = await run_graph(graph, concurrency=2, fail_fast=True, backend_factory=script.factory)

    assert result.tasks["slow_retry"].status == "FAILED"
    assert result.tasks["slow_retry"].reason == "fail_fast"
    assert result.tasks["slow_retry"].attempts == 1


@pytest.mark.asyncio
async def test_fail_fast_component_scope_spares_unrelated_components(script: Script) -> None:
    graph = build_graph(
        [
            TaskSpec(id="S", cmd="s"),
            TaskSpec(id="A", cmd="a", depends_on=["S"]),
            TaskSpec(id="A2", cmd="a2", depends_on=["S"]),
            TaskSpec(id="X", cmd="x"),
            TaskSpec(id="X2", cmd="x2", depends_on=["X"]),
        ]
    )
    script.results["A"] = [fail()]

    result = await run_graph(
        graph,
        concurrency=1,
        fail_fast=True,
        fail_fast_scope="component",
        backend_factory=script.factory,
    )

    assert result.status == "FAILED"
    assert result.tasks["A2"].status == "SKIPPED"
    assert result.tasks["A2"].reason == "fail_fast"
    assert result.tasks["X"].status == "SUCCEEDED"
    assert result.tasks["X2"].status == "SUCCEEDED"


@pytest.mark.asyncio
async def test_outputs_flow_into_dependent_commands(script: Script) -> None:
    graph = build_graph(
        [
            TaskSpec(id="A", cmd="build", outputs=["x"]),
            TaskSpec(id="B", cmd="echo {{A.x}} {{ A.output }} {{vars.ENV}}"),
        ]
    )
    script.results["A"] = [ok("compiling\n::output x=42\n")]

    result = await run_graph(
        graph, concurrency=2, variables={"ENV": "prod"}, backend_factory=script.factory
    )

    assert result.status == "SUCCEEDED"
    assert ("B", "echo 42 compiling\n::output x=42 prod") in script.commands
    assert result.tasks["A"].outputs["x"] == "42"
    assert result.tasks["B"].command == "echo 42 compiling\n::output x=42 prod"


@pytest.mark.asyncio
async def test_reference_to_failed_task_is_unresolved(script: Script) -> None:
    graph = build_graph(
        [
            TaskSpec(id="A", cmd="a", outputs=["x"]),
            TaskSpec(id="B", cmd="echo {{A.x}}"),
            TaskSpec(id="C", cmd="c", depends_on=["A"]),
        ]
    )
    script.results["A"] = [fail()]

    result = await run_graph(graph, concurrency=2, backend_factory=script.factory)

    assert result.tasks["B"].status == "FAILED"
    assert result.tasks["B"].reason == "unresolved_reference"
    assert result.tasks["B"].error_kind == "unresolved_reference"
    assert result.tasks["B"].attempts == 0
    assert result.tasks["C"].status == "SKIPPED"
    assert "B" not in script.started


@pytest.mark.asyncio
async def test_missing_declared_output_fails_without_retry(script: Script) -> None:
    graph = build_graph(
        [
            TaskSpec(id="A", cmd="a", outputs=["x"]),
            TaskSpec(id="B", cmd="echo {{A.x}}", retry=FAST_RETRY),
        ]
    )
    script.results["A"] = [ok("no markers here")]

    result = await run_graph(graph, concurrency=1, backend_factory=script.factory)

    assert result.status == "FAILED"
    assert result.tasks["A"].status == "SUCCEEDED"
    assert result.tasks["B"].status == "FAILED"
    assert result.tasks["B"].attempts == 0
    assert "A.x" in (result.tasks["B"].error or "")


@pytest.mark.asyncio
async def test_timeout_cancels_attempt_and_marks_timed_out(script: Script) -> None:
    graph = build_graph([TaskSpec(id="slow", cmd="sleep", timeout_sec=0.1)])
    script.block.add("slow")

    result = await run_graph(
        graph, concurrency=1, kill_grace_sec=1.0, backend_factory=script.factory
    )

    state = result.tasks["slow"]
    assert result.status == "FAILED"
    assert state.status == "FAILED"
    assert state.timed_out is True
    assert state.error_kind == "timeout"
    assert script.cancelled == ["slow"]
    assert result.attempts_for("slow")[0].outcome == "timeout"


@pytest.mark.asyncio
async def test_disabled_task_is_skipped_and_does_not_block_dependents(script: Script) -> None:
    graph = build_graph(
        [
            TaskSpec(id="optional", cmd="x", skip=True),
            TaskSpec(id="after", cmd="y", depends_on=["optional"]),
        ]
    )

    result = await run_graph(graph, concurrency=1, backend_factory=script.factory)

    assert result.status == "SUCCEEDED"
    assert result.tasks["optional"].status == "SKIPPED"
    assert result.tasks["optional"].reason == "disabled"
    assert result.tasks["after"].status == "SUCCEEDED"
    assert script.started == ["after"]


@pytest.mark.asyncio
async def test_on_update_receives_progress_snapshots(script: Script) -> None:
    seen: list[str] = []

    def _on_update(result: RunResult) -> None:
        seen.append(result.tasks["A"].status)

    graph = build_graph([TaskSpec(id="A", cmd="a")])
    result = await run_graph(
        graph, concurrency=1, run_id="run-42", name="demo", on_update=_on_update,
        backend_factory=script.factory,
    )

    assert result.run_id == "run-42"
    assert result.name == "demo"
    assert "RUNNING" in seen
    assert seen[-1] == "SUCCEEDED"


@pytest.mark.asyncio
async def test_invalid_concurrency_is_rejected(script: Script) -> None:
    graph = build_graph([TaskSpec(id="A", cmd="a")])
    with pytest.raises(ValueError):
        await run_graph(graph, concurrency=0, backend_factory=script.factory)
