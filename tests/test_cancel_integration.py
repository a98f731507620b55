from __future__ import annotations

import asyncio
import os
import signal
import threading
from pathlib import Path

import pytest

from dagrun.config.schema import PlanSpec, TaskSpec
from dagrun.dag.build import build_graph
from dagrun.exec.cancel import CancellationController, cancel_requested, write_cancel_request
from dagrun.exec.runner import run_graph, run_plan
from dagrun.util.paths import ensure_run_layout
from fakes import Script


async def _trigger_later(controller: CancellationController, delay: float) -> None:
    await asyncio.sleep(delay)
    controller.trigger("test shutdown")


@pytest.mark.asyncio
async def test_shutdown_cancels_running_and_pending_tasks(script: Script) -> None:
    graph = build_graph(
        [
            TaskSpec(id="A", cmd="a"),
            TaskSpec(id="B", cmd="b"),
            TaskSpec(id="C", cmd="c", depends_on=["A"]),
            TaskSpec(id="D", cmd="d"),
        ]
    )
    script.block.update({"A", "B"})
    controller = CancellationController(grace_period_sec=1.0)

    trigger = asyncio.create_task(_trigger_later(controller, 0.1))
    result = await run_graph(
        graph, concurrency=2, controller=controller, backend_factory=script.factory
    )
    await trigger

    assert result.status == "CANCELLED"
    assert sorted(script.cancelled) == ["A", "B"]
    assert result.tasks["A"].status == "CANCELLED"
    assert result.tasks["A"].reason == "run_cancelled"
    assert result.tasks["B"].status == "CANCELLED"
    assert result.tasks["C"].status == "CANCELLED"
    assert result.tasks["D"].status == "CANCELLED"
    assert "D" not in script.started
    assert controller.reason == "test shutdown"


@pytest.mark.asyncio
async def test_attempt_ignoring_cancel_is_forced_after_grace(script: Script) -> None:
    graph = build_graph([TaskSpec(id="stubborn", cmd="x")])
    script.block.add("stubborn")
    script.ignore_cancel.add("stubborn")
    controller = CancellationController(grace_period_sec=0.2)

    trigger = asyncio.create_task(_trigger_later(controller, 0.05))
    result = await run_graph(
        graph,
        concurrency=1,
        controller=controller,
        kill_grace_sec=0.2,
        backend_factory=script.factory,
    )
    await trigger

    state = result.tasks["stubborn"]
    assert result.status == "CANCELLED"
    assert state.status == "CANCELLED"
    assert state.reason == "grace_period_expired"
    assert result.attempts_for("stubborn")[-1].outcome == "cancelled"
    assert script.active == 0


@pytest.mark.asyncio
async def test_success_reported_during_grace_window_is_kept(script: Script) -> None:
    graph = build_graph(
        [
            TaskSpec(id="finishing", cmd="x"),
            TaskSpec(id="after", cmd="y", depends_on=["finishing"]),
        ]
    )
    script.delays["finishing"] = 0.2
    script.ignore_cancel.add("finishing")
    controller = CancellationController(grace_period_sec=2.0)

    trigger = asyncio.create_task(_trigger_later(controller, 0.05))
    result = await run_graph(
        graph, concurrency=1, controller=controller, backend_factory=script.factory
    )
    await trigger

    assert result.status == "CANCELLED"
    assert result.tasks["finishing"].status == "SUCCEEDED"
    assert result.tasks["after"].status == "CANCELLED"
    assert "after" not in script.started


@pytest.mark.asyncio
async def test_trigger_before_start_dispatches_nothing(script: Script) -> None:
    graph = build_graph([TaskSpec(id="A", cmd="a"), TaskSpec(id="B", cmd="b", depends_on=["A"])])
    controller = CancellationController(grace_period_sec=0.5)
    controller.trigger()

    result = await run_graph(
        graph, concurrency=1, controller=controller, backend_factory=script.factory
    )

    assert result.status == "CANCELLED"
    assert script.started == []
    assert {task.status for task in result.tasks.values()} == {"CANCELLED"}


@pytest.mark.asyncio
async def test_cancel_request_file_stops_local_run(tmp_path: Path) -> None:
    run_dir = tmp_path / ".dagrun" / "runs" / "run_cancel"
    workdir = tmp_path / "wd"
    workdir.mkdir(parents=True)
    ensure_run_layout(run_dir)

    plan = PlanSpec(
        name="cancel test",
        tasks=[
            TaskSpec(id="long", cmd="sleep 5"),
            TaskSpec(id="downstream", cmd="echo never", depends_on=["long"]),
        ],
        concurrency=1,
    )
    controller = CancellationController(grace_period_sec=3.0)
    watcher = asyncio.create_task(controller.watch_request_file(run_dir, interval_sec=0.05))

    run_future = asyncio.create_task(run_plan(plan, controller=controller, workdir=workdir))
    await asyncio.sleep(0.4)
    write_cancel_request(run_dir)
    result = await asyncio.wait_for(run_future, timeout=4.0)
    await watcher

    assert result.status == "CANCELLED"
    assert result.tasks["long"].status == "CANCELLED"
    assert result.tasks["downstream"].status == "CANCELLED"
    assert controller.reason == "cancel.request found"


def test_cancel_request_round_trip(tmp_path: Path) -> None:
    assert cancel_requested(tmp_path) is False
    write_cancel_request(tmp_path)
    assert cancel_requested(tmp_path) is True


def test_write_cancel_request_rejects_symlink(tmp_path: Path) -> None:
    target = tmp_path / "elsewhere"
    target.write_text("x", encoding="utf-8")
    (tmp_path / "cancel.request").symlink_to(target)

    with pytest.raises(OSError, match="symlink"):
        write_cancel_request(tmp_path)
    assert cancel_requested(tmp_path) is False


@pytest.mark.asyncio
async def test_signal_handler_triggers_controller() -> None:
    controller = CancellationController(grace_period_sec=0.1)
    hooked = controller.install_signal_handlers()
    try:
        assert signal.SIGTERM in hooked
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(controller.wait(), timeout=1.0)
    finally:
        controller.remove_signal_handlers(hooked)
    assert controller.triggered
    assert controller.reason == "received SIGTERM"


@pytest.mark.asyncio
async def test_trigger_threadsafe_from_other_thread() -> None:
    controller = CancellationController()
    loop = asyncio.get_running_loop()
    thread = threading.Thread(target=controller.trigger_threadsafe, args=(loop, "from thread"))
    thread.start()
    await asyncio.wait_for(controller.wait(), timeout=1.0)
    thread.join()
    assert controller.reason == "from thread"


def test_negative_grace_period_is_rejected() -> None:
    with pytest.raises(ValueError):
        CancellationController(grace_period_sec=-1)
