from __future__ import annotations

import asyncio
import errno
import json
import logging
import os
import re
import stat
from contextlib import suppress
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from dagrun.config.loader import load_plan
from dagrun.config.schema import PlanSpec
from dagrun.dag.build import Graph, build_graph
from dagrun.exec.cancel import CancellationController, write_cancel_request
from dagrun.exec.runner import run_plan
from dagrun.exec.sink import FileArtifactSink, stderr_log_path, stdout_log_path
from dagrun.report.render_md import render_markdown
from dagrun.report.summarize import build_summary
from dagrun.state.model import RunResult
from dagrun.state.store import STATE_FILE, load_state, save_state_atomic
from dagrun.util.errors import GraphError, PlanError, StateError
from dagrun.util.ids import is_valid_run_id, new_run_id
from dagrun.util.paths import (
    ensure_run_layout,
    has_symlink_ancestor,
    is_symlink_path,
    run_dir,
    snapshot_plan,
)
from dagrun.util.tail import tail_lines
from dagrun.util.time import local_now

app = typer.Typer(help="Dependency-aware task orchestrator")
console = Console()
logger = logging.getLogger(__name__)

_SYMLINK_HINT_PATTERN = re.compile(r"\bsymlink\w*\b|\bsymbolic(?:[\s_-]+)?link\w*\b", re.IGNORECASE)

HomeOption = Annotated[Path, typer.Option("--home", envvar="DAGRUN_HOME")]


def _exit_code_for_result(result: RunResult) -> int:
    if result.status == "SUCCEEDED":
        return 0
    if result.status == "CANCELLED":
        return 4
    return 3


def _mentions_symlink(detail: str) -> bool:
    return _SYMLINK_HINT_PATTERN.search(detail) is not None


def _render_plan_error(exc: PlanError) -> str:
    detail = str(exc)
    if _mentions_symlink(detail):
        return "invalid plan path"
    return detail


def _render_runtime_error_detail(exc: BaseException) -> str:
    detail = str(exc)
    if _mentions_symlink(detail):
        return "invalid run path"
    return detail


def _write_report(result: RunResult, current_run_dir: Path) -> Path:
    md = render_markdown(build_summary(result, current_run_dir))
    report_path = current_run_dir / "report" / "final_report.md"
    if has_symlink_ancestor(report_path):
        raise OSError(f"report path must not include symlink: {report_path}")
    if is_symlink_path(report_path.parent) or is_symlink_path(report_path):
        raise OSError(f"report path must not be symlink: {report_path}")
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
    if hasattr(os, "O_NONBLOCK"):
        flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(report_path), flags, 0o600)
        if not stat.S_ISREG(os.fstat(fd).st_mode):
            raise OSError(f"report path must be regular file: {report_path}")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd = None
            f.write(md + "\n")
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise OSError(f"report path must not be symlink: {report_path}") from exc
        raise
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)
    return report_path


def _run_exists(current_run_dir: Path) -> bool:
    if has_symlink_ancestor(current_run_dir):
        return False
    try:
        run_meta = current_run_dir.lstat()
        state_meta = (current_run_dir / STATE_FILE).lstat()
    except (OSError, RuntimeError):
        return False
    return stat.S_ISDIR(run_meta.st_mode) and stat.S_ISREG(state_meta.st_mode)


def _resolve_workdir_or_exit(workdir: Path) -> Path:
    try:
        resolved = workdir.resolve()
        meta = resolved.lstat()
    except (OSError, RuntimeError) as exc:
        console.print(f"[red]Invalid workdir:[/red] {workdir}")
        raise typer.Exit(2) from exc
    if not stat.S_ISDIR(meta.st_mode):
        console.print(f"[red]Invalid workdir:[/red] {workdir}")
        raise typer.Exit(2)
    return resolved


def _validate_home_or_exit(home: Path) -> None:
    try:
        unsafe_home = is_symlink_path(home) or has_symlink_ancestor(home)
    except (OSError, RuntimeError) as exc:
        console.print(f"[red]Invalid home:[/red] {home}")
        raise typer.Exit(2) from exc
    if unsafe_home:
        console.print(f"[red]Invalid home:[/red] {home}")
        raise typer.Exit(2)
    for candidate in [home, *home.parents]:
        try:
            meta = candidate.lstat()
        except FileNotFoundError:
            continue
        except (OSError, RuntimeError) as exc:
            console.print(f"[red]Invalid home:[/red] {home}")
            raise typer.Exit(2) from exc
        if stat.S_ISDIR(meta.st_mode):
            break
        console.print(f"[red]Invalid home:[/red] {home}")
        raise typer.Exit(2)


def _validate_run_id_or_exit(run_id: str) -> None:
    if not is_valid_run_id(run_id):
        console.print(f"[red]Invalid run_id:[/red] {run_id}")
        raise typer.Exit(2)


def _load_graph_or_exit(plan_path: Path) -> tuple[PlanSpec, Graph]:
    try:
        plan = load_plan(plan_path)
        graph = build_graph(plan.tasks)
    except PlanError as exc:
        console.print(f"[red]Plan validation error:[/red] {_render_plan_error(exc)}")
        raise typer.Exit(2) from exc
    except GraphError as exc:
        console.print(f"[red]Graph error ({exc.kind}):[/red] {exc}")
        raise typer.Exit(2) from exc
    return plan, graph


def _load_state_or_exit(current_run_dir: Path) -> RunResult:
    try:
        return load_state(current_run_dir)
    except (StateError, FileNotFoundError, OSError, RuntimeError) as exc:
        console.print(f"[red]Failed to load state:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc


def _print_order(graph: Graph, title: str) -> None:
    table = Table(title=title)
    table.add_column("#")
    table.add_column("task_id")
    table.add_column("backend")
    table.add_column("depends_on")
    for idx, task_id in enumerate(graph.order, start=1):
        task = graph.task(task_id)
        table.add_row(str(idx), task_id, task.backend.kind, ", ".join(graph.upstream[task_id]) or "-")
    console.print(table)


def _persist(current_run_dir: Path):
    def _on_update(result: RunResult) -> None:
        try:
            save_state_atomic(current_run_dir, result)
        except (OSError, RuntimeError) as exc:
            logger.warning("failed to persist state: %s", exc)

    return _on_update


async def _execute(
    plan: PlanSpec,
    current_run_dir: Path,
    *,
    run_id: str,
    concurrency: int | None,
    fail_fast: bool | None,
    grace_period: float,
    workdir: Path,
) -> RunResult:
    controller = CancellationController(grace_period)
    watcher = asyncio.create_task(controller.watch_request_file(current_run_dir))
    hooked = controller.install_signal_handlers()
    try:
        return await run_plan(
            plan,
            concurrency=concurrency,
            fail_fast=fail_fast,
            sink=FileArtifactSink(current_run_dir),
            controller=controller,
            run_id=run_id,
            workdir=workdir,
            on_update=_persist(current_run_dir),
        )
    finally:
        controller.remove_signal_handlers(hooked)
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher


@app.callback()
def main(
    log_level: Annotated[str, typer.Option("--log-level", envvar="DAGRUN_LOG_LEVEL")] = "WARNING",
) -> None:
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        console.print(f"[red]Invalid log level:[/red] {log_level}")
        raise typer.Exit(2)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    logging.getLogger("dagrun").setLevel(level)


@app.command()
def run(
    plan_path: Annotated[Path, typer.Argument(exists=True)],
    max_parallel: Annotated[
        int | None, typer.Option("--max-parallel", min=1, envvar="DAGRUN_MAX_PARALLEL")
    ] = None,
    home: HomeOption = Path(".dagrun"),
    workdir: Annotated[Path, typer.Option("--workdir")] = Path("."),
    fail_fast: Annotated[bool, typer.Option("--fail-fast")] = False,
    no_fail_fast: Annotated[bool, typer.Option("--no-fail-fast")] = False,
    grace_period: Annotated[
        float | None, typer.Option("--grace-period", min=0.0, envvar="DAGRUN_GRACE_PERIOD")
    ] = None,
    dry_run: Annotated[bool, typer.Option("--dry-run")] = False,
) -> None:
    if fail_fast and no_fail_fast:
        console.print("[red]--fail-fast and --no-fail-fast are mutually exclusive[/red]")
        raise typer.Exit(2)
    _validate_home_or_exit(home)
    plan, graph = _load_graph_or_exit(plan_path)

    if dry_run:
        _print_order(graph, "Dry Run - Topological Order")
        raise typer.Exit(0)

    resolved_workdir = _resolve_workdir_or_exit(workdir)
    run_id = new_run_id(local_now())
    current_run_dir = run_dir(home, run_id)
    try:
        ensure_run_layout(current_run_dir)
        snapshot_plan(plan_path, current_run_dir)
    except (OSError, RuntimeError) as exc:
        console.print(f"[red]Failed to initialize run:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc

    console.print(f"run_id: [bold]{run_id}[/bold]")
    try:
        result = asyncio.run(
            _execute(
                plan,
                current_run_dir,
                run_id=run_id,
                concurrency=max_parallel,
                fail_fast=True if fail_fast else (False if no_fail_fast else None),
                grace_period=plan.grace_period_sec if grace_period is None else grace_period,
                workdir=resolved_workdir,
            )
        )
    except (OSError, RuntimeError) as exc:
        console.print(f"[red]Run execution failed:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc
    try:
        report_path = _write_report(result, current_run_dir)
    except (OSError, RuntimeError) as exc:
        console.print(
            f"[yellow]Warning:[/yellow] failed to write report: {_render_runtime_error_detail(exc)}"
        )
        report_path = current_run_dir / "report" / "final_report.md"
    console.print(f"state: [bold]{result.status}[/bold]")
    console.print(f"report: {report_path}")
    raise typer.Exit(_exit_code_for_result(result))


@app.command()
def validate(plan_path: Annotated[Path, typer.Argument(exists=True)]) -> None:
    """Load the plan, build its graph and print the execution order."""
    _, graph = _load_graph_or_exit(plan_path)
    _print_order(graph, "Topological Order")
    console.print(f"[green]ok[/green]: {len(graph.tasks)} tasks")


@app.command()
def status(
    run_id: Annotated[str, typer.Argument()],
    home: HomeOption = Path(".dagrun"),
    as_json: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    _validate_run_id_or_exit(run_id)
    _validate_home_or_exit(home)
    result = _load_state_or_exit(run_dir(home, run_id))

    if as_json:
        typer.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        raise typer.Exit(0)

    table = Table(title=f"Run Status: {run_id} ({result.status})")
    table.add_column("task_id")
    table.add_column("status")
    table.add_column("attempts", justify="right")
    table.add_column("duration_sec", justify="right")
    table.add_column("exit_code", justify="right")
    table.add_column("reason")
    for task_id, task in result.tasks.items():
        table.add_row(
            task_id,
            task.status,
            str(task.attempts),
            "-" if task.duration_sec is None else str(task.duration_sec),
            "-" if task.exit_code is None else str(task.exit_code),
            task.reason or "-",
        )
    console.print(table)


@app.command()
def logs(
    run_id: Annotated[str, typer.Argument()],
    home: HomeOption = Path(".dagrun"),
    task: Annotated[str | None, typer.Option("--task")] = None,
    tail: Annotated[int, typer.Option("--tail", min=1)] = 100,
) -> None:
    _validate_run_id_or_exit(run_id)
    _validate_home_or_exit(home)
    current_run_dir = run_dir(home, run_id)
    result = _load_state_or_exit(current_run_dir)
    task_ids = [task] if task else list(result.tasks.keys())
    missing_task = False
    for task_id in task_ids:
        if task_id not in result.tasks:
            console.print(f"[yellow]unknown task:[/yellow] {task_id}")
            missing_task = True
            continue
        for stream, rel_path in (
            ("stdout", stdout_log_path(task_id)),
            ("stderr", stderr_log_path(task_id)),
        ):
            lines = tail_lines(current_run_dir / rel_path, tail)
            console.rule(f"{task_id} :: {stream}")
            console.print("\n".join(lines) if lines else "(empty)", markup=False)
    if missing_task:
        raise typer.Exit(2)


@app.command()
def cancel(
    run_id: Annotated[str, typer.Argument()],
    home: HomeOption = Path(".dagrun"),
) -> None:
    _validate_run_id_or_exit(run_id)
    _validate_home_or_exit(home)
    current_run_dir = run_dir(home, run_id)
    if not _run_exists(current_run_dir):
        console.print(f"[red]Run not found:[/red] {run_id}")
        raise typer.Exit(2)
    try:
        write_cancel_request(current_run_dir)
    except (OSError, RuntimeError) as exc:
        console.print(f"[red]Failed to request cancel:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc
    console.print(f"cancel requested: [bold]{run_id}[/bold]")


if __name__ == "__main__":
    app()
