from __future__ import annotations

from pathlib import Path

from dagrun.exec.sink import stderr_log_path, stdout_log_path
from dagrun.state.model import RunResult
from dagrun.util.tail import tail_lines

STDERR_TAIL_LINES = 50


def build_summary(result: RunResult, run_dir: Path | None = None) -> dict[str, object]:
    """Flatten a run result into rows for rendering.

    When ``run_dir`` is given the stderr tail of problem tasks is read from the
    task log; otherwise it falls back to the stderr of the last recorded attempt.
    """
    tasks_rows: list[dict[str, object]] = []
    problem_rows: list[dict[str, object]] = []
    counts: dict[str, int] = {}

    for task_id, task in result.tasks.items():
        counts[task.status] = counts.get(task.status, 0) + 1
        tasks_rows.append(
            {
                "id": task_id,
                "status": task.status,
                "attempts": task.attempts,
                "duration_sec": task.duration_sec,
                "exit_code": task.exit_code,
                "timed_out": task.timed_out,
                "stdout_path": stdout_log_path(task_id),
                "stderr_path": stderr_log_path(task_id),
            }
        )
        if task.status not in {"FAILED", "SKIPPED", "CANCELLED"}:
            continue
        if run_dir is not None:
            stderr_tail = tail_lines(run_dir / stderr_log_path(task_id), STDERR_TAIL_LINES)
        else:
            history = result.attempts_for(task_id)
            stderr_tail = (
                history[-1].stderr.splitlines()[-STDERR_TAIL_LINES:] if history else []
            )
        problem_rows.append(
            {
                "id": task_id,
                "status": task.status,
                "reason": task.reason,
                "error_kind": task.error_kind,
                "error": task.error,
                "stderr_tail": stderr_tail,
            }
        )

    return {
        "run": {
            "run_id": result.run_id,
            "name": result.name,
            "status": result.status,
            "started_at": result.started_at,
            "ended_at": result.ended_at,
            "concurrency": result.concurrency,
            "fail_fast": result.fail_fast,
            "fail_fast_scope": result.fail_fast_scope,
        },
        "counts": counts,
        "tasks": tasks_rows,
        "problems": problem_rows,
    }
