from __future__ import annotations

from typing import Any


def _bool_mark(value: bool) -> str:
    return "yes" if value else "no"


def _cell(value: object) -> str:
    return "-" if value is None else str(value)


def render_markdown(summary: dict[str, Any]) -> str:
    run = summary["run"]
    tasks = summary["tasks"]
    problems = summary["problems"]
    counts = summary["counts"]

    lines: list[str] = []
    lines.append("# Run Report")
    lines.append("")
    lines.append("## Overview")
    lines.append("")
    lines.append(f"- run_id: `{run['run_id']}`")
    lines.append(f"- name: {run['name'] or '(none)'}")
    lines.append(f"- status: **{run['status']}**")
    lines.append(f"- started: {run['started_at']}")
    lines.append(f"- ended: {_cell(run['ended_at'])}")
    lines.append(f"- concurrency: {run['concurrency']}")
    fail_fast = _bool_mark(run["fail_fast"])
    if run["fail_fast"]:
        fail_fast += f" (scope: {run['fail_fast_scope']})"
    lines.append(f"- fail_fast: {fail_fast}")
    if counts:
        tally = ", ".join(f"{status}={counts[status]}" for status in sorted(counts))
        lines.append(f"- tasks: {tally}")
    lines.append("")
    lines.append("## Tasks")
    lines.append("")
    lines.append("| id | status | attempts | duration_sec | exit_code | timed_out | logs |")
    lines.append("|---|---|---:|---:|---:|---|---|")
    for row in tasks:
        logs = f"`{row['stdout_path']}` / `{row['stderr_path']}`"
        lines.append(
            f"| {row['id']} | {row['status']} | {row['attempts']} | "
            f"{_cell(row['duration_sec'])} | {_cell(row['exit_code'])} | "
            f"{_bool_mark(row['timed_out'])} | {logs} |"
        )
    lines.append("")
    lines.append("## Failed / Skipped / Cancelled")
    lines.append("")
    if not problems:
        lines.append("No failed, skipped or cancelled tasks.")
        lines.append("")
        return "\n".join(lines)
    for row in problems:
        lines.append(f"### {row['id']} ({row['status']})")
        if row["reason"]:
            lines.append(f"- reason: `{row['reason']}`")
        if row["error"]:
            kind = f"{row['error_kind']}: " if row["error_kind"] else ""
            lines.append(f"- error: {kind}{row['error']}")
        lines.append("- stderr tail:")
        lines.append("```")
        lines.extend(row["stderr_tail"] or ["(empty)"])
        lines.append("```")
        lines.append("")
    return "\n".join(lines)
