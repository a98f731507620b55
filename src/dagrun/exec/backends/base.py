"""Backend interface for task attempt execution."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from dagrun.config.schema import TaskSpec


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Coordinator-supplied details of one attempt."""

    run_id: str
    task_id: str
    attempt: int
    workdir: Path


@dataclass(frozen=True, slots=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str


class Executor(Protocol):
    """Capability implemented by every backend variant.

    One executor instance serves exactly one attempt; ``cancel`` may be called
    at any point, including before ``execute`` has started the work.
    """

    async def execute(self, task: TaskSpec, command: str, context: ExecutionContext) -> ExecResult:
        """Run the resolved command and return its exit code and captured output.

        Infrastructure failures raise ``ExecutionError`` subclasses; a command
        that ran and exited non-zero is a normal ``ExecResult``.
        """

    async def cancel(self) -> None:
        """Abort the attempt's work. Must be idempotent."""


def decode_output(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")
