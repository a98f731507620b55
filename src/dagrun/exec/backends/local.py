"""Run commands as host processes."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from dagrun.config.schema import LocalBackendConfig, TaskSpec
from dagrun.exec.backends import process
from dagrun.exec.backends.base import ExecResult, ExecutionContext

logger = logging.getLogger(__name__)


def _resolve_cwd(cwd: str | None, default_cwd: Path) -> Path:
    if cwd is None:
        return default_cwd
    path = Path(cwd)
    if path.is_absolute():
        return path
    return default_cwd / path


class LocalExecutor:
    def __init__(self, config: LocalBackendConfig) -> None:
        self._config = config
        self._proc: asyncio.subprocess.Process | None = None
        self._cancel_requested = False

    async def execute(self, task: TaskSpec, command: str, context: ExecutionContext) -> ExecResult:
        cwd = _resolve_cwd(self._config.cwd, context.workdir)
        self._proc = await process.spawn(
            [self._config.shell, "-c", command],
            cwd=cwd,
            env=process.merged_env(self._config.env),
        )
        logger.debug("task %s attempt %d started pid %d", task.id, context.attempt, self._proc.pid)
        if self._cancel_requested:
            await process.terminate(self._proc, kill_after_sec=self._config.kill_after_sec)
        code, stdout, stderr = await process.collect_or_terminate(
            self._proc, kill_after_sec=self._config.kill_after_sec
        )
        return ExecResult(exit_code=code, stdout=stdout, stderr=stderr)

    async def cancel(self) -> None:
        self._cancel_requested = True
        if self._proc is None:
            return
        await process.terminate(self._proc, kill_after_sec=self._config.kill_after_sec)
