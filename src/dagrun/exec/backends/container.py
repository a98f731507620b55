"""Run commands inside ephemeral containers via a Docker-compatible CLI."""

from __future__ import annotations

import asyncio
import logging
import re
from secrets import token_hex

from dagrun.config.schema import ContainerBackendConfig, TaskSpec
from dagrun.exec.backends import process
from dagrun.exec.backends.base import ExecResult, ExecutionContext
from dagrun.util.errors import ContainerRuntimeFailure, ImagePullFailure

logger = logging.getLogger(__name__)

# `docker run` exits 125 when the daemon itself fails; 126/127 belong to the command.
RUNTIME_ERROR_EXIT = 125
_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]")
_CONTROL_TIMEOUT_SEC = 60.0
_PULL_TIMEOUT_SEC = 600.0


def container_name(run_id: str, task_id: str, attempt: int) -> str:
    raw = f"dagrun-{run_id}-{task_id}-{attempt}-{token_hex(3)}"
    return _NAME_UNSAFE.sub("-", raw)


def build_run_argv(config: ContainerBackendConfig, name: str, command: str) -> list[str]:
    argv = [config.runtime, "run", "--name", name, "--label", "managed-by=dagrun"]
    for key, value in sorted((config.env or {}).items()):
        argv.extend(["-e", f"{key}={value}"])
    for volume in config.volumes:
        argv.extend(["-v", volume])
    if config.workdir:
        argv.extend(["-w", config.workdir])
    argv.extend([config.image, config.shell, "-c", command])
    return argv


class ContainerExecutor:
    def __init__(self, config: ContainerBackendConfig) -> None:
        self._config = config
        self._env = process.merged_env({"DOCKER_HOST": config.host} if config.host else None)
        self._proc: asyncio.subprocess.Process | None = None
        self._control: set[asyncio.subprocess.Process] = set()
        self._name: str | None = None
        self._cancel_requested = False

    async def _runtime(
        self, *args: str, timeout_sec: float = _CONTROL_TIMEOUT_SEC, track: bool = False
    ) -> tuple[int, str, str]:
        return await process.run_capture(
            [self._config.runtime, *args],
            env=self._env,
            timeout_sec=timeout_sec,
            inflight=self._control if track else None,
        )

    async def _ensure_image(self) -> None:
        policy = self._config.pull
        if policy == "never":
            return
        if policy == "missing":
            code, _, _ = await self._runtime("image", "inspect", self._config.image, track=True)
            if code == 0 or self._cancel_requested:
                return
        code, _, stderr = await self._runtime(
            "pull", self._config.image, timeout_sec=_PULL_TIMEOUT_SEC, track=True
        )
        if code != 0 and not self._cancel_requested:
            raise ImagePullFailure(
                f"failed to pull image {self._config.image}: {stderr.strip()}",
                exit_code=code,
                stderr=stderr,
            )

    async def _remove(self, name: str) -> None:
        code, _, stderr = await self._runtime("rm", "-f", name)
        if code != 0 and "no such container" not in stderr.lower():
            logger.warning("failed to remove container %s: %s", name, stderr.strip())

    async def execute(self, task: TaskSpec, command: str, context: ExecutionContext) -> ExecResult:
        await self._ensure_image()
        if self._cancel_requested:
            return ExecResult(exit_code=-1, stdout="", stderr="cancelled before start\n")
        name = container_name(context.run_id, task.id, context.attempt)
        self._name = name
        try:
            self._proc = await process.spawn(build_run_argv(self._config, name, command), env=self._env)
            logger.debug("task %s attempt %d running in container %s", task.id, context.attempt, name)
            if self._cancel_requested:
                await process.terminate(self._proc, kill_after_sec=self._config.kill_after_sec)
            code, stdout, stderr = await process.collect_or_terminate(
                self._proc, kill_after_sec=self._config.kill_after_sec
            )
        finally:
            await asyncio.shield(self._remove(name))
        if code == RUNTIME_ERROR_EXIT and not self._cancel_requested:
            raise ContainerRuntimeFailure(
                f"container runtime error: {stderr.strip()}", exit_code=code, stderr=stderr
            )
        return ExecResult(exit_code=code, stdout=stdout, stderr=stderr)

    async def cancel(self) -> None:
        self._cancel_requested = True
        await process.terminate_all(self._control, kill_after_sec=self._config.kill_after_sec)
        if self._name is not None:
            await self._runtime("stop", "-t", str(self._config.stop_timeout_sec), self._name)
            await self._remove(self._name)
        if self._proc is not None:
            await process.terminate(self._proc, kill_after_sec=self._config.kill_after_sec)
