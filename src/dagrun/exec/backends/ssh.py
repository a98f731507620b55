"""Run commands on a remote host through the OpenSSH client.

Credentials (identity file, known hosts, agent) are whatever the caller's ssh
configuration provides; ``BatchMode`` keeps the client from prompting.
"""

from __future__ import annotations

import asyncio
import logging
import re

from dagrun.config.schema import SshBackendConfig, TaskSpec
from dagrun.exec.backends import process
from dagrun.exec.backends.base import ExecResult, ExecutionContext
from dagrun.util.errors import AuthenticationFailure, ConnectionFailure

logger = logging.getLogger(__name__)

# ssh reserves 255 for its own errors; a remote command exiting 255 is indistinguishable.
SSH_ERROR_EXIT = 255
_AUTH_FAILURE_PATTERN = re.compile(
    r"permission denied|host key verification failed|too many authentication failures",
    re.IGNORECASE,
)


def build_ssh_argv(config: SshBackendConfig, command: str) -> list[str]:
    argv = [
        config.binary,
        "-o",
        "BatchMode=yes",
        "-o",
        f"ConnectTimeout={config.connect_timeout_sec}",
        "-p",
        str(config.port),
    ]
    if config.identity_file:
        argv.extend(["-i", config.identity_file])
    for key, value in sorted(config.options.items()):
        argv.extend(["-o", f"{key}={value}"])
    argv.append("-tt" if config.tty else "-T")
    target = f"{config.user}@{config.host}" if config.user else config.host
    argv.extend([target, "--", command])
    return argv


class SshExecutor:
    def __init__(self, config: SshBackendConfig) -> None:
        self._config = config
        self._proc: asyncio.subprocess.Process | None = None
        self._cancel_requested = False

    async def execute(self, task: TaskSpec, command: str, context: ExecutionContext) -> ExecResult:
        argv = build_ssh_argv(self._config, command)
        self._proc = await process.spawn(argv, cwd=context.workdir)
        logger.debug("task %s attempt %d connecting to %s", task.id, context.attempt, self._config.host)
        if self._cancel_requested:
            await process.terminate(self._proc, kill_after_sec=self._config.kill_after_sec)
        code, stdout, stderr = await process.collect_or_terminate(
            self._proc, kill_after_sec=self._config.kill_after_sec
        )
        if code == SSH_ERROR_EXIT and not self._cancel_requested:
            detail = stderr.strip() or f"ssh exited with {SSH_ERROR_EXIT}"
            if _AUTH_FAILURE_PATTERN.search(stderr):
                raise AuthenticationFailure(
                    f"authentication to {self._config.host} failed: {detail}",
                    exit_code=code,
                    stderr=stderr,
                )
            raise ConnectionFailure(
                f"connection to {self._config.host} failed: {detail}",
                exit_code=code,
                stderr=stderr,
            )
        return ExecResult(exit_code=code, stdout=stdout, stderr=stderr)

    async def cancel(self) -> None:
        # Closing the client tears the channel down; with a pty the remote side gets SIGHUP.
        self._cancel_requested = True
        if self._proc is None:
            return
        await process.terminate(self._proc, kill_after_sec=self._config.kill_after_sec)
