"""Subprocess helpers shared by the CLI-driven backends."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Mapping, Sequence
from contextlib import suppress
from pathlib import Path

from dagrun.exec.backends.base import decode_output
from dagrun.util.errors import SpawnFailure

logger = logging.getLogger(__name__)

_CONTROL_KILL_AFTER_SEC = 1.0


def merged_env(extra: Mapping[str, str] | None) -> dict[str, str]:
    env = os.environ.copy()
    if extra:
        env.update(extra)
    return env


async def spawn(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> asyncio.subprocess.Process:
    """Start ``argv`` in its own session so the whole process group can be signalled."""
    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=None if cwd is None else str(cwd),
            env=None if env is None else dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except (OSError, ValueError) as exc:
        raise SpawnFailure(f"failed to start process {argv[0]!r}: {exc}") from exc


async def collect(proc: asyncio.subprocess.Process) -> tuple[int, str, str]:
    out, err = await proc.communicate()
    code = proc.returncode if proc.returncode is not None else -1
    return code, decode_output(out), decode_output(err)


async def collect_or_terminate(
    proc: asyncio.subprocess.Process, *, kill_after_sec: float
) -> tuple[int, str, str]:
    """Like ``collect``, but the process group is stopped if the caller is cancelled."""
    try:
        return await collect(proc)
    finally:
        if proc.returncode is None:
            await asyncio.shield(terminate(proc, kill_after_sec=kill_after_sec))


async def run_capture(
    argv: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    timeout_sec: float | None = None,
    inflight: set[asyncio.subprocess.Process] | None = None,
) -> tuple[int, str, str]:
    """Run a short control command (pull, rm, delete) to completion.

    The child is terminated and reaped before this returns or raises, including
    when the awaiting task is cancelled. While it runs it is registered in
    ``inflight`` so an executor's ``cancel()`` can stop it from outside.
    """
    proc = await spawn(argv, env=env)
    if inflight is not None:
        inflight.add(proc)
    try:
        return await asyncio.wait_for(collect(proc), timeout=timeout_sec)
    except TimeoutError:
        await terminate(proc, kill_after_sec=_CONTROL_KILL_AFTER_SEC)
        return -1, "", f"{argv[0]} timed out after {timeout_sec}s"
    finally:
        if proc.returncode is None:
            await asyncio.shield(terminate(proc, kill_after_sec=_CONTROL_KILL_AFTER_SEC))
        if inflight is not None:
            inflight.discard(proc)


async def terminate_all(procs: set[asyncio.subprocess.Process], *, kill_after_sec: float) -> None:
    await asyncio.gather(*(terminate(proc, kill_after_sec=kill_after_sec) for proc in list(procs)))


def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, sig)


async def terminate(proc: asyncio.subprocess.Process, *, kill_after_sec: float) -> None:
    """SIGTERM the process group, then SIGKILL if it does not exit in time."""
    if proc.returncode is not None:
        return
    _signal_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=kill_after_sec)
    except TimeoutError:
        logger.debug("process %s ignored SIGTERM, killing", proc.pid)
        _signal_group(proc, signal.SIGKILL)
        await proc.wait()
