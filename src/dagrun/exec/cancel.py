"""Shutdown requests and their propagation to in-flight attempts."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Iterable
from contextlib import suppress
from pathlib import Path

from dagrun.exec.backends.base import Executor
from dagrun.util.paths import has_symlink_ancestor, is_symlink_path, open_regular
from dagrun.util.time import now_iso

logger = logging.getLogger(__name__)

CANCEL_REQUEST_FILE = "cancel.request"


class CancellationController:
    """Single external trigger for a run plus the grace period bounding shutdown."""

    def __init__(self, grace_period_sec: float = 10.0) -> None:
        if grace_period_sec < 0:
            raise ValueError("grace_period_sec must be >= 0")
        self.grace_period_sec = grace_period_sec
        self.reason: str | None = None
        self._event = asyncio.Event()

    @property
    def triggered(self) -> bool:
        return self._event.is_set()

    def trigger(self, reason: str = "cancel requested") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        logger.info("shutdown triggered: %s", reason)
        self._event.set()

    def trigger_threadsafe(self, loop: asyncio.AbstractEventLoop, reason: str = "cancel requested") -> None:
        loop.call_soon_threadsafe(self.trigger, reason)

    async def wait(self) -> None:
        await self._event.wait()

    def install_signal_handlers(self) -> list[signal.Signals]:
        """Route SIGINT/SIGTERM to ``trigger``. Returns the signals that were hooked."""
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.trigger, f"received {sig.name}")
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(sig)
        return installed

    def remove_signal_handlers(self, signals: Iterable[signal.Signals]) -> None:
        loop = asyncio.get_running_loop()
        for sig in signals:
            with suppress(NotImplementedError, RuntimeError, ValueError):
                loop.remove_signal_handler(sig)

    async def cancel_all(self, executors: Iterable[tuple[str, Executor]]) -> None:
        """Call ``cancel()`` on every executor concurrently, bounded by the grace period."""

        async def _cancel_one(task_id: str, executor: Executor) -> None:
            try:
                await executor.cancel()
            except Exception:  # noqa: BLE001
                logger.exception("cancel() failed for task %s", task_id)

        pending = [asyncio.create_task(_cancel_one(task_id, ex)) for task_id, ex in executors]
        if not pending:
            return
        _, not_done = await asyncio.wait(pending, timeout=self.grace_period_sec)
        for fut in not_done:
            fut.cancel()

    async def watch_request_file(self, run_dir: Path, *, interval_sec: float = 0.2) -> None:
        """Poll for the request file written by ``write_cancel_request`` and trigger on it."""
        while not self.triggered:
            if cancel_requested(run_dir):
                self.trigger(f"{CANCEL_REQUEST_FILE} found")
                return
            with suppress(TimeoutError):
                await asyncio.wait_for(self.wait(), timeout=interval_sec)


def cancel_requested(run_dir: Path) -> bool:
    path = run_dir / CANCEL_REQUEST_FILE
    if has_symlink_ancestor(path):
        return False
    try:
        return path.is_file() and not is_symlink_path(path)
    except OSError:
        return False


def write_cancel_request(run_dir: Path) -> None:
    """Ask the process running ``run_dir`` to shut down; see ``watch_request_file``."""
    fd = open_regular(run_dir / CANCEL_REQUEST_FILE, os.O_WRONLY | os.O_CREAT | os.O_TRUNC)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(f"requested_at={now_iso()} pid={os.getpid()}\n")
