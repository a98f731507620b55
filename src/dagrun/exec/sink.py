"""Destinations for completed attempt output."""

from __future__ import annotations

import os
import stat
from contextlib import suppress
from pathlib import Path
from typing import Protocol

from dagrun.util.paths import has_symlink_ancestor, is_symlink_path


class ArtifactSink(Protocol):
    def record(
        self,
        task_id: str,
        attempt: int,
        stdout: str,
        stderr: str,
        exit_code: int | None,
        duration_sec: float,
    ) -> None:
        """Store the output of one completed attempt."""


class NullSink:
    def record(
        self,
        task_id: str,
        attempt: int,
        stdout: str,
        stderr: str,
        exit_code: int | None,
        duration_sec: float,
    ) -> None:
        return None


def stdout_log_path(task_id: str) -> str:
    return f"logs/{task_id}.out.log"


def stderr_log_path(task_id: str) -> str:
    return f"logs/{task_id}.err.log"


def _append_text(file_path: Path, text: str) -> None:
    if has_symlink_ancestor(file_path):
        raise OSError(f"log path must not include symlink: {file_path}")
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if is_symlink_path(file_path.parent) or is_symlink_path(file_path):
        raise OSError(f"log path must not be symlink: {file_path}")

    flags = os.O_WRONLY | os.O_CREAT | os.O_APPEND
    if hasattr(os, "O_NONBLOCK"):
        flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW

    fd: int | None = None
    try:
        fd = os.open(str(file_path), flags, 0o600)
        if not stat.S_ISREG(os.fstat(fd).st_mode):
            raise OSError(f"log path must be regular file: {file_path}")
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            fd = None
            f.write(text)
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)


class FileArtifactSink:
    """Append each attempt to ``logs/<task>.out.log`` and ``logs/<task>.err.log``."""

    def __init__(self, run_dir: Path) -> None:
        self.run_dir = run_dir

    def record(
        self,
        task_id: str,
        attempt: int,
        stdout: str,
        stderr: str,
        exit_code: int | None,
        duration_sec: float,
    ) -> None:
        header = f"\n===== attempt {attempt} (exit={exit_code}, {duration_sec}s) =====\n"
        _append_text(self.run_dir / stdout_log_path(task_id), header + stdout)
        _append_text(self.run_dir / stderr_log_path(task_id), header + stderr)
