from __future__ import annotations

import errno
import json
import os
import stat
from contextlib import suppress
from pathlib import Path

from dagrun.state.model import RUN_STATUS_VALUES, TASK_STATUS_VALUES, RunResult
from dagrun.util.errors import StateError

STATE_FILE = "state.json"


def _fsync_directory(path: Path) -> None:
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        with suppress(OSError):
            os.close(fd)


def _validate_state_shape(raw: dict[str, object]) -> None:
    for key in ("run_id", "status", "started_at"):
        value = raw.get(key)
        if not isinstance(value, str) or not value:
            raise StateError(f"invalid state field: {key}")
    if raw["status"] not in RUN_STATUS_VALUES:
        raise StateError("invalid state field: status")
    concurrency = raw.get("concurrency")
    if not isinstance(concurrency, int) or isinstance(concurrency, bool) or concurrency < 1:
        raise StateError("invalid state field: concurrency")
    tasks = raw.get("tasks")
    if not isinstance(tasks, dict):
        raise StateError("invalid state field: tasks")
    for task_id, task in tasks.items():
        if not isinstance(task_id, str) or not isinstance(task, dict):
            raise StateError("invalid state field: tasks")
        if task.get("status") not in TASK_STATUS_VALUES:
            raise StateError(f"invalid state field: tasks.{task_id}.status")
    attempts = raw.get("attempts", [])
    if not isinstance(attempts, list) or not all(isinstance(item, dict) for item in attempts):
        raise StateError("invalid state field: attempts")


def load_state(run_dir: Path) -> RunResult:
    state_path = run_dir / STATE_FILE
    try:
        meta = state_path.lstat()
    except FileNotFoundError:
        meta = None
    except OSError as exc:
        raise StateError(f"failed to read state file: {state_path}") from exc

    if meta is not None:
        if stat.S_ISLNK(meta.st_mode):
            raise StateError(f"state file must not be symlink: {state_path}")
        if not stat.S_ISREG(meta.st_mode):
            raise StateError(f"failed to read state file: {state_path}")
    open_flags = os.O_RDONLY
    if hasattr(os, "O_NONBLOCK"):
        open_flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(state_path), open_flags)
        with os.fdopen(fd, "r", encoding="utf-8") as f:
            fd = None
            raw = json.loads(f.read())
    except FileNotFoundError as exc:
        raise StateError(f"state file not found: {state_path}") from exc
    except UnicodeError as exc:
        raise StateError(f"failed to decode state file as utf-8: {state_path}") from exc
    except json.JSONDecodeError as exc:
        raise StateError(f"invalid state json: {state_path}") from exc
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise StateError(f"state file must not be symlink: {state_path}") from exc
        raise StateError(f"failed to read state file: {state_path}") from exc
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)
    if not isinstance(raw, dict):
        raise StateError("state root must be object")
    _validate_state_shape(raw)
    return RunResult.from_dict(raw)


def save_state_atomic(run_dir: Path, state: RunResult) -> None:
    state_path = run_dir / STATE_FILE
    tmp_path = run_dir / f"{STATE_FILE}.tmp"
    payload = json.dumps(state.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    try:
        fd = os.open(str(tmp_path), flags, 0o600)
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise OSError(f"temporary state path must not be symlink: {tmp_path}") from exc
        raise
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload + "\n")
            f.flush()
            os.fsync(f.fileno())
    except OSError:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise
    try:
        os.replace(tmp_path, state_path)
    except OSError:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise
    _fsync_directory(run_dir)
