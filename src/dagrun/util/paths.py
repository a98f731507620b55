from __future__ import annotations

import errno
import os
import stat
from pathlib import Path

PLAN_SNAPSHOT = "plan.yaml"


def is_symlink_path(path: Path, *, fail_closed: bool = True) -> bool:
    try:
        return path.is_symlink()
    except FileNotFoundError:
        return False
    except (OSError, RuntimeError):
        return fail_closed


def has_symlink_ancestor(path: Path) -> bool:
    current = path.parent
    while True:
        try:
            meta = current.lstat()
        except FileNotFoundError:
            pass
        except (OSError, RuntimeError):
            return True
        else:
            if stat.S_ISLNK(meta.st_mode):
                return True
        if current == current.parent:
            return False
        current = current.parent


def open_regular(path: Path, flags: int, mode: int = 0o600) -> int:
    """Open ``path`` without following symlinks anywhere along it.

    Returns a raw descriptor that is guaranteed to refer to a regular file;
    anything else raises ``OSError``.
    """
    if has_symlink_ancestor(path) or is_symlink_path(path):
        raise OSError(errno.ELOOP, f"path must not include symlink: {path}")
    for extra in ("O_NOFOLLOW", "O_NONBLOCK"):
        flags |= getattr(os, extra, 0)
    fd = os.open(path, flags, mode)
    try:
        if not stat.S_ISREG(os.fstat(fd).st_mode):
            raise OSError(errno.EINVAL, f"path must be regular file: {path}")
    except OSError:
        os.close(fd)
        raise
    return fd


def run_dir(home: Path, run_id: str) -> Path:
    """Return run directory path."""
    return home / "runs" / run_id


def _ensure_directory(path: Path, *, parents: bool = False) -> None:
    if has_symlink_ancestor(path) or is_symlink_path(path):
        raise OSError(f"path must not include symlink: {path}")
    try:
        path.mkdir(parents=parents, exist_ok=True)
        meta = path.lstat()
    except (OSError, RuntimeError) as exc:
        raise OSError(f"failed to create directory path: {path}") from exc
    if not stat.S_ISDIR(meta.st_mode):
        raise OSError(f"path must be directory: {path}")


def ensure_run_layout(run_dir: Path) -> None:
    """Create ``<run>/logs`` and ``<run>/report``."""
    _ensure_directory(run_dir, parents=True)
    _ensure_directory(run_dir / "logs")
    _ensure_directory(run_dir / "report")


def snapshot_plan(plan_path: Path, run_dir: Path) -> Path:
    """Copy the plan file into the run directory as ``plan.yaml``."""
    destination = run_dir / PLAN_SNAPSHOT
    source_fd = open_regular(plan_path, os.O_RDONLY)
    with os.fdopen(source_fd, "rb") as source:
        content = source.read()
    target_fd = open_regular(destination, os.O_WRONLY | os.O_CREAT | os.O_TRUNC)
    with os.fdopen(target_fd, "wb") as target:
        target.write(content)
    return destination
