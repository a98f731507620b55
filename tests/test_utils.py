from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from dagrun.util.ids import is_valid_run_id, new_run_id
from dagrun.util.paths import (
    ensure_run_layout,
    has_symlink_ancestor,
    is_symlink_path,
    open_regular,
    run_dir,
    snapshot_plan,
)
from dagrun.util.tail import tail_lines
from dagrun.util.time import duration_sec, now_iso


def test_new_run_id_format_and_validation() -> None:
    run_id = new_run_id(datetime(2026, 1, 2, 3, 4, 5))
    assert run_id.startswith("20260102_030405_")
    assert len(run_id.rsplit("_", 1)[1]) == 6
    assert is_valid_run_id(run_id)


@pytest.mark.parametrize("run_id", ["", "../escape", "a/b", "-lead", "x" * 129])
def test_is_valid_run_id_rejects_unsafe_values(run_id: str) -> None:
    assert not is_valid_run_id(run_id)


def test_duration_sec_and_now_iso() -> None:
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert duration_sec(start, start + timedelta(seconds=1.5)) == 1.5
    assert datetime.fromisoformat(now_iso()).tzinfo is not None


def test_duration_sec_clamps_clock_steps_backwards() -> None:
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert duration_sec(start, start - timedelta(seconds=2)) == 0.0


def test_ensure_run_layout_creates_directories(tmp_path: Path) -> None:
    current = run_dir(tmp_path / ".dagrun", "r1")
    ensure_run_layout(current)
    assert current == tmp_path / ".dagrun" / "runs" / "r1"
    assert (current / "logs").is_dir()
    assert (current / "report").is_dir()


def test_ensure_run_layout_rejects_symlinked_run_dir(tmp_path: Path) -> None:
    real = tmp_path / "real"
    real.mkdir()
    link = tmp_path / "link"
    link.symlink_to(real, target_is_directory=True)

    with pytest.raises(OSError, match="symlink"):
        ensure_run_layout(link / "runs" / "r1")
    assert has_symlink_ancestor(link / "runs" / "r1")
    assert is_symlink_path(link)
    assert not is_symlink_path(tmp_path / "missing")


def test_tail_lines_returns_last_n_lines(tmp_path: Path) -> None:
    file_path = tmp_path / "log.txt"
    file_path.write_text("a\nb\nc\nd\ne\n", encoding="utf-8")
    assert tail_lines(file_path, 2) == ["d", "e"]


def test_tail_lines_handles_missing_directory_and_symlink(tmp_path: Path) -> None:
    assert tail_lines(tmp_path / "missing.log", 10) == []
    assert tail_lines(tmp_path, 10) == []
    target = tmp_path / "outside.log"
    target.write_text("secret\n", encoding="utf-8")
    link = tmp_path / "linked.log"
    link.symlink_to(target)
    assert tail_lines(link, 10) == []
    assert tail_lines(target, 0) == []


def test_open_regular_refuses_directories_and_symlinks(tmp_path: Path) -> None:
    target = tmp_path / "real.log"
    target.write_text("x\n", encoding="utf-8")
    (tmp_path / "link.log").symlink_to(target)

    with pytest.raises(OSError, match="regular file"):
        open_regular(tmp_path, os.O_RDONLY)
    with pytest.raises(OSError, match="symlink"):
        open_regular(tmp_path / "link.log", os.O_RDONLY)

    fd = open_regular(target, os.O_RDONLY)
    with os.fdopen(fd, "r", encoding="utf-8") as handle:
        assert handle.read() == "x\n"


def test_snapshot_plan_copies_bytes_and_refuses_symlinked_target(tmp_path: Path) -> None:
    plan = tmp_path / "plan-src.yaml"
    plan.write_text("tasks:\n  - id: a\n    cmd: echo hi\n", encoding="utf-8")
    current = tmp_path / "runs" / "r1"
    ensure_run_layout(current)

    copied = snapshot_plan(plan, current)
    assert copied == current / "plan.yaml"
    assert copied.read_bytes() == plan.read_bytes()

    copied.unlink()
    (current / "plan.yaml").symlink_to(tmp_path / "elsewhere.yaml")
    with pytest.raises(OSError, match="symlink"):
        snapshot_plan(plan, current)
    assert not (tmp_path / "elsewhere.yaml").exists()
