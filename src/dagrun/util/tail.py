from __future__ import annotations

import os
from collections import deque
from pathlib import Path

from dagrun.util.paths import open_regular


def tail_lines(path: Path, n: int) -> list[str]:
    """Last ``n`` lines of a task log, or [] when it is missing, unsafe or unreadable."""
    if n <= 0:
        return []
    try:
        fd = open_regular(path, os.O_RDONLY)
    except OSError:
        return []
    with os.fdopen(fd, "r", encoding="utf-8", errors="replace") as handle:
        try:
            window = deque(handle, maxlen=n)
        except OSError:
            return []
    return [line.rstrip("\n") for line in window]
