"""Wall-clock stamps recorded on runs and attempts."""

from __future__ import annotations

from datetime import datetime


def local_now() -> datetime:
    return datetime.now().astimezone()


def stamp(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds")


def now_iso() -> str:
    return stamp(local_now())


def duration_sec(start: datetime, end: datetime) -> float:
    # Wall clock can step backwards (NTP); never report a negative duration.
    return max(0.0, round((end - start).total_seconds(), 3))
