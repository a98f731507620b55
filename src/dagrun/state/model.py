from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, cast

RunStatus = Literal["RUNNING", "SUCCEEDED", "FAILED", "CANCELLED"]
TaskStatus = Literal[
    "PENDING", "READY", "RUNNING", "SUCCEEDED", "FAILED", "SKIPPED", "CANCELLED"
]
AttemptOutcome = Literal["succeeded", "failed", "timeout", "cancelled", "error"]
RUN_STATUS_VALUES: set[str] = {"RUNNING", "SUCCEEDED", "FAILED", "CANCELLED"}
TASK_STATUS_VALUES: set[str] = {
    "PENDING",
    "READY",
    "RUNNING",
    "SUCCEEDED",
    "FAILED",
    "SKIPPED",
    "CANCELLED",
}
TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({"SUCCEEDED", "FAILED", "SKIPPED", "CANCELLED"})
ATTEMPT_OUTCOME_VALUES: set[str] = {"succeeded", "failed", "timeout", "cancelled", "error"}

# Skip reason for tasks skipped on purpose; they do not fail the run.
SKIP_DISABLED = "disabled"


def _as_str(value: object, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _as_optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _as_bool(value: object, default: bool = False) -> bool:
    return value if isinstance(value, bool) else default


def _as_int(value: object, default: int = 0) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else default


def _as_optional_int(value: object) -> int | None:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _as_optional_float(value: object) -> float | None:
    return float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None


def _as_str_map(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {k: v for k, v in value.items() if isinstance(k, str) and isinstance(v, str)}


def _parse_task_status(value: object) -> TaskStatus:
    status = _as_str(value, "PENDING")
    if status not in TASK_STATUS_VALUES:
        status = "PENDING"
    return cast(TaskStatus, status)


def _parse_run_status(value: object) -> RunStatus:
    status = _as_str(value, "RUNNING")
    if status not in RUN_STATUS_VALUES:
        status = "RUNNING"
    return cast(RunStatus, status)


def _parse_outcome(value: object) -> AttemptOutcome:
    outcome = _as_str(value, "error")
    if outcome not in ATTEMPT_OUTCOME_VALUES:
        outcome = "error"
    return cast(AttemptOutcome, outcome)


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    task_id: str
    attempt: int
    outcome: AttemptOutcome
    exit_code: int | None
    stdout: str
    stderr: str
    started_at: str
    ended_at: str
    duration_sec: float
    error_kind: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "attempt": self.attempt,
            "outcome": self.outcome,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_sec": self.duration_sec,
            "error_kind": self.error_kind,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> AttemptRecord:
        return cls(
            task_id=_as_str(data.get("task_id")),
            attempt=_as_int(data.get("attempt")),
            outcome=_parse_outcome(data.get("outcome")),
            exit_code=_as_optional_int(data.get("exit_code")),
            stdout=_as_str(data.get("stdout")),
            stderr=_as_str(data.get("stderr")),
            started_at=_as_str(data.get("started_at")),
            ended_at=_as_str(data.get("ended_at")),
            duration_sec=_as_optional_float(data.get("duration_sec")) or 0.0,
            error_kind=_as_optional_str(data.get("error_kind")),
            error=_as_optional_str(data.get("error")),
        )


@dataclass(slots=True)
class TaskState:
    status: TaskStatus = "PENDING"
    attempts: int = 0
    command: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    started_at: str | None = None
    ended_at: str | None = None
    duration_sec: float | None = None
    exit_code: int | None = None
    timed_out: bool = False
    reason: str | None = None
    error_kind: str | None = None
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "attempts": self.attempts,
            "command": self.command,
            "outputs": self.outputs,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_sec": self.duration_sec,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "reason": self.reason,
            "error_kind": self.error_kind,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> TaskState:
        return cls(
            status=_parse_task_status(data.get("status")),
            attempts=_as_int(data.get("attempts")),
            command=_as_optional_str(data.get("command")),
            outputs=_as_str_map(data.get("outputs")),
            started_at=_as_optional_str(data.get("started_at")),
            ended_at=_as_optional_str(data.get("ended_at")),
            duration_sec=_as_optional_float(data.get("duration_sec")),
            exit_code=_as_optional_int(data.get("exit_code")),
            timed_out=_as_bool(data.get("timed_out")),
            reason=_as_optional_str(data.get("reason")),
            error_kind=_as_optional_str(data.get("error_kind")),
            error=_as_optional_str(data.get("error")),
        )


@dataclass(slots=True)
class RunResult:
    run_id: str
    status: RunStatus
    started_at: str
    ended_at: str | None
    concurrency: int
    fail_fast: bool
    fail_fast_scope: str
    tasks: dict[str, TaskState]
    attempts: list[AttemptRecord] = field(default_factory=list)
    name: str | None = None

    def attempts_for(self, task_id: str) -> list[AttemptRecord]:
        return [record for record in self.attempts if record.task_id == task_id]

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "name": self.name,
            "status": self.status,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "concurrency": self.concurrency,
            "fail_fast": self.fail_fast,
            "fail_fast_scope": self.fail_fast_scope,
            "tasks": {task_id: task.to_dict() for task_id, task in self.tasks.items()},
            "attempts": [record.to_dict() for record in self.attempts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> RunResult:
        raw_tasks = data.get("tasks")
        tasks: dict[str, TaskState] = {}
        if isinstance(raw_tasks, dict):
            for task_id, task_data in raw_tasks.items():
                if isinstance(task_id, str) and isinstance(task_data, dict):
                    tasks[task_id] = TaskState.from_dict(task_data)
        raw_attempts = data.get("attempts")
        attempts: list[AttemptRecord] = []
        if isinstance(raw_attempts, list):
            attempts = [
                AttemptRecord.from_dict(item) for item in raw_attempts if isinstance(item, dict)
            ]
        return cls(
            run_id=_as_str(data.get("run_id")),
            name=_as_optional_str(data.get("name")),
            status=_parse_run_status(data.get("status")),
            started_at=_as_str(data.get("started_at")),
            ended_at=_as_optional_str(data.get("ended_at")),
            concurrency=_as_int(data.get("concurrency"), 1),
            fail_fast=_as_bool(data.get("fail_fast")),
            fail_fast_scope=_as_str(data.get("fail_fast_scope"), "graph"),
            tasks=tasks,
            attempts=attempts,
        )
