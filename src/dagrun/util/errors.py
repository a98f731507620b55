"""Application-level error types."""

from __future__ import annotations


class DagrunError(Exception):
    """Base error for dagrun."""


class PlanError(DagrunError):
    """Raised when plan loading/validation fails."""


class StateError(DagrunError):
    """Raised when persisted run state is missing or malformed."""


class GraphError(DagrunError):
    """Raised when the task graph is invalid. The run never starts."""

    kind = "graph_error"


class DuplicateIdError(GraphError):
    kind = "duplicate_id"

    def __init__(self, task_ids: list[str]) -> None:
        super().__init__(f"duplicate task ids: {task_ids}")
        self.task_ids = task_ids


class UnknownDependencyError(GraphError):
    kind = "unknown_dependency"

    def __init__(self, task_id: str, unknown: list[str]) -> None:
        super().__init__(f"task '{task_id}' has unknown dependencies: {unknown}")
        self.task_id = task_id
        self.unknown = unknown


class CycleDetectedError(GraphError):
    kind = "cycle_detected"

    def __init__(self, task_ids: list[str]) -> None:
        super().__init__(f"cyclic dependencies among tasks: {task_ids}")
        self.task_ids = task_ids


class ExecutionError(DagrunError):
    """Per-attempt failure reported by a backend. Recoverable via retry."""

    kind = "execution_error"

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class SpawnFailure(ExecutionError):
    kind = "spawn_failure"


class ConnectionFailure(ExecutionError):
    kind = "connection_failure"


class AuthenticationFailure(ExecutionError):
    kind = "authentication_failure"


class ImagePullFailure(ExecutionError):
    kind = "image_pull_failure"


class ContainerRuntimeFailure(ExecutionError):
    kind = "container_runtime_failure"


class PodSchedulingFailure(ExecutionError):
    kind = "pod_scheduling_failure"


class PodExecutionFailure(ExecutionError):
    kind = "pod_execution_failure"


class NonZeroExit(ExecutionError):
    kind = "non_zero_exit"


class TimeoutExpired(ExecutionError):
    kind = "timeout"


class InterpolationError(DagrunError):
    """Raised when a command template cannot be resolved. Never retried."""

    kind = "interpolation_error"


class UnresolvedReferenceError(InterpolationError):
    kind = "unresolved_reference"

    def __init__(self, task_id: str, references: list[str]) -> None:
        super().__init__(f"task '{task_id}' has unresolved references: {references}")
        self.task_id = task_id
        self.references = references
