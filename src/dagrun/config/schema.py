from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

FailFastScope = Literal["graph", "component"]
PullPolicy = Literal["missing", "always", "never"]


@dataclass(frozen=True, slots=True)
class FixedBackoff:
    delay_sec: float = 0.0


@dataclass(frozen=True, slots=True)
class ExponentialBackoff:
    base_sec: float = 1.0
    factor: float = 2.0
    cap_sec: float = 60.0


BackoffStrategy = FixedBackoff | ExponentialBackoff


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 1
    backoff: BackoffStrategy = field(default_factory=FixedBackoff)


@dataclass(frozen=True, slots=True)
class LocalBackendConfig:
    kind: Literal["local"] = "local"
    shell: str = "sh"
    cwd: str | None = None
    env: dict[str, str] | None = None
    kill_after_sec: float = 2.0


@dataclass(frozen=True, slots=True)
class SshBackendConfig:
    host: str
    kind: Literal["ssh"] = "ssh"
    user: str | None = None
    port: int = 22
    identity_file: str | None = None
    connect_timeout_sec: int = 10
    tty: bool = False
    options: dict[str, str] = field(default_factory=dict)
    binary: str = "ssh"
    kill_after_sec: float = 2.0


@dataclass(frozen=True, slots=True)
class ContainerBackendConfig:
    image: str
    kind: Literal["container"] = "container"
    runtime: str = "docker"
    host: str | None = None
    pull: PullPolicy = "missing"
    env: dict[str, str] | None = None
    volumes: list[str] = field(default_factory=list)
    workdir: str | None = None
    shell: str = "sh"
    stop_timeout_sec: int = 5
    kill_after_sec: float = 2.0


@dataclass(frozen=True, slots=True)
class PodBackendConfig:
    image: str
    kind: Literal["pod"] = "pod"
    namespace: str | None = None
    context: str | None = None
    kubeconfig: str | None = None
    env: dict[str, str] | None = None
    shell: str = "sh"
    poll_interval_sec: float = 1.0
    schedule_timeout_sec: float = 120.0
    binary: str = "kubectl"


BackendConfig = LocalBackendConfig | SshBackendConfig | ContainerBackendConfig | PodBackendConfig


@dataclass(frozen=True, slots=True)
class TaskSpec:
    id: str
    cmd: str
    depends_on: list[str] = field(default_factory=list)
    backend: BackendConfig = field(default_factory=LocalBackendConfig)
    retry: RetryPolicy | None = None
    timeout_sec: float | None = None
    outputs: list[str] = field(default_factory=list)
    skip: bool = False


@dataclass(slots=True)
class PlanSpec:
    name: str | None
    tasks: list[TaskSpec]
    concurrency: int = 4
    fail_fast: bool = False
    fail_fast_scope: FailFastScope = "graph"
    grace_period_sec: float = 10.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    vars: dict[str, str] = field(default_factory=dict)
