from __future__ import annotations

from collections.abc import Callable

from dagrun.config.schema import (
    BackendConfig,
    ContainerBackendConfig,
    LocalBackendConfig,
    PodBackendConfig,
    SshBackendConfig,
)
from dagrun.exec.backends.base import Executor
from dagrun.exec.backends.container import ContainerExecutor
from dagrun.exec.backends.local import LocalExecutor
from dagrun.exec.backends.pod import PodExecutor
from dagrun.exec.backends.ssh import SshExecutor

BackendFactory = Callable[[BackendConfig], Executor]


def create_executor(config: BackendConfig) -> Executor:
    """Return a fresh single-attempt executor for the configured backend variant."""
    match config:
        case LocalBackendConfig():
            return LocalExecutor(config)
        case SshBackendConfig():
            return SshExecutor(config)
        case ContainerBackendConfig():
            return ContainerExecutor(config)
        case PodBackendConfig():
            return PodExecutor(config)
    raise TypeError(f"unsupported backend config: {config!r}")
