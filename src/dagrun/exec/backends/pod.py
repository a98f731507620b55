"""Run commands in short-lived Kubernetes pods through ``kubectl``.

The pod is deleted after every attempt, whether it succeeded, failed, raised
or was cancelled.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from contextlib import suppress
from secrets import token_hex
from typing import Any

from dagrun.config.schema import PodBackendConfig, TaskSpec
from dagrun.exec.backends import process
from dagrun.exec.backends.base import ExecResult, ExecutionContext
from dagrun.util.errors import ImagePullFailure, PodExecutionFailure, PodSchedulingFailure

logger = logging.getLogger(__name__)

_NAME_UNSAFE = re.compile(r"[^a-z0-9-]+")
_NAME_MAX_LEN = 63
_IMAGE_PULL_REASONS = {"ErrImagePull", "ImagePullBackOff", "InvalidImageName", "ErrImageNeverPull"}
_CONTROL_TIMEOUT_SEC = 60.0
_CONTROL_KILL_AFTER_SEC = 1.0


def pod_name(task_id: str, attempt: int) -> str:
    suffix = f"-{attempt}-{token_hex(3)}"
    stem = _NAME_UNSAFE.sub("-", f"dagrun-{task_id}".lower()).strip("-")
    return stem[: _NAME_MAX_LEN - len(suffix)].rstrip("-") + suffix


def _container_status(pod: dict[str, Any]) -> dict[str, Any]:
    statuses = pod.get("status", {}).get("containerStatuses") or []
    return statuses[0] if statuses else {}


def _waiting_reason(pod: dict[str, Any]) -> tuple[str | None, str]:
    waiting = _container_status(pod).get("state", {}).get("waiting") or {}
    return waiting.get("reason"), waiting.get("message", "")


def _scheduled_condition(pod: dict[str, Any]) -> dict[str, Any]:
    for condition in pod.get("status", {}).get("conditions") or []:
        if condition.get("type") == "PodScheduled":
            return condition
    return {}


def _is_scheduled(pod: dict[str, Any]) -> bool:
    return _scheduled_condition(pod).get("status") == "True"


def _unschedulable_message(pod: dict[str, Any]) -> str | None:
    condition = _scheduled_condition(pod)
    if condition.get("status") == "False" and condition.get("reason") == "Unschedulable":
        return condition.get("message", "Unschedulable")
    return None


def _exit_code(pod: dict[str, Any]) -> int | None:
    terminated = _container_status(pod).get("state", {}).get("terminated") or {}
    code = terminated.get("exitCode")
    return code if isinstance(code, int) else None


class PodExecutor:
    def __init__(self, config: PodBackendConfig) -> None:
        self._config = config
        self._name: str | None = None
        self._cancelled = asyncio.Event()
        self._control: set[asyncio.subprocess.Process] = set()

    def _kubectl_argv(self, *args: str) -> list[str]:
        argv = [self._config.binary]
        if self._config.kubeconfig:
            argv.extend(["--kubeconfig", self._config.kubeconfig])
        if self._config.context:
            argv.extend(["--context", self._config.context])
        if self._config.namespace:
            argv.extend(["--namespace", self._config.namespace])
        argv.extend(args)
        return argv

    async def _kubectl(self, *args: str, track: bool = True) -> tuple[int, str, str]:
        return await process.run_capture(
            self._kubectl_argv(*args),
            timeout_sec=_CONTROL_TIMEOUT_SEC,
            inflight=self._control if track else None,
        )

    def _check_cancelled(self, name: str) -> None:
        if self._cancelled.is_set():
            raise PodExecutionFailure(f"pod {name} cancelled")

    def build_create_args(self, name: str, command: str) -> list[str]:
        args = [
            "run",
            name,
            f"--image={self._config.image}",
            "--restart=Never",
            "--labels=app.kubernetes.io/managed-by=dagrun",
        ]
        for key, value in sorted((self._config.env or {}).items()):
            args.append(f"--env={key}={value}")
        args.extend(["--command", "--", self._config.shell, "-c", command])
        return args

    async def _get_pod(self, name: str) -> dict[str, Any]:
        code, stdout, stderr = await self._kubectl("get", "pod", name, "-o", "json")
        self._check_cancelled(name)
        if code != 0:
            raise PodExecutionFailure(f"failed to read pod {name}: {stderr.strip()}", stderr=stderr)
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise PodExecutionFailure(f"unreadable pod status for {name}: {exc}") from exc

    async def _sleep(self) -> None:
        with suppress(TimeoutError):
            await asyncio.wait_for(self._cancelled.wait(), timeout=self._config.poll_interval_sec)

    async def _wait_for_completion(self, name: str) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        created_at = loop.time()
        while True:
            self._check_cancelled(name)
            pod = await self._get_pod(name)
            phase = pod.get("status", {}).get("phase")
            if phase in {"Succeeded", "Failed"}:
                return pod
            if phase == "Unknown":
                raise PodExecutionFailure(f"pod {name} entered Unknown phase")
            reason, message = _waiting_reason(pod)
            if reason in _IMAGE_PULL_REASONS:
                raise ImagePullFailure(f"pod {name} cannot pull {self._config.image}: {reason} {message}".strip())
            # Image pulls after scheduling are bounded by the task timeout, not this deadline.
            if phase in {"Pending", None} and not _is_scheduled(pod):
                unschedulable = _unschedulable_message(pod)
                if loop.time() - created_at > self._config.schedule_timeout_sec:
                    raise PodSchedulingFailure(
                        f"pod {name} not scheduled within {self._config.schedule_timeout_sec}s"
                        + (f": {unschedulable}" if unschedulable else "")
                    )
            await self._sleep()

    async def _delete(self, name: str) -> None:
        code, _, stderr = await self._kubectl(
            "delete", "pod", name, "--ignore-not-found=true", "--wait=false", track=False
        )
        if code != 0:
            logger.warning("failed to delete pod %s: %s", name, stderr.strip())

    async def execute(self, task: TaskSpec, command: str, context: ExecutionContext) -> ExecResult:
        name = pod_name(task.id, context.attempt)
        self._name = name
        try:
            code, _, stderr = await self._kubectl(*self.build_create_args(name, command))
            self._check_cancelled(name)
            if code != 0:
                raise PodSchedulingFailure(
                    f"failed to create pod {name}: {stderr.strip()}", exit_code=code, stderr=stderr
                )
            logger.debug("task %s attempt %d scheduled pod %s", task.id, context.attempt, name)
            pod = await self._wait_for_completion(name)
            _, logs, log_err = await self._kubectl("logs", name)
            exit_code = _exit_code(pod)
            if exit_code is None:
                raise PodExecutionFailure(
                    f"pod {name} finished without a container exit code", stderr=log_err
                )
            return ExecResult(exit_code=exit_code, stdout=logs, stderr=log_err)
        finally:
            await asyncio.shield(self._delete(name))

    async def cancel(self) -> None:
        self._cancelled.set()
        await process.terminate_all(self._control, kill_after_sec=_CONTROL_KILL_AFTER_SEC)
        if self._name is not None:
            await self._delete(self._name)
