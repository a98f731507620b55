from __future__ import annotations

import errno
import logging
import math
import os
import re
import stat
from contextlib import suppress
from pathlib import Path
from typing import Any

import yaml

from dagrun.config.schema import (
    BackendConfig,
    ContainerBackendConfig,
    ExponentialBackoff,
    FixedBackoff,
    LocalBackendConfig,
    PlanSpec,
    PodBackendConfig,
    RetryPolicy,
    SshBackendConfig,
    TaskSpec,
)
from dagrun.exec.interpolate import VARS_NAMESPACE
from dagrun.util.errors import PlanError
from dagrun.util.paths import has_symlink_ancestor

logger = logging.getLogger(__name__)

_SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_OUTPUT_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
_TASK_ID_MAX_LEN = 128
_ALLOWED_PLAN_KEYS = {
    "name",
    "concurrency",
    "fail_fast",
    "fail_fast_scope",
    "grace_period_sec",
    "retry",
    "vars",
    "tasks",
}
_ALLOWED_TASK_KEYS = {
    "id",
    "cmd",
    "depends_on",
    "backend",
    "retry",
    "timeout_sec",
    "outputs",
    "skip",
}
_BACKEND_KEYS: dict[str, set[str]] = {
    "local": {"kind", "shell", "cwd", "env", "kill_after_sec"},
    "ssh": {
        "kind",
        "host",
        "user",
        "port",
        "identity_file",
        "connect_timeout_sec",
        "tty",
        "options",
        "binary",
        "kill_after_sec",
    },
    "container": {
        "kind",
        "image",
        "runtime",
        "host",
        "pull",
        "env",
        "volumes",
        "workdir",
        "shell",
        "stop_timeout_sec",
        "kill_after_sec",
    },
    "pod": {
        "kind",
        "image",
        "namespace",
        "context",
        "kubeconfig",
        "env",
        "shell",
        "poll_interval_sec",
        "schedule_timeout_sec",
        "binary",
    },
}
_BACKEND_TYPES: dict[str, type] = {
    "local": LocalBackendConfig,
    "ssh": SshBackendConfig,
    "container": ContainerBackendConfig,
    "pod": PodBackendConfig,
}
_BACKEND_REQUIRED = {"ssh": ("host",), "container": ("image",), "pod": ("image",)}


def _is_finite_real_number(value: object) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return math.isfinite(value)


def _is_non_blank_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip()) and "\x00" not in value


def _is_safe_id(value: object) -> bool:
    return isinstance(value, str) and _SAFE_ID_PATTERN.fullmatch(value) is not None


def _ensure_list_str(name: str, value: Any, *, non_empty_items: bool = False) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PlanError(f"{name} must be list[str]")
    if non_empty_items and any(not _is_non_blank_str(v) for v in value):
        raise PlanError(f"{name} must not contain empty strings")
    return value


def _ensure_str_map(name: str, value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(
        _is_non_blank_str(k) and isinstance(v, (str, int, float)) and not isinstance(v, bool)
        for k, v in value.items()
    ):
        raise PlanError(f"{name} must be a mapping of strings")
    return {k: str(v) for k, v in value.items()}


def _positive_number(name: str, value: Any, *, allow_zero: bool = False) -> float:
    if not _is_finite_real_number(value) or value < 0 or (value == 0 and not allow_zero):
        raise PlanError(f"{name} must be {'>= 0' if allow_zero else '> 0'}")
    return float(value)


def _parse_retry(owner: str, raw: Any) -> RetryPolicy:
    if not isinstance(raw, dict):
        raise PlanError(f"{owner} retry must be mapping")
    unknown = set(raw) - {"max_attempts", "backoff"}
    if unknown:
        raise PlanError(f"{owner} retry has unknown fields: {sorted(unknown)}")
    max_attempts = raw.get("max_attempts", 1)
    if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 1:
        raise PlanError(f"{owner} retry.max_attempts must be int >= 1")

    raw_backoff = raw.get("backoff", {"kind": "fixed", "delay_sec": 0})
    if not isinstance(raw_backoff, dict):
        raise PlanError(f"{owner} retry.backoff must be mapping")
    kind = raw_backoff.get("kind", "fixed")
    if kind == "fixed":
        unknown = set(raw_backoff) - {"kind", "delay_sec"}
        if unknown:
            raise PlanError(f"{owner} retry.backoff has unknown fields: {sorted(unknown)}")
        backoff: FixedBackoff | ExponentialBackoff = FixedBackoff(
            _positive_number(f"{owner} retry.backoff.delay_sec", raw_backoff.get("delay_sec", 0), allow_zero=True)
        )
    elif kind == "exponential":
        unknown = set(raw_backoff) - {"kind", "base_sec", "factor", "cap_sec"}
        if unknown:
            raise PlanError(f"{owner} retry.backoff has unknown fields: {sorted(unknown)}")
        backoff = ExponentialBackoff(
            base_sec=_positive_number(f"{owner} retry.backoff.base_sec", raw_backoff.get("base_sec", 1.0)),
            factor=_positive_number(f"{owner} retry.backoff.factor", raw_backoff.get("factor", 2.0)),
            cap_sec=_positive_number(f"{owner} retry.backoff.cap_sec", raw_backoff.get("cap_sec", 60.0)),
        )
    else:
        raise PlanError(f"{owner} retry.backoff.kind must be 'fixed' or 'exponential'")
    return RetryPolicy(max_attempts=max_attempts, backoff=backoff)


def _parse_backend(task_id: str, raw: Any) -> BackendConfig:
    if raw is None:
        return LocalBackendConfig()
    if isinstance(raw, str):
        raw = {"kind": raw}
    if not isinstance(raw, dict):
        raise PlanError(f"task '{task_id}' backend must be mapping or kind name")
    kind = raw.get("kind", "local")
    if not isinstance(kind, str) or kind not in _BACKEND_TYPES:
        raise PlanError(f"task '{task_id}' backend.kind must be one of {sorted(_BACKEND_TYPES)}")
    unknown = set(raw) - _BACKEND_KEYS[kind]
    if unknown:
        raise PlanError(f"task '{task_id}' {kind} backend has unknown fields: {sorted(unknown)}")
    for key in _BACKEND_REQUIRED.get(kind, ()):
        if not _is_non_blank_str(raw.get(key)):
            raise PlanError(f"task '{task_id}' {kind} backend requires '{key}'")
    fields = {key: value for key, value in raw.items() if key != "kind"}
    if "env" in fields:
        fields["env"] = _ensure_str_map(f"task '{task_id}' backend.env", fields["env"])
    if "options" in fields:
        fields["options"] = _ensure_str_map(f"task '{task_id}' backend.options", fields["options"])
    if "volumes" in fields:
        fields["volumes"] = _ensure_list_str("backend.volumes", fields["volumes"], non_empty_items=True)
    if kind == "container" and fields.get("pull", "missing") not in {"missing", "always", "never"}:
        raise PlanError(f"task '{task_id}' container backend pull must be missing, always or never")
    try:
        return _BACKEND_TYPES[kind](**fields)
    except TypeError as exc:
        raise PlanError(f"task '{task_id}' invalid {kind} backend: {exc}") from exc


def _parse_task(raw: Any) -> TaskSpec:
    if not isinstance(raw, dict):
        raise PlanError("task must be mapping")
    if any(not isinstance(key, str) for key in raw):
        raise PlanError("task fields must use string keys")
    if "id" not in raw or not _is_non_blank_str(raw["id"]):
        raise PlanError("task.id is required and must be non-empty string")
    if len(raw["id"]) > _TASK_ID_MAX_LEN:
        raise PlanError(f"task.id must be <= {_TASK_ID_MAX_LEN} characters")
    if not _is_safe_id(raw["id"]):
        raise PlanError("task.id must match ^[A-Za-z0-9][A-Za-z0-9._-]*$")
    if raw["id"] == VARS_NAMESPACE:
        raise PlanError(f"task.id '{VARS_NAMESPACE}' is reserved")
    unknown = set(raw.keys()) - _ALLOWED_TASK_KEYS
    if unknown:
        raise PlanError(f"task '{raw['id']}' has unknown fields: {sorted(unknown)}")
    if not _is_non_blank_str(raw.get("cmd")):
        raise PlanError(f"task '{raw['id']}' cmd must be non-empty string")

    timeout_sec = raw.get("timeout_sec")
    if timeout_sec is not None:
        timeout_sec = _positive_number(f"task '{raw['id']}' timeout_sec", timeout_sec)

    retry = None
    if raw.get("retry") is not None:
        retry = _parse_retry(f"task '{raw['id']}'", raw["retry"])

    skip = raw.get("skip", False)
    if not isinstance(skip, bool):
        raise PlanError(f"task '{raw['id']}' skip must be bool")

    depends_on = _ensure_list_str("depends_on", raw.get("depends_on", []), non_empty_items=True)
    outputs = _ensure_list_str("outputs", raw.get("outputs", []), non_empty_items=True)
    bad_keys = [key for key in outputs if _OUTPUT_KEY_PATTERN.fullmatch(key) is None]
    if bad_keys:
        raise PlanError(f"task '{raw['id']}' has invalid output keys: {bad_keys}")
    if len(set(outputs)) != len(outputs):
        raise PlanError(f"task '{raw['id']}' has duplicate outputs")
    if len(set(depends_on)) != len(depends_on):
        raise PlanError(f"task '{raw['id']}' has duplicate dependencies")

    return TaskSpec(
        id=raw["id"],
        cmd=raw["cmd"],
        depends_on=depends_on,
        backend=_parse_backend(raw["id"], raw.get("backend")),
        retry=retry,
        timeout_sec=timeout_sec,
        outputs=outputs,
        skip=skip,
    )


def parse_plan(raw: Any) -> PlanSpec:
    """Turn an already-decoded mapping into a ``PlanSpec``. Graph validity is checked later."""
    if not isinstance(raw, dict):
        raise PlanError("plan root must be a mapping")
    if any(not isinstance(key, str) for key in raw):
        raise PlanError("plan root keys must be strings")
    unknown_root = set(raw.keys()) - _ALLOWED_PLAN_KEYS
    if unknown_root:
        raise PlanError(f"plan contains unknown fields: {sorted(unknown_root)}")

    raw_tasks = raw.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise PlanError("plan.tasks must be a non-empty list")

    name = raw.get("name")
    if name is not None and not _is_non_blank_str(name):
        raise PlanError("plan.name must be non-empty string when provided")

    concurrency = raw.get("concurrency", 4)
    if not isinstance(concurrency, int) or isinstance(concurrency, bool) or concurrency < 1:
        raise PlanError("plan.concurrency must be int >= 1")
    fail_fast = raw.get("fail_fast", False)
    if not isinstance(fail_fast, bool):
        raise PlanError("plan.fail_fast must be bool")
    fail_fast_scope = raw.get("fail_fast_scope", "graph")
    if fail_fast_scope not in {"graph", "component"}:
        raise PlanError("plan.fail_fast_scope must be 'graph' or 'component'")
    grace = _positive_number("plan.grace_period_sec", raw.get("grace_period_sec", 10.0), allow_zero=True)
    retry = _parse_retry("plan", raw["retry"]) if raw.get("retry") is not None else RetryPolicy()

    return PlanSpec(
        name=name,
        tasks=[_parse_task(task) for task in raw_tasks],
        concurrency=concurrency,
        fail_fast=fail_fast,
        fail_fast_scope=fail_fast_scope,
        grace_period_sec=grace,
        retry=retry,
        vars=_ensure_str_map("plan.vars", raw.get("vars")),
    )


def load_plan(path: Path) -> PlanSpec:
    if has_symlink_ancestor(path):
        raise PlanError(f"plan file path must not include symlink: {path}")
    try:
        meta = path.lstat()
    except FileNotFoundError:
        meta = None
    except (OSError, RuntimeError) as exc:
        raise PlanError(f"failed to read plan file: {path}") from exc

    if meta is not None:
        if stat.S_ISLNK(meta.st_mode):
            raise PlanError(f"plan file must not be symlink: {path}")
        if not stat.S_ISREG(meta.st_mode):
            raise PlanError(f"failed to read plan file: {path}")

    open_flags = os.O_RDONLY
    if hasattr(os, "O_NONBLOCK"):
        open_flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(path), open_flags)
        with os.fdopen(fd, "r", encoding="utf-8") as f:
            fd = None
            content = f.read()
    except FileNotFoundError as exc:
        raise PlanError(f"plan file not found: {path}") from exc
    except UnicodeError as exc:
        raise PlanError(f"failed to decode plan file as utf-8: {path}") from exc
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise PlanError(f"plan file must not be symlink: {path}") from exc
        raise PlanError(f"failed to read plan file: {path}") from exc
    finally:
        if fd is not None:
            with suppress(OSError, RuntimeError):
                os.close(fd)

    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise PlanError(f"failed to parse yaml: {exc}") from exc

    plan = parse_plan(raw)
    logger.debug("loaded plan %s with %d task(s)", path, len(plan.tasks))
    return plan
