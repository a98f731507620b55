from __future__ import annotations

import asyncio
import heapq
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from dagrun.config.schema import PlanSpec, RetryPolicy, TaskSpec
from dagrun.dag.build import Graph, build_graph
from dagrun.exec.backends.base import ExecResult, ExecutionContext, Executor
from dagrun.exec.backends.factory import BackendFactory, create_executor
from dagrun.exec.cancel import CancellationController
from dagrun.exec.interpolate import capture_outputs, referenced_tasks, resolve_command
from dagrun.exec.retry import backoff_for_attempt, effective_policy, should_retry
from dagrun.exec.sink import ArtifactSink, NullSink
from dagrun.state.model import (
    SKIP_DISABLED,
    AttemptOutcome,
    AttemptRecord,
    RunResult,
    TaskState,
    TaskStatus,
)
from dagrun.util.errors import (
    ExecutionError,
    NonZeroExit,
    TimeoutExpired,
    UnresolvedReferenceError,
)
from dagrun.util.ids import new_run_id
from dagrun.util.time import duration_sec, local_now, now_iso, stamp

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[RunResult], None]


@dataclass(slots=True)
class AttemptReport:
    """Message a worker puts on the result channel when its attempt ends."""

    task_id: str
    attempt: int
    started_at: str
    ended_at: str
    duration_sec: float
    result: ExecResult | None = None
    error: ExecutionError | None = None
    crash: str | None = None


@dataclass(slots=True)
class _InFlight:
    attempt: int
    executor: Executor
    worker: asyncio.Task[None]


def _satisfied(state: TaskState) -> bool:
    return state.status == "SUCCEEDED" or (
        state.status == "SKIPPED" and state.reason == SKIP_DISABLED
    )


def _finalize_run_status(result: RunResult, cancelled: bool) -> None:
    if cancelled:
        result.status = "CANCELLED"
    elif all(_satisfied(task) for task in result.tasks.values()):
        result.status = "SUCCEEDED"
    else:
        result.status = "FAILED"


class Scheduler:
    """Single owner of task status; drives dispatch, retries and shutdown for one run."""

    def __init__(
        self,
        graph: Graph,
        *,
        concurrency: int,
        fail_fast: bool,
        fail_fast_scope: str = "graph",
        default_retry: RetryPolicy | None = None,
        backend_factory: BackendFactory = create_executor,
        sink: ArtifactSink | None = None,
        controller: CancellationController | None = None,
        variables: Mapping[str, str] | None = None,
        run_id: str | None = None,
        workdir: Path | None = None,
        kill_grace_sec: float = 2.0,
        on_update: UpdateCallback | None = None,
        name: str | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if fail_fast_scope not in {"graph", "component"}:
            raise ValueError("fail_fast_scope must be 'graph' or 'component'")
        self._graph = graph
        self._concurrency = concurrency
        self._fail_fast = fail_fast
        self._scope = fail_fast_scope
        self._default_retry = default_retry or RetryPolicy()
        self._backend_factory = backend_factory
        self._sink: ArtifactSink = sink or NullSink()
        self._controller = controller or CancellationController()
        self._vars = dict(variables or {})
        self._workdir = (workdir or Path.cwd()).resolve()
        self._kill_grace_sec = kill_grace_sec
        self._on_update = on_update

        self._states = {task.id: TaskState() for task in graph.tasks}
        self._remaining = {task.id: len(graph.upstream[task.id]) for task in graph.tasks}
        self._references = {task.id: set(referenced_tasks(task.cmd)) for task in graph.tasks}
        self._components = graph.components() if fail_fast_scope == "component" else {}
        self._ready: list[tuple[int, str]] = []
        self._retry: list[tuple[float, int, str]] = []
        self._retrying: set[str] = set()
        self._running: dict[str, _InFlight] = {}
        self._results: asyncio.Queue[AttemptReport] = asyncio.Queue()
        self._slots = asyncio.Semaphore(concurrency)
        self._halted_all = False
        self._halted_components: set[int] = set()
        self._cancelled = False
        self._result = RunResult(
            run_id=run_id or new_run_id(local_now()),
            name=name,
            status="RUNNING",
            started_at=now_iso(),
            ended_at=None,
            concurrency=concurrency,
            fail_fast=fail_fast,
            fail_fast_scope=fail_fast_scope,
            tasks=self._states,
        )

    @property
    def result(self) -> RunResult:
        return self._result

    # --- state transitions -------------------------------------------------

    def _notify(self) -> None:
        if self._on_update is not None:
            self._on_update(self._result)

    def _mark(self, task_id: str, status: TaskStatus, *, reason: str | None = None) -> None:
        state = self._states[task_id]
        was_terminal = state.terminal
        state.status = status
        if reason is not None:
            state.reason = reason
        if not state.terminal:
            return
        state.ended_at = now_iso()
        if not was_terminal:
            logger.info("task %s -> %s%s", task_id, status, f" ({reason})" if reason else "")
            self._settle(task_id)

    def _fail(self, task_id: str, *, kind: str, error: str, reason: str) -> None:
        state = self._states[task_id]
        state.error_kind = kind
        state.error = error
        self._mark(task_id, "FAILED", reason=reason)
        self._on_failure(task_id)

    def _settle(self, task_id: str) -> None:
        for child in self._graph.dependents[task_id]:
            self._remaining[child] -= 1
            if self._remaining[child] == 0:
                self._evaluate(child)

    def _evaluate(self, task_id: str) -> None:
        """Decide the fate of a PENDING task whose upstream tasks are all terminal."""
        state = self._states[task_id]
        if state.status != "PENDING":
            return
        if self._cancelled:
            self._mark(task_id, "CANCELLED", reason="run_cancelled")
            return
        if self._is_halted(task_id):
            self._mark(task_id, "SKIPPED", reason="fail_fast")
            return
        upstream = self._graph.upstream[task_id]
        unresolved = [
            dep
            for dep in upstream
            if dep in self._references[task_id] and self._states[dep].status != "SUCCEEDED"
        ]
        if unresolved:
            exc = UnresolvedReferenceError(
                task_id, [f"{dep} ({self._states[dep].status})" for dep in unresolved]
            )
            self._fail(task_id, kind=exc.kind, error=str(exc), reason="unresolved_reference")
            return
        if any(not _satisfied(self._states[dep]) for dep in upstream):
            self._mark(task_id, "SKIPPED", reason="dependency_failed")
            return
        state.status = "READY"
        heapq.heappush(self._ready, (self._graph.index(task_id), task_id))

    def _is_halted(self, task_id: str) -> bool:
        if self._halted_all:
            return True
        return bool(self._halted_components) and self._components.get(task_id) in self._halted_components

    def _on_failure(self, task_id: str) -> None:
        if not self._fail_fast:
            return
        if self._scope == "component":
            self._halted_components.add(self._components[task_id])
        else:
            self._halted_all = True
        logger.warning("fail-fast: %s failed, halting new dispatch", task_id)
        for other in self._graph.order:
            if not self._is_halted(other) or other in self._running:
                continue
            state = self._states[other]
            if other in self._retrying:
                self._retrying.discard(other)
                self._mark(other, "FAILED", reason="fail_fast")
            elif state.status in {"PENDING", "READY"}:
                self._mark(other, "SKIPPED", reason="fail_fast")

    # --- dispatch ----------------------------------------------------------

    def _succeeded_outputs(self) -> dict[str, dict[str, str]]:
        return {
            task_id: state.outputs
            for task_id, state in self._states.items()
            if state.status == "SUCCEEDED"
        }

    async def _dispatch_ready(self) -> None:
        while self._ready and not self._slots.locked() and not self._controller.triggered:
            _, task_id = heapq.heappop(self._ready)
            if self._states[task_id].status != "READY" or task_id in self._retrying:
                continue
            if self._is_halted(task_id):
                self._mark(task_id, "SKIPPED", reason="fail_fast")
                continue
            await self._dispatch(self._graph.task(task_id))

    async def _dispatch(self, task: TaskSpec) -> None:
        state = self._states[task.id]
        try:
            command = resolve_command(task.id, task.cmd, self._succeeded_outputs(), self._vars)
        except UnresolvedReferenceError as exc:
            self._fail(task.id, kind=exc.kind, error=str(exc), reason="unresolved_reference")
            return
        await self._slots.acquire()
        state.status = "RUNNING"
        state.attempts += 1
        state.command = command
        if state.started_at is None:
            state.started_at = now_iso()
        attempt = state.attempts
        executor = self._backend_factory(task.backend)
        context = ExecutionContext(
            run_id=self._result.run_id, task_id=task.id, attempt=attempt, workdir=self._workdir
        )
        worker = asyncio.create_task(
            self._run_attempt(task, command, executor, context), name=f"dagrun:{task.id}:{attempt}"
        )
        self._running[task.id] = _InFlight(attempt=attempt, executor=executor, worker=worker)
        logger.info("dispatched %s (attempt %d) on %s backend", task.id, attempt, task.backend.kind)
        self._notify()

    # --- workers -----------------------------------------------------------

    async def _execute_with_timeout(
        self, task: TaskSpec, command: str, executor: Executor, context: ExecutionContext
    ) -> ExecResult:
        if task.timeout_sec is None:
            return await executor.execute(task, command, context)
        job = asyncio.create_task(executor.execute(task, command, context))
        try:
            return await asyncio.wait_for(asyncio.shield(job), timeout=task.timeout_sec)
        except TimeoutError:
            logger.warning("task %s attempt %d timed out after %ss", task.id, context.attempt, task.timeout_sec)
            await executor.cancel()
            try:
                await asyncio.wait_for(job, timeout=self._kill_grace_sec)
            except TimeoutError:
                pass
            except Exception as exc:  # noqa: BLE001
                logger.debug("task %s unwound after timeout with %r", task.id, exc)
            raise TimeoutExpired(f"attempt exceeded timeout of {task.timeout_sec}s") from None
        finally:
            if not job.done():
                job.cancel()
                # Let the executor's own cleanup (process reaping, rm, pod delete) finish.
                await asyncio.wait({job})

    async def _run_attempt(
        self, task: TaskSpec, command: str, executor: Executor, context: ExecutionContext
    ) -> None:
        started_dt = local_now()
        report = AttemptReport(
            task_id=task.id,
            attempt=context.attempt,
            started_at=stamp(started_dt),
            ended_at="",
            duration_sec=0.0,
        )
        try:
            report.result = await self._execute_with_timeout(task, command, executor, context)
        except ExecutionError as exc:
            report.error = exc
        except Exception as exc:
            logger.exception("runner exception in task %s", task.id)
            report.crash = f"runner exception: {type(exc).__name__}: {exc}"
        ended_dt = local_now()
        report.ended_at = stamp(ended_dt)
        report.duration_sec = duration_sec(started_dt, ended_dt)
        self._results.put_nowait(report)

    # --- results -----------------------------------------------------------

    def _record(self, report: AttemptReport) -> AttemptRecord:
        outcome: AttemptOutcome
        error_kind: str | None = None
        error: str | None = None
        exit_code: int | None = None
        stdout = stderr = ""
        if report.result is not None:
            exit_code = report.result.exit_code
            stdout, stderr = report.result.stdout, report.result.stderr
            if exit_code == 0:
                outcome = "succeeded"
            else:
                failure = NonZeroExit(f"command exited with code {exit_code}", exit_code=exit_code)
                outcome, error_kind, error = "failed", failure.kind, str(failure)
        elif report.error is not None:
            exit_code = report.error.exit_code
            stderr = report.error.stderr
            outcome = "timeout" if isinstance(report.error, TimeoutExpired) else "failed"
            error_kind, error = report.error.kind, str(report.error)
        else:
            outcome, error_kind, error = "error", "runner_exception", report.crash
        return AttemptRecord(
            task_id=report.task_id,
            attempt=report.attempt,
            outcome=outcome,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            started_at=report.started_at,
            ended_at=report.ended_at,
            duration_sec=report.duration_sec,
            error_kind=error_kind,
            error=error,
        )

    def _store(self, record: AttemptRecord) -> None:
        self._result.attempts.append(record)
        try:
            self._sink.record(
                record.task_id,
                record.attempt,
                record.stdout,
                record.stderr,
                record.exit_code,
                record.duration_sec,
            )
        except OSError as exc:
            logger.warning("artifact sink failed for %s attempt %d: %s", record.task_id, record.attempt, exc)

    def _handle_report(self, report: AttemptReport) -> None:
        inflight = self._running.get(report.task_id)
        if inflight is None or inflight.attempt != report.attempt:
            logger.debug("dropping stale report for %s attempt %d", report.task_id, report.attempt)
            return
        del self._running[report.task_id]
        self._slots.release()
        task = self._graph.task(report.task_id)
        state = self._states[report.task_id]
        record = self._record(report)
        self._store(record)
        state.exit_code = record.exit_code
        state.duration_sec = record.duration_sec
        state.timed_out = record.outcome == "timeout"

        if record.outcome == "succeeded":
            state.outputs = capture_outputs(record.stdout, task.outputs)
            state.error_kind = state.error = None
            self._mark(task.id, "SUCCEEDED")
        elif self._controller.triggered:
            self._mark(task.id, "CANCELLED", reason="run_cancelled")
        else:
            state.error_kind, state.error = record.error_kind, record.error
            policy = effective_policy(task.retry, self._default_retry)
            if should_retry(state.attempts, policy) and not self._is_halted(task.id):
                delay = backoff_for_attempt(state.attempts, policy)
                due = asyncio.get_running_loop().time() + delay
                state.status = "READY"
                self._retrying.add(task.id)
                heapq.heappush(self._retry, (due, self._graph.index(task.id), task.id))
                logger.info(
                    "task %s attempt %d failed (%s), retrying in %.2fs",
                    task.id,
                    report.attempt,
                    record.error_kind,
                    delay,
                )
            else:
                self._fail(
                    task.id,
                    kind=record.error_kind or "execution_error",
                    error=record.error or "attempt failed",
                    reason="attempts_exhausted" if not self._is_halted(task.id) else "fail_fast",
                )
        self._notify()

    def _merge_due_retries(self, now: float) -> None:
        while self._retry and self._retry[0][0] <= now:
            _, index, task_id = heapq.heappop(self._retry)
            if task_id not in self._retrying:
                continue
            self._retrying.discard(task_id)
            if self._states[task_id].status == "READY":
                heapq.heappush(self._ready, (index, task_id))

    async def _wait_for_event(self, cancel_wait: asyncio.Task[None]) -> None:
        loop = asyncio.get_running_loop()
        timeout = None
        if self._retry:
            timeout = max(0.0, self._retry[0][0] - loop.time())
        getter = asyncio.create_task(self._results.get())
        done, _ = await asyncio.wait(
            {getter, cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if getter in done:
            self._handle_report(getter.result())
        else:
            getter.cancel()

    # --- shutdown ----------------------------------------------------------

    async def _shutdown(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._controller.grace_period_sec
        self._cancelled = True
        logger.warning(
            "cancelling run %s: %d task(s) in flight, grace period %ss",
            self._result.run_id,
            len(self._running),
            self._controller.grace_period_sec,
        )
        self._retry.clear()
        self._retrying.clear()
        self._ready.clear()
        for task_id in self._graph.order:
            if task_id not in self._running and not self._states[task_id].terminal:
                self._mark(task_id, "CANCELLED", reason="run_cancelled")
        self._notify()

        await self._controller.cancel_all(
            (task_id, inflight.executor) for task_id, inflight in self._running.items()
        )
        while self._running:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                report = await asyncio.wait_for(self._results.get(), timeout=remaining)
            except TimeoutError:
                break
            self._handle_report(report)

        workers = []
        for task_id, inflight in list(self._running.items()):
            inflight.worker.cancel()
            workers.append(inflight.worker)
            del self._running[task_id]
            self._slots.release()
            ended = now_iso()
            self._store(
                AttemptRecord(
                    task_id=task_id,
                    attempt=inflight.attempt,
                    outcome="cancelled",
                    exit_code=None,
                    stdout="",
                    stderr="",
                    started_at=self._states[task_id].started_at or ended,
                    ended_at=ended,
                    duration_sec=0.0,
                    error_kind="cancelled",
                    error="no outcome reported within grace period",
                )
            )
            self._mark(task_id, "CANCELLED", reason="grace_period_expired")
        if workers:
            await asyncio.wait(workers, timeout=self._kill_grace_sec)
        self._notify()

    # --- main loop ---------------------------------------------------------

    async def run(self) -> RunResult:
        for task in self._graph.tasks:
            if task.skip:
                self._mark(task.id, "SKIPPED", reason=SKIP_DISABLED)
        for task in self._graph.tasks:
            if self._remaining[task.id] == 0:
                self._evaluate(task.id)
        self._notify()

        cancel_wait = asyncio.create_task(self._controller.wait())
        try:
            while True:
                if self._controller.triggered:
                    await self._shutdown()
                    break
                self._merge_due_retries(asyncio.get_running_loop().time())
                await self._dispatch_ready()
                if not self._running and not self._ready and not self._retrying:
                    break
                await self._wait_for_event(cancel_wait)
        finally:
            cancel_wait.cancel()
            for inflight in self._running.values():
                inflight.worker.cancel()

        for task_id, state in self._states.items():
            if not state.terminal:
                state.status = "SKIPPED"
                state.reason = "unresolvable_dependencies"
                state.ended_at = now_iso()
        _finalize_run_status(self._result, self._cancelled)
        self._result.ended_at = now_iso()
        logger.info("run %s finished: %s", self._result.run_id, self._result.status)
        self._notify()
        return self._result


async def run_graph(
    graph: Graph,
    *,
    concurrency: int = 4,
    fail_fast: bool = False,
    fail_fast_scope: str = "graph",
    default_retry: RetryPolicy | None = None,
    backend_factory: BackendFactory = create_executor,
    sink: ArtifactSink | None = None,
    controller: CancellationController | None = None,
    variables: Mapping[str, str] | None = None,
    run_id: str | None = None,
    workdir: Path | None = None,
    kill_grace_sec: float = 2.0,
    on_update: UpdateCallback | None = None,
    name: str | None = None,
) -> RunResult:
    """Execute a validated graph to completion and return per-task results."""
    scheduler = Scheduler(
        graph,
        concurrency=concurrency,
        fail_fast=fail_fast,
        fail_fast_scope=fail_fast_scope,
        default_retry=default_retry,
        backend_factory=backend_factory,
        sink=sink,
        controller=controller,
        variables=variables,
        run_id=run_id,
        workdir=workdir,
        kill_grace_sec=kill_grace_sec,
        on_update=on_update,
        name=name,
    )
    return await scheduler.run()


async def run_plan(
    plan: PlanSpec,
    *,
    concurrency: int | None = None,
    fail_fast: bool | None = None,
    backend_factory: BackendFactory = create_executor,
    sink: ArtifactSink | None = None,
    controller: CancellationController | None = None,
    run_id: str | None = None,
    workdir: Path | None = None,
    on_update: UpdateCallback | None = None,
) -> RunResult:
    """Build the graph for ``plan`` and run it; explicit arguments override plan settings."""
    graph = build_graph(plan.tasks)
    return await run_graph(
        graph,
        concurrency=plan.concurrency if concurrency is None else concurrency,
        fail_fast=plan.fail_fast if fail_fast is None else fail_fast,
        fail_fast_scope=plan.fail_fast_scope,
        default_retry=plan.retry,
        backend_factory=backend_factory,
        sink=sink,
        controller=controller or CancellationController(plan.grace_period_sec),
        variables=plan.vars,
        run_id=run_id,
        workdir=workdir,
        on_update=on_update,
        name=plan.name,
    )
