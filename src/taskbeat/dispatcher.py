"""Dispatcher - runs admitted tasks and reports their outcomes.

Manifesto:
    A task's failure belongs to that task.  Whatever the unit does (raise,
    return a non-zero status, hang past its deadline) the dispatcher turns
    it into a :class:`~taskbeat.models.RunOutcome`, emits it, and releases
    the run lock.  Nothing propagates to the scheduler loop.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │ dispatch(task, run_id)                                          │
        │   foreground ──► run() inline, completed TaskHandle             │
        │   background ──► executor.submit(run) ──► TaskHandle(future)     │
        └─────────────────────────────────────────────────────────────────┘
                              │
                              ▼
        ┌─────────────────────────────────────────────────────────────────┐
        │ run(task, run_id)                                               │
        │   1. before hooks                                               │
        │   2. unit.execute(context) on a daemon thread                   │
        │   3. join(max_runtime); on expiry: cancel_event.set(),          │
        │      join(cancel_grace), record TIMED_OUT                       │
        │   4. write output (truncate / append)                           │
        │   5. after / on_success / on_failure hooks                      │
        │   finally: release lock, emit RunEvent                          │
        └─────────────────────────────────────────────────────────────────┘

    Worker pools:
        ``worker_pool_size=None``  one daemon thread per background run
        ``worker_pool_size=N``     ThreadPoolExecutor(max_workers=N)

Tags:
    taskbeat, execution, timeout, threads, futures

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from .coordinator import RunCoordinator, new_run_id
from .errors import SchedulerStoppedError, TaskExecutionFailure, TaskTimedOut
from .events import EventSink, LoggingEventSink, RunEvent
from .logging import LogContext, get_logger
from .models import RunOutcome, RunStatus, TaskDefinition
from .units import ExecutionContext, UnitResult

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class ThreadPerTaskExecutor(Executor):
    """Executor that starts a fresh daemon thread for every submission."""

    def __init__(self, thread_name_prefix: str = "taskbeat-worker") -> None:
        self._prefix = thread_name_prefix
        self._threads: set[threading.Thread] = set()
        self._lock = threading.Lock()
        self._shutdown = False
        self._counter = 0

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("cannot schedule new futures after shutdown")
            self._counter += 1
            name = f"{self._prefix}-{self._counter}"

        future: Future = Future()

        def _work() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = fn(*args, **kwargs)
            except BaseException as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)
            finally:
                with self._lock:
                    self._threads.discard(threading.current_thread())

        thread = threading.Thread(target=_work, name=name, daemon=True)
        with self._lock:
            self._threads.add(thread)
        thread.start()
        return future

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        with self._lock:
            self._shutdown = True
            threads = list(self._threads)
        if wait:
            for thread in threads:
                thread.join()


@dataclass
class TaskHandle:
    """Handle on a dispatched run.

    Foreground runs return an already completed handle; background runs
    complete when the worker finishes.
    """

    task_id: str
    run_id: str
    future: Future
    context: ExecutionContext | None = None
    background: bool = False

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: float | None = None) -> RunOutcome:
        """Wait for and return the run's outcome."""
        return self.future.result(timeout)

    def cancel(self) -> None:
        """Ask the unit to stop at its next cancellation point."""
        if self.context is not None:
            self.context.cancel_event.set()


class Dispatcher:
    """Execute tasks with timeout, output capture and outcome reporting.

    Args:
        coordinator: Owner of the run locks released after each run
        sink: Where run events are emitted (default: structlog lines)
        worker_pool_size: Background pool size; None for one thread per run
        cancel_grace: Seconds a timed-out unit gets to honour cancellation
        clock: Wall clock used for ``started_at`` / ``ended_at``
    """

    def __init__(
        self,
        coordinator: RunCoordinator,
        sink: EventSink | None = None,
        *,
        worker_pool_size: int | None = None,
        cancel_grace: float = 1.0,
        clock: Clock = utc_now,
    ) -> None:
        self.coordinator = coordinator
        self.sink = sink if sink is not None else LoggingEventSink()
        self.cancel_grace = cancel_grace
        self.clock = clock
        if worker_pool_size is None:
            self._executor: Executor = ThreadPerTaskExecutor()
        else:
            self._executor = ThreadPoolExecutor(
                max_workers=worker_pool_size, thread_name_prefix="taskbeat-worker"
            )
        self._in_flight: dict[str, TaskHandle] = {}
        self._lock = threading.RLock()
        self._closed = False

    # === Dispatch ===

    def dispatch(self, task: TaskDefinition, run_id: str | None = None) -> TaskHandle:
        """Run a task in the foreground, or hand it to the worker pool.

        The caller must already hold the run lock for ``run_id``.

        Raises:
            SchedulerStoppedError: if :meth:`close` was called; the run
                was not started and the caller still holds its lock
        """
        run_id = run_id or new_run_id()
        context = ExecutionContext.with_timeout(task.task_id, run_id, task.constraints.timeout_seconds)
        background = task.constraints.run_in_background

        if background:
            with self._lock:
                self._ensure_open(task, run_id)
                future = self._executor.submit(self.run, task, run_id, context)
                handle = TaskHandle(task.task_id, run_id, future, context, background=True)
                self._track(handle)
            logger.info("task_dispatched", task_id=task.task_id, run_id=run_id, background=True)
            return handle

        future = Future()
        future.set_running_or_notify_cancel()
        handle = TaskHandle(task.task_id, run_id, future, context)
        with self._lock:
            self._ensure_open(task, run_id)
            self._track(handle)
        logger.info("task_dispatched", task_id=task.task_id, run_id=run_id, background=False)
        try:
            future.set_result(self.run(task, run_id, context))
        except Exception as exc:
            future.set_exception(exc)
        return handle

    def _ensure_open(self, task: TaskDefinition, run_id: str) -> None:
        if self._closed:
            raise SchedulerStoppedError(task.task_id, run_id)

    def close(self) -> None:
        """Refuse further dispatches; runs already handed over continue."""
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def _track(self, handle: TaskHandle) -> None:
        with self._lock:
            self._in_flight[handle.run_id] = handle

        def _forget(_: Future) -> None:
            with self._lock:
                self._in_flight.pop(handle.run_id, None)

        handle.future.add_done_callback(_forget)

    def in_flight(self) -> list[TaskHandle]:
        """Handles of runs that have not completed yet."""
        with self._lock:
            return [h for h in self._in_flight.values() if not h.done()]

    def wait_all(self, timeout: float | None = None) -> bool:
        """Wait for in-flight runs; True if all finished within ``timeout``."""
        pending = [h.future for h in self.in_flight()]
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def cancel_all(self) -> int:
        handles = self.in_flight()
        for handle in handles:
            handle.cancel()
        return len(handles)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)

    # === Execution ===

    def run(
        self,
        task: TaskDefinition,
        run_id: str | None = None,
        context: ExecutionContext | None = None,
    ) -> RunOutcome:
        """Run a task to completion (or timeout) and return its outcome.

        Never raises for task-level problems; the lock for ``run_id`` is
        released and the outcome emitted before returning.
        """
        run_id = run_id or (context.run_id if context else new_run_id())
        if context is None:
            context = ExecutionContext.with_timeout(task.task_id, run_id, task.constraints.timeout_seconds)
        started_at = self.clock()
        outcome: RunOutcome | None = None

        with LogContext(task_id=task.task_id, run_id=run_id):
            try:
                logger.info("run_started", description=task.summary)
                self._call_hooks("before", task.hooks.before, task)
                status, exit_status, output, detail = self._execute(task, context)
                output_ref = self._write_output(task, output)
                outcome = RunOutcome(
                    task_id=task.task_id,
                    run_id=run_id,
                    started_at=started_at,
                    ended_at=self.clock(),
                    status=status,
                    exit_status=exit_status,
                    output_ref=output_ref,
                    error_detail=detail,
                )
                self._call_hooks("after", task.hooks.after, task, outcome)
                if outcome.succeeded:
                    self._call_hooks("on_success", task.hooks.on_success, task, outcome)
                else:
                    self._call_hooks("on_failure", task.hooks.on_failure, task, outcome)
            except Exception as e:
                logger.exception("run_internal_error", error=str(e))
                outcome = RunOutcome(
                    task_id=task.task_id,
                    run_id=run_id,
                    started_at=started_at,
                    ended_at=self.clock(),
                    status=RunStatus.FAILURE,
                    error_detail=f"{type(e).__name__}: {e}",
                )
            finally:
                if outcome is None:
                    outcome = RunOutcome(
                        task_id=task.task_id,
                        run_id=run_id,
                        started_at=started_at,
                        ended_at=self.clock(),
                        status=RunStatus.FAILURE,
                        error_detail="run interrupted",
                    )
                self._finish(outcome)
        return outcome

    def _execute(
        self, task: TaskDefinition, context: ExecutionContext
    ) -> tuple[RunStatus, int | None, bytes | None, str | None]:
        box: dict[str, Any] = {}

        def _target() -> None:
            try:
                box["result"] = task.unit.execute(context)
            except Exception as exc:
                box["error"] = exc

        worker = threading.Thread(target=_target, name=f"taskbeat-run-{task.task_id}", daemon=True)
        worker.start()
        worker.join(context.timeout_seconds)

        if worker.is_alive():
            context.cancel_event.set()
            worker.join(self.cancel_grace)
            timeout = context.timeout_seconds or 0.0
            detached = worker.is_alive()
            logger.warning("run_timeout", timeout_seconds=timeout, detached=detached)
            error = TaskTimedOut(task.task_id, timeout, context.elapsed)
            partial = box.get("result")
            return RunStatus.TIMED_OUT, None, partial[1] if partial else None, str(error)

        if "error" in box:
            exc = box["error"]
            if isinstance(exc, TaskTimedOut):
                return RunStatus.TIMED_OUT, None, None, str(exc)
            failure = TaskExecutionFailure(task.task_id, f"{type(exc).__name__}: {exc}", cause=exc)
            logger.warning("run_raised", error=failure.message)
            return RunStatus.FAILURE, None, None, failure.message

        if "result" not in box:
            return RunStatus.FAILURE, None, None, "unit exited without a result"

        result: UnitResult = box["result"]
        exit_status, output = result
        if exit_status != 0:
            failure = TaskExecutionFailure(
                task.task_id, f"exit status {exit_status}", exit_status=exit_status
            )
            return RunStatus.FAILURE, exit_status, output, failure.message
        return RunStatus.SUCCESS, exit_status, output, None

    def _write_output(self, task: TaskDefinition, output: bytes | None) -> str | None:
        path = task.constraints.output_path
        if path is None:
            return None
        mode = "ab" if task.constraints.append_output else "wb"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, mode) as fh:
                if output:
                    fh.write(output)
        except OSError as e:
            logger.warning("output_write_failed", path=str(path), error=str(e))
            return None
        return str(path)

    def _call_hooks(self, kind: str, hooks: tuple[Callable[..., Any], ...], *args: Any) -> None:
        for hook in hooks:
            try:
                hook(*args)
            except Exception as e:
                logger.warning("hook_failed", hook=kind, error=str(e))

    def _finish(self, outcome: RunOutcome) -> None:
        self.coordinator.release(outcome.task_id, outcome.run_id, outcome)
        if self.coordinator.was_force_released(outcome.run_id):
            # Already reported as TIMED_OUT when the scheduler stopped.
            logger.info("run_finished_after_shutdown", status=outcome.status.value)
            return
        self.emit(outcome)

    def emit(self, outcome: RunOutcome) -> None:
        try:
            self.sink.emit(RunEvent.from_outcome(outcome))
        except Exception as e:
            logger.warning("event_emit_failed", task_id=outcome.task_id, error=str(e))
