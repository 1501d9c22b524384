"""Scheduler service - main orchestrator.

Manifesto:
    The SchedulerService ties together the timing backend, the task
    registry, the run coordinator and the dispatcher.  The backend decides
    WHEN to tick; ``tick(now)`` decides WHAT a tick does.  Because ``tick``
    takes the instant as an argument, a test can drive a whole day of
    scheduling in milliseconds.

Tags:
    taskbeat, scheduling, orchestrator, beat-as-poller, service

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER SERVICE ARCHITECTURE                                               │
│                                                                               │
│   ┌────────────┐  ┌────────────┐  ┌─────────────┐  ┌────────────┐            │
│   │ Backend    │  │ Registry   │  │ Coordinator │  │ Dispatcher │            │
│   │ (timing)   │  │ (tasks)    │  │ (locks)     │  │ (runs)     │            │
│   └─────┬──────┘  └─────┬──────┘  └──────┬──────┘  └─────┬──────┘            │
│         │               ▼                ▼               ▼                   │
│         │   ┌───────────────────────────────────────────────────────┐        │
│         └──►│ tick(now)                                             │        │
│             │   1. coordinator.sweep_expired(now)                   │        │
│             │   2. evaluator.due_tasks(now)      (registration order)│        │
│             │   3. for each due task:                               │        │
│             │      ├── coordinator.admit(task, now)                 │        │
│             │      │     skipped ──► emit SKIPPED outcome           │        │
│             │      ├── coordinator.mark_fired(task, now)            │        │
│             │      └── dispatcher.dispatch(task, run_id)            │        │
│             └───────────────────────────────────────────────────────┘        │
│                                                                               │
│   Control surface:                                                            │
│   ├── start() / stop(grace_period)                                           │
│   ├── register_all(tasks) / list_registered()                                │
│   ├── run_now(task_id)                                                       │
│   ├── enter_maintenance() / exit_maintenance()                               │
│   └── health() / get_stats()                                                 │
│                                                                               │
│   States:  IDLE ──start()──► RUNNING ──stop()──► STOPPED                     │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .backend import BackendHealth, SchedulerBackend, ThreadSchedulerBackend
from .coordinator import RunCoordinator, new_run_id
from .dispatcher import Dispatcher, TaskHandle
from .errors import EvaluatorInternalError, SchedulerStoppedError
from .evaluator import DueSetEvaluator
from .events import CompositeSink, EventSink, LoggingEventSink, RunEvent
from .logging import get_logger
from .models import RunOutcome, RunStatus, SkipReason, TaskDefinition
from .recurrence import to_utc
from .registry import TaskRegistry
from .schedule import collect_tasks
from .settings import SchedulerSettings, load_settings

logger = get_logger(__name__)


class ServiceState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class SchedulerStats:
    """Counters for the scheduler service."""

    tick_count: int = 0
    tick_errors: int = 0
    runs_dispatched: int = 0
    runs_skipped: int = 0
    runs_succeeded: int = 0
    runs_failed: int = 0
    runs_timed_out: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_count": self.tick_count,
            "tick_errors": self.tick_errors,
            "runs_dispatched": self.runs_dispatched,
            "runs_skipped": self.runs_skipped,
            "runs_succeeded": self.runs_succeeded,
            "runs_failed": self.runs_failed,
            "runs_timed_out": self.runs_timed_out,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }


@dataclass
class SchedulerHealth:
    """Health status for the scheduler service."""

    healthy: bool
    state: ServiceState
    backend: BackendHealth | dict
    tasks_registered: int = 0
    active_locks: int = 0
    in_flight: int = 0
    maintenance_mode: bool = False
    environment: str = "production"
    last_tick: datetime | None = None
    stats: SchedulerStats = field(default_factory=SchedulerStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "state": self.state.value,
            "backend": self.backend.to_dict() if isinstance(self.backend, BackendHealth) else self.backend,
            "tasks_registered": self.tasks_registered,
            "active_locks": self.active_locks,
            "in_flight": self.in_flight,
            "maintenance_mode": self.maintenance_mode,
            "environment": self.environment,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "stats": self.stats.to_dict(),
        }


@dataclass
class TickReport:
    """What one tick did."""

    now: datetime
    due: list[str] = field(default_factory=list)
    dispatched: list[TaskHandle] = field(default_factory=list)
    skipped: dict[str, SkipReason] = field(default_factory=dict)
    error: EvaluatorInternalError | None = None

    @property
    def dispatched_ids(self) -> list[str]:
        return [handle.task_id for handle in self.dispatched]


class _StatsRecorder:
    """Event sink that folds outcomes into :class:`SchedulerStats`."""

    def __init__(self, stats: SchedulerStats, lock: threading.Lock) -> None:
        self.stats = stats
        self.lock = lock

    def emit(self, event: RunEvent) -> None:
        with self.lock:
            if event.status is RunStatus.SUCCESS:
                self.stats.runs_succeeded += 1
            elif event.status is RunStatus.FAILURE:
                self.stats.runs_failed += 1
            elif event.status is RunStatus.TIMED_OUT:
                self.stats.runs_timed_out += 1
            else:
                self.stats.runs_skipped += 1


class SchedulerService:
    """Recurring task scheduler - beat-as-poller.

    Example:
        >>> from taskbeat import SchedulerService, Schedule
        >>>
        >>> schedule = Schedule()
        >>> schedule.command("php artisan inspire").hourly()
        >>>
        >>> service = SchedulerService()
        >>> service.register_all(schedule)
        >>> service.start()
        >>> # ... later ...
        >>> service.stop(grace_period=30)
    """

    def __init__(
        self,
        settings: SchedulerSettings | None = None,
        *,
        backend: SchedulerBackend | None = None,
        sink: EventSink | None = None,
        registry: TaskRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the scheduler service.

        Args:
            settings: Validated settings (default: loaded from the environment)
            backend: Timing backend (default: ThreadSchedulerBackend)
            sink: Event sink for run outcomes (default: structlog lines)
            registry: Task registry to share (default: a fresh one)
            clock: Wall clock for ticks and outcome timestamps
        """
        self.settings = settings or load_settings()
        self.clock = clock or (lambda: datetime.now(UTC))
        self.backend: SchedulerBackend = backend or ThreadSchedulerBackend(align=self.settings.align_ticks)
        self.registry = registry or TaskRegistry()
        self.coordinator = RunCoordinator(
            environment=self.settings.environment,
            maintenance_mode=self.settings.maintenance_mode,
            timezone=self.settings.tzinfo,
        )
        self.evaluator = DueSetEvaluator(self.registry, self.coordinator)

        self._stats = SchedulerStats()
        self._stats_lock = threading.Lock()
        self.sink = sink if sink is not None else LoggingEventSink()
        self.dispatcher = Dispatcher(
            self.coordinator,
            CompositeSink([self.sink, _StatsRecorder(self._stats, self._stats_lock)]),
            worker_pool_size=self.settings.worker_pool_size,
            cancel_grace=self.settings.cancel_grace_seconds,
            clock=self.clock,
        )

        self._state = ServiceState.IDLE
        self._tick_lock = threading.Lock()

    # === Registration ===

    def register(self, task: Any) -> list[TaskDefinition]:
        return self.register_all([task])

    def register_all(self, tasks: Any) -> list[TaskDefinition]:
        """Register tasks from a Schedule, definitions, or TaskSpec tuples.

        Raises:
            MalformedRecurrenceError: a recurrence expression is invalid
            DuplicateIdError: a task id is already registered
        """
        definitions = collect_tasks(
            tasks,
            timezone=self.settings.timezone,
            day_policy=self.settings.day_policy,
            default_without_overlapping=self.settings.default_without_overlapping,
            default_overlap_expiry=self.settings.overlap_expires_after,
        )
        return self.registry.register_all(definitions)

    def list_registered(self) -> list[str]:
        """Ids of every registered task, in registration order."""
        return self.registry.ids()

    def describe_tasks(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Listing rows: id, expression, next due instant and run state."""
        now = to_utc(now or self.clock())
        rows = []
        for task in self.registry.all():
            state = self.coordinator.state(task.task_id)
            rows.append(
                {
                    "task_id": task.task_id,
                    "expression": task.rule.describe(),
                    "description": task.summary,
                    "next_due": task.rule.next_due(now, state.last_fired_at),
                    "last_fired_at": state.last_fired_at,
                    "running": state.running,
                    "background": task.constraints.run_in_background,
                    "without_overlapping": task.constraints.without_overlapping,
                }
            )
        return rows

    # === Lifecycle ===

    def start(self) -> None:
        """Start the backend tick loop."""
        if self._state is ServiceState.RUNNING:
            logger.warning("scheduler_already_running")
            return
        if self._state is ServiceState.STOPPED:
            logger.warning("scheduler_stopped_cannot_restart")
            return

        logger.info(
            "scheduler_starting",
            backend=self.backend.name,
            interval_s=self.settings.tick_seconds,
            tasks=len(self.registry),
            timezone=self.settings.timezone,
            environment=self.settings.environment,
        )
        self._state = ServiceState.RUNNING
        self.backend.start(self.tick, self.settings.tick_seconds)

    def stop(self, grace_period: float | None = None) -> list[RunOutcome]:
        """Stop ticking and wait for in-flight runs.

        Runs still active after ``grace_period`` seconds are cancelled,
        their locks forcibly released, and a TIMED_OUT outcome is emitted
        for each.

        Returns:
            The forced TIMED_OUT outcomes (empty after a clean shutdown)
        """
        if self._state is ServiceState.STOPPED:
            return []
        grace = self.settings.shutdown_grace_seconds if grace_period is None else grace_period
        deadline = time.monotonic() + grace
        logger.info("scheduler_stopping", grace_period_s=grace)

        self._state = ServiceState.STOPPED
        self.dispatcher.close()
        self.backend.stop(timeout=grace)

        remaining = max(0.0, deadline - time.monotonic())
        forced: list[RunOutcome] = []
        if not self.dispatcher.wait_all(remaining):
            self.dispatcher.cancel_all()
            now = self.clock()
            for lock in self.coordinator.force_release_all():
                outcome = RunOutcome(
                    task_id=lock.task_id,
                    run_id=lock.run_id,
                    started_at=lock.held_since,
                    ended_at=now,
                    status=RunStatus.TIMED_OUT,
                    error_detail=f"still running after {grace}s shutdown grace period",
                )
                forced.append(outcome)
                self.dispatcher.emit(outcome)
            logger.warning("scheduler_forced_shutdown", forced=len(forced))

        self.dispatcher.shutdown(wait=False)
        logger.info("scheduler_stopped", ticks=self._stats.tick_count)
        return forced

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ServiceState.RUNNING

    # === Tick Processing ===

    def tick(self, now: datetime | None = None) -> TickReport:
        """Evaluate and dispatch everything due at ``now``.

        Called by the backend on every tick; tests call it directly with
        simulated instants.
        """
        now = to_utc(now or self.clock())
        report = TickReport(now=now)
        if self._state is ServiceState.STOPPED:
            logger.debug("tick_ignored_after_stop")
            return report

        with self._tick_lock:
            with self._stats_lock:
                self._stats.tick_count += 1
                self._stats.last_tick = now

            try:
                self.coordinator.sweep_expired(now)
                due = self.evaluator.due_tasks(now)
            except EvaluatorInternalError as e:
                with self._stats_lock:
                    self._stats.tick_errors += 1
                    self._stats.last_error = e.message
                logger.error("tick_aborted", **e.to_dict())
                report.error = e
                return report

            report.due = [task.task_id for task in due]
            if due:
                logger.debug("tasks_due", count=len(due), tasks=report.due)

            for position, task in enumerate(due):
                if self._state is ServiceState.STOPPED:
                    logger.info("tick_interrupted_by_stop", not_started=report.due[position:])
                    break
                admission = self.coordinator.admit(task, now)
                if not admission:
                    report.skipped[task.task_id] = admission.reason  # type: ignore[assignment]
                    self._emit_skip(task, admission.run_id, admission.reason, admission.detail, now)
                    continue
                self.coordinator.mark_fired(task.task_id, now)
                handle = self._dispatch(task, admission.run_id, now)
                if handle is not None:
                    report.dispatched.append(handle)
        return report

    def _dispatch(self, task: TaskDefinition, run_id: str, now: datetime) -> TaskHandle | None:
        with self._stats_lock:
            self._stats.runs_dispatched += 1
        try:
            return self.dispatcher.dispatch(task, run_id)
        except SchedulerStoppedError:
            with self._stats_lock:
                self._stats.runs_dispatched -= 1
            self.coordinator.release(task.task_id, run_id)
            logger.info("dispatch_refused_after_stop", task_id=task.task_id, run_id=run_id)
            return None
        except Exception as e:
            # Worker pool refused the run; report it and free the lock.
            logger.exception("dispatch_failed", task_id=task.task_id, error=str(e))
            outcome = RunOutcome(
                task_id=task.task_id,
                run_id=run_id,
                started_at=now,
                ended_at=self.clock(),
                status=RunStatus.FAILURE,
                error_detail=f"dispatch failed: {e}",
            )
            self.coordinator.release(task.task_id, run_id, outcome)
            self.dispatcher.emit(outcome)
            return None

    def _emit_skip(
        self,
        task: TaskDefinition,
        run_id: str,
        reason: SkipReason | None,
        detail: str | None,
        now: datetime,
    ) -> RunOutcome:
        logger.debug("task_skipped", task_id=task.task_id, reason=reason.value if reason else None)
        outcome = RunOutcome(
            task_id=task.task_id,
            run_id=run_id,
            started_at=now,
            ended_at=now,
            status=RunStatus.SKIPPED,
            error_detail=detail,
            skip_reason=reason,
        )
        self.dispatcher.emit(outcome)
        return outcome

    # === Manual Operations ===

    def run_now(self, task_id: str) -> RunOutcome:
        """Run a task immediately in the calling thread, ignoring its schedule.

        Overlap protection still applies.  ``last_fired_at`` is untouched.

        Raises:
            UnknownTaskError: if no task has this id
        """
        task = self.registry.get(task_id)
        now = to_utc(self.clock())
        run_id = new_run_id()
        acquired = self.coordinator.try_acquire(
            task.task_id,
            now,
            run_id,
            exclusive=task.constraints.without_overlapping,
            expires_after=task.constraints.overlap_expires_after,
        )
        if not acquired:
            return self._emit_skip(task, run_id, SkipReason.OVERLAPPING, "previous run still active", now)
        logger.info("manual_run", task_id=task_id, run_id=run_id)
        return self.dispatcher.run(task, run_id)

    def enter_maintenance(self) -> None:
        """Skip every task not marked ``even_in_maintenance_mode``."""
        self.coordinator.set_maintenance(True)

    def exit_maintenance(self) -> None:
        self.coordinator.set_maintenance(False)

    @property
    def maintenance_mode(self) -> bool:
        return self.coordinator.maintenance_mode

    # === Health & Stats ===

    def health(self) -> SchedulerHealth:
        backend_health = self.backend.health()
        running = self._state is ServiceState.RUNNING
        return SchedulerHealth(
            healthy=running and bool(backend_health.get("healthy", False)),
            state=self._state,
            backend=backend_health,
            tasks_registered=len(self.registry),
            active_locks=len(self.coordinator.active_locks()),
            in_flight=len(self.dispatcher.in_flight()),
            maintenance_mode=self.coordinator.maintenance_mode,
            environment=self.coordinator.environment,
            last_tick=self._stats.last_tick,
            stats=self.get_stats(),
        )

    def get_stats(self) -> SchedulerStats:
        """Snapshot of the scheduler counters."""
        with self._stats_lock:
            return replace(self._stats)

    def reset_stats(self) -> None:
        with self._stats_lock:
            for name, value in SchedulerStats().__dict__.items():
                setattr(self._stats, name, value)

