"""taskbeat - recurring task scheduler.

Manifesto:
    A recurring task is more than ``while True: sleep(60)``.  It needs a
    recurrence rule that is a pure function of time (so tests can drive a
    whole day in milliseconds), an overlap guard (so a slow run never piles
    up behind itself), containment (so one failing task never stops the
    others), and a clean shutdown (so in-flight runs get a grace period and
    every run ends with exactly one outcome).

┌──────────────────────────────────────────────────────────────────────────────┐
│  TASKBEAT - Recurring Task Scheduling                                        │
│                                                                               │
│  Quick Start:                                                                 │
│  ┌──────────────────────────────────────────────────────────────────────┐   │
│  │   from taskbeat import Schedule, create_scheduler                    │   │
│  │                                                                      │   │
│  │   schedule = Schedule(timezone="Europe/Berlin")                      │   │
│  │   schedule.command("backup.sh").daily_at("02:00")                    │   │
│  │   schedule.call(send_digest).weekdays().at("08:30") \\                │   │
│  │       .without_overlapping().run_in_background()                     │   │
│  │                                                                      │   │
│  │   scheduler = create_scheduler(schedule)                             │   │
│  │   scheduler.start()                                                  │   │
│  │   ...                                                                │   │
│  │   scheduler.stop(grace_period=30)                                    │   │
│  └──────────────────────────────────────────────────────────────────────┘   │
│                                                                               │
│  Architecture:                                                                │
│  ┌─────────────────────────────────────────────────────────────────────┐    │
│  │   ┌──────────────┐    tick()    ┌──────────────────────────────┐  │    │
│  │   │  Backend     │ ───────────► │   SchedulerService           │  │    │
│  │   │ (timing)     │              │                              │  │    │
│  │   └──────────────┘              │  ┌──────────┐ ┌───────────┐  │  │    │
│  │                                 │  │ Registry │ │Coordinator│  │  │    │
│  │   Backends:                     │  │ (tasks)  │ │ (locks)   │  │  │    │
│  │   • Thread (default)            │  └──────────┘ └───────────┘  │  │    │
│  │   • Manual (tests, one-shot)    │              ▼               │  │    │
│  │                                 │       ┌──────────────┐       │  │    │
│  │                                 │       │  Dispatcher  │──► EventSink │
│  │                                 │       └──────────────┘       │  │    │
│  │                                 └──────────────────────────────┘  │    │
│  └─────────────────────────────────────────────────────────────────────┘    │
│                                                                               │
│  Dependencies:                                                                │
│  - croniter: cron expression matching and stepping                          │
│  - structlog: structured logging                                            │
│  - pydantic-settings: TASKBEAT_* configuration                               │
│  - httpx: HTTP call units                                                   │
│  - typer + rich: ``taskbeat schedule ...`` CLI                               │
└──────────────────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ Calling a task body from the tick thread without an admission check
    ✅ ``RunCoordinator.admit()`` before every dispatch
    ❌ Using ``datetime.now()`` inside a recurrence rule
    ✅ ``rule.is_due(now, last_fired_at)`` with the instant passed in
    ❌ Constructing scheduler components individually
    ✅ ``create_scheduler(tasks)`` factory function

Tags:
    taskbeat, scheduling, cron, overlap-locks, beat-as-poller,
    fluent-builder, graceful-shutdown

Doc-Types:
    package-overview, architecture-map, module-index
"""

from __future__ import annotations

from typing import Any

# Backends
from .backend import BackendHealth, ManualBackend, SchedulerBackend, ThreadSchedulerBackend

# Coordination
from .coordinator import ActiveLock, Admission, RunCoordinator
from .dispatcher import Dispatcher, TaskHandle

# Errors
from .errors import (
    ConfigError,
    DuplicateIdError,
    EvaluatorInternalError,
    ExecutionError,
    InvalidConfigError,
    InvalidTaskError,
    MalformedRecurrenceError,
    RegistrationError,
    SchedulerStoppedError,
    TaskbeatError,
    TaskExecutionFailure,
    TaskTimedOut,
    UnknownTaskError,
)
from .evaluator import DueSetEvaluator

# Events
from .events import (
    CompositeSink,
    EventBus,
    EventSink,
    InMemoryEventSink,
    LoggingEventSink,
    RunEvent,
)

# Models
from .models import (
    RunOutcome,
    RunStatus,
    SkipReason,
    TaskConstraints,
    TaskDefinition,
    TaskHooks,
    TaskRunState,
    TaskSpec,
)

# Recurrence
from .recurrence import (
    CronRule,
    DayMatchPolicy,
    FilteredRule,
    IntervalRule,
    RecurrenceRule,
    TimeWindow,
    parse_recurrence,
)
from .registry import TaskRegistry

# Fluent builder
from .schedule import PendingTask, Schedule, collect_tasks, task_from_spec

# Service
from .service import SchedulerHealth, SchedulerService, SchedulerStats, TickReport
from .settings import SchedulerSettings, get_settings, load_settings

# Units
from .units import CallableUnit, ExecutableUnit, ExecutionContext, HttpCall, ShellCommand, as_unit

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Backends
    "SchedulerBackend",
    "BackendHealth",
    "ThreadSchedulerBackend",
    "ManualBackend",
    # Coordination
    "RunCoordinator",
    "Admission",
    "ActiveLock",
    "DueSetEvaluator",
    "Dispatcher",
    "TaskHandle",
    "TaskRegistry",
    # Errors
    "TaskbeatError",
    "ConfigError",
    "InvalidConfigError",
    "RegistrationError",
    "MalformedRecurrenceError",
    "DuplicateIdError",
    "InvalidTaskError",
    "ExecutionError",
    "TaskExecutionFailure",
    "TaskTimedOut",
    "EvaluatorInternalError",
    "UnknownTaskError",
    "SchedulerStoppedError",
    # Events
    "RunEvent",
    "EventSink",
    "EventBus",
    "LoggingEventSink",
    "InMemoryEventSink",
    "CompositeSink",
    # Models
    "RunStatus",
    "SkipReason",
    "RunOutcome",
    "TaskConstraints",
    "TaskDefinition",
    "TaskHooks",
    "TaskRunState",
    "TaskSpec",
    # Recurrence
    "RecurrenceRule",
    "CronRule",
    "IntervalRule",
    "FilteredRule",
    "TimeWindow",
    "DayMatchPolicy",
    "parse_recurrence",
    # Fluent builder
    "Schedule",
    "PendingTask",
    "collect_tasks",
    "task_from_spec",
    # Service
    "SchedulerService",
    "SchedulerStats",
    "SchedulerHealth",
    "TickReport",
    "create_scheduler",
    # Settings
    "SchedulerSettings",
    "load_settings",
    "get_settings",
    # Units
    "ExecutableUnit",
    "ExecutionContext",
    "CallableUnit",
    "ShellCommand",
    "HttpCall",
    "as_unit",
]


def create_scheduler(
    tasks: Any = (),
    *,
    sink: EventSink | None = None,
    backend: SchedulerBackend | None = None,
    **overrides: Any,
) -> SchedulerService:
    """Factory function to create a scheduler with its tasks registered.

    Args:
        tasks: A Schedule, PendingTask(s), TaskDefinition(s) or
            ``(task_id, executable, expression[, flags])`` tuples
        sink: Where run outcomes go (default: LoggingEventSink)
        backend: Timing backend (default: ThreadSchedulerBackend)
        **overrides: SchedulerSettings fields, e.g. ``timezone="UTC"``

    Returns:
        Configured, not yet started, SchedulerService

    Example:
        >>> scheduler = create_scheduler(
        ...     [("cleanup", "rm -rf /tmp/cache", "every 5 minutes")],
        ...     timezone="UTC",
        ... )
        >>> scheduler.start()
    """
    settings = load_settings(**overrides)
    service = SchedulerService(settings, backend=backend, sink=sink)
    service.register_all(tasks)
    return service
