"""Scheduler data model.

Manifesto:
    Task definitions are immutable once registered; run state is transient
    and owned by the coordinator; run outcomes are emitted and forgotten.
    Keeping the three apart is what makes the overlap and monotonicity
    invariants checkable.

Models:
    - :class:`TaskDefinition`  identifier + unit + rule + constraints + hooks
    - :class:`TaskConstraints` without_overlapping, run_in_background, ...
    - :class:`TaskRunState`    last_fired_at / running / lock_held_since
    - :class:`RunOutcome`      one finished (or skipped) run
    - :class:`TaskSpec`        loader tuple ``(id, executable, expression, flags)``

Tags:
    taskbeat, models, dataclasses, scheduling

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, NamedTuple

from .errors import InvalidTaskError
from .recurrence import RecurrenceRule, TimeWindow
from .units import ExecutableUnit, describe_unit

Filter = Callable[[], bool]
Hook = Callable[["TaskDefinition"], Any]
OutcomeHook = Callable[["TaskDefinition", "RunOutcome"], Any]


class RunStatus(str, Enum):
    SUCCESS = "Success"
    FAILURE = "Failure"
    SKIPPED = "Skipped"
    TIMED_OUT = "TimedOut"


class SkipReason(str, Enum):
    OVERLAPPING = "overlapping"
    FILTERED = "filtered"
    MAINTENANCE = "maintenance"
    ENVIRONMENT = "environment"
    OUTSIDE_WINDOW = "outside_window"


@dataclass(frozen=True)
class ConditionalFilter:
    """A ``when`` (run only if true) or ``skip`` (skip if true) callback."""

    callback: Filter
    skip: bool = False

    def passes(self) -> bool:
        result = bool(self.callback())
        return not result if self.skip else result


@dataclass(frozen=True)
class TaskConstraints:
    """Run constraints attached to a task."""

    without_overlapping: bool = False
    overlap_expires_after: timedelta = timedelta(hours=24)
    run_in_background: bool = False
    environments: tuple[str, ...] = ()
    even_in_maintenance_mode: bool = False
    output_path: Path | None = None
    append_output: bool = False
    max_runtime: timedelta | None = None
    filters: tuple[ConditionalFilter, ...] = ()
    time_windows: tuple[TimeWindow, ...] = ()

    @classmethod
    def from_flags(cls, flags: Mapping[str, Any] | None, *, task_id: str | None = None) -> TaskConstraints:
        """Build constraints from loader flags.

        Accepts the field names above plus ``timeout`` (seconds),
        ``overlap_expires_minutes``, ``output`` (path) and
        ``between`` / ``unless_between`` as ``("09:00", "17:00")`` pairs.
        """
        flags = dict(flags or {})
        kwargs: dict[str, Any] = {}
        for name in ("without_overlapping", "run_in_background", "even_in_maintenance_mode", "append_output"):
            if name in flags:
                kwargs[name] = bool(flags.pop(name))
        if "environments" in flags:
            envs = flags.pop("environments")
            kwargs["environments"] = (envs,) if isinstance(envs, str) else tuple(envs)
        if "overlap_expires_minutes" in flags:
            kwargs["overlap_expires_after"] = timedelta(minutes=float(flags.pop("overlap_expires_minutes")))
        output = flags.pop("output_path", None) or flags.pop("output", None)
        if output:
            kwargs["output_path"] = Path(output)
        timeout = flags.pop("timeout", None) or flags.pop("max_runtime", None)
        if timeout is not None:
            kwargs["max_runtime"] = timeout if isinstance(timeout, timedelta) else timedelta(seconds=float(timeout))
        windows: list[TimeWindow] = []
        if "between" in flags:
            start, end = flags.pop("between")
            windows.append(TimeWindow.between(start, end))
        if "unless_between" in flags:
            start, end = flags.pop("unless_between")
            windows.append(TimeWindow.between(start, end, inverted=True))
        if windows:
            kwargs["time_windows"] = tuple(windows)
        filters: list[ConditionalFilter] = []
        if "when" in flags:
            filters.append(ConditionalFilter(flags.pop("when")))
        if "skip" in flags:
            filters.append(ConditionalFilter(flags.pop("skip"), skip=True))
        if filters:
            kwargs["filters"] = tuple(filters)
        if flags:
            raise InvalidTaskError(f"Unknown constraint flags: {sorted(flags)}", task_id=task_id)
        return cls(**kwargs)

    @property
    def timeout_seconds(self) -> float | None:
        return None if self.max_runtime is None else self.max_runtime.total_seconds()


@dataclass(frozen=True)
class TaskHooks:
    """Callbacks around a run (``before``, ``after``, ``onSuccess``, ``onFailure``)."""

    before: tuple[Hook, ...] = ()
    after: tuple[OutcomeHook, ...] = ()
    on_success: tuple[OutcomeHook, ...] = ()
    on_failure: tuple[OutcomeHook, ...] = ()


@dataclass(frozen=True)
class TaskDefinition:
    """A registered task. Immutable for the scheduler's lifetime."""

    task_id: str
    unit: ExecutableUnit
    rule: RecurrenceRule
    constraints: TaskConstraints = field(default_factory=TaskConstraints)
    description: str | None = None
    hooks: TaskHooks = field(default_factory=TaskHooks)

    def __post_init__(self) -> None:
        if not isinstance(self.task_id, str) or not self.task_id:
            raise InvalidTaskError("task_id must be a non-empty string")

    @property
    def summary(self) -> str:
        return self.description or describe_unit(self.unit)


class TaskSpec(NamedTuple):
    """What the task-loading collaborator hands to ``register_all``."""

    task_id: str
    executable: Any
    expression: str
    flags: Mapping[str, Any] | None = None


@dataclass
class TaskRunState:
    """Transient per-task state owned by the run coordinator."""

    last_fired_at: datetime | None = None
    running: bool = False
    lock_held_since: datetime | None = None
    active_runs: int = 0


@dataclass(frozen=True)
class RunOutcome:
    """Record of one run; emitted, never accumulated by the scheduler."""

    task_id: str
    run_id: str
    started_at: datetime
    ended_at: datetime
    status: RunStatus
    exit_status: int | None = None
    output_ref: str | None = None
    error_detail: str | None = None
    skip_reason: SkipReason | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCESS

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "status": self.status.value,
            "exit_status": self.exit_status,
            "output_ref": self.output_ref,
            "error_detail": self.error_detail,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
        }
