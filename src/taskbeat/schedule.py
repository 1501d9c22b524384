"""Fluent schedule builder.

Manifesto:
    Schedules are read far more often than they are written, so they
    should read like a sentence: ``schedule.command("php artisan
    inspire").hourly()``.  Every frequency method edits one position of a
    five-field cron expression, so methods compose (``weekly().mondays()
    .at("8:00")``) and the result is always an ordinary :class:`CronRule`.

Architecture:
    ::

        Schedule
          ├── call(func)        CallableUnit
          ├── command(cmd)      ShellCommand
          ├── get(url)/http()   HttpCall
          └── unit(obj)         any ExecutableUnit
                │
                ▼
        PendingTask  ── frequency ── constraints ── hooks ──► build() ──► TaskDefinition

        Cron positions:  1 minute  2 hour  3 day-of-month  4 month  5 day-of-week

Examples:
    >>> schedule = Schedule(timezone="Europe/Berlin")
    >>> schedule.command("php artisan inspire").hourly()
    >>> schedule.call(prune_sessions).daily_at("02:30").without_overlapping()
    >>> schedule.get("https://example.com/ping").every_five_minutes().weekdays()
    >>> tasks = schedule.tasks()

Tags:
    taskbeat, scheduling, fluent-api, cron

Doc-Types:
    api-reference, tutorial
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any

from .errors import MalformedRecurrenceError
from .models import (
    ConditionalFilter,
    Hook,
    OutcomeHook,
    TaskConstraints,
    TaskDefinition,
    TaskHooks,
    TaskSpec,
)
from .recurrence import (
    CronRule,
    DayMatchPolicy,
    FilteredRule,
    IntervalRule,
    RecurrenceRule,
    TimeWindow,
    day_number,
    load_zone,
    parse_recurrence,
    parse_time,
)
from .units import CallableUnit, ExecutableUnit, HttpCall, ShellCommand, as_unit, describe_unit

DEFAULT_OVERLAP_EXPIRY = timedelta(minutes=1440)


def _require_positive(value: int, expression: str) -> None:
    if value <= 0:
        raise MalformedRecurrenceError(expression, "interval must be positive")


class PendingTask:
    """A task being described; call :meth:`build` to freeze it."""

    def __init__(
        self,
        unit: ExecutableUnit,
        *,
        timezone: str = "UTC",
        day_policy: DayMatchPolicy = DayMatchPolicy.OR,
    ) -> None:
        self.unit = unit
        self._timezone = timezone
        self._day_policy = day_policy
        self._cron = ["*", "*", "*", "*", "*"]
        self._interval: timedelta | None = None
        self._rule: RecurrenceRule | None = None
        self._weekdays: frozenset[int] | None = None
        self._task_id: str | None = None
        self._description: str | None = None
        self._without_overlapping: bool | None = None
        self._overlap_expires: timedelta | None = None
        self._background = False
        self._environments: tuple[str, ...] = ()
        self._even_in_maintenance = False
        self._output_path: Path | None = None
        self._append_output = False
        self._max_runtime: timedelta | None = None
        self._filters: list[ConditionalFilter] = []
        self._windows: list[TimeWindow] = []
        self._before: list[Hook] = []
        self._after: list[OutcomeHook] = []
        self._on_success: list[OutcomeHook] = []
        self._on_failure: list[OutcomeHook] = []

    # ── Raw expressions ─────────────────────────────────────────────

    def cron(self, expression: str) -> PendingTask:
        """Use a raw cron expression (validated at build time)."""
        fields = expression.split()
        self._interval = None
        self._weekdays = None
        if len(fields) == 5:
            self._cron = fields
            self._rule = None
        else:
            self._rule = CronRule(expression, timezone=self._timezone, day_policy=self._day_policy)
        return self

    def rule(self, expression: str | RecurrenceRule) -> PendingTask:
        """Use a fluent or cron expression string, or a ready-made rule."""
        if isinstance(expression, str):
            expression = parse_recurrence(expression, self._timezone, self._day_policy)
        self._rule = expression
        return self

    def _splice(self, position: int, value: Any) -> PendingTask:
        self._cron[position - 1] = str(value)
        if position != 5:
            self._rule = None
        return self

    def _every(self, interval: timedelta) -> PendingTask:
        self._interval = interval
        self._rule = None
        return self

    # ── Sub-minute intervals ────────────────────────────────────────

    def every_second(self) -> PendingTask:
        return self._every(timedelta(seconds=1))

    def every_seconds(self, seconds: int) -> PendingTask:
        return self._every(timedelta(seconds=seconds))

    def every_ten_seconds(self) -> PendingTask:
        return self.every_seconds(10)

    def every_thirty_seconds(self) -> PendingTask:
        return self.every_seconds(30)

    # ── Minutes / hours ─────────────────────────────────────────────

    def every_minute(self) -> PendingTask:
        return self._splice(1, "*")

    def every_minutes(self, minutes: int) -> PendingTask:
        _require_positive(minutes, f"every {minutes} minutes")
        return self._splice(1, f"*/{minutes}")

    def every_two_minutes(self) -> PendingTask:
        return self.every_minutes(2)

    def every_five_minutes(self) -> PendingTask:
        return self.every_minutes(5)

    def every_ten_minutes(self) -> PendingTask:
        return self.every_minutes(10)

    def every_fifteen_minutes(self) -> PendingTask:
        return self.every_minutes(15)

    def every_thirty_minutes(self) -> PendingTask:
        return self._splice(1, "0,30")

    def hourly(self) -> PendingTask:
        return self._splice(1, 0)

    def hourly_at(self, *minutes: int) -> PendingTask:
        return self._splice(1, ",".join(str(m) for m in minutes))

    def every_hours(self, hours: int, minute: int = 0) -> PendingTask:
        _require_positive(hours, f"every {hours} hours")
        return self._splice(1, minute)._splice(2, f"*/{hours}")

    def every_two_hours(self) -> PendingTask:
        return self.every_hours(2)

    def every_six_hours(self) -> PendingTask:
        return self.every_hours(6)

    # ── Days ────────────────────────────────────────────────────────

    def daily(self) -> PendingTask:
        return self._splice(1, 0)._splice(2, 0)

    def at(self, time: str) -> PendingTask:
        return self.daily_at(time)

    def daily_at(self, time: str) -> PendingTask:
        hour, minute = parse_time(time)
        return self._splice(1, minute)._splice(2, hour)

    def twice_daily(self, first: int = 1, second: int = 13, minute: int = 0) -> PendingTask:
        return self._splice(1, minute)._splice(2, f"{first},{second}")

    def weekdays(self) -> PendingTask:
        return self.days(1, 2, 3, 4, 5)

    def weekends(self) -> PendingTask:
        return self.days(0, 6)

    def mondays(self) -> PendingTask:
        return self.days(1)

    def tuesdays(self) -> PendingTask:
        return self.days(2)

    def wednesdays(self) -> PendingTask:
        return self.days(3)

    def thursdays(self) -> PendingTask:
        return self.days(4)

    def fridays(self) -> PendingTask:
        return self.days(5)

    def saturdays(self) -> PendingTask:
        return self.days(6)

    def sundays(self) -> PendingTask:
        return self.days(0)

    def days(self, *days: int | str) -> PendingTask:
        numbers = sorted({day_number(d) for d in days})
        self._weekdays = frozenset(numbers)
        return self._splice(5, ",".join(str(n) for n in numbers))

    def weekly(self) -> PendingTask:
        return self._splice(1, 0)._splice(2, 0)._splice(5, 0)

    def weekly_on(self, day: int | str, time: str = "0:00") -> PendingTask:
        self.days(day)
        return self.daily_at(time)

    def monthly(self) -> PendingTask:
        return self._splice(1, 0)._splice(2, 0)._splice(3, 1)

    def monthly_on(self, day: int = 1, time: str = "0:00") -> PendingTask:
        self.daily_at(time)
        return self._splice(3, day)

    def twice_monthly(self, first: int = 1, second: int = 16, time: str = "0:00") -> PendingTask:
        self.daily_at(time)
        return self._splice(3, f"{first},{second}")

    def quarterly(self) -> PendingTask:
        return self._splice(1, 0)._splice(2, 0)._splice(3, 1)._splice(4, "1-12/3")

    def yearly(self) -> PendingTask:
        return self._splice(1, 0)._splice(2, 0)._splice(3, 1)._splice(4, 1)

    def yearly_on(self, month: int = 1, day: int = 1, time: str = "0:00") -> PendingTask:
        self.daily_at(time)
        return self._splice(3, day)._splice(4, month)

    # ── Constraints ─────────────────────────────────────────────────

    def timezone(self, timezone: str) -> PendingTask:
        load_zone(timezone)
        self._timezone = timezone
        return self

    def without_overlapping(self, expires_at: int = 1440) -> PendingTask:
        """Skip a due run while the previous one is active.

        Args:
            expires_at: Minutes after which a held run lock is reclaimed
        """
        self._without_overlapping = True
        self._overlap_expires = timedelta(minutes=expires_at)
        return self

    def run_in_background(self) -> PendingTask:
        self._background = True
        return self

    def environments(self, *names: str) -> PendingTask:
        self._environments = tuple(names)
        return self

    def even_in_maintenance_mode(self) -> PendingTask:
        self._even_in_maintenance = True
        return self

    def send_output_to(self, path: str | Path) -> PendingTask:
        self._output_path = Path(path)
        self._append_output = False
        return self

    def append_output_to(self, path: str | Path) -> PendingTask:
        self._output_path = Path(path)
        self._append_output = True
        return self

    def timeout(self, seconds: float) -> PendingTask:
        self._max_runtime = timedelta(seconds=seconds)
        return self

    def between(self, start: str, end: str) -> PendingTask:
        self._windows.append(TimeWindow.between(start, end))
        return self

    def unless_between(self, start: str, end: str) -> PendingTask:
        self._windows.append(TimeWindow.between(start, end, inverted=True))
        return self

    def when(self, callback: Callable[[], bool]) -> PendingTask:
        self._filters.append(ConditionalFilter(callback))
        return self

    def skip(self, callback: Callable[[], bool]) -> PendingTask:
        self._filters.append(ConditionalFilter(callback, skip=True))
        return self

    # ── Identity ────────────────────────────────────────────────────

    def name(self, task_id: str) -> PendingTask:
        self._task_id = task_id
        return self

    def description(self, text: str) -> PendingTask:
        self._description = text
        return self

    # ── Hooks ───────────────────────────────────────────────────────

    def before(self, callback: Hook) -> PendingTask:
        self._before.append(callback)
        return self

    def after(self, callback: OutcomeHook) -> PendingTask:
        self._after.append(callback)
        return self

    then = after

    def on_success(self, callback: OutcomeHook) -> PendingTask:
        self._on_success.append(callback)
        return self

    def on_failure(self, callback: OutcomeHook) -> PendingTask:
        self._on_failure.append(callback)
        return self

    # ── Build ───────────────────────────────────────────────────────

    @property
    def expression(self) -> str:
        if self._rule is not None:
            return self._rule.expression
        if self._interval is not None:
            return IntervalRule(self._interval).expression
        return " ".join(self._cron)

    def build_rule(self) -> RecurrenceRule:
        rule: RecurrenceRule | None = self._rule
        if rule is None and self._interval is not None:
            rule = IntervalRule(self._interval)
        if rule is not None:
            if self._weekdays is not None:
                rule = FilteredRule(rule, weekdays=self._weekdays, timezone=self._timezone)
            return rule
        return CronRule(" ".join(self._cron), timezone=self._timezone, day_policy=self._day_policy)

    def build(
        self,
        *,
        default_without_overlapping: bool = False,
        default_overlap_expiry: timedelta = DEFAULT_OVERLAP_EXPIRY,
    ) -> TaskDefinition:
        """Freeze into a :class:`TaskDefinition`.

        Raises:
            MalformedRecurrenceError: if the accumulated expression is invalid
        """
        without_overlapping = (
            default_without_overlapping if self._without_overlapping is None else self._without_overlapping
        )
        constraints = TaskConstraints(
            without_overlapping=without_overlapping,
            overlap_expires_after=self._overlap_expires or default_overlap_expiry,
            run_in_background=self._background,
            environments=self._environments,
            even_in_maintenance_mode=self._even_in_maintenance,
            output_path=self._output_path,
            append_output=self._append_output,
            max_runtime=self._max_runtime,
            filters=tuple(self._filters),
            time_windows=tuple(self._windows),
        )
        hooks = TaskHooks(
            before=tuple(self._before),
            after=tuple(self._after),
            on_success=tuple(self._on_success),
            on_failure=tuple(self._on_failure),
        )
        return TaskDefinition(
            task_id=self._task_id or describe_unit(self.unit),
            unit=self.unit,
            rule=self.build_rule(),
            constraints=constraints,
            description=self._description,
            hooks=hooks,
        )

    def __repr__(self) -> str:
        return f"PendingTask({describe_unit(self.unit)!r}, {self.expression!r})"


class Schedule:
    """Collects pending tasks, the way a console kernel's ``schedule()`` does."""

    def __init__(
        self,
        timezone: str = "UTC",
        day_policy: DayMatchPolicy = DayMatchPolicy.OR,
    ) -> None:
        load_zone(timezone)
        self.timezone = timezone
        self.day_policy = day_policy
        self._pending: list[PendingTask] = []

    def _add(self, unit: ExecutableUnit) -> PendingTask:
        pending = PendingTask(unit, timezone=self.timezone, day_policy=self.day_policy)
        self._pending.append(pending)
        return pending

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> PendingTask:
        return self._add(CallableUnit(func, args, kwargs))

    def command(self, command: str | list[str], **options: Any) -> PendingTask:
        return self._add(ShellCommand(command, **options))

    def get(self, url: str, **options: Any) -> PendingTask:
        return self._add(HttpCall(url, method="GET", **options))

    def http(self, url: str, method: str = "POST", **options: Any) -> PendingTask:
        return self._add(HttpCall(url, method=method, **options))

    def unit(self, unit: Any) -> PendingTask:
        return self._add(as_unit(unit))

    def pending(self) -> list[PendingTask]:
        return list(self._pending)

    def tasks(self, **defaults: Any) -> list[TaskDefinition]:
        """Build every pending task, in the order they were added."""
        return [pending.build(**defaults) for pending in self._pending]

    def __iter__(self) -> Iterator[PendingTask]:
        return iter(self._pending)

    def __len__(self) -> int:
        return len(self._pending)


def task_from_spec(
    spec: TaskSpec | tuple,
    *,
    timezone: str = "UTC",
    day_policy: DayMatchPolicy = DayMatchPolicy.OR,
    default_without_overlapping: bool = False,
    default_overlap_expiry: timedelta = DEFAULT_OVERLAP_EXPIRY,
) -> TaskDefinition:
    """Turn a loader tuple ``(task_id, executable, expression, flags)`` into a definition.

    Flags accept every :class:`TaskConstraints` field name plus
    ``description``, ``timezone``, ``timeout``, ``output``, ``between``,
    ``unless_between``, ``when`` and ``skip``.
    """
    spec = TaskSpec(*spec)
    flags: dict[str, Any] = dict(spec.flags or {})
    description = flags.pop("description", None)
    zone = flags.pop("timezone", None) or timezone
    flags.setdefault("without_overlapping", default_without_overlapping)
    if "overlap_expires_minutes" not in flags:
        flags["overlap_expires_minutes"] = default_overlap_expiry.total_seconds() / 60
    return TaskDefinition(
        task_id=spec.task_id,
        unit=as_unit(spec.executable),
        rule=parse_recurrence(spec.expression, zone, day_policy),
        constraints=TaskConstraints.from_flags(flags, task_id=spec.task_id),
        description=description,
    )


def collect_tasks(
    source: Schedule | PendingTask | TaskDefinition | TaskSpec | tuple | Iterable[Any],
    **options: Any,
) -> list[TaskDefinition]:
    """Normalize any supported task source into definitions."""
    build_defaults = {
        key: options[key] for key in ("default_without_overlapping", "default_overlap_expiry") if key in options
    }
    if isinstance(source, Schedule):
        return source.tasks(**build_defaults)
    if isinstance(source, PendingTask):
        return [source.build(**build_defaults)]
    if isinstance(source, TaskDefinition):
        return [source]
    if isinstance(source, tuple) and len(source) in (3, 4) and isinstance(source[0], str):
        return [task_from_spec(source, **options)]
    if isinstance(source, (str, bytes, Mapping)):
        raise TypeError("task source must be a Schedule, task, spec or iterable of those")
    tasks: list[TaskDefinition] = []
    for item in source:
        tasks.extend(collect_tasks(item, **options))
    return tasks
