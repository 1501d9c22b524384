"""Recurrence rules - cron and fluent interval expressions.

Manifesto:
    A rule answers one question: "is this task due at instant T, given it
    last fired at L?".  Rules are immutable and a pure function of
    (T, L, rule parameters), so evaluation is deterministic and can be
    repeated any number of times per tick.  Every parsing problem is
    raised when the rule is built, never while the scheduler is ticking.

┌──────────────────────────────────────────────────────────────────────────────┐
│  RECURRENCE RULES                                                             │
│                                                                               │
│   parse_recurrence("*/15 * * * *")        ──►  CronRule                      │
│   parse_recurrence("daily at 02:00")      ──►  CronRule("0 2 * * *")         │
│   parse_recurrence("every 5 minutes")     ──►  IntervalRule(5m)              │
│   parse_recurrence("every 2 hours on weekdays")                               │
│                                           ──►  FilteredRule(IntervalRule)    │
│                                                                               │
│   CronRule.is_due(now, last):                                                 │
│     1. now (UTC) → wall clock in the configured zone (zoneinfo)              │
│     2. croniter.match(expression, local, day_or=policy)                      │
│     3. same-slot guard: not due if `last` fell in the same local slot        │
│                                                                               │
│   IntervalRule.is_due(now, last):                                             │
│     last is None  or  now - last >= interval                                 │
└──────────────────────────────────────────────────────────────────────────────┘

Day-of-month vs day-of-week:
    When both fields are restricted, ``DayMatchPolicy.OR`` (the default, as in
    Vixie cron) fires when either matches; ``DayMatchPolicy.AND`` requires both.
    When only one is restricted, only that one is consulted.

Daylight saving:
    Cron fields are compared against the local wall clock derived from the
    UTC instant, never by adding durations.  A wall-clock time skipped by a
    spring-forward transition does not fire that day; a wall-clock time
    repeated by a fall-back transition fires once, because the same-slot guard
    compares local wall-clock slots.

Tags:
    taskbeat, scheduling, cron, croniter, recurrence, timezone

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, time, timedelta
from enum import Enum
from typing import Protocol, runtime_checkable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadCronError, croniter

from .errors import MalformedRecurrenceError

DAY_NAMES = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
_DAY_ABBREVIATIONS = {name[:3]: number for name, number in DAY_NAMES.items()}

CRON_MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

WEEKDAYS = frozenset({1, 2, 3, 4, 5})
WEEKENDS = frozenset({0, 6})

_NEXT_DUE_ATTEMPTS = 64
_CRON_HEAD_RE = re.compile(r"^[\d*?]")
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_UNITS = {
    "second": timedelta(seconds=1),
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
}


class DayMatchPolicy(str, Enum):
    """How restricted day-of-month and day-of-week fields combine."""

    OR = "or"
    AND = "and"


def to_utc(moment: datetime) -> datetime:
    """Normalize an instant to aware UTC; naive values are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def load_zone(name: str, expression: str = "") -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise MalformedRecurrenceError(expression or name, f"unknown timezone {name!r}") from exc


def cron_weekday(moment: datetime) -> int:
    """Cron day-of-week number (Sunday=0) of a datetime."""
    return (moment.weekday() + 1) % 7


def day_number(name: str | int) -> int:
    """Resolve ``"monday"``, ``"mon"`` or ``1`` to a cron day-of-week number."""
    if isinstance(name, int):
        if not 0 <= name <= 7:
            raise MalformedRecurrenceError(str(name), "day of week must be 0-7")
        return name % 7
    key = name.strip().lower()
    if key.isdigit():
        return day_number(int(key))
    if key in DAY_NAMES:
        return DAY_NAMES[key]
    if key in _DAY_ABBREVIATIONS:
        return _DAY_ABBREVIATIONS[key]
    raise MalformedRecurrenceError(name, "unknown day of week")


def parse_time(value: str, expression: str | None = None) -> tuple[int, int]:
    """Parse ``HH:MM`` (or ``H``) into an (hour, minute) pair."""
    text = value.strip()
    match = _TIME_RE.match(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
    elif text.isdigit():
        hour, minute = int(text), 0
    else:
        raise MalformedRecurrenceError(expression or value, f"invalid time {value!r}")
    if hour > 23 or minute > 59:
        raise MalformedRecurrenceError(expression or value, f"time out of range {value!r}")
    return hour, minute


# =============================================================================
# Rule protocol
# =============================================================================


@runtime_checkable
class RecurrenceRule(Protocol):
    """Contract shared by every recurrence rule."""

    expression: str

    def is_due(self, now: datetime, last_fired_at: datetime | None) -> bool:
        """True if the rule matches ``now`` given the previous fire instant."""
        ...

    def next_due(self, after: datetime, last_fired_at: datetime | None = None) -> datetime | None:
        """Earliest instant at or after ``after`` the rule would fire (best effort)."""
        ...

    def describe(self) -> str:
        ...


# =============================================================================
# Cron
# =============================================================================


@dataclass(frozen=True)
class CronRule:
    """Cron-style rule evaluated on calendar fields in a timezone.

    Five fields (minute hour day-of-month month day-of-week) or six fields
    (the sixth is seconds, croniter convention).  Lists, ranges, steps and
    month/day names are accepted.

    Example:
        >>> rule = CronRule("*/15 * * * *")
        >>> rule.is_due(datetime(2024, 1, 1, 10, 15, tzinfo=UTC), None)
        True
    """

    expression: str
    timezone: str = "UTC"
    day_policy: DayMatchPolicy = DayMatchPolicy.OR
    _zone: ZoneInfo = field(init=False, repr=False, compare=False)
    _has_seconds: bool = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        normalized = " ".join(self.expression.split())
        normalized = CRON_MACROS.get(normalized.lower(), normalized)
        fields = normalized.split(" ") if normalized else []
        if len(fields) not in (5, 6):
            raise MalformedRecurrenceError(
                self.expression, f"expected 5 or 6 fields, got {len(fields)}"
            )
        zone = load_zone(self.timezone, self.expression)
        try:
            croniter(normalized, datetime(2000, 1, 1, tzinfo=zone))
        except (CroniterBadCronError, ValueError, KeyError) as exc:
            raise MalformedRecurrenceError(self.expression, str(exc)) from exc

        object.__setattr__(self, "expression", normalized)
        object.__setattr__(self, "_zone", zone)
        object.__setattr__(self, "_has_seconds", len(fields) == 6)

    def _local(self, moment: datetime) -> datetime:
        return to_utc(moment).astimezone(self._zone)

    def _slot(self, moment: datetime) -> datetime:
        """Local wall-clock slot (minute, or second for six fields), DST fold dropped."""
        local = self._local(moment).replace(tzinfo=None, fold=0, microsecond=0)
        if self._has_seconds:
            return local
        return local.replace(second=0)

    def matches(self, now: datetime) -> bool:
        """Field-by-field match of ``now``'s local wall clock against the expression."""
        local = self._slot(now)
        return bool(
            croniter.match(self.expression, local, day_or=self.day_policy is DayMatchPolicy.OR)
        )

    def is_due(self, now: datetime, last_fired_at: datetime | None) -> bool:
        if last_fired_at is not None and self._slot(last_fired_at) == self._slot(now):
            return False
        return self.matches(now)

    def next_due(self, after: datetime, last_fired_at: datetime | None = None) -> datetime | None:
        after = to_utc(after)
        local = self._local(after).replace(tzinfo=None, fold=0)
        start = self._slot(after)
        if start < local:
            start += timedelta(seconds=1) if self._has_seconds else timedelta(minutes=1)
        # Step on naive wall-clock times so croniter never applies its own DST shifts.
        itr = croniter(
            self.expression,
            start - timedelta(seconds=1),
            day_or=self.day_policy is DayMatchPolicy.OR,
        )
        for _ in range(_NEXT_DUE_ATTEMPTS):
            wall = itr.get_next(datetime)
            for fold in (0, 1):
                moment = to_utc(wall.replace(tzinfo=self._zone, fold=fold))
                if moment >= after and self._slot(moment) == wall:
                    break
            else:
                # Skipped by a spring-forward transition, or already behind us.
                continue
            if last_fired_at is not None and self._slot(last_fired_at) == wall:
                continue
            return moment
        return None

    def describe(self) -> str:
        suffix = "" if self.timezone == "UTC" else f" ({self.timezone})"
        return f"cron {self.expression}{suffix}"


# =============================================================================
# Interval
# =============================================================================


@dataclass(frozen=True)
class IntervalRule:
    """Fires when ``interval`` has elapsed since the last fire.

    Example:
        >>> rule = IntervalRule(timedelta(minutes=5))
        >>> rule.is_due(now, now - timedelta(minutes=4, seconds=59))
        False
    """

    interval: timedelta
    expression: str = ""

    def __post_init__(self) -> None:
        if self.interval <= timedelta(0):
            raise MalformedRecurrenceError(
                self.expression or str(self.interval), "interval must be positive"
            )
        if not self.expression:
            object.__setattr__(self, "expression", _describe_interval(self.interval))

    def is_due(self, now: datetime, last_fired_at: datetime | None) -> bool:
        if last_fired_at is None:
            return True
        return to_utc(now) - to_utc(last_fired_at) >= self.interval

    def next_due(self, after: datetime, last_fired_at: datetime | None = None) -> datetime | None:
        after = to_utc(after)
        if last_fired_at is None:
            return after
        return max(after, to_utc(last_fired_at) + self.interval)

    def describe(self) -> str:
        return self.expression


def _describe_interval(interval: timedelta) -> str:
    seconds = int(interval.total_seconds())
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds % size == 0:
            count = seconds // size
            return f"every {unit}" if count == 1 else f"every {count} {unit}s"
    return "every second" if seconds == 1 else f"every {seconds} seconds"


# =============================================================================
# Filters
# =============================================================================


@dataclass(frozen=True)
class FilteredRule:
    """Wrap a rule with a weekday restriction and/or a pure predicate.

    ``weekdays`` holds cron day numbers (Sunday=0) checked against the local
    date in ``timezone``; ``predicate`` receives the local datetime.
    """

    inner: RecurrenceRule
    weekdays: frozenset[int] | None = None
    predicate: Callable[[datetime], bool] | None = None
    timezone: str = "UTC"
    expression: str = ""
    _zone: ZoneInfo = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_zone", load_zone(self.timezone, self.expression))
        if not self.expression:
            object.__setattr__(self, "expression", self.inner.expression)

    def _accepts(self, now: datetime) -> bool:
        local = to_utc(now).astimezone(self._zone)
        if self.weekdays is not None and cron_weekday(local) not in self.weekdays:
            return False
        if self.predicate is not None and not self.predicate(local):
            return False
        return True

    def is_due(self, now: datetime, last_fired_at: datetime | None) -> bool:
        return self._accepts(now) and self.inner.is_due(now, last_fired_at)

    def next_due(self, after: datetime, last_fired_at: datetime | None = None) -> datetime | None:
        # Walk forward through the inner rule's candidates; a week covers any weekday filter.
        candidate = self.inner.next_due(after, last_fired_at)
        horizon = to_utc(after) + timedelta(days=8)
        while candidate is not None and candidate <= horizon:
            if self._accepts(candidate):
                return candidate
            candidate = self.inner.next_due(candidate + timedelta(seconds=1), candidate)
        return None

    def describe(self) -> str:
        parts = [self.inner.describe()]
        if self.weekdays == WEEKDAYS:
            parts.append("on weekdays")
        elif self.weekdays == WEEKENDS:
            parts.append("on weekends")
        elif self.weekdays is not None:
            names = {v: k for k, v in DAY_NAMES.items()}
            parts.append("on " + ",".join(names[d] for d in sorted(self.weekdays)))
        if self.predicate is not None:
            parts.append("when predicate")
        return " ".join(parts)


@dataclass(frozen=True)
class TimeWindow:
    """Local wall-clock window, ``between("09:00", "17:00")``.

    A window whose start is after its end wraps midnight.  ``inverted``
    turns it into ``unless_between``.
    """

    start: time
    end: time
    inverted: bool = False

    @classmethod
    def between(cls, start: str, end: str, *, inverted: bool = False) -> TimeWindow:
        sh, sm = parse_time(start, f"between {start} and {end}")
        eh, em = parse_time(end, f"between {start} and {end}")
        return cls(time(sh, sm), time(eh, em), inverted)

    def contains(self, now: datetime, zone: ZoneInfo) -> bool:
        clock = to_utc(now).astimezone(zone).time().replace(second=0, microsecond=0, tzinfo=None)
        if self.start <= self.end:
            inside = self.start <= clock <= self.end
        else:
            inside = clock >= self.start or clock <= self.end
        return not inside if self.inverted else inside

    def describe(self) -> str:
        word = "unless between" if self.inverted else "between"
        return f"{word} {self.start:%H:%M} and {self.end:%H:%M}"


# =============================================================================
# Fluent expressions
# =============================================================================

_EVERY_RE = re.compile(r"^every\s+(?:(\d+)\s+)?(second|minute|hour|day)s?$")
_SUFFIX_RE = re.compile(r"^(.*?)\s+on\s+(weekdays|weekends)$")
_AT_RE = re.compile(r"^(.*?)\s+at\s+(\S+)$")


def _with_time(template_dow: str, at: str | None, expression: str, dom: str = "*", month: str = "*") -> str:
    hour, minute = parse_time(at, expression) if at else (0, 0)
    return f"{minute} {hour} {dom} {month} {template_dow}"


def _fluent_to_cron(head: str, expression: str) -> str | None:
    """Translate a named frequency into a cron expression (None if unknown)."""
    at: str | None = None
    match = _AT_RE.match(head)
    if match:
        head, at = match.group(1), match.group(2)

    words = head.split()
    if not words:
        return None
    kind, rest = words[0], words[1:]

    if kind == "hourly" and not rest:
        if at is None:
            return "0 * * * *"
        if not at.isdigit() or int(at) > 59:
            raise MalformedRecurrenceError(expression, f"minute out of range {at!r}")
        return f"{int(at)} * * * *"
    if kind == "daily" and not rest:
        return _with_time("*", at, expression)
    if kind == "twice" and rest == ["daily"]:
        hours = (at or "1,13").split(",")
        if len(hours) != 2:
            raise MalformedRecurrenceError(expression, "twice daily needs two hours")
        first, second = (parse_time(h, expression)[0] for h in hours)
        return f"0 {first},{second} * * *"
    if kind == "weekly":
        if not rest:
            return _with_time("0", at, expression)
        if len(rest) == 2 and rest[0] == "on":
            return _with_time(str(day_number(rest[1])), at, expression)
    if kind == "monthly":
        if not rest:
            return _with_time("*", at, expression, dom="1")
        if len(rest) == 2 and rest[0] == "on" and rest[1].isdigit():
            day = int(rest[1])
            if not 1 <= day <= 31:
                raise MalformedRecurrenceError(expression, f"day of month out of range {day}")
            return _with_time("*", at, expression, dom=str(day))
    if kind == "quarterly" and not rest:
        return _with_time("*", at, expression, dom="1", month="1-12/3")
    if kind == "yearly" and not rest:
        return _with_time("*", at, expression, dom="1", month="1")
    if kind == "weekdays" and not rest:
        return _with_time("1-5", at, expression)
    if kind == "weekends" and not rest:
        return _with_time("0,6", at, expression)
    return None


def parse_recurrence(
    expression: str,
    timezone: str = "UTC",
    day_policy: DayMatchPolicy = DayMatchPolicy.OR,
) -> RecurrenceRule:
    """Build a rule from a cron or fluent expression.

    Raises:
        MalformedRecurrenceError: on any syntax or range problem.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise MalformedRecurrenceError(str(expression), "empty expression")

    text = " ".join(expression.split())
    if text.startswith("@") or _CRON_HEAD_RE.match(text):
        return CronRule(text, timezone=timezone, day_policy=day_policy)

    lowered = text.lower()
    weekdays: frozenset[int] | None = None
    suffix = _SUFFIX_RE.match(lowered)
    if suffix:
        lowered = suffix.group(1)
        weekdays = WEEKDAYS if suffix.group(2) == "weekdays" else WEEKENDS

    every = _EVERY_RE.match(lowered)
    rule: RecurrenceRule
    if every:
        count = int(every.group(1) or 1)
        if count <= 0:
            raise MalformedRecurrenceError(expression, "interval must be positive")
        rule = IntervalRule(_UNITS[every.group(2)] * count, expression=lowered)
    else:
        cron = _fluent_to_cron(lowered, expression)
        if cron is None:
            raise MalformedRecurrenceError(expression, "unrecognized expression")
        rule = CronRule(cron, timezone=timezone, day_policy=day_policy)

    if weekdays is not None:
        return FilteredRule(rule, weekdays=weekdays, timezone=timezone, expression=text)
    return rule
