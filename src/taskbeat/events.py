"""Run events - the scheduler's only outward channel for outcomes.

Manifesto:
    Skipped, failed and timed-out runs are never raised to the caller of
    ``tick``; they are published as :class:`RunEvent` records.  The
    scheduler depends on the :class:`EventSink` capability only, so logs,
    metrics or an in-process bus can be plugged in without touching the
    dispatch path.

Usage::

    from taskbeat.events import EventBus, RunEvent

    bus = EventBus()
    bus.subscribe("run.failure", lambda event: alert(event.task_id))
    bus.subscribe("run.*", audit_log.append)

Event types:
    ``run.success``, ``run.failure``, ``run.skipped``, ``run.timed_out``

Sinks
-----
LoggingEventSink   structlog line per event (default)
EventBus           pattern subscriptions, handler errors contained
InMemoryEventSink  bounded buffer for tests and inspection
CompositeSink      fan-out to several sinks

Tags:
    taskbeat, events, observability, pubsub

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from .logging import get_logger
from .models import RunOutcome, RunStatus, SkipReason

logger = get_logger(__name__)

__all__ = [
    "RunEvent",
    "EventSink",
    "EventHandler",
    "EventBus",
    "LoggingEventSink",
    "InMemoryEventSink",
    "CompositeSink",
]

_TYPE_SUFFIX = {
    RunStatus.SUCCESS: "success",
    RunStatus.FAILURE: "failure",
    RunStatus.SKIPPED: "skipped",
    RunStatus.TIMED_OUT: "timed_out",
}


# ── Event Model ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RunEvent:
    """Structured record published for every run or skip.

    Attributes:
        task_id: Task the event concerns
        run_id: Run identifier (skips get one too)
        started_at: When the run started (or was skipped)
        ended_at: When the run ended (equal to started_at for skips)
        status: Final :class:`RunStatus`
        error_detail: Failure description, or None
        exit_status: Exit status reported by the unit, or None
        output_ref: Where captured output was written, or None
        skip_reason: Why the run was skipped, or None
    """

    task_id: str
    run_id: str
    started_at: datetime
    ended_at: datetime
    status: RunStatus
    error_detail: str | None = None
    exit_status: int | None = None
    output_ref: str | None = None
    skip_reason: SkipReason | None = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_outcome(cls, outcome: RunOutcome) -> RunEvent:
        return cls(
            task_id=outcome.task_id,
            run_id=outcome.run_id,
            started_at=outcome.started_at,
            ended_at=outcome.ended_at,
            status=outcome.status,
            error_detail=outcome.error_detail,
            exit_status=outcome.exit_status,
            output_ref=outcome.output_ref,
            skip_reason=outcome.skip_reason,
        )

    @property
    def event_type(self) -> str:
        return f"run.{_TYPE_SUFFIX[self.status]}"

    def matches(self, pattern: str) -> bool:
        """Check if the event type matches a pattern.

        Examples:
            - ``run.*`` matches every run event
            - ``*`` matches everything
            - ``run.failure`` matches exactly ``run.failure``
        """
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            return self.event_type.startswith(pattern[:-2] + ".")
        return self.event_type == pattern

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "task_id": self.task_id,
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "status": self.status.value,
            "error_detail": self.error_detail,
            "exit_status": self.exit_status,
            "output_ref": self.output_ref,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
        }


EventHandler = Callable[[RunEvent], Any]


@runtime_checkable
class EventSink(Protocol):
    """Anything that accepts run events.  ``emit`` must not raise."""

    def emit(self, event: RunEvent) -> None:
        ...


# ── Sinks ────────────────────────────────────────────────────────────────


class LoggingEventSink:
    """Write one structured log line per event."""

    def __init__(self, logger_name: str = "taskbeat.runs") -> None:
        self._log = get_logger(logger_name)

    def emit(self, event: RunEvent) -> None:
        fields = {
            "task_id": event.task_id,
            "run_id": event.run_id,
            "status": event.status.value,
            "duration_s": round((event.ended_at - event.started_at).total_seconds(), 3),
        }
        if event.exit_status is not None:
            fields["exit_status"] = event.exit_status
        if event.output_ref:
            fields["output_ref"] = event.output_ref
        if event.skip_reason is not None:
            fields["skip_reason"] = event.skip_reason.value
        if event.error_detail:
            fields["error"] = event.error_detail

        if event.status is RunStatus.SUCCESS:
            self._log.info("run_succeeded", **fields)
        elif event.status is RunStatus.SKIPPED:
            self._log.info("run_skipped", **fields)
        elif event.status is RunStatus.TIMED_OUT:
            self._log.warning("run_timed_out", **fields)
        else:
            self._log.warning("run_failed", **fields)


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    pattern: str
    handler: EventHandler


class EventBus:
    """In-process publish/subscribe sink.

    Handlers run synchronously on the publishing thread (the dispatcher's
    worker for background runs).  A failing handler is logged and never
    stops delivery to the others.

    Example::

        bus = EventBus()
        sub_id = bus.subscribe("run.*", print)
        bus.emit(event)
        bus.unsubscribe(sub_id)
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._closed = False

    def emit(self, event: RunEvent) -> None:
        if self._closed:
            return

        with self._lock:
            handlers = [
                (sub.id, sub.handler)
                for sub in self._subscriptions.values()
                if event.matches(sub.pattern)
            ]

        for sub_id, handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub_id,
                    event_type=event.event_type,
                    task_id=event.task_id,
                    error=str(e),
                )

    publish = emit

    def subscribe(self, pattern: str, handler: EventHandler) -> str:
        """Subscribe to events matching a pattern.

        Args:
            pattern: ``*``, ``run.*`` or an exact type such as ``run.failure``
            handler: Callback receiving the :class:`RunEvent`

        Returns:
            Subscription ID
        """
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._subscriptions[sub_id] = Subscription(id=sub_id, pattern=pattern, handler=handler)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> None:
        with self._lock:
            self._subscriptions.pop(subscription_id, None)

    def close(self) -> None:
        """Mark the bus as closed and clear subscriptions."""
        self._closed = True
        with self._lock:
            self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)


class InMemoryEventSink:
    """Keep the most recent ``capacity`` events in memory."""

    def __init__(self, capacity: int = 1000) -> None:
        self._events: deque[RunEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def emit(self, event: RunEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[RunEvent]:
        with self._lock:
            return list(self._events)

    def for_task(self, task_id: str) -> list[RunEvent]:
        return [e for e in self.events if e.task_id == task_id]

    def with_status(self, status: RunStatus) -> list[RunEvent]:
        return [e for e in self.events if e.status is status]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class CompositeSink:
    """Fan an event out to several sinks; one failing sink does not block the rest."""

    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self.sinks = list(sinks)

    def emit(self, event: RunEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.warning(
                    "event_sink_error",
                    sink=type(sink).__name__,
                    task_id=event.task_id,
                    error=str(e),
                )
