"""Timing backends - decide WHEN the scheduler ticks.

┌──────────────────────────────────────────────────────────────────────────────┐
│  BEAT-AS-POLLER                                                               │
│                                                                               │
│   ┌─────────────────────┐   tick(now)   ┌──────────────────────────┐         │
│   │ ThreadScheduler     │ ────────────► │ SchedulerService         │         │
│   │ Backend (timing)    │               │  - sweep expired locks   │         │
│   └─────────────────────┘               │  - evaluate due set      │         │
│                                          │  - admit + dispatch      │         │
│   ┌─────────────────────┐   tick(now)   │                          │         │
│   │ ManualBackend       │ ────────────► │                          │         │
│   │ (tests, `run` CLI)  │               └──────────────────────────┘         │
│   └─────────────────────┘                                                     │
│                                                                               │
│  Daemon thread loop:                                                          │
│                                                                               │
│     while not stop_event.wait(delay_to_next_boundary()):                     │
│         state = TICKING                                                       │
│         tick_count += 1; last_tick = now                                     │
│         tick_callback(now)      ◄── failures logged, loop continues          │
│         state = IDLE                                                          │
│                                                                               │
│  With align=True the first wait ends on the next multiple of the interval    │
│  (the minute boundary for 60s ticks), so cron minute fields are evaluated    │
│  once per wall-clock minute.                                                  │
│                                                                               │
│  States:  IDLE ──► TICKING ──► IDLE ...   stop() ──► STOPPED                 │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .logging import get_logger

logger = get_logger(__name__)

TickCallback = Callable[[datetime], Any]


class LoopState(str, Enum):
    IDLE = "idle"
    TICKING = "ticking"
    STOPPED = "stopped"


@runtime_checkable
class SchedulerBackend(Protocol):
    """Minimal contract for timing backends.

    A backend only calls ``tick_callback(now)`` at the configured interval.
    All evaluation and dispatch logic lives in SchedulerService.
    """

    name: str

    def start(self, tick_callback: TickCallback, interval_seconds: float = 60.0) -> None:
        ...

    def stop(self, timeout: float | None = None) -> None:
        ...

    def health(self) -> dict[str, Any]:
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    state: LoopState = LoopState.IDLE
    tick_count: int = 0
    last_tick: datetime | None = None
    tick_failures: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "state": self.state.value,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "tick_failures": self.tick_failures,
            **self.extra,
        }


def seconds_to_boundary(now: float, interval: float) -> float:
    """Seconds from epoch time ``now`` to the next multiple of ``interval``."""
    remainder = now % interval
    return interval - remainder if remainder else interval


def tick_instant(now: datetime, interval: float) -> datetime:
    """The ``interval`` boundary nearest to ``now``, as aware UTC.

    A sleep aligned to a boundary wakes a few milliseconds late (or, on
    coarse timers, early).  Rules compare minutes and elapsed intervals
    exactly, so the tick is reported at the boundary it was meant for.
    """
    return datetime.fromtimestamp(round(now.timestamp() / interval) * interval, tz=UTC)


class ThreadSchedulerBackend:
    """Drive ticks from a daemon thread.

    Example:
        >>> backend = ThreadSchedulerBackend()
        >>> backend.start(service.tick, interval_seconds=60.0)
        >>> # ... later ...
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self, *, align: bool = True, clock: Callable[[], datetime] | None = None) -> None:
        self.align = align
        self._clock = clock or (lambda: datetime.now(UTC))
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._tick_failures = 0
        self._last_tick: datetime | None = None
        self._interval: float = 60.0
        self._state = LoopState.IDLE
        self._started = False
        self._lock = threading.Lock()

    def _next_delay(self) -> float:
        if not self.align:
            return self._interval
        return seconds_to_boundary(time.time(), self._interval)

    def start(self, tick_callback: TickCallback, interval_seconds: float = 60.0) -> None:
        """Start the tick loop in a daemon thread.

        Args:
            tick_callback: Called with the tick instant (aware UTC)
            interval_seconds: Tick granularity
        """
        if self._started:
            logger.warning("backend_already_started", backend=self.name)
            return
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self._interval = interval_seconds
        self._stop_event.clear()
        self._state = LoopState.IDLE

        def _loop() -> None:
            logger.info("backend_started", backend=self.name, interval_s=interval_seconds, align=self.align)
            while not self._stop_event.wait(self._next_delay()):
                now = self._clock()
                if self.align:
                    now = tick_instant(now, self._interval)
                with self._lock:
                    self._state = LoopState.TICKING
                    self._tick_count += 1
                    self._last_tick = now
                try:
                    tick_callback(now)
                except Exception as e:
                    with self._lock:
                        self._tick_failures += 1
                    logger.exception("tick_failed", error=str(e))
                finally:
                    with self._lock:
                        if self._state is LoopState.TICKING:
                            self._state = LoopState.IDLE
            logger.info("backend_stopped", backend=self.name, ticks=self._tick_count)

        self._thread = threading.Thread(target=_loop, daemon=True, name="taskbeat-scheduler")
        self._started = True
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the loop, waiting up to ``timeout`` for the current tick."""
        if not self._started:
            self._state = LoopState.STOPPED
            return

        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("backend_thread_still_running", backend=self.name)

        with self._lock:
            self._state = LoopState.STOPPED
        self._started = False

    def health(self) -> dict[str, Any]:
        return self.get_health().to_dict()

    def get_health(self) -> BackendHealth:
        with self._lock:
            return BackendHealth(
                healthy=self.is_running,
                backend=self.name,
                state=self._state,
                tick_count=self._tick_count,
                last_tick=self._last_tick,
                tick_failures=self._tick_failures,
                extra={"interval_seconds": self._interval, "align": self.align},
            )

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def tick_failures(self) -> int:
        return self._tick_failures

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick


class ManualBackend:
    """Backend that never ticks on its own; call :meth:`fire` to tick.

    Used by tests and by the one-shot ``taskbeat schedule run`` command.
    """

    name = "manual"

    def __init__(self) -> None:
        self._callback: TickCallback | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._state = LoopState.IDLE
        self._interval = 60.0

    def start(self, tick_callback: TickCallback, interval_seconds: float = 60.0) -> None:
        self._callback = tick_callback
        self._interval = interval_seconds
        self._state = LoopState.IDLE

    def fire(self, now: datetime | None = None) -> Any:
        if self._callback is None:
            raise RuntimeError("backend not started")
        now = now or datetime.now(UTC)
        self._state = LoopState.TICKING
        self._tick_count += 1
        self._last_tick = now
        try:
            return self._callback(now)
        finally:
            self._state = LoopState.IDLE

    def stop(self, timeout: float | None = None) -> None:
        self._callback = None
        self._state = LoopState.STOPPED

    def health(self) -> dict[str, Any]:
        return BackendHealth(
            healthy=self._callback is not None,
            backend=self.name,
            state=self._state,
            tick_count=self._tick_count,
            last_tick=self._last_tick,
            extra={"interval_seconds": self._interval},
        ).to_dict()

    @property
    def state(self) -> LoopState:
        return self._state
