"""Task definition factories."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

from taskbeat.models import TaskConstraints, TaskDefinition, TaskHooks
from taskbeat.recurrence import parse_recurrence
from taskbeat.units import CallableUnit, ExecutionContext


def noop() -> None:
    return None


def make_task(
    task_id: str,
    func: Callable[..., Any] = noop,
    expression: str = "* * * * *",
    *,
    timezone: str = "UTC",
    hooks: TaskHooks | None = None,
    **constraints: Any,
) -> TaskDefinition:
    return TaskDefinition(
        task_id=task_id,
        unit=CallableUnit(func),
        rule=parse_recurrence(expression, timezone),
        constraints=TaskConstraints(**constraints),
        hooks=hooks or TaskHooks(),
    )


class Gate:
    """A task body that blocks until released, counting concurrent entries."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.entered = threading.Semaphore(0)
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.calls = 0

    def __call__(self, context: ExecutionContext) -> int:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.entered.release()
        try:
            self.release.wait(10)
        finally:
            with self._lock:
                self.active -= 1
        return 0

    def wait_entered(self, count: int = 1, timeout: float = 5.0) -> bool:
        return all(self.entered.acquire(timeout=timeout) for _ in range(count))


class ExplodingRule:
    """A recurrence rule whose evaluation always fails."""

    expression = "boom"

    def is_due(self, now, last_fired_at):
        raise ZeroDivisionError("bad arithmetic")

    def next_due(self, after, last_fired_at=None):
        return None

    def describe(self):
        return "boom"
