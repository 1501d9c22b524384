"""Task registry.

Holds every registered :class:`~taskbeat.models.TaskDefinition` in
registration order.  Registration may happen while the scheduler is
ticking, so reads (evaluation snapshots) and writes (``register``) are
serialized with a writer-preferring readers-writer lock: a pending writer
blocks new readers, and the lock is only held long enough to copy.

Tags:
    taskbeat, registry, concurrency

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from .errors import DuplicateIdError, UnknownTaskError
from .logging import get_logger
from .models import TaskDefinition

logger = get_logger(__name__)


class ReadWriteLock:
    """Writer-preferring readers-writer lock."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class TaskRegistry:
    """Ordered, id-unique collection of task definitions.

    Example:
        >>> registry = TaskRegistry()
        >>> registry.register(task)
        >>> [t.task_id for t in registry.all()]
        ['inspire']
    """

    def __init__(self) -> None:
        self._tasks: dict[str, TaskDefinition] = {}
        self._lock = ReadWriteLock()

    def register(self, task: TaskDefinition) -> TaskDefinition:
        """Add a task.

        Raises:
            DuplicateIdError: if the id is already registered
        """
        with self._lock.write():
            if task.task_id in self._tasks:
                raise DuplicateIdError(task.task_id)
            self._tasks[task.task_id] = task
        logger.debug("task_registered", task_id=task.task_id, rule=task.rule.describe())
        return task

    def register_all(self, tasks: Iterable[TaskDefinition]) -> list[TaskDefinition]:
        """Add several tasks atomically; none are added if any id collides."""
        batch = list(tasks)
        seen: set[str] = set()
        with self._lock.write():
            for task in batch:
                if task.task_id in self._tasks or task.task_id in seen:
                    raise DuplicateIdError(task.task_id)
                seen.add(task.task_id)
            for task in batch:
                self._tasks[task.task_id] = task
        logger.info("tasks_registered", count=len(batch))
        return batch

    def all(self) -> tuple[TaskDefinition, ...]:
        """Snapshot of every task in registration order."""
        with self._lock.read():
            return tuple(self._tasks.values())

    def get(self, task_id: str) -> TaskDefinition:
        with self._lock.read():
            task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        return task

    def ids(self) -> list[str]:
        with self._lock.read():
            return list(self._tasks)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        with self._lock.read():
            return task_id in self._tasks

    def __iter__(self) -> Iterator[TaskDefinition]:
        return iter(self.all())
