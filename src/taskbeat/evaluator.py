"""Due-set evaluation.

Given an instant, list the ids of every registered task whose rule says it
is due, in registration order.  Evaluation reads the registry snapshot and
the coordinator's ``last_fired_at`` values and changes nothing, so it can be
repeated for the same instant and gives the same answer.

Ticks missed while the process was busy or stopped are not backfilled:
only ``now`` is considered.
"""

from __future__ import annotations

from datetime import datetime

from .coordinator import RunCoordinator
from .errors import EvaluatorInternalError
from .logging import get_logger
from .models import TaskDefinition
from .recurrence import to_utc
from .registry import TaskRegistry

logger = get_logger(__name__)


class DueSetEvaluator:
    def __init__(self, registry: TaskRegistry, coordinator: RunCoordinator) -> None:
        self.registry = registry
        self.coordinator = coordinator

    def is_due(self, task: TaskDefinition, now: datetime) -> bool:
        return task.rule.is_due(now, self.coordinator.last_fired_at(task.task_id))

    def due_tasks(self, now: datetime) -> list[TaskDefinition]:
        """Due task definitions at ``now``, in registration order.

        Raises:
            EvaluatorInternalError: if a rule fails unexpectedly
        """
        now = to_utc(now)
        due: list[TaskDefinition] = []
        for task in self.registry.all():
            try:
                if self.is_due(task, now):
                    due.append(task)
            except Exception as e:
                raise EvaluatorInternalError(
                    f"Rule evaluation failed for task '{task.task_id}': {e}",
                    cause=e,
                ).with_context(task_id=task.task_id, expression=task.rule.expression) from e
        logger.debug("due_set_evaluated", now=now.isoformat(), due=[t.task_id for t in due])
        return due

    def due_at(self, now: datetime) -> list[str]:
        """Ids of the tasks due at ``now``, in registration order."""
        return [task.task_id for task in self.due_tasks(now)]
