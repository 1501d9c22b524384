"""Run coordinator - per-task run locks and admission.

Manifesto:
    A task marked ``without_overlapping`` must never run twice at once.
    The coordinator owns each task's run state and hands out run locks
    atomically, keyed by run id, with age-based expiry so a run that never
    reported back cannot block its task forever.  Different tasks never
    share a mutex, so one slow task cannot delay another's admission.

Tags:
    taskbeat, scheduling, locks, overlap, concurrency

Doc-Types:
    api-reference, architecture-diagram


    Admission Flow::

        admit(task, now)
          1. without_overlapping and running     -> skip OVERLAPPING
          2. when/skip predicates                -> skip FILTERED
             maintenance mode                    -> skip MAINTENANCE
             environment not allowed             -> skip ENVIRONMENT
          3. between / unless_between windows    -> skip OUTSIDE_WINDOW
          4. try_acquire(task_id, now, run_id)   -> skip OVERLAPPING on race
             accepted                            -> Admission(run_id)

    Lock Expiry:
        sweep_expired(now) reclaims any run lock older than the task's
        ``overlap_expires_after`` (24 hours unless configured).
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from .logging import get_logger
from .models import RunOutcome, SkipReason, TaskDefinition, TaskRunState
from .recurrence import to_utc

logger = get_logger(__name__)


def new_run_id() -> str:
    return uuid.uuid4().hex[:16]


@dataclass(frozen=True)
class Admission:
    """Result of :meth:`RunCoordinator.admit`."""

    accepted: bool
    run_id: str
    reason: SkipReason | None = None
    detail: str | None = None

    def __bool__(self) -> bool:
        return self.accepted


@dataclass(frozen=True)
class ActiveLock:
    """A run lock currently held."""

    task_id: str
    run_id: str
    held_since: datetime
    expires_at: datetime | None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "task_id": self.task_id,
            "run_id": self.run_id,
            "held_since": self.held_since.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class _TaskSlot:
    mutex: threading.Lock = field(default_factory=threading.Lock)
    state: TaskRunState = field(default_factory=TaskRunState)
    holders: dict[str, datetime] = field(default_factory=dict)
    exclusive: bool = False
    expires_after: timedelta | None = None

    def sync(self) -> None:
        self.state.active_runs = len(self.holders)
        self.state.running = bool(self.holders)
        self.state.lock_held_since = min(self.holders.values()) if self.holders else None


class RunCoordinator:
    """Owns every task's :class:`TaskRunState`.

    Example:
        >>> coordinator = RunCoordinator(environment="production")
        >>> admission = coordinator.admit(task, now)
        >>> if admission:
        ...     coordinator.mark_fired(task.task_id, now)
        ...     try:
        ...         run(task)
        ...     finally:
        ...         coordinator.release(task.task_id, admission.run_id)
    """

    def __init__(
        self,
        *,
        environment: str = "production",
        maintenance_mode: bool = False,
        timezone: str | ZoneInfo = "UTC",
    ) -> None:
        self.environment = environment
        self._maintenance = threading.Event()
        if maintenance_mode:
            self._maintenance.set()
        self.zone = timezone if isinstance(timezone, ZoneInfo) else ZoneInfo(timezone)
        self._slots: dict[str, _TaskSlot] = {}
        self._slots_lock = threading.Lock()
        self._forced: set[str] = set()
        self._forced_lock = threading.Lock()

    def _slot(self, task_id: str) -> _TaskSlot:
        with self._slots_lock:
            slot = self._slots.get(task_id)
            if slot is None:
                slot = self._slots[task_id] = _TaskSlot()
            return slot

    # === Maintenance mode ===

    @property
    def maintenance_mode(self) -> bool:
        return self._maintenance.is_set()

    def set_maintenance(self, enabled: bool) -> None:
        if enabled:
            self._maintenance.set()
        else:
            self._maintenance.clear()
        logger.info("maintenance_mode_changed", enabled=enabled)

    # === Run locks ===

    def try_acquire(
        self,
        task_id: str,
        now: datetime,
        run_id: str,
        *,
        exclusive: bool = True,
        expires_after: timedelta | None = None,
    ) -> bool:
        """Atomically take the task's run lock.

        Exclusive acquisition fails while any run of the task holds the
        lock; non-exclusive acquisition always succeeds and is counted.
        """
        slot = self._slot(task_id)
        with slot.mutex:
            if slot.holders and (exclusive or slot.exclusive):
                logger.debug("lock_busy", task_id=task_id, active_runs=len(slot.holders))
                return False
            slot.holders[run_id] = to_utc(now)
            slot.exclusive = exclusive
            slot.expires_after = expires_after
            slot.sync()
        logger.debug("lock_acquired", task_id=task_id, run_id=run_id, exclusive=exclusive)
        return True

    def release(self, task_id: str, run_id: str, outcome: RunOutcome | None = None) -> bool:
        """Release a run lock.  Returns False if this run no longer held it."""
        slot = self._slot(task_id)
        with slot.mutex:
            held = slot.holders.pop(run_id, None) is not None
            if not slot.holders:
                slot.exclusive = False
            slot.sync()
        if held:
            logger.debug(
                "lock_released",
                task_id=task_id,
                run_id=run_id,
                status=outcome.status.value if outcome else None,
            )
        return held

    def is_running(self, task_id: str) -> bool:
        slot = self._slot(task_id)
        with slot.mutex:
            return slot.state.running

    def state(self, task_id: str) -> TaskRunState:
        """Copy of the task's run state."""
        slot = self._slot(task_id)
        with slot.mutex:
            return replace(slot.state)

    def last_fired_at(self, task_id: str) -> datetime | None:
        slot = self._slot(task_id)
        with slot.mutex:
            return slot.state.last_fired_at

    def mark_fired(self, task_id: str, now: datetime) -> datetime:
        """Record a fire instant; never moves ``last_fired_at`` backwards."""
        now = to_utc(now)
        slot = self._slot(task_id)
        with slot.mutex:
            current = slot.state.last_fired_at
            if current is None or now > current:
                slot.state.last_fired_at = now
            return slot.state.last_fired_at  # type: ignore[return-value]

    # === Admission ===

    def admit(self, task: TaskDefinition, now: datetime, run_id: str | None = None) -> Admission:
        """Decide whether a due task may start now, taking its lock if so."""
        run_id = run_id or new_run_id()
        constraints = task.constraints

        if constraints.without_overlapping and self.is_running(task.task_id):
            return Admission(False, run_id, SkipReason.OVERLAPPING, "previous run still active")

        for check in constraints.filters:
            try:
                passed = check.passes()
            except Exception as e:
                logger.warning("filter_error", task_id=task.task_id, error=str(e))
                return Admission(False, run_id, SkipReason.FILTERED, f"filter raised: {e}")
            if not passed:
                return Admission(False, run_id, SkipReason.FILTERED, "filter rejected run")

        if self.maintenance_mode and not constraints.even_in_maintenance_mode:
            return Admission(False, run_id, SkipReason.MAINTENANCE, "maintenance mode")

        if constraints.environments and self.environment not in constraints.environments:
            return Admission(
                False,
                run_id,
                SkipReason.ENVIRONMENT,
                f"environment {self.environment!r} not in {list(constraints.environments)}",
            )

        for window in constraints.time_windows:
            if not window.contains(now, self.zone):
                return Admission(False, run_id, SkipReason.OUTSIDE_WINDOW, window.describe())

        acquired = self.try_acquire(
            task.task_id,
            now,
            run_id,
            exclusive=constraints.without_overlapping,
            expires_after=constraints.overlap_expires_after,
        )
        if not acquired:
            return Admission(False, run_id, SkipReason.OVERLAPPING, "lock held")
        return Admission(True, run_id)

    # === Maintenance ===

    def sweep_expired(self, now: datetime) -> list[ActiveLock]:
        """Reclaim run locks held longer than their expiry.

        Should run once per tick so a lost run cannot block its task
        forever.

        Returns:
            The locks that were reclaimed
        """
        now = to_utc(now)
        reclaimed: list[ActiveLock] = []
        with self._slots_lock:
            slots = list(self._slots.items())
        for task_id, slot in slots:
            with slot.mutex:
                if slot.expires_after is None:
                    continue
                for run_id, since in list(slot.holders.items()):
                    if now - since >= slot.expires_after:
                        del slot.holders[run_id]
                        reclaimed.append(ActiveLock(task_id, run_id, since, since + slot.expires_after))
                if not slot.holders:
                    slot.exclusive = False
                slot.sync()
        if reclaimed:
            logger.warning("expired_locks_reclaimed", count=len(reclaimed), tasks=[lock.task_id for lock in reclaimed])
        return reclaimed

    def active_locks(self) -> list[ActiveLock]:
        """Every held run lock, oldest first."""
        locks: list[ActiveLock] = []
        with self._slots_lock:
            slots = list(self._slots.items())
        for task_id, slot in slots:
            with slot.mutex:
                for run_id, since in slot.holders.items():
                    expires = since + slot.expires_after if slot.expires_after else None
                    locks.append(ActiveLock(task_id, run_id, since, expires))
        return sorted(locks, key=lambda lock: lock.held_since)

    def force_release_all(self) -> list[ActiveLock]:
        """Drop every held lock (shutdown and recovery only)."""
        released: list[ActiveLock] = []
        with self._slots_lock:
            slots = list(self._slots.items())
        for task_id, slot in slots:
            with slot.mutex:
                for run_id, since in slot.holders.items():
                    expires = since + slot.expires_after if slot.expires_after else None
                    released.append(ActiveLock(task_id, run_id, since, expires))
                    with self._forced_lock:
                        self._forced.add(run_id)
                slot.holders.clear()
                slot.exclusive = False
                slot.sync()
        if released:
            logger.warning("locks_force_released", count=len(released))
        return released

    def was_force_released(self, run_id: str) -> bool:
        """True (once) if ``force_release_all`` dropped this run's lock."""
        with self._forced_lock:
            if run_id in self._forced:
                self._forced.discard(run_id)
                return True
            return False
