"""Tests for taskbeat.coordinator: run locks, admission and sweeping."""

from __future__ import annotations

import threading
from datetime import timedelta

from taskbeat.coordinator import RunCoordinator
from taskbeat.models import SkipReason
from taskbeat.recurrence import TimeWindow
from tests._support.clock import utc
from tests._support.tasks import make_task

NOW = utc(2024, 1, 15, 12, 0)


class TestRunLocks:
    def test_exclusive_lock(self, coordinator):
        assert coordinator.try_acquire("t", NOW, "run-1") is True
        assert coordinator.try_acquire("t", NOW, "run-2") is False
        assert coordinator.is_running("t") is True
        assert coordinator.release("t", "run-1") is True
        assert coordinator.is_running("t") is False
        assert coordinator.try_acquire("t", NOW, "run-2") is True

    def test_release_unknown_run(self, coordinator):
        assert coordinator.release("t", "never") is False

    def test_shared_locks_count_active_runs(self, coordinator):
        assert coordinator.try_acquire("t", NOW, "a", exclusive=False)
        assert coordinator.try_acquire("t", NOW, "b", exclusive=False)
        assert coordinator.state("t").active_runs == 2
        assert coordinator.try_acquire("t", NOW, "c", exclusive=True) is False

    def test_shared_blocked_by_exclusive(self, coordinator):
        coordinator.try_acquire("t", NOW, "a", exclusive=True)
        assert coordinator.try_acquire("t", NOW, "b", exclusive=False) is False

    def test_only_one_of_many_racing_threads_wins(self, coordinator):
        barrier = threading.Barrier(8)
        wins = []

        def race(i):
            barrier.wait()
            if coordinator.try_acquire("t", NOW, f"run-{i}"):
                wins.append(i)

        threads = [threading.Thread(target=race, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(wins) == 1

    def test_state_is_a_copy(self, coordinator):
        coordinator.try_acquire("t", NOW, "a")
        state = coordinator.state("t")
        state.running = False
        assert coordinator.is_running("t") is True
        assert coordinator.state("t").lock_held_since == NOW


class TestMarkFired:
    def test_monotonic(self, coordinator):
        coordinator.mark_fired("t", NOW)
        coordinator.mark_fired("t", NOW - timedelta(minutes=5))
        assert coordinator.last_fired_at("t") == NOW
        coordinator.mark_fired("t", NOW + timedelta(minutes=1))
        assert coordinator.last_fired_at("t") == NOW + timedelta(minutes=1)

    def test_unknown_task_never_fired(self, coordinator):
        assert coordinator.last_fired_at("new") is None


class TestAdmit:
    def test_accepts_and_takes_lock(self, coordinator):
        task = make_task("t")
        admission = coordinator.admit(task, NOW)
        assert admission
        assert admission.reason is None
        assert coordinator.is_running("t")

    def test_overlapping_skipped(self, coordinator):
        task = make_task("t", without_overlapping=True)
        first = coordinator.admit(task, NOW)
        second = coordinator.admit(task, NOW + timedelta(minutes=1))
        assert first.accepted is True
        assert second.accepted is False
        assert second.reason is SkipReason.OVERLAPPING

    def test_overlap_allowed_by_default(self, coordinator):
        task = make_task("t")
        assert coordinator.admit(task, NOW)
        assert coordinator.admit(task, NOW + timedelta(minutes=1))
        assert coordinator.state("t").active_runs == 2

    def test_when_filter(self, coordinator):
        from taskbeat.models import ConditionalFilter

        task = make_task("t", filters=(ConditionalFilter(lambda: False),))
        admission = coordinator.admit(task, NOW)
        assert admission.reason is SkipReason.FILTERED
        assert coordinator.is_running("t") is False

    def test_skip_filter(self, coordinator):
        from taskbeat.models import ConditionalFilter

        task = make_task("t", filters=(ConditionalFilter(lambda: True, skip=True),))
        assert coordinator.admit(task, NOW).reason is SkipReason.FILTERED

    def test_raising_filter_counts_as_filtered(self, coordinator):
        from taskbeat.models import ConditionalFilter

        def broken():
            raise RuntimeError("db down")

        task = make_task("t", filters=(ConditionalFilter(broken),))
        admission = coordinator.admit(task, NOW)
        assert admission.reason is SkipReason.FILTERED
        assert "db down" in admission.detail

    def test_maintenance_mode(self):
        coordinator = RunCoordinator(maintenance_mode=True)
        assert coordinator.admit(make_task("t"), NOW).reason is SkipReason.MAINTENANCE
        assert coordinator.admit(make_task("u", even_in_maintenance_mode=True), NOW)
        coordinator.set_maintenance(False)
        assert coordinator.admit(make_task("t"), NOW)

    def test_environment(self):
        coordinator = RunCoordinator(environment="staging")
        assert coordinator.admit(make_task("t", environments=("production",)), NOW).reason is SkipReason.ENVIRONMENT
        assert coordinator.admit(make_task("u", environments=("staging", "production")), NOW)

    def test_time_window_in_configured_zone(self):
        coordinator = RunCoordinator(timezone="Europe/Berlin")
        window = (TimeWindow.between("09:00", "17:00"),)
        # 12:00 UTC is 13:00 in Berlin (winter)
        assert coordinator.admit(make_task("t", time_windows=window), NOW)
        late = coordinator.admit(make_task("u", time_windows=window), utc(2024, 1, 15, 17, 0))
        assert late.reason is SkipReason.OUTSIDE_WINDOW

    def test_overlap_checked_before_maintenance(self):
        coordinator = RunCoordinator()
        task = make_task("t", without_overlapping=True, even_in_maintenance_mode=False)
        assert coordinator.admit(task, NOW)
        coordinator.set_maintenance(True)
        assert coordinator.admit(task, NOW).reason is SkipReason.OVERLAPPING


class TestSweepExpired:
    def test_reclaims_stale_locks(self, coordinator):
        task = make_task("t", without_overlapping=True, overlap_expires_after=timedelta(minutes=10))
        admission = coordinator.admit(task, NOW)
        assert coordinator.sweep_expired(NOW + timedelta(minutes=9)) == []
        reclaimed = coordinator.sweep_expired(NOW + timedelta(minutes=10))
        assert [(lock.task_id, lock.run_id) for lock in reclaimed] == [("t", admission.run_id)]
        assert coordinator.is_running("t") is False
        assert coordinator.admit(task, NOW + timedelta(minutes=10))

    def test_late_release_after_sweep_is_harmless(self, coordinator):
        task = make_task("t", without_overlapping=True, overlap_expires_after=timedelta(minutes=1))
        stale = coordinator.admit(task, NOW)
        coordinator.sweep_expired(NOW + timedelta(minutes=2))
        fresh = coordinator.admit(task, NOW + timedelta(minutes=2))
        assert coordinator.release("t", stale.run_id) is False
        assert coordinator.is_running("t") is True
        assert coordinator.release("t", fresh.run_id) is True


class TestForceRelease:
    def test_releases_everything_once(self, coordinator):
        coordinator.try_acquire("a", NOW, "run-a")
        coordinator.try_acquire("b", NOW + timedelta(seconds=1), "run-b")
        assert [lock.run_id for lock in coordinator.active_locks()] == ["run-a", "run-b"]

        released = coordinator.force_release_all()
        assert {lock.run_id for lock in released} == {"run-a", "run-b"}
        assert coordinator.active_locks() == []
        assert coordinator.was_force_released("run-a") is True
        assert coordinator.was_force_released("run-a") is False
        assert coordinator.was_force_released("other") is False

    def test_active_lock_to_dict(self, coordinator):
        coordinator.try_acquire("a", NOW, "run-a", expires_after=timedelta(hours=1))
        data = coordinator.active_locks()[0].to_dict()
        assert data["task_id"] == "a"
        assert data["expires_at"] == (NOW + timedelta(hours=1)).isoformat()
