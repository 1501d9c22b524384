"""Tests for taskbeat.dispatcher: running units and reporting outcomes."""

from __future__ import annotations

import time
from datetime import timedelta

import pytest

from taskbeat.dispatcher import Dispatcher, ThreadPerTaskExecutor
from taskbeat.errors import SchedulerStoppedError
from taskbeat.models import RunStatus, TaskHooks
from tests._support.clock import FakeClock, utc
from tests._support.tasks import Gate, make_task

NOW = utc(2024, 1, 15, 12, 0)


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def dispatcher(coordinator, recorder):
    dispatcher = Dispatcher(coordinator, recorder, cancel_grace=0.2)
    yield dispatcher
    dispatcher.shutdown(wait=False)


def run(dispatcher, coordinator, task, run_id="run-1"):
    assert coordinator.try_acquire(task.task_id, NOW, run_id, exclusive=task.constraints.without_overlapping)
    return dispatcher.run(task, run_id)


class TestOutcomes:
    def test_success(self, dispatcher, coordinator, recorder):
        outcome = run(dispatcher, coordinator, make_task("t", lambda: "hello"))
        assert outcome.status is RunStatus.SUCCESS
        assert outcome.exit_status == 0
        assert outcome.error_detail is None
        assert [e.status for e in recorder.events] == [RunStatus.SUCCESS]
        assert recorder.events[0].run_id == "run-1"
        assert coordinator.is_running("t") is False

    def test_non_zero_exit_is_failure(self, dispatcher, coordinator):
        outcome = run(dispatcher, coordinator, make_task("t", lambda: 3))
        assert outcome.status is RunStatus.FAILURE
        assert outcome.exit_status == 3
        assert outcome.error_detail == "exit status 3"

    def test_exception_is_contained(self, dispatcher, coordinator, recorder):
        def body():
            raise ValueError("bad input")

        outcome = run(dispatcher, coordinator, make_task("t", body))
        assert outcome.status is RunStatus.FAILURE
        assert outcome.error_detail == "ValueError: bad input"
        assert recorder.with_status(RunStatus.FAILURE)[0].error_detail == "ValueError: bad input"
        assert coordinator.is_running("t") is False

    def test_timestamps_from_clock(self, coordinator, recorder, clock):
        dispatcher = Dispatcher(coordinator, recorder, clock=clock)

        def body():
            clock.advance(seconds=30)

        outcome = run(dispatcher, coordinator, make_task("t", body))
        assert outcome.started_at == NOW
        assert outcome.ended_at == NOW + timedelta(seconds=30)
        assert outcome.duration_seconds == 30

    def test_sink_failure_does_not_break_run(self, coordinator):
        class BrokenSink:
            def emit(self, event):
                raise RuntimeError("sink down")

        dispatcher = Dispatcher(coordinator, BrokenSink())
        outcome = run(dispatcher, coordinator, make_task("t"))
        assert outcome.status is RunStatus.SUCCESS
        assert coordinator.is_running("t") is False


class TestTimeouts:
    def test_cooperative_unit_timed_out(self, dispatcher, coordinator):
        def body(context):
            while not context.wait(0.01):
                pass

        task = make_task("t", body, max_runtime=timedelta(seconds=0.1))
        outcome = run(dispatcher, coordinator, task)
        assert outcome.status is RunStatus.TIMED_OUT
        assert "timed out" in outcome.error_detail
        assert coordinator.is_running("t") is False

    def test_check_raising_is_timed_out(self, dispatcher, coordinator):
        def body(context):
            while True:
                context.check()
                time.sleep(0.01)

        task = make_task("t", body, max_runtime=timedelta(seconds=0.1))
        assert run(dispatcher, coordinator, task).status is RunStatus.TIMED_OUT

    def test_uncooperative_unit_is_detached(self, coordinator, recorder):
        dispatcher = Dispatcher(coordinator, recorder, cancel_grace=0.05)
        task = make_task("t", lambda: time.sleep(1), max_runtime=timedelta(seconds=0.05))
        started = time.monotonic()
        outcome = run(dispatcher, coordinator, task)
        assert outcome.status is RunStatus.TIMED_OUT
        assert time.monotonic() - started < 0.9
        assert coordinator.is_running("t") is False


class TestOutput:
    def test_send_output_overwrites(self, dispatcher, coordinator, tmp_path):
        path = tmp_path / "logs" / "out.log"
        task = make_task("t", lambda: "hello\n", output_path=path)
        run(dispatcher, coordinator, task, "run-1")
        outcome = run(dispatcher, coordinator, task, "run-2")
        assert path.read_bytes() == b"hello\n"
        assert outcome.output_ref == str(path)

    def test_append_output(self, dispatcher, coordinator, tmp_path):
        path = tmp_path / "out.log"
        task = make_task("t", lambda: "hello\n", output_path=path, append_output=True)
        run(dispatcher, coordinator, task, "run-1")
        run(dispatcher, coordinator, task, "run-2")
        assert path.read_bytes() == b"hello\nhello\n"

    def test_unwritable_output_does_not_fail_run(self, dispatcher, coordinator, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        task = make_task("t", lambda: "hello", output_path=blocker / "out.log")
        outcome = run(dispatcher, coordinator, task)
        assert outcome.status is RunStatus.SUCCESS
        assert outcome.output_ref is None


class TestHooks:
    def test_hook_order_on_success(self, dispatcher, coordinator):
        calls = []
        hooks = TaskHooks(
            before=(lambda task: calls.append(("before", task.task_id)),),
            after=(lambda task, outcome: calls.append(("after", outcome.status)),),
            on_success=(lambda task, outcome: calls.append(("success", outcome.status)),),
            on_failure=(lambda task, outcome: calls.append(("failure", outcome.status)),),
        )
        run(dispatcher, coordinator, make_task("t", hooks=hooks))
        assert calls == [
            ("before", "t"),
            ("after", RunStatus.SUCCESS),
            ("success", RunStatus.SUCCESS),
        ]

    def test_on_failure(self, dispatcher, coordinator):
        seen = []
        hooks = TaskHooks(on_failure=(lambda task, outcome: seen.append(outcome.error_detail),))
        run(dispatcher, coordinator, make_task("t", lambda: 2, hooks=hooks))
        assert seen == ["exit status 2"]

    def test_failing_hook_is_contained(self, dispatcher, coordinator):
        def hook(task):
            raise RuntimeError("hook broke")

        outcome = run(dispatcher, coordinator, make_task("t", hooks=TaskHooks(before=(hook,))))
        assert outcome.status is RunStatus.SUCCESS


class TestDispatch:
    def test_foreground_handle_is_complete(self, dispatcher, coordinator):
        task = make_task("t")
        coordinator.try_acquire("t", NOW, "run-1")
        handle = dispatcher.dispatch(task, "run-1")
        assert handle.background is False
        assert handle.done() is True
        assert handle.result().status is RunStatus.SUCCESS

    def test_background_run(self, dispatcher, coordinator, recorder):
        gate = Gate()
        task = make_task("t", gate, run_in_background=True)
        coordinator.try_acquire("t", NOW, "run-1")
        handle = dispatcher.dispatch(task, "run-1")
        assert gate.wait_entered()
        assert handle.background is True
        assert handle.done() is False
        assert [h.run_id for h in dispatcher.in_flight()] == ["run-1"]
        assert dispatcher.wait_all(0.05) is False

        gate.release.set()
        assert handle.result(timeout=5).status is RunStatus.SUCCESS
        assert dispatcher.wait_all(5) is True
        assert len(recorder) == 1

    def test_fixed_worker_pool(self, coordinator, recorder):
        dispatcher = Dispatcher(coordinator, recorder, worker_pool_size=2)
        gate = Gate()
        handles = []
        for i in range(4):
            task = make_task(f"t{i}", gate, run_in_background=True)
            coordinator.try_acquire(task.task_id, NOW, f"run-{i}")
            handles.append(dispatcher.dispatch(task, f"run-{i}"))
        assert gate.wait_entered(2)
        time.sleep(0.05)
        assert gate.active == 2
        gate.release.set()
        assert all(h.result(timeout=5).succeeded for h in handles)
        assert gate.max_active == 2
        dispatcher.shutdown(wait=True)

    def test_force_released_run_is_not_reported_again(self, dispatcher, coordinator, recorder):
        gate = Gate()
        task = make_task("t", gate, run_in_background=True)
        coordinator.try_acquire("t", NOW, "run-1")
        handle = dispatcher.dispatch(task, "run-1")
        assert gate.wait_entered()
        coordinator.force_release_all()
        gate.release.set()
        assert handle.result(timeout=5).status is RunStatus.SUCCESS
        assert len(recorder) == 0

    def test_cancel_all_signals_units(self, dispatcher, coordinator):
        def body(context):
            context.wait(10)
            return 0 if context.cancelled else 1

        task = make_task("t", body, run_in_background=True)
        coordinator.try_acquire("t", NOW, "run-1")
        handle = dispatcher.dispatch(task, "run-1")
        time.sleep(0.05)
        assert dispatcher.cancel_all() == 1
        assert handle.result(timeout=5).status is RunStatus.SUCCESS

    @pytest.mark.parametrize("background", [False, True])
    def test_closed_dispatcher_refuses_runs(self, dispatcher, coordinator, recorder, background):
        ran = []
        task = make_task("t", lambda: ran.append(1), run_in_background=background)
        coordinator.try_acquire("t", NOW, "run-1")
        dispatcher.close()
        assert dispatcher.closed is True
        with pytest.raises(SchedulerStoppedError) as exc_info:
            dispatcher.dispatch(task, "run-1")
        assert exc_info.value.run_id == "run-1"
        assert ran == []
        assert dispatcher.in_flight() == []
        assert len(recorder) == 0
        assert [lock.run_id for lock in coordinator.active_locks()] == ["run-1"]


class TestThreadPerTaskExecutor:
    def test_submit_and_shutdown(self):
        executor = ThreadPerTaskExecutor()
        future = executor.submit(lambda x: x * 2, 21)
        assert future.result(timeout=5) == 42
        executor.shutdown(wait=True)
        with pytest.raises(RuntimeError):
            executor.submit(lambda: None)

    def test_exception_set_on_future(self):
        executor = ThreadPerTaskExecutor()

        def body():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            executor.submit(body).result(timeout=5)
