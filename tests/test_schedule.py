"""Tests for taskbeat.schedule: the fluent builder and task loading."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from taskbeat.errors import InvalidTaskError, MalformedRecurrenceError, RegistrationError
from taskbeat.models import TaskDefinition, TaskSpec
from taskbeat.recurrence import CronRule, FilteredRule, IntervalRule
from taskbeat.schedule import PendingTask, Schedule, collect_tasks, task_from_spec
from taskbeat.units import CallableUnit, HttpCall, ShellCommand
from tests._support.clock import utc
from tests._support.tasks import noop


@pytest.fixture
def schedule():
    return Schedule()


def expression_of(pending: PendingTask) -> str:
    return pending.build().rule.expression


class TestFrequencies:
    @pytest.mark.parametrize(
        ("configure", "expected"),
        [
            (lambda p: p.every_minute(), "* * * * *"),
            (lambda p: p.every_five_minutes(), "*/5 * * * *"),
            (lambda p: p.every_fifteen_minutes(), "*/15 * * * *"),
            (lambda p: p.every_thirty_minutes(), "0,30 * * * *"),
            (lambda p: p.hourly(), "0 * * * *"),
            (lambda p: p.hourly_at(15, 45), "15,45 * * * *"),
            (lambda p: p.every_six_hours(), "0 */6 * * *"),
            (lambda p: p.daily(), "0 0 * * *"),
            (lambda p: p.daily_at("13:05"), "5 13 * * *"),
            (lambda p: p.twice_daily(1, 13), "0 1,13 * * *"),
            (lambda p: p.weekly(), "0 0 * * 0"),
            (lambda p: p.weekly_on("monday", "8:00"), "0 8 * * 1"),
            (lambda p: p.monthly(), "0 0 1 * *"),
            (lambda p: p.monthly_on(4, "15:00"), "0 15 4 * *"),
            (lambda p: p.twice_monthly(1, 16, "13:00"), "0 13 1,16 * *"),
            (lambda p: p.quarterly(), "0 0 1 1-12/3 *"),
            (lambda p: p.yearly(), "0 0 1 1 *"),
            (lambda p: p.yearly_on(6, 1, "17:00"), "0 17 1 6 *"),
            (lambda p: p.weekdays().hourly(), "0 * * * 1,2,3,4,5"),
            (lambda p: p.weekends().at("10:00"), "0 10 * * 0,6"),
            (lambda p: p.fridays().at("17:00"), "0 17 * * 5"),
            (lambda p: p.days("mon", "wed").daily(), "0 0 * * 1,3"),
            (lambda p: p.cron("5 4 * * sun"), "5 4 * * sun"),
        ],
    )
    def test_cron_frequencies(self, schedule, configure, expected):
        pending = configure(schedule.call(noop))
        assert expression_of(pending) == expected
        assert pending.expression == expected

    def test_sub_minute_interval(self, schedule):
        rule = schedule.call(noop).every_ten_seconds().build().rule
        assert isinstance(rule, IntervalRule)
        assert rule.interval == timedelta(seconds=10)

    def test_interval_with_weekday_filter(self, schedule):
        rule = schedule.call(noop).every_thirty_seconds().weekdays().build().rule
        assert isinstance(rule, FilteredRule)
        assert rule.is_due(utc(2024, 1, 15, 10), None) is True  # Monday
        assert rule.is_due(utc(2024, 1, 14, 10), None) is False  # Sunday

    def test_fluent_expression_string(self, schedule):
        rule = schedule.call(noop).rule("every 2 hours").build().rule
        assert rule.interval == timedelta(hours=2)

    def test_timezone(self):
        schedule = Schedule(timezone="Europe/Berlin")
        rule = schedule.call(noop).daily_at("09:00").build().rule
        assert isinstance(rule, CronRule)
        assert rule.is_due(utc(2024, 1, 15, 8, 0), None) is True

    def test_invalid_values_fail_at_build(self, schedule):
        with pytest.raises(MalformedRecurrenceError):
            schedule.call(noop).every_minutes(0).build()
        with pytest.raises(MalformedRecurrenceError):
            schedule.call(noop).daily_at("25:00")

    def test_invalid_timezone(self, schedule):
        with pytest.raises(MalformedRecurrenceError):
            schedule.call(noop).timezone("Nowhere/City")


class TestConstraints:
    def test_all_constraints(self, schedule, tmp_path):
        task = (
            schedule.call(noop)
            .name("report")
            .description("Nightly report")
            .daily_at("02:00")
            .without_overlapping(expires_at=30)
            .run_in_background()
            .environments("production", "staging")
            .even_in_maintenance_mode()
            .append_output_to(tmp_path / "report.log")
            .timeout(120)
            .between("01:00", "03:00")
            .when(lambda: True)
            .build()
        )
        c = task.constraints
        assert task.task_id == "report"
        assert task.summary == "Nightly report"
        assert c.without_overlapping is True
        assert c.overlap_expires_after == timedelta(minutes=30)
        assert c.run_in_background is True
        assert c.environments == ("production", "staging")
        assert c.even_in_maintenance_mode is True
        assert c.output_path == Path(tmp_path / "report.log")
        assert c.append_output is True
        assert c.timeout_seconds == 120
        assert len(c.time_windows) == 1
        assert len(c.filters) == 1

    def test_defaults_from_settings(self, schedule):
        task = schedule.call(noop).hourly().build(
            default_without_overlapping=True, default_overlap_expiry=timedelta(minutes=10)
        )
        assert task.constraints.without_overlapping is True
        assert task.constraints.overlap_expires_after == timedelta(minutes=10)

    def test_hooks(self, schedule):
        def hook(*args):
            pass

        task = schedule.call(noop).before(hook).then(hook).on_success(hook).on_failure(hook).build()
        assert task.hooks.before == (hook,)
        assert task.hooks.after == (hook,)
        assert task.hooks.on_success == (hook,)
        assert task.hooks.on_failure == (hook,)


class TestSchedule:
    def test_units(self, schedule):
        schedule.call(noop)
        schedule.command("php artisan inspire")
        schedule.get("https://example.test/ping")
        schedule.http("https://example.test/hook", json={"a": 1})
        kinds = [type(p.unit) for p in schedule]
        assert kinds == [CallableUnit, ShellCommand, HttpCall, HttpCall]
        assert len(schedule) == 4

    def test_default_task_id_describes_unit(self, schedule):
        schedule.command("php artisan inspire").hourly()
        assert schedule.tasks()[0].task_id == "php artisan inspire"

    def test_tasks_keep_order(self, schedule):
        for name in ("c", "a", "b"):
            schedule.call(noop).name(name)
        assert [t.task_id for t in schedule.tasks()] == ["c", "a", "b"]


class TestTaskSpecs:
    def test_task_from_spec(self):
        task = task_from_spec(
            TaskSpec(
                "backup",
                "echo backup",
                "daily at 02:00",
                {"without_overlapping": True, "timeout": 60, "between": ("01:00", "04:00")},
            )
        )
        assert task.task_id == "backup"
        assert isinstance(task.unit, ShellCommand)
        assert task.rule.expression == "0 2 * * *"
        assert task.constraints.without_overlapping is True
        assert task.constraints.timeout_seconds == 60
        assert len(task.constraints.time_windows) == 1

    def test_flag_timezone(self):
        task = task_from_spec(("t", noop, "daily at 09:00", {"timezone": "Europe/Berlin"}))
        assert task.rule.is_due(utc(2024, 1, 15, 8), None) is True

    def test_unknown_flag(self):
        with pytest.raises(InvalidTaskError, match="Unknown constraint flags") as exc_info:
            task_from_spec(("t", noop, "hourly", {"whenever": True}))
        assert exc_info.value.task_id == "t"

    def test_unknown_executable(self):
        with pytest.raises(RegistrationError):
            task_from_spec(("t", 42, "hourly"))


class TestCollectTasks:
    def test_mixed_sources(self, schedule):
        schedule.call(noop).name("from-schedule")
        definition = task_from_spec(("from-definition", noop, "hourly"))
        tasks = collect_tasks([schedule, definition, ("from-spec", noop, "daily")])
        assert [t.task_id for t in tasks] == ["from-schedule", "from-definition", "from-spec"]
        assert all(isinstance(t, TaskDefinition) for t in tasks)

    def test_single_pending_task(self, schedule):
        pending = schedule.call(noop).name("one")
        assert [t.task_id for t in collect_tasks(pending)] == ["one"]

    @pytest.mark.parametrize("source", ["hourly", {"a": 1}])
    def test_rejects_strings_and_mappings(self, source):
        with pytest.raises(TypeError):
            collect_tasks(source)
