"""Tests for taskbeat.logging."""

from __future__ import annotations

import json
import sys

import pytest
import structlog

from taskbeat.logging import (
    LogContext,
    _elasticsearch_compatible,
    clear_context,
    configure_logging,
    get_logger,
)


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    clear_context()
    structlog.reset_defaults()


def _configure(capsys, **kwargs):
    configure_logging(json_format=True, **kwargs)
    # Point the print logger at the captured stream and keep loggers uncached.
    structlog.configure(
        cache_logger_on_first_use=False,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
    )


def _lines(capsys):
    return [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]


class TestConfigureLogging:
    def test_json_output(self, capsys):
        _configure(capsys, level="INFO", service="taskbeat-test")
        get_logger("tests").info("task_dispatched", task_id="reports")
        data = _lines(capsys)[-1]
        assert data["event"] == "task_dispatched"
        assert data["task_id"] == "reports"
        assert data["service.name"] == "taskbeat-test"
        assert data["log.level"] == "info"
        assert "@timestamp" in data

    def test_level_filtering(self, capsys):
        _configure(capsys, level="WARNING")
        get_logger("tests").info("hidden")
        get_logger("tests").warning("shown")
        out = capsys.readouterr().out
        assert "hidden" not in out
        assert "shown" in out


class TestLogContext:
    def test_context_bound_and_removed(self, capsys):
        _configure(capsys, level="INFO")
        logger = get_logger("tests")
        with LogContext(task_id="reports", run_id="abc"):
            logger.info("inside")
        logger.info("outside")
        inside, outside = _lines(capsys)[-2:]
        assert inside["run_id"] == "abc"
        assert "run_id" not in outside


def test_ecs_renames():
    event = _elasticsearch_compatible(None, "info", {"timestamp": "t", "level": "info", "event": "x"})
    assert event == {"@timestamp": "t", "log.level": "info", "event": "x"}


class TestModuleLoggers:
    def test_package_imports_and_logs(self, capsys):
        import taskbeat
        from taskbeat.registry import TaskRegistry
        from tests._support.tasks import make_task

        _configure(capsys, level="DEBUG")
        TaskRegistry().register(make_task("reports"))
        events = {line["event"]: line for line in _lines(capsys)}
        assert taskbeat.__version__
        assert events["task_registered"]["task_id"] == "reports"

    def test_named_and_unnamed_loggers(self, capsys):
        _configure(capsys, level="INFO")
        get_logger("taskbeat.tests").info("named")
        get_logger().info("unnamed")
        assert [line["event"] for line in _lines(capsys)[-2:]] == ["named", "unnamed"]
