"""Tests for the ``taskbeat schedule`` CLI."""

from __future__ import annotations

import json
import os
import re
import signal
import sys
import threading
from pathlib import Path

import pytest
from typer.testing import CliRunner

from taskbeat.cli import app

runner = CliRunner()

TARGET = str(Path(__file__).parent / "_support" / "sample_schedule.py") + ":schedule"
BAD = str(Path(__file__).parent / "_support" / "bad_schedule.py")


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    # taskbeat.cli.app is rebound to the Typer object; patch the module itself.
    monkeypatch.setattr(sys.modules["taskbeat.cli.app"], "configure_logging", lambda **kw: None)


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.output.startswith("taskbeat ")


class TestList:
    def test_table(self):
        result = runner.invoke(app, ["schedule", "list", TARGET])
        assert result.exit_code == 0, result.output
        assert "Scheduled tasks" in result.output

    def test_json(self):
        result = runner.invoke(app, ["schedule", "list", TARGET, "--json"])
        assert result.exit_code == 0, result.output
        rows = json.loads(result.output)
        assert [row["task_id"] for row in rows] == ["inspire", "broken", "hello"]
        assert rows[0]["description"] == "Print a quote"
        assert all(row["next_due"] for row in rows)

    def test_bad_target(self):
        result = runner.invoke(app, ["schedule", "list", "no_such_module_xyz:schedule"])
        assert result.exit_code == 2

    def test_bad_timezone(self):
        result = runner.invoke(app, ["schedule", "list", TARGET, "--timezone", "Mars/Olympus"])
        assert result.exit_code == 2

    def test_unknown_constraint_flag_exits_cleanly(self):
        result = runner.invoke(app, ["schedule", "list", BAD + ":tasks"])
        assert result.exit_code == 1
        assert "Unknown constraint flags" in result.output

    def test_malformed_rule_while_loading_exits_cleanly(self):
        result = runner.invoke(app, ["schedule", "list", BAD + ":schedule"])
        assert result.exit_code == 1
        assert "Malformed recurrence" in result.output


class TestTest:
    def test_success(self):
        result = runner.invoke(app, ["schedule", "test", TARGET, "inspire"])
        assert result.exit_code == 0, result.output
        assert "Success" in result.output

    def test_failure(self):
        result = runner.invoke(app, ["schedule", "test", TARGET, "broken"])
        assert result.exit_code == 1
        assert "Failure" in result.output
        assert "disk full" in result.output

    def test_unknown_task(self):
        result = runner.invoke(app, ["schedule", "test", TARGET, "nope"])
        assert result.exit_code == 1
        assert "Task not found" in result.output


class TestRun:
    def test_runs_due_tasks(self):
        result = runner.invoke(app, ["schedule", "run", TARGET, "--grace", "5"])
        assert result.exit_code == 0, result.output
        assert "inspire" in result.output
        assert "Success" in result.output


class TestNext:
    def test_cron_preview(self):
        result = runner.invoke(app, ["schedule", "next", "*/15 * * * *", "--count", "3"])
        assert result.exit_code == 0, result.output
        instants = [line.strip() for line in result.output.splitlines() if line.strip().endswith("UTC")]
        assert len(instants) == 3
        assert len(set(instants)) == 3
        for line in instants:
            assert re.search(r" \d\d:(00|15|30|45):00 UTC$", line)

    def test_fluent_preview(self):
        result = runner.invoke(app, ["schedule", "next", "daily at 02:30", "-n", "2", "-z", "Europe/Berlin"])
        assert result.exit_code == 0, result.output
        assert result.output.count("02:30:00") == 2

    def test_malformed_expression(self):
        result = runner.invoke(app, ["schedule", "next", "61 * * * *"])
        assert result.exit_code == 1
        assert "Error" in result.output


@pytest.mark.skipif(sys.platform == "win32", reason="SIGTERM delivery is POSIX-only")
class TestWork:
    def test_sigterm_stops_gracefully(self):
        previous = signal.getsignal(signal.SIGTERM)
        timer = threading.Timer(0.5, os.kill, (os.getpid(), signal.SIGTERM))
        timer.start()
        try:
            result = runner.invoke(app, ["schedule", "work", TARGET, "--grace", "0"])
        finally:
            timer.cancel()
        assert result.exit_code == 0, result.output
        assert "Running scheduler" in result.output
        assert "Stopping scheduler" in result.output
        assert signal.getsignal(signal.SIGTERM) == previous
