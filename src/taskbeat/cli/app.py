"""
Root Typer application for the taskbeat CLI.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version

import typer
from typer import Typer

from taskbeat.logging import configure_logging

app = Typer(
    name="taskbeat",
    help="taskbeat: recurring task scheduler.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        try:
            v = pkg_version("taskbeat")
        except PackageNotFoundError:
            v = "0.1.0"
        typer.echo(f"taskbeat {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str = typer.Option("INFO", "--log-level", "-l", envvar="TASKBEAT_LOG_LEVEL"),
    json_logs: bool | None = typer.Option(None, "--json-logs/--console-logs", help="Log format (default: auto)"),
) -> None:
    """taskbeat CLI: list, run, work and test task schedules."""
    configure_logging(level=log_level, json_format=json_logs)


# ── Sub-command registration ─────────────────────────────────────────────

from taskbeat.cli.schedule import app as sched_app  # noqa: E402

app.add_typer(sched_app, name="schedule", help="Inspect, run, and work a schedule.")
