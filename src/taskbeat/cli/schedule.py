"""
CLI: ``taskbeat schedule``: inspect, run, and work a schedule.

``TARGET`` is ``module:attribute`` (or ``path/to/file.py:attribute``)
naming a :class:`~taskbeat.schedule.Schedule`, an iterable of tasks, or a
``schedule(schedule)`` function.  The attribute defaults to ``schedule``.
"""

from __future__ import annotations

import signal
import threading
from datetime import UTC, datetime, timedelta

import typer

from taskbeat.backend import ManualBackend
from taskbeat.cli.utils import (
    console,
    fail,
    load_target,
    make_settings,
    print_json,
    print_table,
    report_error,
    status_style,
)
from taskbeat.errors import RegistrationError, TaskbeatError, UnknownTaskError
from taskbeat.events import CompositeSink, InMemoryEventSink, LoggingEventSink
from taskbeat.models import RunStatus
from taskbeat.recurrence import load_zone, parse_recurrence
from taskbeat.service import SchedulerService

app = typer.Typer(no_args_is_help=True)


def _service(target: str, timezone: str | None, environment: str | None, **kwargs) -> SchedulerService:
    settings = make_settings(timezone=timezone, environment=environment)
    try:
        source = load_target(target, settings)
        service = SchedulerService(settings, **kwargs)
        service.register_all(source)
    except RegistrationError as e:
        report_error(e)
    return service


@app.command("list")
def list_tasks(
    target: str = typer.Argument(..., help="module:attribute of the schedule"),
    timezone: str | None = typer.Option(None, "--timezone", "-z"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List scheduled tasks and when they are next due."""
    service = _service(target, timezone, None, backend=ManualBackend())
    rows = service.describe_tasks()
    if json_out:
        print_json(rows)
        return
    zone = service.settings.tzinfo
    for row in rows:
        if row["next_due"] is not None:
            row["next_due"] = row["next_due"].astimezone(zone)
        row.pop("last_fired_at")
        row.pop("running")
    print_table(rows, title="Scheduled tasks")


@app.command("run")
def run_due(
    target: str = typer.Argument(..., help="module:attribute of the schedule"),
    timezone: str | None = typer.Option(None, "--timezone", "-z"),
    environment: str | None = typer.Option(None, "--env", "-e", help="Environment name"),
    grace: float = typer.Option(60.0, "--grace", help="Seconds to wait for background runs"),
) -> None:
    """Run every task due right now, once (like a cron-driven ``schedule:run``)."""
    recorder = InMemoryEventSink()
    service = _service(
        target,
        timezone,
        environment,
        backend=ManualBackend(),
        sink=CompositeSink([LoggingEventSink(), recorder]),
    )
    report = service.tick(datetime.now(UTC))
    if report.error is not None:
        report_error(report.error)
    if not report.due:
        console.print("[dim]No scheduled tasks are ready to run.[/dim]")
    service.stop(grace_period=grace)

    rows = [
        {
            "task": event.task_id,
            "status": event.status.value,
            "detail": event.error_detail or (event.skip_reason.value if event.skip_reason else ""),
        }
        for event in recorder.events
    ]
    if rows:
        print_table(rows, title="Runs", styles={"status": status_style})


@app.command("work")
def work(
    target: str = typer.Argument(..., help="module:attribute of the schedule"),
    timezone: str | None = typer.Option(None, "--timezone", "-z"),
    environment: str | None = typer.Option(None, "--env", "-e", help="Environment name"),
    grace: float | None = typer.Option(None, "--grace", help="Shutdown grace period in seconds"),
) -> None:
    """Run the scheduler in the foreground until interrupted."""
    service = _service(target, timezone, environment)
    console.print(
        f"[bold green]Running scheduler[/bold green] "
        f"({len(service.registry)} task(s), tick={service.settings.tick_seconds}s, "
        f"tz={service.settings.timezone}). Press Ctrl+C to stop."
    )
    stopped = threading.Event()

    def _handle_signal(signum, frame):
        stopped.set()

    previous = None
    try:
        previous = signal.signal(signal.SIGTERM, _handle_signal)
    except (ValueError, OSError):
        pass  # Not in main thread

    service.start()
    try:
        while not stopped.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        console.print("\n[yellow]Stopping scheduler...[/yellow]")
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)
        forced = service.stop(grace_period=grace)
        if forced:
            console.print(f"[yellow]{len(forced)} run(s) did not finish within the grace period[/yellow]")


@app.command("test")
def test_task(
    target: str = typer.Argument(..., help="module:attribute of the schedule"),
    task_id: str = typer.Argument(..., help="Task to run now"),
    timezone: str | None = typer.Option(None, "--timezone", "-z"),
    environment: str | None = typer.Option(None, "--env", "-e", help="Environment name"),
) -> None:
    """Run one task immediately, ignoring its schedule."""
    service = _service(target, timezone, environment, backend=ManualBackend())
    try:
        outcome = service.run_now(task_id)
    except UnknownTaskError as e:
        known = ", ".join(service.registry.ids()) or "none"
        fail(f"{e.message} (registered: {known})")
    except TaskbeatError as e:
        report_error(e)
    finally:
        service.stop(grace_period=0)

    console.print(
        f"{outcome.task_id}: {status_style(outcome.status.value)} "
        f"in {outcome.duration_seconds:.2f}s"
    )
    if outcome.error_detail:
        console.print(f"  [dim]{outcome.error_detail}[/dim]")
    if outcome.status is not RunStatus.SUCCESS:
        raise typer.Exit(code=1)


@app.command("next")
def next_due(
    expression: str = typer.Argument(..., help="Cron or fluent expression"),
    count: int = typer.Option(5, "--count", "-n", min=1, max=100),
    timezone: str = typer.Option("UTC", "--timezone", "-z"),
) -> None:
    """Preview the next instants an expression would fire."""
    try:
        zone = load_zone(timezone, expression)
        rule = parse_recurrence(expression, timezone)
    except TaskbeatError as e:
        report_error(e)

    console.print(f"[bold]{rule.describe()}[/bold]")
    cursor = datetime.now(UTC)
    last: datetime | None = None
    for _ in range(count):
        upcoming = rule.next_due(cursor, last)
        if upcoming is None:
            console.print("[dim]No further instants within the search horizon.[/dim]")
            break
        console.print(f"  {upcoming.astimezone(zone):%Y-%m-%d %H:%M:%S %Z}")
        last = upcoming
        cursor = upcoming + timedelta(seconds=1)
