"""
CLI utility helpers: output formatting and schedule loading.
"""

from __future__ import annotations

import importlib
import importlib.util
import json
import sys
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from taskbeat.errors import ConfigError, TaskbeatError
from taskbeat.schedule import Schedule
from taskbeat.settings import SchedulerSettings, load_settings

console = Console()
err_console = Console(stderr=True)


# ── Settings / target loading ────────────────────────────────────────────


def make_settings(**overrides: Any) -> SchedulerSettings:
    """Load settings, exiting with status 2 on invalid configuration."""
    clean = {key: value for key, value in overrides.items() if value is not None}
    try:
        return load_settings(**clean)
    except ConfigError as e:
        fail(e.message, code=2)


def _import_module(name: str) -> Any:
    if name.endswith(".py") or "/" in name:
        path = Path(name).resolve()
        spec = importlib.util.spec_from_file_location(path.stem, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"cannot load {name}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[path.stem] = module
        spec.loader.exec_module(module)
        return module
    if "" not in sys.path:
        sys.path.insert(0, "")
    return importlib.import_module(name)


def load_target(target: str, settings: SchedulerSettings) -> Any:
    """Resolve ``module:attribute`` (or ``path.py:attribute``) to a task source.

    The attribute defaults to ``schedule``.  A :class:`Schedule`, a task
    iterable, or a ``schedule(schedule)`` function are accepted; the
    function is called with a fresh :class:`Schedule` in the configured
    timezone.
    """
    module_name, _, attr = target.partition(":")
    attr = attr or "schedule"
    try:
        module = _import_module(module_name)
        obj = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        fail(f"Cannot load {target!r}: {e}", code=2)

    if isinstance(obj, Schedule):
        return obj
    if callable(obj) and not isinstance(obj, type):
        schedule = Schedule(timezone=settings.timezone, day_policy=settings.day_policy)
        result = obj(schedule)
        return schedule if result is None else result
    return obj


# ── Output helpers ───────────────────────────────────────────────────────


def fail(message: str, code: int = 1) -> NoReturn:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=code)


def report_error(error: TaskbeatError) -> NoReturn:
    fail(f"{error.message} [dim]({error.category.value})[/dim]")


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S %Z")
    if isinstance(value, bool):
        return "yes" if value else ""
    return str(value)


def print_table(rows: list[dict[str, Any]], *, title: str = "", styles: dict[str, Callable[[Any], str]] | None = None) -> None:
    """Render a list of dicts as a Rich table."""
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    styles = styles or {}
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*(styles[k](v) if k in styles else _cell(v) for k, v in row.items()))
    console.print(table)


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def status_style(status: str) -> str:
    colour = {
        "Success": "green",
        "Failure": "red",
        "TimedOut": "yellow",
        "Skipped": "dim",
    }.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"
