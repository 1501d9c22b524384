"""Executable units - the opaque work a task runs.

Every task body satisfies one capability, ``execute(context)``, returning
``(exit_status, output_bytes_or_None)``.  The scheduler never looks inside.

Manifesto:
    Long-running work must be cancellable and bounded.  The
    :class:`ExecutionContext` carries a deadline and a cancellation event,
    so a unit can stop at its own safe points (``context.check()``,
    ``context.wait(...)``).  A unit that ignores it keeps running detached
    after its timeout; the scheduler simply stops tracking it.

Architecture:
    ::

        ExecutableUnit (Protocol)
          ├── CallableUnit   in-process function (sync or async)
          ├── ShellCommand   subprocess; cancellation terminates the process
          └── HttpCall       httpx request; 2xx/3xx is exit status 0

        as_unit(obj)  ── coerces callables, shell strings and argv lists

Examples:
    >>> unit = ShellCommand("php artisan inspire")
    >>> status, output = unit.execute(ExecutionContext(task_id="inspire"))

Tags:
    taskbeat, execution, cancellation, deadline, subprocess, httpx

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import inspect
import subprocess
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import httpx

from .errors import RegistrationError, TaskTimedOut

UnitResult = tuple[int, bytes | None]


@dataclass
class ExecutionContext:
    """Per-run context handed to a unit.

    Attributes:
        task_id: Task being run
        run_id: Identifier of this run
        deadline: Absolute deadline on the monotonic clock (None = no limit)
        timeout_seconds: Original timeout value
        cancel_event: Set by the dispatcher when the run should stop
    """

    task_id: str
    run_id: str = ""
    deadline: float | None = None
    timeout_seconds: float | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    start_time: float = field(default_factory=time.monotonic)

    @classmethod
    def with_timeout(cls, task_id: str, run_id: str, timeout: float | None) -> ExecutionContext:
        now = time.monotonic()
        return cls(
            task_id=task_id,
            run_id=run_id,
            deadline=None if timeout is None else now + timeout,
            timeout_seconds=timeout,
            start_time=now,
        )

    def remaining(self) -> float | None:
        """Seconds until the deadline (negative once expired), or None."""
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def is_expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self) -> None:
        """Cooperative cancellation point.

        Raises:
            TaskTimedOut: if cancellation was requested or the deadline passed
        """
        if self.cancelled or self.is_expired():
            raise TaskTimedOut(self.task_id, self.timeout_seconds or 0.0, self.elapsed)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True early if cancelled."""
        return self.cancel_event.wait(seconds)


@runtime_checkable
class ExecutableUnit(Protocol):
    """Capability every task body provides."""

    def execute(self, context: ExecutionContext) -> UnitResult:
        ...


def describe_unit(unit: ExecutableUnit) -> str:
    describe = getattr(unit, "describe", None)
    if callable(describe):
        return str(describe())
    return type(unit).__name__


def _normalize_result(value: Any) -> UnitResult:
    if value is None:
        return 0, None
    if isinstance(value, bool):
        return (0 if value else 1), None
    if isinstance(value, int):
        return value, None
    if isinstance(value, bytes):
        return 0, value
    if isinstance(value, str):
        return 0, value.encode()
    if isinstance(value, tuple) and len(value) == 2:
        status, output = value
        if isinstance(output, str):
            output = output.encode()
        return int(status), output
    return 0, str(value).encode()


class CallableUnit:
    """Run a Python callable in-process.

    If the callable has a parameter named ``context`` it receives the
    :class:`ExecutionContext`.  Coroutine functions run on a fresh event
    loop in the worker thread.  Return values are normalized: ``None`` → 0,
    ``int`` → exit status, ``str``/``bytes`` → captured output,
    ``(status, output)`` as is.
    """

    def __init__(
        self,
        func: Callable[..., Any],
        args: Sequence[Any] = (),
        kwargs: Mapping[str, Any] | None = None,
    ) -> None:
        self.func = func
        self.args = tuple(args)
        self.kwargs = dict(kwargs or {})
        try:
            self._wants_context = "context" in inspect.signature(func).parameters
        except (TypeError, ValueError):
            self._wants_context = False

    def execute(self, context: ExecutionContext) -> UnitResult:
        kwargs = dict(self.kwargs)
        if self._wants_context:
            kwargs["context"] = context
        result = self.func(*self.args, **kwargs)
        if inspect.isawaitable(result):
            result = asyncio.run(_await(result))
        return _normalize_result(result)

    def describe(self) -> str:
        name = getattr(self.func, "__qualname__", None) or repr(self.func)
        module = getattr(self.func, "__module__", None)
        return f"{module}.{name}" if module and module != "__main__" else name


async def _await(awaitable: Any) -> Any:
    return await awaitable


class ShellCommand:
    """Run a command in a subprocess, capturing stdout and stderr together.

    A string runs through the shell; a sequence runs as argv.  When the
    context is cancelled the process is terminated, then killed after
    ``kill_after`` seconds.
    """

    poll_interval = 0.1

    def __init__(
        self,
        command: str | Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        kill_after: float = 5.0,
    ) -> None:
        if isinstance(command, str):
            if not command.strip():
                raise RegistrationError("Shell command must not be empty")
            self.command: str | list[str] = command
            self.shell = True
        else:
            self.command = [str(part) for part in command]
            if not self.command:
                raise RegistrationError("Shell command must not be empty")
            self.shell = False
        self.cwd = cwd
        self.env = dict(env) if env is not None else None
        self.kill_after = kill_after

    def execute(self, context: ExecutionContext) -> UnitResult:
        process = subprocess.Popen(
            self.command,
            shell=self.shell,
            cwd=self.cwd,
            env=self.env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        chunks: list[bytes] = []
        while True:
            try:
                out, _ = process.communicate(timeout=self.poll_interval)
            except subprocess.TimeoutExpired:
                if context.cancelled:
                    process.terminate()
                    try:
                        out, _ = process.communicate(timeout=self.kill_after)
                    except subprocess.TimeoutExpired:
                        process.kill()
                        out, _ = process.communicate()
                    if out:
                        chunks.append(out)
                    break
                continue
            if out:
                chunks.append(out)
            break
        return process.returncode, b"".join(chunks) or None

    def describe(self) -> str:
        if isinstance(self.command, str):
            return self.command
        return " ".join(self.command)


class HttpCall:
    """Issue an HTTP request (``$schedule->call`` hitting a webhook / ping URL)."""

    def __init__(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        json: Any = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self.method = method.upper()
        self.headers = dict(headers or {})
        self.json = json
        self.timeout = timeout
        self.transport = transport

    def execute(self, context: ExecutionContext) -> UnitResult:
        timeout = self.timeout
        remaining = context.remaining()
        if remaining is not None:
            timeout = max(0.1, min(timeout, remaining))
        with httpx.Client(timeout=timeout, transport=self.transport) as client:
            response = client.request(self.method, self.url, headers=self.headers, json=self.json)
        status = 0 if response.status_code < 400 else response.status_code
        return status, response.content

    def describe(self) -> str:
        return f"{self.method} {self.url}"


def as_unit(executable: Any) -> ExecutableUnit:
    """Coerce an executable reference into an :class:`ExecutableUnit`."""
    if isinstance(executable, ExecutableUnit):
        return executable
    if isinstance(executable, str):
        return ShellCommand(executable)
    if isinstance(executable, (list, tuple)) and all(isinstance(p, str) for p in executable):
        return ShellCommand(executable)
    if callable(executable):
        return CallableUnit(executable)
    raise RegistrationError(f"Not an executable unit: {executable!r}")
