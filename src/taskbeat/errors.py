"""
Structured error types for taskbeat.

Every error raised by the scheduler carries a category, a retry flag and a
small structured context so it can be logged and routed without parsing
messages.

Manifesto:
    - **Typed hierarchy:** Registration, execution, evaluation and config
      failures are distinct types, handled at distinct boundaries
    - **Contained per task:** Execution errors become Failure outcomes;
      they never unwind the scheduler loop
    - **Rich context:** Errors carry task_id / expression / run_id
    - **Error chaining:** The original exception is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       TaskbeatError                              │
        │  (category, retryable, context, cause)                           │
        ├─────────────────────────────────────────────────────────────────┤
        │  ConfigError          RegistrationError       ExecutionError     │
        │  (CONFIG, fatal)      (REGISTRATION)          (EXECUTION)        │
        │       │                     │                       │            │
        │  InvalidConfigError   MalformedRecurrenceError  TaskExecutionFailure
        │                       DuplicateIdError          TaskTimedOut     │
        │                       InvalidTaskError                           │
        │                                                                  │
        │  EvaluatorInternalError (INTERNAL)   UnknownTaskError (LOOKUP)   │
        │  SchedulerStoppedError (INTERNAL)                                │
        └─────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Let a task body's exception escape the Dispatcher
    ✅ DO: Convert it to TaskExecutionFailure and a Failure outcome

    ❌ DON'T: Raise MalformedRecurrenceError during evaluation
    ✅ DO: Parse every rule when the task is registered

Tags:
    error-handling, exception-hierarchy, taskbeat, scheduling

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"
    REGISTRATION = "REGISTRATION"
    EXECUTION = "EXECUTION"
    TIMEOUT = "TIMEOUT"
    LOOKUP = "LOOKUP"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error."""

    task_id: str | None = None
    run_id: str | None = None
    expression: str | None = None
    setting: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key in ("task_id", "run_id", "expression", "setting"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.extra:
            result.update(self.extra)
        return result


class TaskbeatError(Exception):
    """Base exception for all taskbeat errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers can
    override both per instance.

    Example:
        >>> err = TaskbeatError("boom").with_context(task_id="reports")
        >>> err.to_dict()["context"]
        {'task_id': 'reports'}
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> TaskbeatError:
        """Add context to this error (fluent API).

        Unknown keys land in ``context.extra``.
        """
        for key, value in kwargs.items():
            if key != "extra" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.extra[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "context": self.context.to_dict(),
        }
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION
# =============================================================================


class ConfigError(TaskbeatError):
    """Process-level configuration error; fatal at startup."""

    default_category = ErrorCategory.CONFIG


class InvalidConfigError(ConfigError):
    """A setting has an invalid value."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        msg = message or f"Invalid value for setting '{key}': {value!r}"
        super().__init__(msg, context=ErrorContext(setting=key, extra={"value": repr(value)}))
        self.key = key
        self.value = value


# =============================================================================
# REGISTRATION
# =============================================================================


class RegistrationError(TaskbeatError):
    """A single task registration was rejected. The process keeps running."""

    default_category = ErrorCategory.REGISTRATION


class MalformedRecurrenceError(RegistrationError):
    """Recurrence expression could not be parsed (field count, range, syntax)."""

    def __init__(self, expression: str, reason: str):
        super().__init__(
            f"Malformed recurrence {expression!r}: {reason}",
            context=ErrorContext(expression=expression),
        )
        self.expression = expression
        self.reason = reason


class DuplicateIdError(RegistrationError):
    """A task with the same identifier is already registered."""

    def __init__(self, task_id: str):
        super().__init__(
            f"Task already registered: {task_id}",
            context=ErrorContext(task_id=task_id),
        )
        self.task_id = task_id


class InvalidTaskError(RegistrationError):
    """A task definition or its constraint flags were rejected."""

    def __init__(self, message: str, *, task_id: str | None = None):
        super().__init__(message, context=ErrorContext(task_id=task_id))
        self.task_id = task_id


# =============================================================================
# EXECUTION
# =============================================================================


class ExecutionError(TaskbeatError):
    """Runtime failure of a task; always contained at the task boundary."""

    default_category = ErrorCategory.EXECUTION


class TaskExecutionFailure(ExecutionError):
    """The task body raised or reported a non-zero exit status."""

    def __init__(
        self,
        task_id: str,
        message: str,
        *,
        exit_status: int | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message, context=ErrorContext(task_id=task_id), cause=cause)
        self.task_id = task_id
        self.exit_status = exit_status


class TaskTimedOut(ExecutionError):
    """The task exceeded its maximum runtime and its lock was reclaimed."""

    default_category = ErrorCategory.TIMEOUT

    def __init__(self, task_id: str, timeout: float, elapsed: float | None = None):
        msg = f"Task '{task_id}' timed out after {timeout}s"
        if elapsed is not None:
            msg += f" (ran for {elapsed:.2f}s)"
        super().__init__(msg, context=ErrorContext(task_id=task_id))
        self.task_id = task_id
        self.timeout = timeout
        self.elapsed = elapsed


# =============================================================================
# EVALUATION / LOOKUP
# =============================================================================


class EvaluatorInternalError(TaskbeatError):
    """Unexpected failure while computing the due set; the tick is aborted."""

    default_retryable = True


class UnknownTaskError(TaskbeatError, KeyError):
    """No task is registered under the given identifier."""

    default_category = ErrorCategory.LOOKUP

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}", context=ErrorContext(task_id=task_id))
        self.task_id = task_id

    def __str__(self) -> str:
        return self.message


# =============================================================================
# LIFECYCLE
# =============================================================================


class SchedulerStoppedError(TaskbeatError):
    """A run was handed over after shutdown began; it was never started."""

    def __init__(self, task_id: str, run_id: str | None = None):
        super().__init__(
            f"Scheduler is stopping; run of '{task_id}' not started",
            context=ErrorContext(task_id=task_id, run_id=run_id),
        )
        self.task_id = task_id
        self.run_id = run_id
