"""Scheduler settings.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    An unknown timezone or a zero tick interval is a process-level error
    that must stop the scheduler at startup, not surface on the first tick.

    - **Pydantic validation:** Type-checked at startup
    - **Environment-driven:** ``TASKBEAT_*`` env vars and ``.env`` files
    - **Sensible defaults:** UTC, one-minute ticks, thread-per-task workers

Examples:
    >>> from taskbeat.settings import SchedulerSettings
    >>> settings = SchedulerSettings(timezone="Europe/Berlin", tick_seconds=30)
    >>> settings.tzinfo.key
    'Europe/Berlin'

Tags:
    settings, configuration, pydantic, environment, taskbeat

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from datetime import timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import InvalidConfigError
from .recurrence import DayMatchPolicy


class SchedulerSettings(BaseSettings):
    """Scheduler configuration.

    All fields can be set via ``TASKBEAT_*`` environment variables
    (e.g. ``TASKBEAT_TIMEZONE=America/New_York``) or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKBEAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Time ─────────────────────────────────────────────────────
    timezone: str = Field(default="UTC", description="Zone cron fields are evaluated in")
    tick_seconds: float = Field(default=60.0, description="Tick granularity")
    align_ticks: bool = Field(default=True, description="Sleep to the next tick boundary")
    day_policy: DayMatchPolicy = Field(default=DayMatchPolicy.OR)

    # ── Runs ─────────────────────────────────────────────────────
    default_without_overlapping: bool = Field(default=False)
    overlap_expires_minutes: int = Field(default=1440, description="Stale run-lock age")
    worker_pool_size: int | None = Field(
        default=None,
        description="Background worker threads; None runs each task on its own thread",
    )
    cancel_grace_seconds: float = Field(default=1.0)
    shutdown_grace_seconds: float = Field(default=30.0)

    # ── Environment ──────────────────────────────────────────────
    environment: str = Field(default="production")
    maintenance_mode: bool = Field(default=False)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="auto", description="json, console or auto")

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @field_validator("tick_seconds", "cancel_grace_seconds")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("shutdown_grace_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("worker_pool_size")
    @classmethod
    def _pool_size(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("log_format")
    @classmethod
    def _log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "console", "auto"):
            raise ValueError("must be json, console or auto")
        return value

    # ── Derived properties ───────────────────────────────────────

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def overlap_expires_after(self) -> timedelta:
        return timedelta(minutes=self.overlap_expires_minutes)

    @property
    def json_logs(self) -> bool | None:
        if self.log_format == "auto":
            return None
        return self.log_format == "json"


def load_settings(**overrides: object) -> SchedulerSettings:
    """Build settings, turning validation failures into ``InvalidConfigError``."""
    try:
        return SchedulerSettings(**overrides)  # type: ignore[arg-type]
    except ValidationError as exc:
        first = exc.errors()[0]
        key = ".".join(str(part) for part in first.get("loc", ())) or "settings"
        raise InvalidConfigError(key, first.get("input"), f"Invalid setting '{key}': {first.get('msg')}") from exc


_settings_cache: SchedulerSettings | None = None


def get_settings(*, _force_reload: bool = False) -> SchedulerSettings:
    """Load, validate, and cache settings from the environment."""
    global _settings_cache
    if _settings_cache is None or _force_reload:
        _settings_cache = load_settings()
    return _settings_cache


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    global _settings_cache
    _settings_cache = None
