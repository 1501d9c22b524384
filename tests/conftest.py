"""
Shared pytest fixtures for taskbeat tests.

This module provides:
- Environment isolation (no TASKBEAT_* variables leak into tests)
- An in-memory event recorder
- A service factory driven by a ManualBackend, so ticks happen only when
  a test calls ``service.tick(now)``
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from typing import Any

import pytest

from taskbeat.backend import ManualBackend
from taskbeat.coordinator import RunCoordinator
from taskbeat.events import InMemoryEventSink
from taskbeat.registry import TaskRegistry
from taskbeat.service import SchedulerService
from taskbeat.settings import clear_settings_cache, load_settings


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    for key in list(os.environ):
        if key.startswith("TASKBEAT_"):
            monkeypatch.delenv(key)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def recorder() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def registry() -> TaskRegistry:
    return TaskRegistry()


@pytest.fixture
def coordinator() -> RunCoordinator:
    return RunCoordinator(environment="production")


@pytest.fixture
def make_service(recorder: InMemoryEventSink) -> Generator[Callable[..., SchedulerService], None, None]:
    """Build services that record outcomes in ``recorder``; stopped on teardown."""
    created: list[SchedulerService] = []

    def _make(clock: Callable[[], Any] | None = None, **overrides: Any) -> SchedulerService:
        service = SchedulerService(
            load_settings(**overrides),
            backend=ManualBackend(),
            sink=recorder,
            clock=clock,
        )
        created.append(service)
        return service

    yield _make
    for service in created:
        service.stop(grace_period=0)
