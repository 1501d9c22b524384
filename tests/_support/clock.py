"""Deterministic instants and tick sequences for scheduler tests."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=UTC)


def ticks(start: datetime, end: datetime, step: timedelta = timedelta(minutes=1)) -> Iterator[datetime]:
    """Instants from ``start`` (inclusive) to ``end`` (exclusive)."""
    moment = start
    while moment < end:
        yield moment
        moment += step


class FakeClock:
    """Settable wall clock for services and dispatchers."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now
