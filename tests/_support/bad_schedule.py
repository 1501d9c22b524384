"""Schedules the CLI must reject with a clean error instead of a traceback."""

from taskbeat import Schedule


def noop() -> None:
    return None


tasks = [("bad", noop, "hourly", {"retry": 3})]


def schedule(schedule: Schedule) -> None:
    schedule.call(noop).name("bad").rule("whenever it suits")
