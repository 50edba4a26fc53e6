"""Crawl scheduling – cron expressions or a fixed pause between cycles."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable

from croniter import croniter

from .errors import ConfigError

logger = logging.getLogger("cabinet.scheduler")


class BaseScheduler:
    """Runs ``fn`` on a background thread until :meth:`stop` is called.

    Stopping only prevents new triggers; a run that already started is left
    to finish.
    """

    name = "scheduler"

    def __init__(self, fn: Callable[[], object]) -> None:
        self.fn = fn
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stopped.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name=f"cabinet-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _fire(self) -> None:
        try:
            self.fn()
        except Exception:
            # already recorded by the cycle; keep the schedule alive
            logger.exception("Scheduled crawl failed")

    def _loop(self) -> None:
        raise NotImplementedError


class IntervalScheduler(BaseScheduler):
    """Run immediately, then wait ``interval`` ms after each completion."""

    name = "interval"

    def __init__(self, interval: int, fn: Callable[[], object]) -> None:
        super().__init__(fn)
        self.interval = interval

    def _loop(self) -> None:
        while not self._stopped.is_set():
            self._fire()
            if self._stopped.wait(self.interval / 1000):
                break


class CronScheduler(BaseScheduler):
    """Fire on every tick of a cron expression; ticks missed while busy are skipped."""

    name = "cron"

    def __init__(self, expression: str, fn: Callable[[], object]) -> None:
        if not croniter.is_valid(expression):
            raise ConfigError(f"Invalid cron expression: {expression!r}")
        super().__init__(fn)
        self.expression = expression

    def next_fire_time(self, base: datetime | None = None) -> datetime:
        return croniter(self.expression, base or datetime.now().astimezone()).get_next(datetime)

    def _loop(self) -> None:
        while not self._stopped.is_set():
            delay = (self.next_fire_time() - datetime.now().astimezone()).total_seconds()
            if self._stopped.wait(max(delay, 0)):
                break
            self._fire()


def create_scheduler(interval: int | str, fn: Callable[[], object]) -> BaseScheduler:
    if isinstance(interval, str):
        return CronScheduler(interval, fn)
    return IntervalScheduler(interval, fn)
