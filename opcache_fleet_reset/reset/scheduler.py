"""Delayed dispatch of reset tasks: scheduler capability, in-process queue, stagger plan."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol, runtime_checkable

from ..config import CacheToolConfig, ScheduleConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class TaskScheduler(Protocol):
    """At-least-once delayed task mechanism. Tasks are not cancellable."""

    def schedule_after(self, delay_seconds: float, payload: str) -> None:
        ...


@dataclass(order=True)
class ResetTask:
    due: float
    seq: int
    host: str = field(compare=False)


class TimerQueue:
    """Single-process, time-driven delayed-task queue.

    Tasks are dispatched by whoever calls ``run_due()`` (the daemon loop).
    No de-duplication: the same payload scheduled twice runs twice.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._heap: list[ResetTask] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._handler: Callable[[str], object] | None = None

    def set_handler(self, handler: Callable[[str], object]) -> None:
        self._handler = handler

    def schedule_after(self, delay_seconds: float, payload: str) -> None:
        with self._lock:
            heapq.heappush(self._heap, ResetTask(self._clock() + delay_seconds, next(self._seq), payload))

    def next_due(self) -> float | None:
        """Monotonic time the earliest task becomes due, or None when empty."""
        with self._lock:
            return self._heap[0].due if self._heap else None

    def seconds_until_next(self) -> float | None:
        due = self.next_due()
        return None if due is None else max(0.0, due - self._clock())

    def pop_due(self, now: float | None = None) -> list[ResetTask]:
        now = self._clock() if now is None else now
        due: list[ResetTask] = []
        with self._lock:
            while self._heap and self._heap[0].due <= now:
                due.append(heapq.heappop(self._heap))
        return due

    def run_due(self, now: float | None = None) -> int:
        """Dispatch every task whose time has come. Returns the number dispatched."""
        tasks = self.pop_due(now)
        for task in tasks:
            if self._handler is None:
                logger.warning("No task handler registered, dropping reset for %s", task.host)
                continue
            try:
                self._handler(task.host)
            except Exception:
                logger.exception("Reset task for %s failed", task.host, extra={"host": task.host})
        return len(tasks)

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)


class ResetScheduler:
    """Turns reset targets into staggered delayed tasks."""

    def __init__(self, scheduler: TaskScheduler, cachetool: CacheToolConfig, schedule: ScheduleConfig):
        self._scheduler = scheduler
        self._fallback_flag = 1 if cachetool.fallback_enabled else 0
        self._stagger = schedule.stagger_seconds

    def fleet_delay(self, dispatch_index: int) -> int:
        """Delay for a fleet member; slot 0 is reserved for the fallback host when one is set."""
        return (dispatch_index + self._fallback_flag) * self._stagger

    def schedule_one(self, host: str, delay_seconds: int = 0) -> None:
        if delay_seconds < 0:
            raise ValueError(f"delay_seconds must be >= 0, got {delay_seconds}")
        self._scheduler.schedule_after(delay_seconds, host)
        logger.info(
            "Scheduled opcache reset for %s in %ds", host, delay_seconds,
            extra={"host": host, "delay_seconds": delay_seconds},
        )
