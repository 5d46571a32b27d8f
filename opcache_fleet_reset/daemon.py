"""Long-running host for the reset entry points: periodic trigger and delayed-task loop."""

from __future__ import annotations

import logging
import signal
import time
from types import FrameType
from typing import Callable

from .config import AppConfig
from .reset.scheduler import TimerQueue

logger = logging.getLogger(__name__)


class Daemon:
    """Hosts the trigger and the task queue: fire trigger on interval -> dispatch due tasks -> sleep."""

    def __init__(self, config: AppConfig, queue: TimerQueue | None = None):
        self._config = config
        self.queue = queue if queue is not None else TimerQueue()
        self._trigger: Callable[[], object] | None = None
        self._shutdown = False
        self._next_trigger: float | None = None
        self._trigger_requested = False

    # ── Integration ─────────────────────────────────────────────────

    def register_trigger(self, callback: Callable[[], object]) -> None:
        self._trigger = callback

    def register_task_handler(self, name: str, callback: Callable[[str], object]) -> None:
        logger.debug("Registered task handler %s", name)
        self.queue.set_handler(callback)

    # ── Entry points ────────────────────────────────────────────────

    def trigger_now(self) -> None:
        """Fire the registered trigger once."""
        if self._trigger is None:
            logger.warning("No reset trigger registered, nothing to do")
            return
        try:
            self._trigger()
        except Exception:
            logger.exception("Reset trigger failed")

    def drain(self) -> None:
        """Dispatch queued tasks until the queue is empty, sleeping until each is due."""
        while not self._shutdown and len(self.queue):
            self.queue.run_due()
            wait = self.queue.seconds_until_next()
            if wait is not None:
                self._interruptible_sleep(wait)

    def run(self) -> None:
        """Run the dispatch loop until a shutdown signal."""
        self._install_signal_handlers()
        interval = self._config.schedule.interval_seconds
        if interval:
            logger.info("Daemon started, triggering a reset every %ds", interval)
            self._next_trigger = time.monotonic() + interval
        else:
            logger.info("Daemon started, periodic trigger disabled")

        while not self._shutdown:
            self._tick()
            self._interruptible_sleep(self._config.schedule.poll_seconds)

        logger.info("Daemon stopped with %d reset tasks pending", len(self.queue))

    def _tick(self) -> None:
        now = time.monotonic()
        if self._next_trigger is not None and now >= self._next_trigger:
            self._next_trigger = now + self._config.schedule.interval_seconds
            self._trigger_requested = True
        if self._trigger_requested:
            self._trigger_requested = False
            self.trigger_now()
        self.queue.run_due()

    def _interruptible_sleep(self, seconds: float) -> None:
        """Sleep in short increments so we can respond to shutdown signals."""
        end = time.monotonic() + seconds
        while not self._shutdown and time.monotonic() < end:
            remaining = end - time.monotonic()
            time.sleep(min(remaining, 1.0))

    def _install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)
        signal.signal(signal.SIGHUP, self._handle_trigger)

    def _handle_shutdown(self, signum: int, frame: FrameType | None) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("Received %s, shutting down", sig_name)
        self._shutdown = True

    def _handle_trigger(self, signum: int, frame: FrameType | None) -> None:
        logger.info("Received SIGHUP, opcache reset requested")
        self._trigger_requested = True
