"""Entry point for a fleet-wide opcache reset."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from ..config import AppConfig
from ..discovery import FleetDiscoveryClient
from .scheduler import ResetScheduler

if TYPE_CHECKING:
    from ..cachetool.client import RemoteResetClient
    from .plugin import LocalCache

logger = logging.getLogger(__name__)


class ResetOrchestrator:
    """Local reset -> fallback -> discover -> staggered remote resets.

    Best-effort broadcast with no rollback: a failing step never prevents the
    local reset or the fallback from being attempted first.
    """

    def __init__(
        self,
        config: AppConfig,
        local_cache: LocalCache,
        discovery: FleetDiscoveryClient,
        scheduler: ResetScheduler,
        remote: RemoteResetClient,
    ):
        self._fallback_host = config.cachetool.fallback_host
        self._local_cache = local_cache
        self._discovery = discovery
        self._scheduler = scheduler
        self._remote = remote

    def trigger_reset(self) -> int:
        """Run one reset cycle. Returns the number of remote resets scheduled."""
        start = time.monotonic()
        scheduled = 0

        try:
            self._local_cache.reset_local()
        except Exception:
            logger.exception("Local opcache reset raised, continuing with remote resets")

        if self._fallback_host:
            self._scheduler.schedule_one(self._fallback_host, 0)
            scheduled += 1

        result = self._discovery.discover()
        if not result.ok:
            logger.warning("Fleet discovery failed, only local and fallback resets were issued")
        elif result.skipped_reason:
            logger.warning("Fleet discovery skipped (%s)", result.skipped_reason)
        elif not result.targets:
            logger.info("No running fleet members to reset")

        for target in result.targets:
            self._scheduler.schedule_one(target.address, self._scheduler.fleet_delay(target.dispatch_index))
            scheduled += 1

        logger.info(
            "Opcache reset triggered, %d remote resets scheduled", scheduled,
            extra={"targets": len(result.targets), "elapsed_seconds": round(time.monotonic() - start, 2)},
        )
        return scheduled

    def reset_instance(self, host: str) -> bool:
        """Delayed-task handler: reset one remote host."""
        return self._remote.reset(host)
