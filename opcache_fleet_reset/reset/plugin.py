"""Feature gate and wiring of the reset entry points into a host integration."""

from __future__ import annotations

import logging
from typing import Callable, Protocol, runtime_checkable

from ..cachetool.client import FastCGILocalCache, RemoteResetClient
from ..config import AppConfig
from ..discovery import FleetDiscoveryClient
from .orchestrator import ResetOrchestrator
from .scheduler import ResetScheduler, TaskScheduler

logger = logging.getLogger(__name__)

TASK_NAME = "opcache_fleet_reset"


@runtime_checkable
class LocalCache(Protocol):
    """The opcode cache of the process that triggers the reset."""

    def is_enabled(self) -> bool:
        ...

    def reset_local(self) -> bool:
        ...


@runtime_checkable
class Integration(Protocol):
    """What the hosting application offers: a trigger slot and a task handler slot."""

    def register_trigger(self, callback: Callable[[], object]) -> None:
        ...

    def register_task_handler(self, name: str, callback: Callable[[str], object]) -> None:
        ...


def is_enabled(config: AppConfig, local_cache: LocalCache) -> bool:
    """Feature gate: identifiers configured and a local opcache to reset."""
    if not config.aws.is_configured:
        logger.info("Opcache fleet reset disabled: aws.region and aws.load_balancer are required")
        return False
    if not local_cache.is_enabled():
        logger.info("Opcache fleet reset disabled: local opcache is not available")
        return False
    return True


def install(
    config: AppConfig,
    integration: Integration,
    scheduler: TaskScheduler,
    *,
    local_cache: LocalCache | None = None,
    discovery: FleetDiscoveryClient | None = None,
    remote: RemoteResetClient | None = None,
) -> ResetOrchestrator | None:
    """Evaluate the gate once and, if it passes, register the entry points.

    Returns the orchestrator, or None when the feature stays inert.
    """
    if local_cache is None:
        local_cache = FastCGILocalCache(config.local, config.cachetool)
    if not is_enabled(config, local_cache):
        return None

    if discovery is None:
        from ..discovery.aws_client import AWSFleetClient  # lazy import keeps boto3 off the gate path
        discovery = AWSFleetClient(config.aws)

    orchestrator = ResetOrchestrator(
        config,
        local_cache=local_cache,
        discovery=discovery,
        scheduler=ResetScheduler(scheduler, config.cachetool, config.schedule),
        remote=remote if remote is not None else RemoteResetClient(config.cachetool),
    )
    integration.register_trigger(orchestrator.trigger_reset)
    integration.register_task_handler(TASK_NAME, orchestrator.reset_instance)
    logger.info("Opcache fleet reset enabled for load balancer %s", config.aws.load_balancer,
                extra={"load_balancer": config.aws.load_balancer})
    return orchestrator
