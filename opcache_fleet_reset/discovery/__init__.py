"""Fleet discovery package: provider-agnostic Protocol and public exports."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .models import DiscoveryResult


@runtime_checkable
class FleetDiscoveryClient(Protocol):
    """Protocol that every fleet discovery client must satisfy."""

    def discover(self) -> DiscoveryResult:
        """Return the running members of the configured load balancer. Never raises."""
        ...
