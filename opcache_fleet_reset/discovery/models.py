"""Data models for load balancer membership and discovered reset targets."""

from __future__ import annotations

from dataclasses import dataclass, field

# EC2 instance-state code for "running". The high byte of a state code is
# reserved for internal use and must be masked off before comparing.
RUNNING_STATE_CODE = 16


@dataclass(frozen=True)
class LoadBalancerDescriptor:
    """One load balancer and the ids of its registered instances."""

    name: str
    instance_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class InstanceRecord:
    """A single EC2 instance as reported by describe_instances."""

    instance_id: str
    private_ip: str | None
    state_code: int
    reservation_index: int
    instance_index: int
    position: int  # order across all reservations, counted before any filtering
    state_name: str = "unknown"

    @property
    def is_running(self) -> bool:
        return (self.state_code & 0xFF) == RUNNING_STATE_CODE

    @property
    def dispatch_index(self) -> int:
        """Stagger multiplier. Filtered-out instances leave gaps; it is not an identifier."""
        return self.position


@dataclass(frozen=True)
class ResetTarget:
    """A host that should receive a remote opcache reset."""

    address: str
    dispatch_index: int
    instance_id: str = ""


@dataclass
class DiscoveryResult:
    """Outcome of one discovery pass.

    ``error`` is set when an API call failed; ``skipped_reason`` is set when
    discovery did not run because of missing configuration. Both unset with
    no targets means the fleet is genuinely empty.
    """

    targets: list[ResetTarget] = field(default_factory=list)
    error: Exception | None = None
    skipped_reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return bool(self.targets)
