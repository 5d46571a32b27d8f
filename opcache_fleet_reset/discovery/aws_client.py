"""AWS boto3 client for discovering the running members of a Classic Load Balancer."""

from __future__ import annotations

import logging
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import AWSConfig
from ..exceptions import FleetDiscoveryError
from .models import DiscoveryResult, InstanceRecord, LoadBalancerDescriptor, ResetTarget

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = ("LoadBalancerNotFound", "AccessPointNotFound")


class AWSFleetClient:
    """Discovers the running EC2 instances registered with one Classic ELB."""

    _session_error: FleetDiscoveryError | None = None

    def __init__(self, aws_config: AWSConfig):
        self._config = aws_config
        self._elb: Any = None
        self._ec2: Any = None

        # Without a region boto3 cannot build clients; discover() reports it instead
        if aws_config.is_configured:
            session_kwargs: dict[str, Any] = {"region_name": aws_config.region}
            if aws_config.credential_profile:
                session_kwargs["profile_name"] = aws_config.credential_profile

            client_config = Config(
                connect_timeout=aws_config.connect_timeout,
                read_timeout=aws_config.read_timeout,
                retries={"max_attempts": aws_config.max_attempts, "mode": "standard"},
            )
            try:
                session = boto3.Session(**session_kwargs)
                self._elb = session.client("elb", config=client_config)
                self._ec2 = session.client("ec2", config=client_config)
            except BotoCoreError as exc:
                # e.g. an unknown credential profile; reported on every discover()
                self._session_error = FleetDiscoveryError(f"AWS session setup failed: {exc}", "session")
                logger.error("AWS session setup failed: %s", exc)

    def discover(self) -> DiscoveryResult:
        """Run one discovery pass. Never raises; failures are reported in the result."""
        if not self._config.is_configured:
            missing = [
                name for name, value in (
                    ("aws.region", self._config.region),
                    ("aws.load_balancer", self._config.load_balancer),
                ) if not value
            ]
            reason = f"missing configuration: {', '.join(missing)}"
            logger.warning("Fleet discovery skipped, %s", reason)
            return DiscoveryResult(skipped_reason=reason)

        try:
            targets = self._discover_targets()
        except FleetDiscoveryError as exc:
            logger.error(
                "Fleet discovery failed during %s: %s", exc.operation, exc,
                extra={"load_balancer": self._config.load_balancer},
            )
            return DiscoveryResult(error=exc)

        logger.info(
            "Discovery complete",
            extra={"load_balancer": self._config.load_balancer, "targets": len(targets)},
        )
        return DiscoveryResult(targets=targets)

    def _discover_targets(self) -> list[ResetTarget]:
        if self._session_error is not None:
            raise self._session_error
        descriptor = self.describe_load_balancer(self._config.load_balancer)
        if descriptor is None or not descriptor.instance_ids:
            logger.info("Load balancer %s has no registered instances", self._config.load_balancer)
            return []

        targets: list[ResetTarget] = []
        for record in self.describe_instances(descriptor.instance_ids):
            if not record.is_running:
                logger.debug(
                    "Skipping instance %s in state %s", record.instance_id, record.state_name,
                    extra={"instance_id": record.instance_id},
                )
                continue
            if not record.private_ip:
                logger.warning("EC2 instance %s has no private IP, skipping", record.instance_id)
                continue
            targets.append(ResetTarget(
                address=record.private_ip,
                dispatch_index=record.dispatch_index,
                instance_id=record.instance_id,
            ))
        return targets

    # ── Load balancer ───────────────────────────────────────────────

    def describe_load_balancer(self, name: str) -> LoadBalancerDescriptor | None:
        """Return the named load balancer's member ids, or None if it does not exist."""
        try:
            response = self._elb.describe_load_balancers(LoadBalancerNames=[name])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES:
                logger.warning("Load balancer %s not found", name, extra={"load_balancer": name})
                return None
            raise FleetDiscoveryError(f"describe_load_balancers failed: {exc}", "describe_load_balancers") from exc
        except BotoCoreError as exc:
            raise FleetDiscoveryError(f"describe_load_balancers failed: {exc}", "describe_load_balancers") from exc

        descriptions = response.get("LoadBalancerDescriptions", [])
        if not descriptions:
            return None

        description = descriptions[0]
        instance_ids = tuple(
            member["InstanceId"] for member in description.get("Instances", []) if member.get("InstanceId")
        )
        return LoadBalancerDescriptor(name=description.get("LoadBalancerName", name), instance_ids=instance_ids)

    # ── EC2 ─────────────────────────────────────────────────────────

    def describe_instances(self, instance_ids: tuple[str, ...] | list[str]) -> list[InstanceRecord]:
        """Resolve instance ids in one batched call, flattened in response order."""
        try:
            response = self._ec2.describe_instances(InstanceIds=list(instance_ids))
        except (ClientError, BotoCoreError) as exc:
            raise FleetDiscoveryError(
                f"describe_instances failed for {', '.join(instance_ids)}: {exc}", "describe_instances"
            ) from exc

        records: list[InstanceRecord] = []
        for i, reservation in enumerate(response.get("Reservations", [])):
            for j, raw in enumerate(reservation.get("Instances", [])):
                state = raw.get("State", {})
                records.append(InstanceRecord(
                    instance_id=raw.get("InstanceId", ""),
                    private_ip=raw.get("PrivateIpAddress") or None,
                    state_code=int(state.get("Code", 0)),
                    state_name=state.get("Name", "unknown"),
                    reservation_index=i,
                    instance_index=j,
                    position=len(records),
                ))
        return records
