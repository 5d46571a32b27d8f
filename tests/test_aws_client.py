"""Tests for the AWS fleet discovery client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ProfileNotFound

from opcache_fleet_reset.config import AWSConfig
from opcache_fleet_reset.discovery import FleetDiscoveryClient
from opcache_fleet_reset.discovery.aws_client import AWSFleetClient
from opcache_fleet_reset.exceptions import FleetDiscoveryError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

DEFAULT_AWS_CONFIG = AWSConfig(region="us-east-1", load_balancer="lb1")


def _raw_instance(instance_id="i-abc123", private_ip="10.0.0.1", state_code=16, state_name="running") -> dict:
    """Build a minimal EC2 instance dict as returned by describe_instances."""
    result = {
        "InstanceId": instance_id,
        "State": {"Code": state_code, "Name": state_name},
    }
    if private_ip:
        result["PrivateIpAddress"] = private_ip
    return result


def _describe_instances_response(*reservations) -> dict:
    return {"Reservations": [{"Instances": list(instances)} for instances in reservations]}


def _describe_lb_response(*instance_ids, name="lb1") -> dict:
    return {
        "LoadBalancerDescriptions": [{
            "LoadBalancerName": name,
            "Instances": [{"InstanceId": iid} for iid in instance_ids],
        }]
    }


def _two_by_two(terminated: str | None = None) -> dict:
    def inst(iid, ip):
        if iid == terminated:
            return _raw_instance(iid, ip, state_code=48, state_name="terminated")
        return _raw_instance(iid, ip)

    return _describe_instances_response(
        [inst("i-r0i0", "10.0.0.1"), inst("i-r0i1", "10.0.0.2")],
        [inst("i-r1i0", "10.0.1.1"), inst("i-r1i1", "10.0.1.2")],
    )


def _make_client(elb_mock, ec2_mock, config=DEFAULT_AWS_CONFIG) -> AWSFleetClient:
    client = AWSFleetClient.__new__(AWSFleetClient)
    client._config = config
    client._elb = elb_mock
    client._ec2 = ec2_mock
    return client


def _client_error(code: str, operation: str = "DescribeLoadBalancers") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestAWSFleetClientDiscovery:
    def test_satisfies_protocol(self):
        assert isinstance(_make_client(MagicMock(), MagicMock()), FleetDiscoveryClient)

    def test_discovers_running_members_in_response_order(self):
        elb, ec2 = MagicMock(), MagicMock()
        elb.describe_load_balancers.return_value = _describe_lb_response("i-r0i0", "i-r0i1", "i-r1i0", "i-r1i1")
        ec2.describe_instances.return_value = _two_by_two()

        result = _make_client(elb, ec2).discover()

        assert result.ok
        assert [t.address for t in result.targets] == ["10.0.0.1", "10.0.0.2", "10.0.1.1", "10.0.1.2"]
        assert [t.dispatch_index for t in result.targets] == [0, 1, 2, 3]

    def test_single_batched_describe_instances_call(self):
        elb, ec2 = MagicMock(), MagicMock()
        elb.describe_load_balancers.return_value = _describe_lb_response("i-1", "i-2", "i-3")
        ec2.describe_instances.return_value = _describe_instances_response([])

        _make_client(elb, ec2).discover()

        elb.describe_load_balancers.assert_called_once_with(LoadBalancerNames=["lb1"])
        ec2.describe_instances.assert_called_once_with(InstanceIds=["i-1", "i-2", "i-3"])

    def test_non_running_instances_dropped_without_reindexing(self):
        elb, ec2 = MagicMock(), MagicMock()
        elb.describe_load_balancers.return_value = _describe_lb_response("i-r0i0", "i-r0i1", "i-r1i0", "i-r1i1")
        ec2.describe_instances.return_value = _two_by_two(terminated="i-r1i0")

        result = _make_client(elb, ec2).discover()

        assert [t.instance_id for t in result.targets] == ["i-r0i0", "i-r0i1", "i-r1i1"]
        assert [t.dispatch_index for t in result.targets] == [0, 1, 3]

    @pytest.mark.parametrize("code,name", [(0, "pending"), (32, "shutting-down"), (64, "stopping"), (80, "stopped")])
    def test_only_state_16_is_actionable(self, code, name):
        elb, ec2 = MagicMock(), MagicMock()
        elb.describe_load_balancers.return_value = _describe_lb_response("i-1")
        ec2.describe_instances.return_value = _describe_instances_response(
            [_raw_instance("i-1", state_code=code, state_name=name)]
        )

        result = _make_client(elb, ec2).discover()
        assert result.ok
        assert result.targets == []

    def test_state_code_high_byte_ignored(self):
        elb, ec2 = MagicMock(), MagicMock()
        elb.describe_load_balancers.return_value = _describe_lb_response("i-1")
        ec2.describe_instances.return_value = _describe_instances_response(
            [_raw_instance("i-1", state_code=0x100 | 16)]
        )

        result = _make_client(elb, ec2).discover()
        assert len(result.targets) == 1

    def test_instance_without_private_ip_skipped(self):
        elb, ec2 = MagicMock(), MagicMock()
        elb.describe_load_balancers.return_value = _describe_lb_response("i-1", "i-2")
        ec2.describe_instances.return_value = _describe_instances_response(
            [_raw_instance("i-1", private_ip=None), _raw_instance("i-2", private_ip="10.0.0.2")]
        )

        result = _make_client(elb, ec2).discover()
        assert [(t.address, t.dispatch_index) for t in result.targets] == [("10.0.0.2", 1)]


class TestAWSFleetClientEmptyAndErrors:
    @pytest.mark.parametrize("config", [
        AWSConfig(region="", load_balancer="lb1"),
        AWSConfig(region="us-east-1", load_balancer=""),
        AWSConfig(),
    ])
    def test_missing_configuration_skips_all_calls(self, config):
        elb, ec2 = MagicMock(), MagicMock()
        result = _make_client(elb, ec2, config).discover()

        assert result.ok
        assert result.targets == []
        assert "missing configuration" in result.skipped_reason
        elb.describe_load_balancers.assert_not_called()
        ec2.describe_instances.assert_not_called()

    def test_missing_configuration_logs_warning(self, caplog):
        result = _make_client(MagicMock(), MagicMock(), AWSConfig(region="us-east-1")).discover()
        assert "aws.load_balancer" in result.skipped_reason
        assert any(r.levelname == "WARNING" and "aws.load_balancer" in r.getMessage() for r in caplog.records)

    def test_load_balancer_without_instances_is_empty_fleet(self):
        elb, ec2 = MagicMock(), MagicMock()
        elb.describe_load_balancers.return_value = _describe_lb_response()

        result = _make_client(elb, ec2).discover()

        assert result.ok
        assert result.skipped_reason is None
        assert result.targets == []
        ec2.describe_instances.assert_not_called()

    def test_load_balancer_not_found_is_empty_fleet(self):
        elb, ec2 = MagicMock(), MagicMock()
        elb.describe_load_balancers.side_effect = _client_error("LoadBalancerNotFound")

        result = _make_client(elb, ec2).discover()

        assert result.ok
        assert result.targets == []
        ec2.describe_instances.assert_not_called()

    def test_load_balancer_transport_error_reported(self):
        elb, ec2 = MagicMock(), MagicMock()
        elb.describe_load_balancers.side_effect = EndpointConnectionError(endpoint_url="https://elb.example")

        result = _make_client(elb, ec2).discover()

        assert not result.ok
        assert isinstance(result.error, FleetDiscoveryError)
        assert result.error.operation == "describe_load_balancers"
        assert result.targets == []
        ec2.describe_instances.assert_not_called()

    def test_load_balancer_access_denied_reported(self):
        elb = MagicMock()
        elb.describe_load_balancers.side_effect = _client_error("AccessDenied")

        result = _make_client(elb, MagicMock()).discover()
        assert not result.ok

    def test_describe_instances_error_reported(self):
        elb, ec2 = MagicMock(), MagicMock()
        elb.describe_load_balancers.return_value = _describe_lb_response("i-1")
        ec2.describe_instances.side_effect = _client_error("RequestLimitExceeded", "DescribeInstances")

        result = _make_client(elb, ec2).discover()

        assert not result.ok
        assert result.error.operation == "describe_instances"

    def test_describe_instances_raises_wrapped_error(self):
        ec2 = MagicMock()
        ec2.describe_instances.side_effect = _client_error("InvalidInstanceID.NotFound", "DescribeInstances")

        with pytest.raises(FleetDiscoveryError, match="describe_instances"):
            _make_client(MagicMock(), ec2).describe_instances(["i-gone"])

    def test_describe_instances_error_names_instance_ids(self):
        ec2 = MagicMock()
        ec2.describe_instances.side_effect = _client_error("InvalidInstanceID.NotFound", "DescribeInstances")

        with pytest.raises(FleetDiscoveryError, match="i-live, i-gone"):
            _make_client(MagicMock(), ec2).describe_instances(["i-live", "i-gone"])

    def test_each_discover_queries_afresh(self):
        elb, ec2 = MagicMock(), MagicMock()
        elb.describe_load_balancers.return_value = _describe_lb_response("i-1")
        ec2.describe_instances.return_value = _describe_instances_response([_raw_instance("i-1")])

        client = _make_client(elb, ec2)
        client.discover()
        client.discover()

        assert elb.describe_load_balancers.call_count == 2
        assert ec2.describe_instances.call_count == 2


class TestAWSFleetClientSession:
    def test_default_credential_chain(self):
        """No credential_profile means session is created without profile_name."""
        with patch("boto3.Session") as MockSession:
            session = MagicMock()
            MockSession.return_value = session
            AWSFleetClient(DEFAULT_AWS_CONFIG)
            MockSession.assert_called_once_with(region_name="us-east-1")
            services = [c.args[0] for c in session.client.call_args_list]
            assert services == ["elb", "ec2"]

    def test_named_profile(self):
        with patch("boto3.Session") as MockSession:
            MockSession.return_value = MagicMock()
            AWSFleetClient(AWSConfig(region="us-east-1", load_balancer="lb1", credential_profile="ops"))
            MockSession.assert_called_once_with(region_name="us-east-1", profile_name="ops")

    def test_timeouts_passed_to_clients(self):
        with patch("boto3.Session") as MockSession:
            session = MagicMock()
            MockSession.return_value = session
            AWSFleetClient(AWSConfig(region="us-east-1", load_balancer="lb1", connect_timeout=3, read_timeout=7))
            client_config = session.client.call_args.kwargs["config"]
            assert client_config.connect_timeout == 3
            assert client_config.read_timeout == 7

    def test_unconfigured_builds_no_session(self):
        with patch("boto3.Session") as MockSession:
            AWSFleetClient(AWSConfig(region="us-east-1"))
            MockSession.assert_not_called()

    def test_unknown_profile_reported_by_discover(self):
        with patch("boto3.Session", side_effect=ProfileNotFound(profile="nope")):
            client = AWSFleetClient(AWSConfig(region="us-east-1", load_balancer="lb1", credential_profile="nope"))

        result = client.discover()

        assert not result.ok
        assert result.error.operation == "session"
        assert "nope" in str(result.error)
        assert result.targets == []
