"""Unit tests for the AWS resource gateway."""

import base64
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError
from fakes.fake_clock import FakeClock

from burrow.core.models import InfrastructureRecord, LaunchSpec, Profile
from burrow.providers.aws.constants import SSM_MANAGED_POLICY_ARN
from burrow.providers.aws.gateway import Candidate, ResourceGateway
from burrow.providers.exceptions import CloudApiError, ErrorKind


@pytest.fixture
def aws_gateway(mocked_aws, clock: FakeClock) -> ResourceGateway:
    """Gateway backed by moto."""
    return ResourceGateway("us-east-1", clock=clock)


@pytest.fixture
def ec2_client(mocked_aws):
    return boto3.client("ec2", region_name="us-east-1")


@pytest.fixture
def mock_factory() -> MagicMock:
    """boto3 client factory returning one MagicMock client for every service."""
    return MagicMock()


@pytest.fixture
def mock_gateway(mock_factory: MagicMock, clock: FakeClock) -> ResourceGateway:
    return ResourceGateway("us-east-1", boto3_client_factory=mock_factory, clock=clock)


def client_error(code: str, operation: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


def tags_of(resource: dict) -> dict[str, str]:
    return {tag["Key"]: tag["Value"] for tag in resource.get("Tags", [])}


class TestClients:
    """Tests for client construction and retries."""

    def test_clients_disable_botocore_retries(
        self, mock_gateway: ResourceGateway, mock_factory: MagicMock
    ) -> None:
        """Test every client gets timeouts and a single botocore attempt."""
        mock_gateway._client("ec2")
        mock_gateway._client("ec2")

        mock_factory.assert_called_once()
        args, kwargs = mock_factory.call_args
        assert args == ("ec2",)
        assert kwargs["region_name"] == "us-east-1"
        assert kwargs["config"].retries == {"max_attempts": 1, "mode": "standard"}
        assert kwargs["config"].connect_timeout == 10
        assert kwargs["config"].read_timeout == 30

    async def test_transient_failures_retried(
        self, mock_gateway: ResourceGateway, mock_factory: MagicMock, clock: FakeClock
    ) -> None:
        """Test throttled calls are retried by the gateway policy."""
        client = mock_factory.return_value
        client.get_caller_identity.side_effect = [
            client_error("Throttling", "GetCallerIdentity"),
            client_error("ServiceUnavailable", "GetCallerIdentity", 503),
            {"Account": "123456789012"},
        ]

        assert await mock_gateway.caller_account() == "123456789012"
        assert client.get_caller_identity.call_count == 3
        assert clock.sleeps == [1.0, 2.0]

    async def test_permanent_failure_names_operation(
        self, mock_gateway: ResourceGateway, mock_factory: MagicMock
    ) -> None:
        """Test permission failures carry the service operation."""
        mock_factory.return_value.describe_vpcs.side_effect = client_error(
            "UnauthorizedOperation", "DescribeVpcs"
        )

        with pytest.raises(CloudApiError) as exc_info:
            await mock_gateway.find_vpcs()

        assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
        assert exc_info.value.operation == "ec2:DescribeVpcs"


class TestNetwork:
    """Tests for network convergence against moto."""

    async def test_ensure_network_creates_tagged_private_subnet(
        self, aws_gateway: ResourceGateway, ec2_client
    ) -> None:
        """Test the VPC and subnet are created with canonical tags."""
        network = await aws_gateway.ensure_network()

        vpc = ec2_client.describe_vpcs(VpcIds=[network.vpc_id])["Vpcs"][0]
        assert vpc["CidrBlock"] == "10.0.0.0/16"
        assert tags_of(vpc)["burrow:managed"] == "true"
        assert tags_of(vpc)["burrow:name"] == "burrow-vpc"

        subnet = ec2_client.describe_subnets(SubnetIds=[network.subnet_id])["Subnets"][0]
        assert subnet["VpcId"] == network.vpc_id
        assert subnet["CidrBlock"] == "10.0.1.0/24"
        assert subnet["MapPublicIpOnLaunch"] is False
        assert network.route_table_id.startswith("rtb-")

    async def test_ensure_network_is_idempotent(self, aws_gateway: ResourceGateway, ec2_client) -> None:
        """Test a second convergence reuses the existing network."""
        first = await aws_gateway.ensure_network()
        second = await aws_gateway.ensure_network()

        assert first == second
        assert [c.resource_id for c in await aws_gateway.find_vpcs()] == [first.vpc_id]

    async def test_namespace_isolation(self, mocked_aws, clock: FakeClock) -> None:
        """Test gateways with different namespaces do not share resources."""
        team_a = ResourceGateway("us-east-1", tag_namespace="team-a", clock=clock)
        team_b = ResourceGateway("us-east-1", tag_namespace="team-b", clock=clock)

        network_a = await team_a.ensure_network()
        network_b = await team_b.ensure_network()

        assert network_a.vpc_id != network_b.vpc_id

    async def test_found_network_brought_into_policy(self, aws_gateway: ResourceGateway, ec2_client) -> None:
        """Test a managed VPC and subnet created elsewhere get DNS and lose public addressing."""
        tags = [
            {"Key": "burrow:managed", "Value": "true"},
            {"Key": "burrow:name", "Value": "burrow-vpc"},
        ]
        vpc_id = ec2_client.create_vpc(
            CidrBlock="10.0.0.0/16", TagSpecifications=[{"ResourceType": "vpc", "Tags": tags}]
        )["Vpc"]["VpcId"]
        subnet_id = ec2_client.create_subnet(VpcId=vpc_id, CidrBlock="10.0.1.0/24")["Subnet"]["SubnetId"]
        ec2_client.modify_subnet_attribute(SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True})

        network = await aws_gateway.ensure_network()

        assert (network.vpc_id, network.subnet_id) == (vpc_id, subnet_id)
        for attribute, key in (
            ("enableDnsSupport", "EnableDnsSupport"),
            ("enableDnsHostnames", "EnableDnsHostnames"),
        ):
            response = ec2_client.describe_vpc_attribute(VpcId=vpc_id, Attribute=attribute)
            assert response[key]["Value"] is True
        subnet = ec2_client.describe_subnets(SubnetIds=[subnet_id])["Subnets"][0]
        assert subnet["MapPublicIpOnLaunch"] is False

    async def test_converged_network_is_not_modified(
        self, mock_gateway: ResourceGateway, mock_factory: MagicMock
    ) -> None:
        """Test attributes already in policy are only read."""
        client = mock_factory.return_value
        client.describe_vpcs.return_value = {"Vpcs": [{"VpcId": "vpc-1"}]}
        client.describe_vpc_attribute.return_value = {
            "EnableDnsSupport": {"Value": True},
            "EnableDnsHostnames": {"Value": True},
        }
        client.describe_subnets.return_value = {
            "Subnets": [{"SubnetId": "subnet-1", "MapPublicIpOnLaunch": False}]
        }
        client.describe_route_tables.return_value = {"RouteTables": [{"RouteTableId": "rtb-1"}]}

        network = await mock_gateway.ensure_network()

        assert (network.vpc_id, network.subnet_id, network.route_table_id) == ("vpc-1", "subnet-1", "rtb-1")
        client.create_vpc.assert_not_called()
        client.modify_vpc_attribute.assert_not_called()
        client.modify_subnet_attribute.assert_not_called()


class TestSecurityGroups:
    """Tests for the fixed security policy."""

    async def test_instance_group_has_no_inbound_and_https_egress_only(
        self, aws_gateway: ResourceGateway, ec2_client
    ) -> None:
        """Test the instance group allows no ingress and only HTTPS inside the VPC."""
        network = await aws_gateway.ensure_network()

        group_id = await aws_gateway.ensure_security_group(network.vpc_id)

        group = ec2_client.describe_security_groups(GroupIds=[group_id])["SecurityGroups"][0]
        assert group["GroupName"] == "burrow-sg"
        assert group["IpPermissions"] == []
        assert len(group["IpPermissionsEgress"]) == 1
        egress = group["IpPermissionsEgress"][0]
        assert egress["IpProtocol"] == "tcp"
        assert egress["FromPort"] == 443
        assert egress["ToPort"] == 443
        assert [r["CidrIp"] for r in egress["IpRanges"]] == ["10.0.0.0/16"]

    async def test_endpoint_group_accepts_https_from_vpc(
        self, aws_gateway: ResourceGateway, ec2_client
    ) -> None:
        """Test the endpoint group admits HTTPS from the VPC CIDR."""
        network = await aws_gateway.ensure_network()

        group_id = await aws_gateway.ensure_security_group(network.vpc_id, purpose="endpoints")

        group = ec2_client.describe_security_groups(GroupIds=[group_id])["SecurityGroups"][0]
        assert group["GroupName"] == "burrow-endpoints-sg"
        ingress = group["IpPermissions"]
        assert len(ingress) == 1
        assert ingress[0]["FromPort"] == 443
        assert [r["CidrIp"] for r in ingress[0]["IpRanges"]] == ["10.0.0.0/16"]

    async def test_security_group_is_idempotent(self, aws_gateway: ResourceGateway) -> None:
        """Test the group is found rather than recreated."""
        network = await aws_gateway.ensure_network()

        first = await aws_gateway.ensure_security_group(network.vpc_id)
        second = await aws_gateway.ensure_security_group(network.vpc_id)

        assert first == second

    async def test_found_group_brought_into_policy(self, aws_gateway: ResourceGateway, ec2_client) -> None:
        """Test a group with the managed name but other rules is corrected."""
        network = await aws_gateway.ensure_network()
        group_id = ec2_client.create_security_group(
            GroupName="burrow-sg", Description="hand made", VpcId=network.vpc_id
        )["GroupId"]
        ec2_client.authorize_security_group_ingress(
            GroupId=group_id,
            IpPermissions=[
                {"IpProtocol": "tcp", "FromPort": 22, "ToPort": 22, "IpRanges": [{"CidrIp": "0.0.0.0/0"}]}
            ],
        )

        assert await aws_gateway.ensure_security_group(network.vpc_id) == group_id

        group = ec2_client.describe_security_groups(GroupIds=[group_id])["SecurityGroups"][0]
        assert group["IpPermissions"] == []
        egress = group["IpPermissionsEgress"]
        assert [(rule["IpProtocol"], rule.get("FromPort")) for rule in egress] == [("tcp", 443)]
        assert [r["CidrIp"] for r in egress[0]["IpRanges"]] == ["10.0.0.0/16"]

    async def test_found_endpoint_group_gets_https_ingress(
        self, aws_gateway: ResourceGateway, ec2_client
    ) -> None:
        network = await aws_gateway.ensure_network()
        group_id = ec2_client.create_security_group(
            GroupName="burrow-endpoints-sg", Description="hand made", VpcId=network.vpc_id
        )["GroupId"]

        assert await aws_gateway.ensure_security_group(network.vpc_id, purpose="endpoints") == group_id

        group = ec2_client.describe_security_groups(GroupIds=[group_id])["SecurityGroups"][0]
        ingress = group["IpPermissions"]
        assert [(rule["FromPort"], [r["CidrIp"] for r in rule["IpRanges"]]) for rule in ingress] == [
            (443, ["10.0.0.0/16"])
        ]

    async def test_duplicate_group_conflict_rereads(
        self, mock_gateway: ResourceGateway, mock_factory: MagicMock
    ) -> None:
        """Test a concurrent creator's group is adopted on conflict."""
        client = mock_factory.return_value
        client.describe_security_groups.side_effect = [
            {"SecurityGroups": []},
            {
                "SecurityGroups": [
                    {
                        "GroupId": "sg-winner",
                        "IpPermissions": [],
                        "IpPermissionsEgress": [
                            {
                                "IpProtocol": "tcp",
                                "FromPort": 443,
                                "ToPort": 443,
                                "IpRanges": [{"CidrIp": "10.0.0.0/16"}],
                            }
                        ],
                    }
                ]
            },
        ]
        client.create_security_group.side_effect = client_error(
            "InvalidGroup.Duplicate", "CreateSecurityGroup"
        )

        assert await mock_gateway.ensure_security_group("vpc-1") == "sg-winner"
        client.authorize_security_group_egress.assert_not_called()
        client.revoke_security_group_egress.assert_not_called()


class TestEndpoints:
    """Tests for broker endpoint convergence."""

    async def test_ensure_endpoints_creates_each_service_once(
        self, aws_gateway: ResourceGateway, ec2_client
    ) -> None:
        """Test interface endpoints for the broker and an S3 gateway endpoint."""
        network = await aws_gateway.ensure_network()
        group_id = await aws_gateway.ensure_security_group(network.vpc_id, purpose="endpoints")

        first = await aws_gateway.ensure_endpoints(network, group_id)
        second = await aws_gateway.ensure_endpoints(network, group_id)

        assert len(first) == 4
        assert first == second

        endpoints = ec2_client.describe_vpc_endpoints(VpcEndpointIds=list(first))["VpcEndpoints"]
        services = sorted(endpoint["ServiceName"] for endpoint in endpoints)
        assert services == [
            "com.amazonaws.us-east-1.ec2messages",
            "com.amazonaws.us-east-1.s3",
            "com.amazonaws.us-east-1.ssm",
            "com.amazonaws.us-east-1.ssmmessages",
        ]


class TestElection:
    """Tests for electing one of several concurrently created resources."""

    EARLIER = "2026-01-01T00:00:01.000000Z"
    LATER = "2026-01-01T00:00:05.000000Z"

    @staticmethod
    def _callbacks(listings: list, created: Candidate, deleted: list, fail_delete: bool = False):
        async def find():
            return listings.pop(0)

        async def create():
            return created

        async def delete(resource_id):
            if fail_delete:
                raise CloudApiError("dependency violation", kind=ErrorKind.CONFLICT)
            deleted.append(resource_id)

        return find, create, delete

    async def test_existing_resource_reused(self, mock_gateway: ResourceGateway) -> None:
        """Test an existing resource is returned without creating another."""
        created = []

        async def find():
            return [Candidate(self.EARLIER, "vpc-0fff"), Candidate(self.LATER, "vpc-0aaa")]

        async def create():
            created.append(True)

        assert await mock_gateway._elect("VPC", find, create, None) == "vpc-0fff"
        assert created == []

    async def test_later_creator_deletes_its_resource(self, mock_gateway: ResourceGateway) -> None:
        """Test the earliest created resource wins even when its id sorts higher."""
        ours = Candidate(self.LATER, "vpc-0aaa")
        theirs = Candidate(self.EARLIER, "vpc-0fff")
        deleted = []

        winner = await mock_gateway._elect(
            "VPC", *self._callbacks([[], [theirs, ours]], ours, deleted)
        )

        assert winner == "vpc-0fff"
        assert deleted == ["vpc-0aaa"]

    async def test_earliest_creator_keeps_its_resource(self, mock_gateway: ResourceGateway) -> None:
        ours = Candidate(self.EARLIER, "vpc-0fff")
        theirs = Candidate(self.LATER, "vpc-0aaa")
        deleted = []

        winner = await mock_gateway._elect(
            "VPC", *self._callbacks([[], [ours, theirs]], ours, deleted)
        )

        assert winner == "vpc-0fff"
        assert deleted == []

    async def test_own_resource_missing_from_listing(self, mock_gateway: ResourceGateway) -> None:
        """Test a created resource the re-listing does not show yet still counts."""
        ours = Candidate(self.LATER, "vpc-0aaa")
        deleted = []

        winner = await mock_gateway._elect("VPC", *self._callbacks([[], []], ours, deleted))

        assert winner == "vpc-0aaa"
        assert deleted == []

    async def test_same_stamp_breaks_tie_by_id(self, mock_gateway: ResourceGateway) -> None:
        ours = Candidate(self.EARLIER, "vpc-0bbb")
        theirs = Candidate(self.EARLIER, "vpc-0aaa")
        deleted = []

        winner = await mock_gateway._elect(
            "VPC", *self._callbacks([[], [theirs, ours]], ours, deleted)
        )

        assert winner == "vpc-0aaa"
        assert deleted == ["vpc-0bbb"]

    async def test_delete_failure_only_logged(
        self, mock_gateway: ResourceGateway, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test a duplicate that cannot be deleted does not fail convergence."""
        ours = Candidate(self.LATER, "vpc-0aaa")
        theirs = Candidate(self.EARLIER, "vpc-0fff")

        winner = await mock_gateway._elect(
            "VPC", *self._callbacks([[], [theirs, ours]], ours, [], fail_delete=True)
        )

        assert winner == "vpc-0fff"
        assert "Failed to delete duplicate VPC vpc-0aaa" in caplog.text

    def test_created_resources_are_stamped(self, mock_gateway: ResourceGateway) -> None:
        stamp, tags = mock_gateway._stamped_tags("burrow-vpc")

        assert {"Key": "burrow:created", "Value": stamp} in tags
        assert mock_gateway._candidates(
            [
                {"VpcId": "vpc-0bbb", "Tags": tags},
                {"VpcId": "vpc-0ccc"},
            ],
            "VpcId",
        ) == [Candidate("", "vpc-0ccc"), Candidate(stamp, "vpc-0bbb")]


class TestRole:
    """Tests for the instance role and profile."""

    async def test_ensure_role_creates_role_policy_and_profile(
        self, aws_gateway: ResourceGateway, clock: FakeClock
    ) -> None:
        """Test the role carries the SSM core policy and sits in the profile."""
        role = await aws_gateway.ensure_role()

        iam = boto3.client("iam", region_name="us-east-1")
        attached = iam.list_attached_role_policies(RoleName=role.role_name)["AttachedPolicies"]
        profile = iam.get_instance_profile(InstanceProfileName=role.instance_profile_name)

        assert role.role_name == "burrow-instance-role"
        assert [p["PolicyArn"] for p in attached] == [SSM_MANAGED_POLICY_ARN]
        assert [r["RoleName"] for r in profile["InstanceProfile"]["Roles"]] == [role.role_name]
        assert role.instance_profile_arn == profile["InstanceProfile"]["Arn"]
        assert clock.sleeps == [10.0]

    async def test_ensure_role_is_idempotent(self, aws_gateway: ResourceGateway, clock: FakeClock) -> None:
        """Test a second convergence does not wait for propagation again."""
        first = await aws_gateway.ensure_role()
        second = await aws_gateway.ensure_role()

        assert first == second
        assert clock.sleeps == [10.0]

    async def test_resource_tags_on_network_and_role(self, mocked_aws, clock: FakeClock, ec2_client) -> None:
        """Test global resource tags reach shared infrastructure without replacing its name."""
        gateway = ResourceGateway("us-east-1", clock=clock, resource_tags={"cost-center": "42"})

        network = await gateway.ensure_network()
        role = await gateway.ensure_role()

        vpc = ec2_client.describe_vpcs(VpcIds=[network.vpc_id])["Vpcs"][0]
        assert tags_of(vpc)["cost-center"] == "42"
        assert tags_of(vpc)["Name"] == "burrow-vpc"
        iam = boto3.client("iam", region_name="us-east-1")
        role_tags = iam.list_role_tags(RoleName=role.role_name)["Tags"]
        assert {"Key": "cost-center", "Value": "42"} in role_tags


class TestInstances:
    """Tests for launching, describing and terminating instances."""

    async def _launch(self, gateway: ResourceGateway, ec2_client, **profile_overrides) -> str:
        network = await gateway.ensure_network()
        group_id = await gateway.ensure_security_group(network.vpc_id)
        role = await gateway.ensure_role()
        image_id = ec2_client.register_image(
            Name="burrow-test-image",
            Architecture="x86_64",
            RootDeviceName="/dev/sda1",
            VirtualizationType="hvm",
        )["ImageId"]

        record = InfrastructureRecord(
            region="us-east-1",
            vpc_id=network.vpc_id,
            subnet_ids=(network.subnet_id,),
            security_group_id=group_id,
            instance_profile_name=role.instance_profile_name,
            instance_profile_arn=role.instance_profile_arn,
            role_name=role.role_name,
        )
        profile = Profile(instance_type="t3.micro", image_id=image_id, **profile_overrides)
        spec = LaunchSpec(
            name="demo",
            profile=profile,
            infrastructure=record,
            boot_script="#!/bin/bash\necho hi\n",
            tag_namespace="burrow",
        )
        return await gateway.launch_instance(spec)

    async def test_launch_tags_and_places_instance(self, aws_gateway: ResourceGateway, ec2_client) -> None:
        """Test the instance lands in the managed subnet with canonical and profile tags."""
        instance_id = await self._launch(aws_gateway, ec2_client, tags=(("team", "data"),))

        instance = ec2_client.describe_instances(InstanceIds=[instance_id])["Reservations"][0][
            "Instances"
        ][0]
        tags = tags_of(instance)
        assert tags["burrow:managed"] == "true"
        assert tags["burrow:name"] == "demo"
        assert tags["team"] == "data"
        assert instance["InstanceType"] == "t3.micro"
        assert instance["SubnetId"] == (await aws_gateway.ensure_network()).subnet_id

    async def test_profile_tags_cannot_override_canonical_tags(
        self, aws_gateway: ResourceGateway, ec2_client
    ) -> None:
        """Test a profile tag colliding with a canonical tag is overridden."""
        instance_id = await self._launch(
            aws_gateway, ec2_client, tags=(("burrow:name", "spoofed"),)
        )

        status = await aws_gateway.describe_instance(instance_id)
        instance = ec2_client.describe_instances(InstanceIds=[instance_id])["Reservations"][0][
            "Instances"
        ][0]
        assert tags_of(instance)["burrow:name"] == "demo"
        assert status.exists

    async def test_resource_tags_on_instance(self, mocked_aws, clock: FakeClock, ec2_client) -> None:
        """Test global resource tags are applied and profile tags override them."""
        gateway = ResourceGateway(
            "us-east-1", clock=clock, resource_tags={"cost-center": "42", "team": "platform"}
        )

        instance_id = await self._launch(gateway, ec2_client, tags=(("team", "data"),))

        instance = ec2_client.describe_instances(InstanceIds=[instance_id])["Reservations"][0][
            "Instances"
        ][0]
        tags = tags_of(instance)
        assert tags["cost-center"] == "42"
        assert tags["team"] == "data"
        assert tags["burrow:name"] == "demo"

    @pytest.mark.parametrize(
        "overrides,expected",
        [
            ({}, {}),
            ({"volume_iops": 6000, "volume_throughput": 500}, {"Iops": 6000, "Throughput": 500}),
            ({"volume_type": "io2", "volume_iops": 20000}, {"Iops": 20000}),
        ],
    )
    async def test_volume_performance(
        self, mock_gateway: ResourceGateway, mock_factory: MagicMock, overrides, expected
    ) -> None:
        """Test provisioned IOPS and throughput reach the root volume only when set."""
        client = mock_factory.return_value
        client.run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}
        record = InfrastructureRecord(
            region="us-east-1",
            vpc_id="vpc-1",
            subnet_ids=("subnet-1",),
            security_group_id="sg-1",
            instance_profile_name="burrow-instance-profile",
            instance_profile_arn="arn:aws:iam::123456789012:instance-profile/burrow-instance-profile",
            role_name="burrow-instance-role",
        )
        spec = LaunchSpec(
            name="demo",
            profile=Profile(image_id="ami-123", **overrides),
            infrastructure=record,
            boot_script="#!/bin/bash\n",
            tag_namespace="burrow",
        )

        assert await mock_gateway.launch_instance(spec) == "i-1"

        ebs = client.run_instances.call_args.kwargs["BlockDeviceMappings"][0]["Ebs"]
        assert {key: ebs[key] for key in ("Iops", "Throughput") if key in ebs} == expected
        assert ebs["Encrypted"] is True

    async def test_describe_and_terminate(self, aws_gateway: ResourceGateway, ec2_client) -> None:
        """Test the instance lifecycle as the gateway reports it."""
        instance_id = await self._launch(aws_gateway, ec2_client)

        status = await aws_gateway.describe_instance(instance_id)
        assert status.state in ("pending", "running")
        assert status.private_ip is not None

        await aws_gateway.terminate_instance(instance_id)

        assert (await aws_gateway.describe_instance(instance_id)).state == "terminated"
        assert not (await aws_gateway.describe_instance(instance_id)).exists

    async def test_missing_instance(self, aws_gateway: ResourceGateway) -> None:
        """Test unknown instances describe as missing and terminate quietly."""
        status = await aws_gateway.describe_instance("i-0123456789abcdef0")

        assert status.state is None
        await aws_gateway.terminate_instance("i-0123456789abcdef0")


class TestImages:
    """Tests for image resolution."""

    async def test_explicit_image_id(self, mock_gateway: ResourceGateway, mock_factory: MagicMock) -> None:
        """Test an explicit image id needs no lookup."""
        assert await mock_gateway.resolve_image(Profile(image_id="ami-123")) == "ami-123"
        mock_factory.assert_not_called()

    async def test_newest_image_of_family(self, mock_gateway: ResourceGateway, mock_factory: MagicMock) -> None:
        """Test the newest matching image is chosen."""
        client = mock_factory.return_value
        client.describe_images.return_value = {
            "Images": [
                {"ImageId": "ami-old", "CreationDate": "2024-01-01T00:00:00.000Z"},
                {"ImageId": "ami-new", "CreationDate": "2024-06-01T00:00:00.000Z"},
            ]
        }

        assert await mock_gateway.resolve_image(Profile(architecture="arm64")) == "ami-new"
        kwargs = client.describe_images.call_args.kwargs
        assert kwargs["Owners"] == ["099720109477"]
        assert kwargs["Filters"][0]["Values"] == [
            "ubuntu/images/hvm-ssd-gp3/ubuntu-noble-24.04-arm64-server-*"
        ]

    async def test_no_matching_image(self, mock_gateway: ResourceGateway, mock_factory: MagicMock) -> None:
        """Test a family without images is reported as not found."""
        mock_factory.return_value.describe_images.return_value = {"Images": []}

        with pytest.raises(CloudApiError) as exc_info:
            await mock_gateway.resolve_image(Profile())

        assert exc_info.value.kind is ErrorKind.NOT_FOUND

    async def test_unknown_family(self, mock_gateway: ResourceGateway) -> None:
        """Test unknown image families are rejected."""
        with pytest.raises(CloudApiError, match="Unknown image family"):
            await mock_gateway.resolve_image(Profile(image_family="windows-2022"))


class TestConsoleAndBroker:
    """Tests for console output and SSM broker calls."""

    async def test_console_output_decoded(self, mock_gateway: ResourceGateway, mock_factory: MagicMock) -> None:
        """Test base64 console output is decoded."""
        encoded = base64.b64encode(b"booting\nBURROW-READY\n").decode()
        mock_factory.return_value.get_console_output.return_value = {"Output": encoded}

        assert await mock_gateway.fetch_console_output("i-1") == "booting\nBURROW-READY\n"

    async def test_console_output_empty(self, mock_gateway: ResourceGateway, mock_factory: MagicMock) -> None:
        """Test missing console output reads as empty."""
        mock_factory.return_value.get_console_output.return_value = {"InstanceId": "i-1"}

        assert await mock_gateway.fetch_console_output("i-1") == ""

    @pytest.mark.parametrize(
        "information,expected",
        [
            ([{"InstanceId": "i-1", "PingStatus": "Online"}], True),
            ([{"InstanceId": "i-1", "PingStatus": "ConnectionLost"}], False),
            ([], False),
        ],
    )
    async def test_broker_registration(
        self, mock_gateway: ResourceGateway, mock_factory: MagicMock, information, expected
    ) -> None:
        """Test the agent counts as registered only when online."""
        mock_factory.return_value.describe_instance_information.return_value = {
            "InstanceInformationList": information
        }

        assert await mock_gateway.is_broker_registered("i-1") is expected

    async def test_open_broker_session(self, mock_gateway: ResourceGateway, mock_factory: MagicMock) -> None:
        """Test a port-forwarding session to the SSH port is requested."""
        client = mock_factory.return_value
        client.start_session.return_value = {
            "SessionId": "dev-0abc",
            "TokenValue": "token",
            "StreamUrl": "wss://ssmmessages.us-east-1.amazonaws.com/v1/data-channel/dev-0abc",
        }

        session = await mock_gateway.open_broker_session("i-1")

        client.start_session.assert_called_once_with(
            Target="i-1",
            DocumentName="AWS-StartSSHSession",
            Parameters={"portNumber": ["22"]},
        )
        assert session.session_id == "dev-0abc"
        assert session.instance_id == "i-1"
        assert session.region == "us-east-1"

    async def test_close_missing_session_is_quiet(
        self, mock_gateway: ResourceGateway, mock_factory: MagicMock
    ) -> None:
        """Test closing an already closed session is not an error."""
        mock_factory.return_value.terminate_session.side_effect = client_error(
            "DoesNotExistException", "TerminateSession"
        )

        await mock_gateway.close_broker_session("dev-0abc")
