"""Async façade over the EC2, IAM, SSM and STS APIs.

Every method is a coroutine that runs the blocking boto3 call in a worker
thread, translates botocore failures with ``handle_aws_errors`` and retries
transient failures according to the gateway's ``RetryPolicy``. botocore's own
retry layer is disabled so that the policy is the only source of retries.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, NamedTuple

import boto3
from botocore.config import Config

from burrow.constants import (
    AWS_CONNECT_TIMEOUT_SECONDS,
    AWS_READ_TIMEOUT_SECONDS,
    DEFAULT_TAG_NAMESPACE,
    SSH_PORT,
)
from burrow.core.models import BrokerSession, InstanceStatus, LaunchSpec, Profile, utcnow
from burrow.core.retry import Clock, RetryPolicy, SystemClock, call_with_retry
from burrow.providers.aws.constants import (
    CREATED_STAMP_FORMAT,
    CREATED_TAG_SUFFIX,
    DEFAULT_EGRESS_RULE,
    EC2_ASSUME_ROLE_POLICY,
    GATEWAY_ENDPOINT_SERVICES,
    HTTPS_PORT,
    IAM_PROPAGATION_DELAY_SECONDS,
    IMAGE_FAMILIES,
    INSTANCE_PROFILE_SUFFIX,
    INTERFACE_ENDPOINT_SERVICES,
    ROLE_SUFFIX,
    ROOT_DEVICE_NAME,
    SECURITY_GROUP_SUFFIX,
    SSH_SESSION_DOCUMENT,
    SSM_MANAGED_POLICY_ARN,
    SSM_ONLINE_STATUS,
    SUBNET_CIDR,
    VPC_CIDR,
)
from burrow.providers.aws.errors import handle_aws_errors
from burrow.providers.exceptions import CloudApiError, ErrorKind

logger = logging.getLogger(__name__)

ENDPOINT_GONE_STATES = frozenset(("deleting", "deleted", "rejected", "failed", "expired"))

PERMISSION_SOURCES = {
    "CidrIp": "IpRanges",
    "CidrIpv6": "Ipv6Ranges",
    "PrefixListId": "PrefixListIds",
    "GroupId": "UserIdGroupPairs",
}

HTTPS_FROM_VPC = {
    "IpProtocol": "tcp",
    "FromPort": HTTPS_PORT,
    "ToPort": HTTPS_PORT,
    "IpRanges": [{"CidrIp": VPC_CIDR}],
}


@dataclass(frozen=True)
class NetworkResult:
    """Converged VPC, subnet and main route table."""

    vpc_id: str
    subnet_id: str
    route_table_id: str


@dataclass(frozen=True)
class RoleResult:
    """Converged IAM role and instance profile."""

    role_name: str
    instance_profile_name: str
    instance_profile_arn: str


class Candidate(NamedTuple):
    """A managed resource that concurrent creators may have duplicated.

    Candidates sort by creation stamp, then id, so every creator listing the
    same resources picks the same first one. Resources without a stamp sort
    before stamped ones.
    """

    created: str
    resource_id: str


Rule = tuple[str, Any, Any, str, str]


def permission_rules(permissions: Iterable[Mapping[str, Any]]) -> set[Rule]:
    """Flatten EC2 IP permissions into one ``(protocol, from, to, kind, source)`` per source."""
    rules = set()
    for permission in permissions:
        protocol = str(permission.get("IpProtocol"))
        ports = (None, None) if protocol == "-1" else (permission.get("FromPort"), permission.get("ToPort"))
        for kind, key in PERMISSION_SOURCES.items():
            for source in permission.get(key, []):
                rules.add((protocol, *ports, kind, source[kind]))
    return rules


def rule_permissions(rules: Iterable[Rule]) -> list[dict[str, Any]]:
    """Inverse of ``permission_rules``: one IP permission per rule."""
    permissions = []
    for protocol, from_port, to_port, kind, source in sorted(rules, key=str):
        permission: dict[str, Any] = {
            "IpProtocol": protocol,
            PERMISSION_SOURCES[kind]: [{kind: source}],
        }
        if from_port is not None:
            permission.update(FromPort=from_port, ToPort=to_port)
        permissions.append(permission)
    return permissions


def client_config() -> Config:
    """botocore configuration shared by every client the gateway creates."""
    return Config(
        connect_timeout=AWS_CONNECT_TIMEOUT_SECONDS,
        read_timeout=AWS_READ_TIMEOUT_SECONDS,
        retries={"max_attempts": 1, "mode": "standard"},
    )


class ResourceGateway:
    """Typed, retrying access to the AWS APIs burrow needs.

    Parameters
    ----------
    region : str
        AWS region for regional services
    tag_namespace : str
        Prefix of the canonical tags and of managed resource names
    boto3_client_factory : Callable[..., Any] | None
        Optional factory for creating boto3 clients. If None, uses boto3.client
    retry_policy : RetryPolicy | None
        Policy for transient failures of a single call
    clock : Clock | None
        Time source used for backoff and propagation waits
    resource_tags : Mapping[str, str] | None
        Tags placed on every resource the gateway creates
    """

    def __init__(
        self,
        region: str,
        tag_namespace: str = DEFAULT_TAG_NAMESPACE,
        boto3_client_factory: Callable[..., Any] | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        resource_tags: Mapping[str, str] | None = None,
    ) -> None:
        self.region = region
        self.tag_namespace = tag_namespace
        self.boto3_client_factory = boto3_client_factory or boto3.client
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or SystemClock()
        self.resource_tags = dict(resource_tags or {})
        self._clients: dict[str, Any] = {}

    def _client(self, service: str) -> Any:
        if service not in self._clients:
            self._clients[service] = self.boto3_client_factory(
                service, region_name=self.region, config=client_config()
            )
        return self._clients[service]

    async def _call(
        self, service: str, operation: str, resource: str | None = None, **kwargs: Any
    ) -> dict[str, Any]:
        """Invoke ``service.operation(**kwargs)`` off the event loop with retries."""
        method = getattr(self._client(service), operation)

        def invoke() -> dict[str, Any]:
            with handle_aws_errors(resource=resource, service=service):
                return method(**kwargs)

        async def attempt() -> dict[str, Any]:
            return await asyncio.to_thread(invoke)

        return await call_with_retry(
            attempt, self.retry_policy, self.clock, description=f"{service}:{operation}"
        )

    def resource_name(self, suffix: str) -> str:
        return f"{self.tag_namespace}-{suffix}"

    def canonical_tags(self, name: str, **extra: str) -> list[dict[str, str]]:
        """Tags placed on every managed resource.

        Resource tags come first, ``extra`` overrides them and the canonical
        ownership tags override both.
        """
        tags = {**self.resource_tags, **extra}
        tags.update(
            {
                f"{self.tag_namespace}:managed": "true",
                f"{self.tag_namespace}:name": name,
                "Name": name,
            }
        )
        return [{"Key": key, "Value": value} for key, value in tags.items()]

    def _tag_filters(self, name: str) -> list[dict[str, Any]]:
        return [
            {"Name": f"tag:{self.tag_namespace}:managed", "Values": ["true"]},
            {"Name": f"tag:{self.tag_namespace}:name", "Values": [name]},
        ]

    def _stamped_tags(self, name: str) -> tuple[str, list[dict[str, str]]]:
        """Canonical tags plus a creation stamp for resources created in a race."""
        stamp = utcnow().strftime(CREATED_STAMP_FORMAT)
        tags = self.canonical_tags(name, **{f"{self.tag_namespace}:{CREATED_TAG_SUFFIX}": stamp})
        return stamp, tags

    def _candidates(self, resources: Iterable[Mapping[str, Any]], id_key: str) -> list[Candidate]:
        created_key = f"{self.tag_namespace}:{CREATED_TAG_SUFFIX}"
        candidates = []
        for resource in resources:
            tags = {tag["Key"]: tag["Value"] for tag in resource.get("Tags", [])}
            candidates.append(Candidate(tags.get(created_key, ""), resource[id_key]))
        return sorted(candidates)

    async def caller_account(self) -> str:
        """Return the AWS account id of the current credentials."""
        response = await self._call("sts", "get_caller_identity")
        return response["Account"]

    async def find_vpcs(self) -> list[Candidate]:
        """Managed VPCs, earliest created first."""
        response = await self._call(
            "ec2", "describe_vpcs", Filters=self._tag_filters(self.resource_name("vpc"))
        )
        return self._candidates(response["Vpcs"], "VpcId")

    async def create_vpc(self) -> Candidate:
        stamp, tags = self._stamped_tags(self.resource_name("vpc"))
        response = await self._call(
            "ec2",
            "create_vpc",
            CidrBlock=VPC_CIDR,
            TagSpecifications=[{"ResourceType": "vpc", "Tags": tags}],
        )
        vpc_id = response["Vpc"]["VpcId"]
        logger.info("Created VPC %s", vpc_id)
        return Candidate(stamp, vpc_id)

    async def delete_vpc(self, vpc_id: str) -> None:
        await self._call("ec2", "delete_vpc", resource=vpc_id, VpcId=vpc_id)

    async def ensure_vpc_dns(self, vpc_id: str) -> None:
        """Enable DNS resolution and hostnames, which private endpoints need.

        Each attribute is read first and only modified when it is off.
        """
        for attribute, key in (
            ("enableDnsSupport", "EnableDnsSupport"),
            ("enableDnsHostnames", "EnableDnsHostnames"),
        ):
            response = await self._call(
                "ec2", "describe_vpc_attribute", resource=vpc_id, VpcId=vpc_id, Attribute=attribute
            )
            if response.get(key, {}).get("Value"):
                continue
            await self._call(
                "ec2", "modify_vpc_attribute", resource=vpc_id, VpcId=vpc_id, **{key: {"Value": True}}
            )
            logger.info("Enabled %s on %s", attribute, vpc_id)

    async def find_subnet(self, vpc_id: str) -> dict[str, Any] | None:
        response = await self._call(
            "ec2",
            "describe_subnets",
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "cidr-block", "Values": [SUBNET_CIDR]},
            ],
        )
        subnets = sorted(response["Subnets"], key=lambda subnet: subnet["SubnetId"])
        return subnets[0] if subnets else None

    async def create_subnet(self, vpc_id: str) -> dict[str, Any]:
        name = self.resource_name("subnet")
        response = await self._call(
            "ec2",
            "create_subnet",
            resource=vpc_id,
            VpcId=vpc_id,
            CidrBlock=SUBNET_CIDR,
            TagSpecifications=[{"ResourceType": "subnet", "Tags": self.canonical_tags(name)}],
        )
        subnet = response["Subnet"]
        logger.info("Created subnet %s in %s", subnet["SubnetId"], vpc_id)
        return subnet

    async def ensure_private_subnet(self, subnet: Mapping[str, Any]) -> None:
        """Stop ``subnet`` from assigning public addresses at launch."""
        if not subnet.get("MapPublicIpOnLaunch"):
            return
        subnet_id = subnet["SubnetId"]
        await self._call(
            "ec2",
            "modify_subnet_attribute",
            resource=subnet_id,
            SubnetId=subnet_id,
            MapPublicIpOnLaunch={"Value": False},
        )
        logger.info("Disabled public addresses on %s", subnet_id)

    async def main_route_table(self, vpc_id: str) -> str:
        response = await self._call(
            "ec2",
            "describe_route_tables",
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "association.main", "Values": ["true"]},
            ],
        )
        tables = response["RouteTables"]
        if not tables:
            raise CloudApiError(
                "VPC has no main route table",
                kind=ErrorKind.NOT_FOUND,
                operation="ec2:DescribeRouteTables",
                resource=vpc_id,
            )
        return tables[0]["RouteTableId"]

    async def ensure_network(self) -> NetworkResult:
        """Converge the managed VPC and its private subnet.

        VPCs have no unique name, so concurrent creators each create one,
        re-list by tag and keep the earliest created; a creator whose VPC
        lost deletes it. DNS attributes and the subnet's address policy are
        enforced on found resources as well as new ones.
        """
        vpc_id = await self._elect("VPC", self.find_vpcs, self.create_vpc, self.delete_vpc)
        await self.ensure_vpc_dns(vpc_id)

        subnet = await self.find_subnet(vpc_id)
        if subnet is None:
            try:
                subnet = await self.create_subnet(vpc_id)
            except CloudApiError as e:
                if e.kind is not ErrorKind.CONFLICT:
                    raise
                logger.debug("Subnet in %s created concurrently; re-reading", vpc_id)
                subnet = await self.find_subnet(vpc_id)
                if subnet is None:
                    raise
        await self.ensure_private_subnet(subnet)

        route_table_id = await self.main_route_table(vpc_id)
        return NetworkResult(
            vpc_id=vpc_id, subnet_id=subnet["SubnetId"], route_table_id=route_table_id
        )

    async def find_security_group(self, vpc_id: str, name: str) -> dict[str, Any] | None:
        response = await self._call(
            "ec2",
            "describe_security_groups",
            Filters=[
                {"Name": "group-name", "Values": [name]},
                {"Name": "vpc-id", "Values": [vpc_id]},
            ],
        )
        groups = response["SecurityGroups"]
        return groups[0] if groups else None

    async def ensure_security_group(self, vpc_id: str, purpose: str = "instances") -> str:
        """Converge a managed security group in ``vpc_id``.

        ``instances`` groups allow no inbound traffic and only HTTPS egress to
        the VPC CIDR. ``endpoints`` groups accept only HTTPS from the VPC CIDR
        so instances can reach the private broker endpoints. The policy is
        enforced on an existing group too: missing rules are added and any
        other rule is revoked.

        Parameters
        ----------
        vpc_id : str
            VPC to create the group in
        purpose : str
            ``instances`` or ``endpoints``

        Returns
        -------
        str
            Security group id
        """
        if purpose == "instances":
            name = self.resource_name(SECURITY_GROUP_SUFFIX)
        else:
            name = self.resource_name(f"{purpose}-{SECURITY_GROUP_SUFFIX}")

        group = await self.find_security_group(vpc_id, name)
        if group is None:
            group = await self._create_security_group(vpc_id, name, purpose)

        if purpose == "instances":
            await self._enforce_rules(group, "ingress", [])
            await self._enforce_rules(group, "egress", [HTTPS_FROM_VPC])
        else:
            await self._enforce_rules(group, "ingress", [HTTPS_FROM_VPC])

        return group["GroupId"]

    async def _create_security_group(self, vpc_id: str, name: str, purpose: str) -> dict[str, Any]:
        try:
            response = await self._call(
                "ec2",
                "create_security_group",
                resource=name,
                GroupName=name,
                Description=f"{self.tag_namespace} managed {purpose}",
                VpcId=vpc_id,
                TagSpecifications=[
                    {"ResourceType": "security-group", "Tags": self.canonical_tags(name)}
                ],
            )
        except CloudApiError as e:
            if e.kind is not ErrorKind.CONFLICT:
                raise
            logger.debug("Security group %s created concurrently; re-reading", name)
            group = await self.find_security_group(vpc_id, name)
            if group is None:
                raise
            return group

        logger.info("Created security group %s (%s)", response["GroupId"], name)
        return {
            "GroupId": response["GroupId"],
            "IpPermissions": [],
            "IpPermissionsEgress": [DEFAULT_EGRESS_RULE],
        }

    async def _enforce_rules(
        self, group: Mapping[str, Any], direction: str, wanted: list[dict[str, Any]]
    ) -> None:
        """Make the ``direction`` rules of ``group`` exactly ``wanted``.

        Authorizing a rule that already exists and revoking one that is
        already gone are both treated as done.
        """
        group_id = group["GroupId"]
        key = "IpPermissions" if direction == "ingress" else "IpPermissionsEgress"
        current = permission_rules(group.get(key, []))
        target = permission_rules(wanted)

        missing = target - current
        if missing:
            try:
                await self._call(
                    "ec2",
                    f"authorize_security_group_{direction}",
                    resource=group_id,
                    GroupId=group_id,
                    IpPermissions=rule_permissions(missing),
                )
            except CloudApiError as e:
                if e.kind is not ErrorKind.CONFLICT:
                    raise

        stray = current - target
        if stray:
            logger.info("Revoking %d unexpected %s rule(s) on %s", len(stray), direction, group_id)
            try:
                await self._call(
                    "ec2",
                    f"revoke_security_group_{direction}",
                    resource=group_id,
                    GroupId=group_id,
                    IpPermissions=rule_permissions(stray),
                )
            except CloudApiError as e:
                if e.kind is not ErrorKind.NOT_FOUND:
                    raise

    async def find_endpoints(self, vpc_id: str, service: str) -> list[Candidate]:
        """Live managed endpoints for ``service`` in ``vpc_id``, earliest created first.

        Endpoints are looked up by their canonical tags; the VPC and state are
        checked on the response.
        """
        response = await self._call(
            "ec2",
            "describe_vpc_endpoints",
            Filters=self._tag_filters(self.resource_name(f"{service}-endpoint")),
        )
        live = [
            endpoint
            for endpoint in response["VpcEndpoints"]
            if endpoint.get("VpcId") == vpc_id
            and endpoint.get("State", "available").lower() not in ENDPOINT_GONE_STATES
        ]
        return self._candidates(live, "VpcEndpointId")

    async def create_endpoint(
        self, network: NetworkResult, service: str, security_group_id: str
    ) -> Candidate:
        service_name = f"com.amazonaws.{self.region}.{service}"
        stamp, tags = self._stamped_tags(self.resource_name(f"{service}-endpoint"))
        params: dict[str, Any] = {
            "VpcId": network.vpc_id,
            "ServiceName": service_name,
            "TagSpecifications": [{"ResourceType": "vpc-endpoint", "Tags": tags}],
        }

        if service in GATEWAY_ENDPOINT_SERVICES:
            params.update(VpcEndpointType="Gateway", RouteTableIds=[network.route_table_id])
        else:
            params.update(
                VpcEndpointType="Interface",
                SubnetIds=[network.subnet_id],
                SecurityGroupIds=[security_group_id],
                PrivateDnsEnabled=True,
            )

        response = await self._call("ec2", "create_vpc_endpoint", resource=service_name, **params)
        endpoint_id = response["VpcEndpoint"]["VpcEndpointId"]
        logger.info("Created %s endpoint %s", service, endpoint_id)
        return Candidate(stamp, endpoint_id)

    async def delete_endpoint(self, endpoint_id: str) -> None:
        await self._call("ec2", "delete_vpc_endpoints", resource=endpoint_id, VpcEndpointIds=[endpoint_id])

    async def ensure_endpoints(self, network: NetworkResult, security_group_id: str) -> tuple[str, ...]:
        """Converge the broker interface endpoints and the S3 gateway endpoint."""
        endpoint_ids = []

        for service in (*INTERFACE_ENDPOINT_SERVICES, *GATEWAY_ENDPOINT_SERVICES):

            async def find(service: str = service) -> list[Candidate]:
                return await self.find_endpoints(network.vpc_id, service)

            async def create(service: str = service) -> Candidate:
                return await self.create_endpoint(network, service, security_group_id)

            endpoint_ids.append(
                await self._elect(f"{service} endpoint", find, create, self.delete_endpoint)
            )

        return tuple(endpoint_ids)

    async def _elect(
        self,
        kind: str,
        find: Callable[[], Awaitable[list[Candidate]]],
        create: Callable[[], Awaitable[Candidate]],
        delete: Callable[[str], Awaitable[None]],
    ) -> str:
        """Find-or-create a resource that has no unique name.

        Returns the earliest created existing resource. After creating,
        re-lists: if an earlier resource exists the created one lost a race
        and is deleted. The created resource takes part in the election even
        when the re-listing does not show it yet.
        """
        existing = await find()
        if existing:
            return existing[0].resource_id

        created = await create()
        winner = min([*await find(), created])

        if winner.resource_id != created.resource_id:
            logger.info(
                "Concurrent %s creation detected; keeping %s, deleting %s",
                kind, winner.resource_id, created.resource_id,
            )
            try:
                await delete(created.resource_id)
            except CloudApiError as e:
                logger.warning("Failed to delete duplicate %s %s: %s", kind, created.resource_id, e)

        return winner.resource_id

    async def ensure_role(self) -> RoleResult:
        """Converge the instance role (with the SSM core policy) and its profile."""
        role_name = self.resource_name(ROLE_SUFFIX)
        profile_name = self.resource_name(INSTANCE_PROFILE_SUFFIX)

        try:
            await self._call("iam", "get_role", resource=role_name, RoleName=role_name)
        except CloudApiError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
            await self._ignore_conflict(
                self._call(
                    "iam",
                    "create_role",
                    resource=role_name,
                    RoleName=role_name,
                    AssumeRolePolicyDocument=json.dumps(EC2_ASSUME_ROLE_POLICY),
                    Description=f"Role for {self.tag_namespace} managed instances",
                    Tags=self.canonical_tags(role_name),
                )
            )
            logger.info("Created IAM role %s", role_name)

        attached = await self._call(
            "iam", "list_attached_role_policies", resource=role_name, RoleName=role_name
        )
        if not any(p["PolicyArn"] == SSM_MANAGED_POLICY_ARN for p in attached["AttachedPolicies"]):
            await self._call(
                "iam",
                "attach_role_policy",
                resource=role_name,
                RoleName=role_name,
                PolicyArn=SSM_MANAGED_POLICY_ARN,
            )

        try:
            response = await self._call(
                "iam", "get_instance_profile", resource=profile_name, InstanceProfileName=profile_name
            )
        except CloudApiError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
            await self._ignore_conflict(
                self._call(
                    "iam",
                    "create_instance_profile",
                    resource=profile_name,
                    InstanceProfileName=profile_name,
                    Tags=self.canonical_tags(profile_name),
                )
            )
            logger.info("Created instance profile %s", profile_name)
            response = await self._call(
                "iam", "get_instance_profile", resource=profile_name, InstanceProfileName=profile_name
            )

        profile = response["InstanceProfile"]
        if not any(role["RoleName"] == role_name for role in profile.get("Roles", [])):
            try:
                await self._call(
                    "iam",
                    "add_role_to_instance_profile",
                    resource=profile_name,
                    InstanceProfileName=profile_name,
                    RoleName=role_name,
                )
            except CloudApiError as e:
                # IAM reports an already attached role as LimitExceeded.
                if e.kind is not ErrorKind.CONFLICT and e.error_code != "LimitExceeded":
                    raise
            await self.clock.sleep(IAM_PROPAGATION_DELAY_SECONDS)

        return RoleResult(
            role_name=role_name,
            instance_profile_name=profile_name,
            instance_profile_arn=profile["Arn"],
        )

    async def _ignore_conflict(self, call: Awaitable[Any]) -> None:
        try:
            await call
        except CloudApiError as e:
            if e.kind is not ErrorKind.CONFLICT:
                raise
            logger.debug("%s already exists", e.resource)

    async def resolve_image(self, profile: Profile) -> str:
        """Resolve the AMI id for ``profile``: explicit id, or newest image of its family.

        Raises
        ------
        CloudApiError
            If the family is unknown or no image matches
        """
        if profile.image_id:
            return profile.image_id

        if profile.image_family not in IMAGE_FAMILIES:
            raise CloudApiError(
                f"Unknown image family '{profile.image_family}'. "
                f"Available: {', '.join(sorted(IMAGE_FAMILIES))}",
                kind=ErrorKind.INVALID,
                resource=profile.name,
            )

        owner, pattern, arch_names = IMAGE_FAMILIES[profile.image_family]
        name_pattern = pattern.format(arch=arch_names[profile.architecture])

        response = await self._call(
            "ec2",
            "describe_images",
            Owners=[owner],
            Filters=[
                {"Name": "name", "Values": [name_pattern]},
                {"Name": "state", "Values": ["available"]},
                {"Name": "architecture", "Values": [profile.architecture]},
            ],
        )
        images = sorted(response["Images"], key=lambda image: image["CreationDate"], reverse=True)

        if not images:
            raise CloudApiError(
                f"No image matches {name_pattern} in {self.region}",
                kind=ErrorKind.NOT_FOUND,
                operation="ec2:DescribeImages",
                resource=profile.image_family,
            )

        return images[0]["ImageId"]

    async def launch_instance(self, spec: LaunchSpec) -> str:
        """Launch one instance and return its id.

        The launch carries a client token so a retried request cannot start a
        second instance. The instance never gets a public address, requires
        IMDSv2 and has an encrypted root volume.
        """
        image_id = await self.resolve_image(spec.profile)
        tags = self.canonical_tags(spec.name, **dict(spec.profile.tags))
        volume: dict[str, Any] = {
            "VolumeSize": spec.profile.volume_size_gb,
            "VolumeType": spec.profile.volume_type,
            "Encrypted": True,
            "DeleteOnTermination": True,
        }
        if spec.profile.volume_iops is not None:
            volume["Iops"] = spec.profile.volume_iops
        if spec.profile.volume_throughput is not None:
            volume["Throughput"] = spec.profile.volume_throughput

        response = await self._call(
            "ec2",
            "run_instances",
            resource=spec.name,
            ClientToken=str(uuid.uuid4()),
            ImageId=image_id,
            InstanceType=spec.profile.instance_type,
            MinCount=1,
            MaxCount=1,
            UserData=spec.boot_script,
            IamInstanceProfile={"Arn": spec.infrastructure.instance_profile_arn},
            NetworkInterfaces=[
                {
                    "DeviceIndex": 0,
                    "SubnetId": spec.infrastructure.subnet_id,
                    "Groups": [spec.infrastructure.security_group_id],
                    "AssociatePublicIpAddress": False,
                }
            ],
            MetadataOptions={"HttpTokens": "required", "HttpEndpoint": "enabled"},
            BlockDeviceMappings=[{"DeviceName": ROOT_DEVICE_NAME, "Ebs": volume}],
            TagSpecifications=[
                {"ResourceType": "instance", "Tags": tags},
                {"ResourceType": "volume", "Tags": tags},
            ],
        )

        instance_id = response["Instances"][0]["InstanceId"]
        logger.info("Launched instance %s for %s", instance_id, spec.name)
        return instance_id

    async def describe_instance(self, instance_id: str) -> InstanceStatus:
        """Live status of ``instance_id``; ``state`` is None if it no longer exists."""
        try:
            response = await self._call(
                "ec2", "describe_instances", resource=instance_id, InstanceIds=[instance_id]
            )
        except CloudApiError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return InstanceStatus(instance_id=instance_id, state=None)
            raise

        instances = [
            instance
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]
        if not instances:
            return InstanceStatus(instance_id=instance_id, state=None)

        instance = instances[0]
        return InstanceStatus(
            instance_id=instance_id,
            state=instance["State"]["Name"],
            instance_type=instance.get("InstanceType"),
            launch_time=instance.get("LaunchTime"),
            private_ip=instance.get("PrivateIpAddress"),
            state_reason=instance.get("StateReason", {}).get("Message"),
        )

    async def terminate_instance(self, instance_id: str) -> None:
        """Request termination; an already missing instance is not an error."""
        try:
            await self._call(
                "ec2", "terminate_instances", resource=instance_id, InstanceIds=[instance_id]
            )
        except CloudApiError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
            logger.info("Instance %s no longer exists", instance_id)

    async def fetch_console_output(self, instance_id: str) -> str:
        """Serial console output, or an empty string when none is available yet."""
        response = await self._call(
            "ec2", "get_console_output", resource=instance_id, InstanceId=instance_id, Latest=True
        )
        output = response.get("Output") or ""
        if not output:
            return ""

        try:
            return base64.b64decode(output, validate=True).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError):
            return output

    async def is_broker_registered(self, instance_id: str) -> bool:
        """Whether the SSM agent on ``instance_id`` is registered and online."""
        response = await self._call(
            "ssm",
            "describe_instance_information",
            resource=instance_id,
            Filters=[{"Key": "InstanceIds", "Values": [instance_id]}],
        )
        return any(
            info.get("PingStatus") == SSM_ONLINE_STATUS
            for info in response.get("InstanceInformationList", [])
        )

    async def open_broker_session(self, instance_id: str, port: int = SSH_PORT) -> BrokerSession:
        """Start an SSM session forwarding to ``port`` on the instance."""
        response = await self._call(
            "ssm",
            "start_session",
            resource=instance_id,
            Target=instance_id,
            DocumentName=SSH_SESSION_DOCUMENT,
            Parameters={"portNumber": [str(port)]},
        )
        logger.debug("Opened broker session %s to %s", response["SessionId"], instance_id)
        return BrokerSession(
            session_id=response["SessionId"],
            token=response["TokenValue"],
            stream_url=response["StreamUrl"],
            instance_id=instance_id,
            region=self.region,
        )

    async def close_broker_session(self, session_id: str) -> None:
        """Terminate a broker session; an already closed session is not an error."""
        try:
            await self._call("ssm", "terminate_session", resource=session_id, SessionId=session_id)
        except CloudApiError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
        logger.debug("Closed broker session %s", session_id)
