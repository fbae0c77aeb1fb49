"""AWS-specific constants for the resource gateway and convergence engine.

This module contains constants specific to AWS: network layout, the fixed
security policy, IAM names, image lookup and error code classification.
"""

VPC_CIDR = "10.0.0.0/16"
"""CIDR block of the managed VPC."""

SUBNET_CIDR = "10.0.1.0/24"
"""CIDR block of the managed private subnet."""

SECURITY_GROUP_SUFFIX = "sg"
"""Security group name is ``<namespace>-sg``."""

HTTPS_PORT = 443
"""Only egress port the managed security group allows."""

CREATED_TAG_SUFFIX = "created"
"""Tag ``<namespace>:created`` records when a racing resource was created."""

CREATED_STAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
"""Fixed-width UTC timestamp, so creation stamps sort as strings."""

DEFAULT_EGRESS_RULE = {"IpProtocol": "-1", "IpRanges": [{"CidrIp": "0.0.0.0/0"}]}
"""Allow-all egress rule every new VPC security group starts with."""

INTERFACE_ENDPOINT_SERVICES = ("ssm", "ssmmessages", "ec2messages")
"""Interface endpoints the SSM agent needs to reach the broker privately."""

GATEWAY_ENDPOINT_SERVICES = ("s3",)
"""Gateway endpoints for package and agent downloads."""

ROLE_SUFFIX = "instance-role"
"""IAM role name is ``<namespace>-instance-role``."""

INSTANCE_PROFILE_SUFFIX = "instance-profile"
"""Instance profile name is ``<namespace>-instance-profile``."""

SSM_MANAGED_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"
"""Managed policy that lets the SSM agent register and carry sessions."""

EC2_ASSUME_ROLE_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}
"""Trust policy allowing EC2 instances to assume the managed role."""

CANONICAL_OWNER_ID = "099720109477"
"""AWS account publishing the official Ubuntu images."""

IMAGE_FAMILIES = {
    "ubuntu-24.04": (
        CANONICAL_OWNER_ID,
        "ubuntu/images/hvm-ssd-gp3/ubuntu-noble-24.04-{arch}-server-*",
        {"x86_64": "amd64", "arm64": "arm64"},
    ),
    "ubuntu-22.04": (
        CANONICAL_OWNER_ID,
        "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-{arch}-server-*",
        {"x86_64": "amd64", "arm64": "arm64"},
    ),
}
"""Image family to (owner, name pattern, architecture spelling) used for AMI lookup.

Only Ubuntu families are listed because the boot script relies on apt and the
snap-packaged SSM agent.
"""

ROOT_DEVICE_NAME = "/dev/sda1"
"""Root device of the Ubuntu images."""

SSH_SESSION_DOCUMENT = "AWS-StartSSHSession"
"""SSM document that tunnels a TCP stream to the instance's SSH port."""

SSM_ONLINE_STATUS = "Online"
"""PingStatus reported by SSM for a registered, reachable agent."""

IAM_PROPAGATION_DELAY_SECONDS = 10.0
"""Wait after creating an instance profile before EC2 can use it."""

THROTTLING_ERROR_CODES = frozenset(
    (
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "SlowDown",
    )
)

UNAVAILABLE_ERROR_CODES = frozenset(
    (
        "InternalError",
        "InternalFailure",
        "ServiceUnavailable",
        "Unavailable",
        "RequestTimeout",
        "RequestTimeoutException",
        "InsufficientInstanceCapacity",
    )
)

UNAUTHORIZED_ERROR_CODES = frozenset(
    (
        "UnauthorizedOperation",
        "AccessDenied",
        "AccessDeniedException",
        "AuthFailure",
        "InvalidClientTokenId",
        "ExpiredToken",
        "ExpiredTokenException",
        "SignatureDoesNotMatch",
    )
)

CONFLICT_ERROR_CODES = frozenset(
    (
        "InvalidGroup.Duplicate",
        "EntityAlreadyExists",
        "InvalidSubnet.Conflict",
        "InvalidPermission.Duplicate",
        "RouteAlreadyExists",
    )
)
"""Codes meaning the resource (or a competing one) already exists."""

NOT_FOUND_SUFFIXES = (".NotFound", "NoSuchEntity", "NotFoundException", "DoesNotExistException")
"""Error code endings classified as ``NotFound``."""
