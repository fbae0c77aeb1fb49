"""Data model shared by the orchestrator, state store and transport."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from burrow.constants import DEFAULT_SSH_USERNAME
from burrow.core.states import REQUESTED, LifecycleState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class Profile:
    """Resolved, validated environment template.

    Attributes
    ----------
    name : str
        Profile name
    instance_type : str
        EC2 instance type
    image_id : str | None
        Explicit AMI id; overrides ``image_family``
    image_family : str
        Image family used for AMI lookup (e.g. ``ubuntu-24.04``)
    architecture : str
        ``x86_64`` or ``arm64``
    volume_size_gb : int
        Root volume size
    volume_type : str
        Root volume type
    volume_iops : int | None
        Provisioned IOPS of the root volume (gp3, io1 and io2 only)
    volume_throughput : int | None
        Throughput of the root volume in MiB/s (gp3 only)
    packages : tuple[str, ...]
        System packages installed by the boot script
    environment : tuple[tuple[str, str], ...]
        Environment variables exported for the login user
    tags : tuple[tuple[str, str], ...]
        Extra tags applied to the instance
    ssh_username : str
        Login user on the image
    """

    name: str = "default"
    instance_type: str = "t3.large"
    image_id: str | None = None
    image_family: str = "ubuntu-24.04"
    architecture: str = "x86_64"
    volume_size_gb: int = 30
    volume_type: str = "gp3"
    volume_iops: int | None = None
    volume_throughput: int | None = None
    packages: tuple[str, ...] = ()
    environment: tuple[tuple[str, str], ...] = ()
    tags: tuple[tuple[str, str], ...] = ()
    ssh_username: str = DEFAULT_SSH_USERNAME


@dataclass(frozen=True)
class DeveloperIdentity:
    """Developer identity embedded into the boot script."""

    ssh_public_key: str | None = None
    git_name: str | None = None
    git_email: str | None = None
    project_name: str | None = None


@dataclass(frozen=True)
class InfrastructureRecord:
    """Converged network, security and identity prerequisites for a region."""

    region: str
    vpc_id: str
    subnet_ids: tuple[str, ...]
    security_group_id: str
    instance_profile_name: str
    instance_profile_arn: str
    role_name: str
    account_id: str | None = None
    endpoint_ids: tuple[str, ...] = ()
    endpoint_security_group_id: str | None = None

    @property
    def subnet_id(self) -> str:
        return self.subnet_ids[0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "region": self.region,
            "account_id": self.account_id,
            "vpc_id": self.vpc_id,
            "subnet_ids": list(self.subnet_ids),
            "security_group_id": self.security_group_id,
            "instance_profile_name": self.instance_profile_name,
            "instance_profile_arn": self.instance_profile_arn,
            "role_name": self.role_name,
            "endpoint_ids": list(self.endpoint_ids),
            "endpoint_security_group_id": self.endpoint_security_group_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InfrastructureRecord:
        return cls(
            region=data["region"],
            account_id=data.get("account_id"),
            vpc_id=data["vpc_id"],
            subnet_ids=tuple(data["subnet_ids"]),
            security_group_id=data["security_group_id"],
            instance_profile_name=data["instance_profile_name"],
            instance_profile_arn=data["instance_profile_arn"],
            role_name=data["role_name"],
            endpoint_ids=tuple(data.get("endpoint_ids", ())),
            endpoint_security_group_id=data.get("endpoint_security_group_id"),
        )


@dataclass(frozen=True)
class Environment:
    """One logical remote development instance and its tracked metadata.

    ``infrastructure`` is the region key of the shared
    ``InfrastructureRecord`` in the state snapshot.
    """

    name: str
    region: str
    profile: str
    state: LifecycleState = REQUESTED
    instance_id: str | None = None
    infrastructure: str | None = None
    ssh_username: str = DEFAULT_SSH_USERNAME
    project: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    observed_at: datetime | None = None

    def with_state(self, state: LifecycleState, **changes: Any) -> Environment:
        """Return a copy in ``state`` with ``observed_at`` refreshed."""
        return replace(self, state=state, observed_at=utcnow(), **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "instance_id": self.instance_id,
            "region": self.region,
            "profile": self.profile,
            "infrastructure": self.infrastructure,
            "state": self.state.to_dict(),
            "ssh_username": self.ssh_username,
            "project": self.project,
            "created_at": self.created_at.isoformat(),
            "observed_at": self.observed_at.isoformat() if self.observed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Environment:
        return cls(
            name=data["name"],
            instance_id=data.get("instance_id"),
            region=data["region"],
            profile=data["profile"],
            infrastructure=data.get("infrastructure"),
            state=LifecycleState.from_dict(data["state"]),
            ssh_username=data.get("ssh_username", DEFAULT_SSH_USERNAME),
            project=data.get("project"),
            created_at=_parse_time(data["created_at"]) or utcnow(),
            observed_at=_parse_time(data.get("observed_at")),
        )


@dataclass(frozen=True)
class InstanceStatus:
    """Live status of an instance as reported by the provider.

    ``state`` is the provider's state name (``pending``, ``running``,
    ``terminated``...) or ``None`` when the instance no longer exists.
    """

    instance_id: str
    state: str | None
    instance_type: str | None = None
    launch_time: datetime | None = None
    private_ip: str | None = None
    state_reason: str | None = None

    @property
    def exists(self) -> bool:
        return self.state is not None and self.state != "terminated"


@dataclass(frozen=True)
class LaunchSpec:
    """Everything the gateway needs to launch an instance."""

    name: str
    profile: Profile
    infrastructure: InfrastructureRecord
    boot_script: str
    tag_namespace: str


@dataclass(frozen=True)
class BrokerSession:
    """Broker-issued session for one instance."""

    session_id: str
    token: str
    stream_url: str
    instance_id: str
    region: str


@dataclass(frozen=True)
class DriftReport:
    """Disagreement between the stored and live state of an environment."""

    name: str
    instance_id: str | None
    stored: LifecycleState
    live_state: str | None
    reconciled: LifecycleState

    def describe(self) -> str:
        live = self.live_state or "missing"
        return (
            f"Environment '{self.name}' ({self.instance_id}) was {self.stored} "
            f"locally but is {live} in the cloud; now {self.reconciled}"
        )
