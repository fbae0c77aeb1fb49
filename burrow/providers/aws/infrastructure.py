"""Convergence of the shared network, security and identity prerequisites."""

from __future__ import annotations

import logging
from collections.abc import Callable

from burrow.core.models import InfrastructureRecord
from burrow.exceptions import InfrastructureError
from burrow.providers.aws.gateway import ResourceGateway
from burrow.providers.exceptions import CloudApiError, ErrorKind

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[str, str], ResourceGateway]


class InfrastructureConvergence:
    """Idempotently bring a region's shared infrastructure into existence.

    Every step looks up before it creates, so converging a complete set of
    resources issues only read calls. Creation happens in dependency order:
    VPC, subnet, security groups, broker endpoints, then the IAM role and
    instance profile.

    Parameters
    ----------
    gateway_factory : Callable[[str, str], ResourceGateway]
        Builds a gateway for ``(region, tag_namespace)``
    """

    def __init__(self, gateway_factory: GatewayFactory | None = None) -> None:
        self.gateway_factory = gateway_factory or (
            lambda region, namespace: ResourceGateway(region, tag_namespace=namespace)
        )

    async def ensure_infrastructure(self, region: str, tag_namespace: str) -> InfrastructureRecord:
        """Return the region's infrastructure, creating whatever is missing.

        Parameters
        ----------
        region : str
            AWS region
        tag_namespace : str
            Prefix of the canonical tags and resource names

        Returns
        -------
        InfrastructureRecord
            Identifiers of the converged resources

        Raises
        ------
        InfrastructureError
            If any resource cannot be found or created; names the missing
            capability when the cause is a permission failure
        """
        gateway = self.gateway_factory(region, tag_namespace)
        step = "account"

        try:
            account_id = await gateway.caller_account()

            step = "network"
            network = await gateway.ensure_network()

            step = "security group"
            security_group_id = await gateway.ensure_security_group(network.vpc_id)
            endpoint_group_id = await gateway.ensure_security_group(
                network.vpc_id, purpose="endpoints"
            )

            step = "broker endpoints"
            endpoint_ids = await gateway.ensure_endpoints(network, endpoint_group_id)

            step = "instance role"
            role = await gateway.ensure_role()
        except CloudApiError as e:
            raise self._infrastructure_error(step, e) from e

        record = InfrastructureRecord(
            region=region,
            account_id=account_id,
            vpc_id=network.vpc_id,
            subnet_ids=(network.subnet_id,),
            security_group_id=security_group_id,
            endpoint_security_group_id=endpoint_group_id,
            instance_profile_name=role.instance_profile_name,
            instance_profile_arn=role.instance_profile_arn,
            role_name=role.role_name,
            endpoint_ids=endpoint_ids,
        )
        logger.info(
            "Infrastructure ready in %s: vpc %s, subnet %s, security group %s",
            region,
            record.vpc_id,
            record.subnet_id,
            record.security_group_id,
        )
        return record

    def _infrastructure_error(self, step: str, error: CloudApiError) -> InfrastructureError:
        if error.kind is ErrorKind.UNAUTHORIZED:
            return InfrastructureError(
                f"not permitted to converge {step}: {error.message}",
                resource=step,
                capability=error.operation,
            )
        return InfrastructureError(
            f"failed to converge {step}: {error.message}",
            resource=error.resource or step,
        )
