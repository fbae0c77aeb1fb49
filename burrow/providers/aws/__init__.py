"""AWS resource gateway and infrastructure convergence."""

from __future__ import annotations

from burrow.providers.aws.gateway import ResourceGateway
from burrow.providers.aws.infrastructure import InfrastructureConvergence

__all__ = ["ResourceGateway", "InfrastructureConvergence"]
