"""Instance lifecycle orchestration.

The orchestrator drives an environment through
``Requested → Provisioning → Launched → Booting → Ready`` on ``up`` and
through ``Terminating → Terminated`` on ``destroy``. Every phase change is
computed by ``transition`` and persisted through the state store before the
next cloud call, so an interrupted command leaves an accurate record behind.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from burrow.bootstrap import render
from burrow.constants import READINESS_SENTINEL
from burrow.core.config import Settings
from burrow.core.models import (
    DeveloperIdentity,
    DriftReport,
    Environment,
    InstanceStatus,
    LaunchSpec,
    Profile,
)
from burrow.core.retry import (
    Clock,
    DeadlineExceededError,
    RetryPolicy,
    SystemClock,
    poll_until,
)
from burrow.core.state import Snapshot, StateStore
from burrow.core.states import REQUESTED, Event, Phase, transition
from burrow.exceptions import (
    BurrowError,
    ConfigurationError,
    InstanceFailedError,
    LifecycleTimeoutError,
    StateConsistencyError,
)
from burrow.providers.aws.gateway import ResourceGateway
from burrow.providers.aws.infrastructure import InfrastructureConvergence
from burrow.providers.exceptions import CloudApiError

logger = logging.getLogger(__name__)

BOOT_ABORT_STATES = frozenset(("shutting-down", "terminated", "stopping", "stopped"))

BOOT_TIMEOUT_REASON = "boot-timeout"
TERMINATE_TIMEOUT_REASON = "terminate-timeout"
INTERRUPTED_REASON = "interrupted"


@dataclass(frozen=True)
class EnvironmentView:
    """An environment together with what the provider reports about it."""

    environment: Environment
    live: InstanceStatus | None = None
    drift: DriftReport | None = None
    error: str | None = None


class Orchestrator:
    """Drive environments through their lifecycle.

    Parameters
    ----------
    store : StateStore
        Durable environment records
    settings : Settings
        Region, tag namespace, deadlines and failure policy
    gateway_factory : Callable[[str, str], ResourceGateway] | None
        Builds a gateway for ``(region, tag_namespace)``
    convergence : InfrastructureConvergence | None
        Convergence engine; built from ``gateway_factory`` when omitted
    clock : Clock | None
        Time source for lifecycle polls
    """

    def __init__(
        self,
        store: StateStore,
        settings: Settings,
        gateway_factory: Callable[[str, str], Any] | None = None,
        convergence: InfrastructureConvergence | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.gateway_factory = gateway_factory or (
            lambda region, namespace: ResourceGateway(
                region, tag_namespace=namespace, clock=self.clock
            )
        )
        self.convergence = convergence or InfrastructureConvergence(self.gateway_factory)
        self._gateways: dict[str, Any] = {}

    def gateway(self, region: str) -> Any:
        """Gateway for ``region``, cached for the orchestrator's lifetime."""
        if region not in self._gateways:
            self._gateways[region] = self.gateway_factory(region, self.settings.tag_namespace)
        return self._gateways[region]

    def _polling(self, deadline: float) -> RetryPolicy:
        return RetryPolicy.polling(
            deadline,
            base_delay=self.settings.poll_base_delay,
            max_delay=self.settings.poll_max_delay,
        )

    def _advance(
        self, env: Environment, event: Event, reason: str | None = None, **changes: Any
    ) -> Environment:
        """Apply ``event`` to ``env`` and persist the result."""
        next_state = transition(env.state, event, reason)
        updated = self.store.transition(
            env.name,
            lambda current: current.with_state(next_state, **changes),
            expected=env.state,
        )
        logger.debug("Environment %s: %s -> %s", env.name, env.state, next_state)
        return updated

    def _reserve(self, env: Environment) -> Environment:
        def _apply(snap: Snapshot) -> Environment:
            existing = snap.environments.get(env.name)
            if existing is not None and existing.state.phase is not Phase.TERMINATED:
                raise ConfigurationError(
                    f"environment already exists in state {existing.state}; "
                    f"destroy it first or choose another name",
                    resource=env.name,
                )
            snap.put(env)
            return env

        return self.store.with_lock(_apply)

    async def up(
        self,
        name: str,
        profile: Profile,
        identity: DeveloperIdentity | None = None,
    ) -> Environment:
        """Create environment ``name`` and wait until it is Ready.

        Parameters
        ----------
        name : str
            Unique environment name
        profile : Profile
            Resolved profile
        identity : DeveloperIdentity | None
            SSH key, git identity and project name embedded in the boot script

        Returns
        -------
        Environment
            The Ready environment

        Raises
        ------
        ConfigurationError
            If the name is taken or the boot script is invalid
        InfrastructureError
            If shared infrastructure cannot be converged
        LifecycleTimeoutError
            If the instance does not become Ready before the boot deadline
        InstanceFailedError
            If the instance stops or terminates while booting
        """
        identity = identity or DeveloperIdentity()
        boot_script = render(profile, identity)
        region = self.settings.region
        gateway = self.gateway(region)

        env = self._reserve(
            Environment(
                name=name,
                region=region,
                profile=profile.name,
                state=REQUESTED,
                ssh_username=profile.ssh_username,
                project=identity.project_name,
            )
        )

        try:
            env = self._advance(env, Event.UP)
            logger.info("Converging infrastructure in %s...", region)
            record = await self.convergence.ensure_infrastructure(region, self.settings.tag_namespace)
            self.store.set_infrastructure(record)
            env = self._advance(env, Event.INFRA_READY, infrastructure=region)

            logger.info("Launching %s instance...", profile.instance_type)
            instance_id = await gateway.launch_instance(
                LaunchSpec(
                    name=name,
                    profile=profile,
                    infrastructure=record,
                    boot_script=boot_script,
                    tag_namespace=self.settings.tag_namespace,
                )
            )
            env = self._advance(env, Event.LAUNCHED, instance_id=instance_id)

            logger.info("Waiting for %s to boot (up to %ds)...", instance_id, self.settings.boot_timeout)
            await self._wait_until_ready(env, gateway)
            env = self._advance(env, Event.BOOTED)
        except DeadlineExceededError as e:
            await self._fail(env, BOOT_TIMEOUT_REASON)
            raise LifecycleTimeoutError(
                f"instance did not become ready within {e.deadline:g}s; "
                f"it is kept for inspection (burrow logs {name})",
                resource=name,
            ) from e
        except StateConsistencyError:
            raise
        except (BurrowError, CloudApiError) as e:
            await self._fail(env, getattr(e, "message", str(e)))
            raise
        except BaseException:
            await self._fail(env, INTERRUPTED_REASON)
            raise

        logger.info("Environment %s is ready (%s)", name, env.instance_id)
        return env

    async def _wait_until_ready(self, env: Environment, gateway: Any) -> InstanceStatus:
        """Poll until the boot sentinel is on the console and the agent is online."""

        async def check() -> InstanceStatus | None:
            status = await gateway.describe_instance(env.instance_id)

            if status.state is None or status.state in BOOT_ABORT_STATES:
                raise InstanceFailedError(
                    f"instance entered state {status.state or 'missing'} while booting"
                    + (f": {status.state_reason}" if status.state_reason else ""),
                    resource=env.instance_id,
                )

            if status.state != "running":
                return None

            console = await gateway.fetch_console_output(env.instance_id)
            if READINESS_SENTINEL not in console:
                return None

            if not await gateway.is_broker_registered(env.instance_id):
                logger.debug("Boot finished on %s; waiting for the SSM agent", env.instance_id)
                return None

            return status

        return await poll_until(
            check,
            self._polling(self.settings.boot_timeout),
            self.clock,
            description=f"boot of {env.name}",
        )

    async def _fail(self, env: Environment, reason: str) -> None:
        """Record ``Failed(reason)`` and apply the failure policy."""
        def _apply(snap: Snapshot) -> Environment | None:
            current = snap.environments.get(env.name)
            if current is None or current.state.is_terminal:
                return None
            if current.state.phase is Phase.TERMINATING:
                return None
            failed_env = current.with_state(transition(current.state, Event.FAIL, reason))
            snap.put(failed_env)
            return failed_env

        failed_env = self.store.with_lock(_apply)
        if failed_env is None:
            return

        logger.error("Environment %s failed: %s", env.name, reason)

        if not (self.settings.cleanup_on_failure and failed_env.instance_id):
            return

        logger.info("Terminating %s after failure", failed_env.instance_id)
        try:
            await self.gateway(failed_env.region).terminate_instance(failed_env.instance_id)
        except CloudApiError as e:
            logger.warning("Failed to terminate %s during cleanup: %s", failed_env.instance_id, e)

    async def destroy(self, name: str | None) -> DriftReport | None:
        """Terminate the environment's instance and remove its record.

        Shared infrastructure is never torn down. An instance that was
        already terminated out-of-band is detected by reconciliation and no
        terminate call is made.

        Returns
        -------
        DriftReport | None
            Drift detected before termination, if any

        Raises
        ------
        EnvironmentNotFoundError
            If the environment is unknown
        LifecycleTimeoutError
            If termination does not complete before the deadline; the record
            is kept as ``Failed(terminate-timeout)``
        """
        env = self.store.resolve(name)
        drift = None

        if env.instance_id is None:
            logger.info("Environment %s has no instance; removing record", env.name)
            self.store.remove(env.name)
            return None

        gateway = self.gateway(env.region)

        if env.state.phase is not Phase.TERMINATED:
            drift = await self.store.reconcile(env.name, gateway)
            env = self.store.resolve(env.name)

        if env.state.phase is Phase.TERMINATED:
            logger.info("Instance %s is already terminated", env.instance_id)
            self.store.remove(env.name)
            return drift

        if env.state.phase is not Phase.TERMINATING:
            env = self._advance(env, Event.DESTROY)

        logger.info("Terminating instance %s...", env.instance_id)
        try:
            await gateway.terminate_instance(env.instance_id)
            await self._wait_until_terminated(env, gateway)
        except DeadlineExceededError as e:
            self._advance(env, Event.FAIL, TERMINATE_TIMEOUT_REASON)
            raise LifecycleTimeoutError(
                f"instance was not terminated within {e.deadline:g}s",
                resource=env.name,
            ) from e

        self._advance(env, Event.TERMINATED)
        self.store.remove(env.name)
        logger.info("Environment %s destroyed", env.name)
        return drift

    async def _wait_until_terminated(self, env: Environment, gateway: Any) -> InstanceStatus:
        async def check() -> InstanceStatus | None:
            status = await gateway.describe_instance(env.instance_id)
            if status.exists:
                return None
            return status

        return await poll_until(
            check,
            self._polling(self.settings.terminate_timeout),
            self.clock,
            description=f"termination of {env.name}",
        )

    async def status(self, name: str | None) -> EnvironmentView:
        """Reconcile and describe one environment."""
        env = self.store.resolve(name)
        return await self._view(env)

    async def list(self) -> list[EnvironmentView]:
        """Reconcile and describe every tracked environment.

        Provider failures for one environment are reported in its view and do
        not prevent the others from being listed.
        """
        return [await self._view(env) for env in self.store.list()]

    async def _view(self, env: Environment) -> EnvironmentView:
        if env.instance_id is None or env.state.phase is Phase.TERMINATED:
            return EnvironmentView(environment=env)

        gateway = self.gateway(env.region)
        try:
            drift = await self.store.reconcile(env.name, gateway)
            live = await gateway.describe_instance(env.instance_id)
        except CloudApiError as e:
            logger.warning("Failed to query %s: %s", env.name, e)
            return EnvironmentView(environment=env, error=e.message)

        return EnvironmentView(
            environment=self.store.get(env.name) or env,
            live=live,
            drift=drift,
        )

