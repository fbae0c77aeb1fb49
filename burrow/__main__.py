#!/usr/bin/env python3
"""Burrow - keyless remote development environments on EC2."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any, TypeVar

from omegaconf import OmegaConf

from burrow.bootstrap import find_ssh_public_key
from burrow.constants import INIT_LOG_PATH
from burrow.core.config import ConfigLoader, Settings
from burrow.core.models import DeveloperIdentity, Environment
from burrow.core.retry import Clock
from burrow.core.state import StateStore
from burrow.core.states import Phase
from burrow.exceptions import ConfigurationError
from burrow.lifecycle import EnvironmentView, Orchestrator
from burrow.providers.aws.gateway import ResourceGateway
from burrow.services.broker import ChannelFactory
from burrow.services.doctor import PrerequisiteChecker
from burrow.services.sync import SyncBridge, SyncResult
from burrow.services.transport import Capability, SessionTransport
from burrow.utils import (
    format_time_ago,
    generate_environment_name,
    get_git_identity,
    get_git_project_name,
    is_git_repository,
    sanitize_environment_name,
    truncate_name,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Burrow:
    """Command-line interface for burrow.

    Parameters
    ----------
    gateway_factory : Callable[[str, str], ResourceGateway] | None
        Builds a gateway for ``(region, tag_namespace)``
    channel_factory : ChannelFactory | None
        Builds broker channels for sessions
    state_dir : str | None
        State directory (default: ``BURROW_DIR`` or ``~/.burrow``)
    config_path : str | None
        Configuration file (default: ``BURROW_CONFIG`` or ``burrow.yaml``)
    clock : Clock | None
        Time source for lifecycle polls
    """

    def __init__(
        self,
        gateway_factory: Callable[[str, str], Any] | None = None,
        channel_factory: ChannelFactory | None = None,
        state_dir: str | None = None,
        config_path: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config_loader = ConfigLoader()
        self._config_path = config_path
        self._config: dict[str, Any] | None = None
        self._gateway_factory = gateway_factory
        self._channel_factory = channel_factory
        self._state_dir = Path(state_dir) if state_dir else None
        self._clock = clock
        self._store: StateStore | None = None

    def _load_config(self) -> dict[str, Any]:
        if self._config is None:
            self._config = self._config_loader.load_config(self._config_path)
        return self._config

    def _settings(self, region: str | None = None) -> Settings:
        settings = self._config_loader.settings(self._load_config())
        if region:
            settings = dataclasses.replace(settings, region=region)
        return settings

    def _state_store(self) -> StateStore:
        if self._store is None:
            self._store = StateStore(self._state_dir, lock_timeout=self._settings().lock_timeout)
        return self._store

    def _gateway(self, region: str, tag_namespace: str) -> Any:
        if self._gateway_factory is not None:
            return self._gateway_factory(region, tag_namespace)
        return ResourceGateway(
            region,
            tag_namespace=tag_namespace,
            clock=self._clock,
            resource_tags=dict(self._settings().resource_tags),
        )

    def _orchestrator(self, settings: Settings | None = None) -> Orchestrator:
        return Orchestrator(
            self._state_store(),
            settings or self._settings(),
            gateway_factory=self._gateway,
            clock=self._clock,
        )

    def _transport(self) -> SessionTransport:
        return SessionTransport(
            gateway_factory=self._gateway,
            channel_factory=self._channel_factory,
            tag_namespace=self._settings().tag_namespace,
        )

    def _sync_bridge(self) -> SyncBridge:
        return SyncBridge(self._transport())

    def _resolve(self, name: str | None) -> Environment:
        return self._state_store().resolve(name, Path.cwd())

    @staticmethod
    def _run(coroutine: Coroutine[Any, Any, T]) -> T:
        return asyncio.run(coroutine)

    def _identity(self, directory: str) -> DeveloperIdentity:
        ssh_public_key = find_ssh_public_key(Path(directory))
        if ssh_public_key is None:
            raise ConfigurationError(
                "no SSH public key found; create ~/.ssh/id_ed25519.pub "
                "or put one in .burrow/ssh_public_key"
            )

        if not is_git_repository(directory):
            return DeveloperIdentity(ssh_public_key=ssh_public_key)

        git_name, git_email = get_git_identity(directory)
        return DeveloperIdentity(
            ssh_public_key=ssh_public_key,
            git_name=git_name,
            git_email=git_email,
            project_name=get_git_project_name(directory),
        )

    def up(
        self,
        name: str | None = None,
        profile: str | None = None,
        region: str | None = None,
        link: bool = True,
        cleanup_on_failure: bool | None = None,
    ) -> None:
        """Create an environment and wait until it is ready.

        Parameters
        ----------
        name : str | None
            Environment name (default: derived from the git project and branch)
        profile : str | None
            Profile from burrow.yaml (default: ``default``)
        region : str | None
            Region override
        link : bool
            Link the current directory to the new environment
        cleanup_on_failure : bool | None
            Terminate the instance if boot fails; overrides the
            ``cleanup_on_failure`` setting when given
        """
        directory = os.getcwd()
        config = self._load_config()
        resolved_profile = self._config_loader.profile(config, profile)
        settings = self._settings(region)
        if cleanup_on_failure is not None:
            settings = dataclasses.replace(settings, cleanup_on_failure=cleanup_on_failure)
        name = sanitize_environment_name(name) if name else generate_environment_name(directory)
        if not name:
            raise ConfigurationError("environment name is empty after sanitizing")

        identity = self._identity(directory)
        env = self._run(self._orchestrator(settings).up(name, resolved_profile, identity))

        if link:
            self._state_store().link(name, Path(directory))

        print(f"\nEnvironment {name} is ready ({env.instance_id} in {env.region}).")
        print(f"  Connect:  burrow ssh {name}")
        if identity.project_name:
            print(f"  Sync:     burrow push {name}")
        print(f"  Destroy:  burrow destroy {name}")

    def destroy(self, name: str | None = None) -> None:
        """Terminate an environment's instance and forget it."""
        store = self._state_store()
        env = self._resolve(name)
        settings = self._settings(env.region)

        drift = self._run(self._orchestrator(settings).destroy(env.name))
        if drift is not None:
            print(drift.describe(), file=sys.stderr)

        directory = os.getcwd()
        store.unlink(Path(directory), env.name)
        if is_git_repository(directory):
            self._sync_bridge().remove_remote(directory, env.name)

        print(f"Environment {env.name} destroyed.")
        references = store.infrastructure_references(env.region)
        if store.get_infrastructure(env.region) is not None:
            print(
                f"  Shared infrastructure in {env.region} is kept "
                f"({references} environment(s) still use it)."
            )

    def ssh(self, name: str | None = None, command: str | None = None) -> None:
        """Open an interactive shell, or run ``command`` on a PTY."""
        env = self._resolve(name)

        async def _shell() -> int:
            async with self._transport().open(env, Capability.SHELL) as session:
                await asyncio.to_thread(session.ssh)
                return session.shell(command)

        status = self._run(_shell())
        if status:
            sys.exit(status)

    def scp(
        self,
        source: str,
        destination: str,
        name: str | None = None,
        recursive: bool = False,
    ) -> None:
        """Copy files to or from an environment.

        Remote paths are written ``:path`` (resolved environment) or
        ``env:path``; exactly one side must be remote. ``--recursive`` copies
        a directory tree.
        """
        source_env, source_path = _split_remote(source)
        dest_env, dest_path = _split_remote(destination)

        if (source_path is None) == (dest_path is None):
            raise ConfigurationError("exactly one of source and destination must be remote")

        if dest_path is not None:
            _check_local_source(source, recursive)
        else:
            _check_local_destination(destination)

        env = self._resolve(source_env or dest_env or name)

        async def _copy() -> int:
            async with self._transport().open(env, Capability.COPY) as session:
                if dest_path is not None:
                    upload = session.put_tree if recursive else session.put
                    return await asyncio.to_thread(upload, source, dest_path)
                download = session.get_tree if recursive else session.get
                return await asyncio.to_thread(download, source_path, destination)

        transferred = self._run(_copy())
        print(f"Copied {transferred} bytes.")

    def push(self, name: str | None = None, branch: str | None = None, force: bool = False) -> None:
        """Push a branch of the current repository to an environment."""
        env = self._resolve(name)
        result = self._run(self._sync_bridge().push(env, os.getcwd(), branch=branch, force=force))
        _print_sync(result)

    def pull(self, name: str | None = None, branch: str | None = None) -> None:
        """Fast-forward a branch of the current repository from an environment."""
        env = self._resolve(name)
        result = self._run(self._sync_bridge().pull(env, os.getcwd(), branch=branch))
        _print_sync(result)

    def status(self, name: str | None = None) -> None:
        """Show one environment, reconciled with the cloud."""
        env = self._resolve(name)
        view = self._run(self._orchestrator(self._settings(env.region)).status(env.name))
        _print_view(view)

    def list(self) -> None:
        """List tracked environments, reconciled with the cloud."""
        views = self._run(self._orchestrator().list())

        if not views:
            print("No environments.")
            return

        print(f"  {'NAME':<20} {'STATE':<24} {'INSTANCE':<20} {'REGION':<14} {'PROFILE':<12} CREATED")
        print("-" * 106)
        for view in views:
            env = view.environment
            marker = "!" if view.drift is not None else " "
            state = str(env.state) if view.error is None else f"{env.state} (?)"
            print(
                f"{marker} {truncate_name(env.name):<20} {truncate_name(state, 24):<24} "
                f"{env.instance_id or '-':<20} {env.region:<14} "
                f"{truncate_name(env.profile, 12):<12} {format_time_ago(env.created_at)}"
            )

        drifted = [view.drift for view in views if view.drift is not None]
        if drifted:
            print("\n! changed outside burrow since last seen:")
            for drift in drifted:
                print(f"  {drift.describe()}")

    def logs(self, name: str | None = None, follow: bool = False) -> None:
        """Show the boot log of an environment.

        Ready environments stream the log over a session; others fall back to
        the instance's console output.
        """
        env = self._resolve(name)

        if env.state.phase is Phase.READY:
            command = f"sudo tail -n +1 {'-f ' if follow else ''}{INIT_LOG_PATH}"

            async def _tail() -> int:
                async with self._transport().open(env, Capability.PIPE) as session:
                    return await asyncio.to_thread(
                        session.exec, command, None, sys.stdout.buffer, sys.stderr.buffer
                    )

            self._run(_tail())
            return

        if env.instance_id is None:
            raise ConfigurationError(f"environment has no instance ({env.state})", resource=env.name)

        gateway = self._gateway(env.region, self._settings().tag_namespace)
        print(self._run(gateway.fetch_console_output(env.instance_id)) or "(no console output yet)")

    def config(self, profile: str | None = None) -> None:
        """Print the resolved settings and profile."""
        merged = self._config_loader.merged(self._load_config(), profile)
        print(OmegaConf.to_yaml(OmegaConf.create(merged)), end="")

    def profiles(self) -> None:
        """List the profiles defined in burrow.yaml."""
        config = self._load_config()
        names = ["default", *sorted(name for name in config["profiles"] if name != "default")]

        print(f"{'PROFILE':<20} {'INSTANCE TYPE':<16} {'IMAGE':<16} VOLUME")
        for profile_name in names:
            merged = self._config_loader.merged(config, profile_name)
            image = merged.get("image_id") or merged["image_family"]
            print(
                f"{truncate_name(profile_name):<20} {str(merged['instance_type']):<16} "
                f"{truncate_name(str(image), 16):<16} {merged['volume_size_gb']} GB {merged['volume_type']}"
            )

    def validate(self, profile: str | None = None) -> None:
        """Validate the settings and one profile, or every profile."""
        config = self._load_config()
        self._config_loader.settings(config)
        names = [profile] if profile else ["default", *sorted(config["profiles"])]

        for profile_name in dict.fromkeys(names):
            try:
                self._config_loader.profile(config, profile_name)
            except ConfigurationError as e:
                raise ConfigurationError(
                    f"Profile '{profile_name}' validation failed: {e}"
                ) from e
            print(f"Profile '{profile_name}' is valid.")

    def doctor(self, region: str | None = None) -> None:
        """Check the local tools and AWS credentials burrow relies on."""
        settings = self._settings(region)
        checker = PrerequisiteChecker(self._gateway(settings.region, settings.tag_namespace))

        print(f"Checking prerequisites for {settings.region}...")
        results = self._run(checker.run())
        for result in results:
            status = "OK" if result.ok else ("MISSING" if result.required else "not found")
            print(f"  {result.label:<24} {status} ({result.detail})")
            if result.hint and not result.ok:
                print(f"  {'':<24} {result.hint}")

        blocking = [result.label for result in results if result.blocking]
        if blocking:
            raise ConfigurationError(f"missing prerequisites: {', '.join(blocking)}")
        print("All prerequisites satisfied.")


def _split_remote(path: str) -> tuple[str | None, str | None]:
    """Split ``env:path``/``:path`` into environment and remote path.

    Local paths (including ones with a slash before any colon) return
    ``(None, None)``.
    """
    prefix, sep, remote = path.partition(":")
    if not sep or "/" in prefix or not remote:
        return None, None
    return (prefix or None), remote


def _check_local_source(path: str, recursive: bool) -> None:
    if not os.path.exists(path):
        raise ConfigurationError(f"{path}: no such file or directory")
    if os.path.isdir(path) and not recursive:
        raise ConfigurationError(f"{path} is a directory; copy it with --recursive")
    if not os.access(path, os.R_OK):
        raise ConfigurationError(f"{path}: permission denied")


def _check_local_destination(path: str) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    if not os.path.isdir(parent):
        raise ConfigurationError(f"{parent}: no such directory")


def _print_sync(result: SyncResult) -> None:
    if not result.changed:
        print(f"{result.branch}: already up to date.")
        return

    verb = "Pushed" if result.direction == "push" else "Pulled"
    suffix = " (forced)" if result.forced else ""
    before, after = result.remote_commit, result.local_commit
    if result.direction == "pull":
        before, after = after, before
    print(f"{verb} {result.branch}: {(before or '(none)')[:12]} -> {(after or '')[:12]}{suffix}")


def _print_view(view: EnvironmentView) -> None:
    env = view.environment
    print(f"Name:      {env.name}")
    print(f"State:     {env.state}")
    print(f"Instance:  {env.instance_id or '-'}")
    print(f"Region:    {env.region}")
    print(f"Profile:   {env.profile}")
    print(f"Created:   {format_time_ago(env.created_at)}")

    if view.live is not None:
        details = ", ".join(
            value for value in (view.live.instance_type, view.live.private_ip) if value
        )
        print(f"Live:      {view.live.state or 'missing'}" + (f" ({details})" if details else ""))
    if view.error is not None:
        print(f"Live:      unavailable ({view.error})")
    if view.drift is not None:
        print(f"Drift:     {view.drift.describe()}")


if __name__ == "__main__":
    from burrow.cli.main import main

    main()
