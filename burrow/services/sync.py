"""Source synchronization between a local git tree and an environment.

Git talks to the environment's bare repository through
``burrow.services.git_proxy``, configured as ``GIT_SSH_COMMAND``, so every
transfer travels over a broker session. History is never merged: a push
that would lose remote commits and a pull that would need a merge are both
refused with ``SyncConflictError``.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import shlex
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum

from burrow.bootstrap import validate_project_name
from burrow.constants import GIT_COMMAND_TIMEOUT_SECONDS, GIT_REMOTE_PREFIX
from burrow.core.models import Environment
from burrow.core.states import Phase
from burrow.exceptions import (
    ConfigurationError,
    EnvironmentNotReadyError,
    SyncConflictError,
    TransportError,
)
from burrow.services.transport import Capability, SessionTransport

logger = logging.getLogger(__name__)


class RefRelation(str, Enum):
    """How the local ref relates to the remote ref."""

    UP_TO_DATE = "up-to-date"
    FAST_FORWARD = "fast-forward"
    BEHIND = "behind"
    DIVERGED = "diverged"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a push or pull."""

    environment: str
    direction: str
    branch: str
    relation: RefRelation
    local_commit: str | None
    remote_commit: str | None
    forced: bool = False

    @property
    def changed(self) -> bool:
        return self.relation is not RefRelation.UP_TO_DATE


def remote_name(environment_name: str) -> str:
    """Name of the git remote registered for an environment."""
    return f"{GIT_REMOTE_PREFIX}{environment_name}"


class SyncBridge:
    """Push and pull branches between a local tree and an environment.

    Parameters
    ----------
    transport : SessionTransport
        Opens the pipe session used to prepare the remote repository
    git : str
        Git executable
    python : str
        Interpreter that runs the git proxy
    """

    def __init__(
        self,
        transport: SessionTransport,
        git: str = "git",
        python: str = sys.executable,
    ) -> None:
        self.transport = transport
        self.git = git
        self.python = python

    def _git(
        self,
        local_tree: str,
        *args: str,
        check: bool = True,
        remote: Environment | None = None,
    ) -> subprocess.CompletedProcess:
        env = self.git_environment(remote) if remote is not None else None
        try:
            result = subprocess.run(
                [self.git, *args],
                cwd=local_tree,
                env=env,
                capture_output=True,
                text=True,
                timeout=GIT_COMMAND_TIMEOUT_SECONDS,
                check=False,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(f"{self.git} not found; git is required for sync") from e
        except subprocess.TimeoutExpired as e:
            raise TransportError(
                f"git {args[0]} timed out after {GIT_COMMAND_TIMEOUT_SECONDS}s",
                resource=remote.name if remote else None,
            ) from e

        if check and result.returncode != 0:
            message = f"git {args[0]} failed: {result.stderr.strip() or result.stdout.strip()}"
            if remote is not None:
                raise TransportError(message, resource=remote.name)
            raise ConfigurationError(message, resource=local_tree)

        return result

    def git_environment(self, environment: Environment) -> dict[str, str]:
        """Process environment that routes git's SSH transport through the proxy."""
        env = os.environ.copy()
        env["GIT_SSH_COMMAND"] = shlex.join(
            [self.python, "-m", "burrow.services.git_proxy", environment.name]
        )
        env["GIT_SSH_VARIANT"] = "simple"
        return env

    def project_name(self, environment: Environment, local_tree: str) -> str:
        project = environment.project or os.path.basename(os.path.abspath(local_tree))
        validate_project_name(project)
        return project

    def remote_path(self, environment: Environment, project: str) -> str:
        return f"/home/{environment.ssh_username}/repos/{project}.git"

    def remote_url(self, environment: Environment, project: str) -> str:
        return (
            f"{environment.ssh_username}@{remote_name(environment.name)}:"
            f"{self.remote_path(environment, project)}"
        )

    def _require_repository(self, local_tree: str) -> None:
        result = self._git(local_tree, "rev-parse", "--git-dir", check=False)
        if result.returncode != 0:
            raise ConfigurationError("not a git repository", resource=local_tree)

    def _require_ready(self, environment: Environment) -> None:
        if environment.state.phase is not Phase.READY:
            raise EnvironmentNotReadyError(
                f"environment is {environment.state}; sync requires Ready",
                resource=environment.name,
            )

    async def ensure_remote_repository(self, environment: Environment, project: str) -> str:
        """Create the environment's bare repository if it does not exist.

        Returns
        -------
        str
            Remote repository path
        """
        path = self.remote_path(environment, project)
        quoted = shlex.quote(path)
        command = f"test -d {quoted} || (mkdir -p {quoted} && git init --bare -q {quoted})"
        stderr = io.BytesIO()

        async with self.transport.open(environment, Capability.PIPE) as session:
            status = await asyncio.to_thread(session.exec, command, None, None, stderr)

        if status != 0:
            raise TransportError(
                f"failed to prepare {path}: {stderr.getvalue().decode(errors='replace').strip()}",
                resource=environment.name,
            )
        return path

    def add_remote(self, local_tree: str, environment: Environment, project: str) -> str:
        """Register (or repoint) the ``burrow-<env>`` remote; return its name."""
        name = remote_name(environment.name)
        url = self.remote_url(environment, project)
        existing = self._git(local_tree, "remote", "get-url", name, check=False)

        if existing.returncode != 0:
            self._git(local_tree, "remote", "add", name, url)
        elif existing.stdout.strip() != url:
            self._git(local_tree, "remote", "set-url", name, url)

        return name

    def remove_remote(self, local_tree: str, environment_name: str) -> bool:
        """Remove the environment's remote; return whether one existed."""
        name = remote_name(environment_name)
        if self._git(local_tree, "remote", "get-url", name, check=False).returncode != 0:
            return False
        self._git(local_tree, "remote", "remove", name)
        return True

    def current_branch(self, local_tree: str) -> str:
        result = self._git(local_tree, "symbolic-ref", "--quiet", "--short", "HEAD", check=False)
        if result.returncode != 0:
            raise ConfigurationError(
                "HEAD is detached; name the branch to sync", resource=local_tree
            )
        return result.stdout.strip()

    def resolve_commit(self, local_tree: str, ref: str) -> str | None:
        result = self._git(
            local_tree, "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False
        )
        return result.stdout.strip() if result.returncode == 0 else None

    def remote_commit(self, local_tree: str, environment: Environment, branch: str) -> str | None:
        """Commit the environment's ``branch`` points at, or None if it has none."""
        result = self._git(
            local_tree,
            "ls-remote",
            remote_name(environment.name),
            f"refs/heads/{branch}",
            remote=environment,
        )
        for line in result.stdout.splitlines():
            commit, _, ref = line.partition("\t")
            if ref == f"refs/heads/{branch}":
                return commit
        return None

    def fetch(self, local_tree: str, environment: Environment, branch: str) -> str:
        """Fetch ``branch`` into its remote-tracking ref; return that ref."""
        name = remote_name(environment.name)
        tracking = f"refs/remotes/{name}/{branch}"
        self._git(local_tree, "fetch", "--quiet", name, f"+refs/heads/{branch}:{tracking}", remote=environment)
        return tracking

    def classify(self, local_tree: str, local: str | None, remote: str | None) -> RefRelation:
        """Relation of ``local`` to ``remote`` (both commit ids known locally)."""
        if local == remote:
            return RefRelation.UP_TO_DATE
        if remote is None:
            return RefRelation.FAST_FORWARD
        if local is None:
            return RefRelation.BEHIND
        if self._is_ancestor(local_tree, remote, local):
            return RefRelation.FAST_FORWARD
        if self._is_ancestor(local_tree, local, remote):
            return RefRelation.BEHIND
        return RefRelation.DIVERGED

    def _is_ancestor(self, local_tree: str, ancestor: str, descendant: str) -> bool:
        result = self._git(local_tree, "merge-base", "--is-ancestor", ancestor, descendant, check=False)
        return result.returncode == 0

    async def push(
        self,
        environment: Environment,
        local_tree: str,
        branch: str | None = None,
        force: bool = False,
    ) -> SyncResult:
        """Send ``branch`` to the environment.

        Raises
        ------
        SyncConflictError
            If the remote branch has commits the local one lacks and
            ``force`` is not set; neither side is changed
        """
        self._require_ready(environment)
        self._require_repository(local_tree)
        project = self.project_name(environment, local_tree)
        await self.ensure_remote_repository(environment, project)
        name = self.add_remote(local_tree, environment, project)

        branch = branch or self.current_branch(local_tree)
        local = self.resolve_commit(local_tree, f"refs/heads/{branch}")
        if local is None:
            raise ConfigurationError(f"branch {branch} has no commits", resource=local_tree)

        remote = self.remote_commit(local_tree, environment, branch)
        if remote is not None and remote != local:
            self.fetch(local_tree, environment, branch)
        relation = self.classify(local_tree, local, remote)

        if relation is RefRelation.UP_TO_DATE:
            logger.info("%s is up to date on %s", branch, environment.name)
            return SyncResult(environment.name, "push", branch, relation, local, remote)

        if relation is not RefRelation.FAST_FORWARD and not force:
            raise SyncConflictError(
                f"remote {branch} is {relation.value} relative to local; "
                f"pull first or push with --force",
                resource=environment.name,
                status=relation.value,
            )

        args = ["push", "--quiet", name, f"refs/heads/{branch}:refs/heads/{branch}"]
        forced = relation is not RefRelation.FAST_FORWARD
        if forced:
            args.insert(2, f"--force-with-lease=refs/heads/{branch}:{remote}")

        self._git(local_tree, *args, remote=environment)
        logger.info("Pushed %s to %s (%s)", branch, environment.name, "forced" if forced else relation.value)
        return SyncResult(environment.name, "push", branch, relation, local, remote, forced=forced)

    async def pull(
        self,
        environment: Environment,
        local_tree: str,
        branch: str | None = None,
    ) -> SyncResult:
        """Fast-forward ``branch`` to the environment's version.

        Raises
        ------
        SyncConflictError
            If the histories have diverged; nothing is merged
        """
        self._require_ready(environment)
        self._require_repository(local_tree)
        project = self.project_name(environment, local_tree)
        self.add_remote(local_tree, environment, project)

        branch = branch or self.current_branch(local_tree)
        remote = self.remote_commit(local_tree, environment, branch)
        if remote is None:
            raise ConfigurationError(
                f"branch {branch} does not exist on {environment.name}", resource=environment.name
            )

        tracking = self.fetch(local_tree, environment, branch)
        local = self.resolve_commit(local_tree, f"refs/heads/{branch}")
        relation = self.classify(local_tree, local, remote)

        if relation in (RefRelation.UP_TO_DATE, RefRelation.FAST_FORWARD):
            logger.info("%s already contains %s from %s", branch, remote[:12], environment.name)
            return SyncResult(environment.name, "pull", branch, RefRelation.UP_TO_DATE, local, remote)

        if relation is RefRelation.DIVERGED:
            raise SyncConflictError(
                f"local and remote {branch} have diverged; reconcile them manually",
                resource=environment.name,
                status=relation.value,
            )

        if self._current_branch_or_none(local_tree) == branch:
            self._git(local_tree, "merge", "--ff-only", "--quiet", tracking)
        else:
            self._git(local_tree, "update-ref", f"refs/heads/{branch}", remote, local or "")

        logger.info("Fast-forwarded %s to %s", branch, remote[:12])
        return SyncResult(environment.name, "pull", branch, relation, local, remote)

    def _current_branch_or_none(self, local_tree: str) -> str | None:
        try:
            return self.current_branch(local_tree)
        except ConfigurationError:
            return None
