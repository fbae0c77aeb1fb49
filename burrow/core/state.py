"""Durable local state store.

The store is the single source of truth mapping environment names to cloud
instances. All mutation happens inside ``with_lock``: an exclusive ``flock`` on
a sidecar lock file, a fresh read of the snapshot, the caller's change, and an
atomic replace of the snapshot file. Readers that do not take the lock still
see either the previous or the next snapshot because the file is only ever
swapped in with ``os.replace``.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from burrow.constants import (
    LINK_DIR_NAME,
    LINK_FILE_NAME,
    STATE_FILE_VERSION,
    STATE_LOCK_POLL_SECONDS,
    STATE_LOCK_TIMEOUT_SECONDS,
)
from burrow.core.models import DriftReport, Environment, InfrastructureRecord
from burrow.core.states import LifecycleState, Phase, failed
from burrow.exceptions import (
    EnvironmentNotFoundError,
    StateConsistencyError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

OUT_OF_BAND_STOPPED_STATES = frozenset(("stopping", "stopped", "shutting-down"))


def default_state_dir() -> Path:
    """Directory holding burrow's local state (``BURROW_DIR`` or ``~/.burrow``)."""
    return Path(os.environ.get("BURROW_DIR", "~/.burrow")).expanduser()


@dataclass
class Snapshot:
    """In-memory view of the state file handed to ``with_lock`` callbacks."""

    environments: dict[str, Environment] = field(default_factory=dict)
    infrastructure: dict[str, InfrastructureRecord] = field(default_factory=dict)
    dirty: bool = False

    def put(self, env: Environment) -> None:
        self.environments[env.name] = env
        self.dirty = True

    def pop(self, name: str) -> Environment | None:
        env = self.environments.pop(name, None)
        if env is not None:
            self.dirty = True
        return env

    def put_infrastructure(self, record: InfrastructureRecord) -> None:
        self.infrastructure[record.region] = record
        self.dirty = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_FILE_VERSION,
            "environments": {
                name: env.to_dict() for name, env in sorted(self.environments.items())
            },
            "infrastructure": {
                region: record.to_dict()
                for region, record in sorted(self.infrastructure.items())
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        version = data.get("version")
        if version != STATE_FILE_VERSION:
            raise StateConsistencyError(f"unsupported state file version: {version!r}")

        return cls(
            environments={
                name: Environment.from_dict(raw)
                for name, raw in data.get("environments", {}).items()
            },
            infrastructure={
                region: InfrastructureRecord.from_dict(raw)
                for region, raw in data.get("infrastructure", {}).items()
            },
        )


class StateStore:
    """Lock-protected mapping from environment name to environment record.

    Parameters
    ----------
    state_dir : Path | None
        Directory holding ``state.json`` and ``state.lock``. Defaults to
        ``default_state_dir()``
    lock_timeout : float
        Maximum seconds to wait for the lock before raising
        ``StateConsistencyError``
    """

    def __init__(
        self,
        state_dir: Path | None = None,
        lock_timeout: float = STATE_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        self.state_dir = Path(state_dir) if state_dir else default_state_dir()
        self.path = self.state_dir / "state.json"
        self.lock_path = self.state_dir / "state.lock"
        self.lock_timeout = lock_timeout

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the exclusive state lock for the duration of the block.

        Raises
        ------
        StateConsistencyError
            If the lock cannot be acquired within ``lock_timeout``
        """
        self.state_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        deadline = time.monotonic() + self.lock_timeout

        with open(self.lock_path, "a") as lock_file:
            while True:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise StateConsistencyError(
                            f"state lock held by another process for more than "
                            f"{self.lock_timeout:g}s",
                            resource=str(self.lock_path),
                        )
                    time.sleep(STATE_LOCK_POLL_SECONDS)

            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def with_lock(self, fn: Callable[[Snapshot], T]) -> T:
        """Run ``fn`` against a fresh snapshot while holding the lock.

        Changes ``fn`` makes through the ``Snapshot`` mutators are written back
        atomically before the lock is released.
        """
        with self.lock():
            snapshot = self._read()
            result = fn(snapshot)
            if snapshot.dirty:
                self._write(snapshot)
            return result

    def _read(self) -> Snapshot:
        try:
            content = self.path.read_text()
        except FileNotFoundError:
            return Snapshot()
        except OSError as e:
            raise StateConsistencyError(f"cannot read state file: {e}", resource=str(self.path)) from e

        try:
            return Snapshot.from_dict(json.loads(content))
        except (ValueError, KeyError, TypeError) as e:
            raise StateConsistencyError(
                f"state file is corrupted and will not be repaired automatically: {e}",
                resource=str(self.path),
            ) from e

    def _write(self, snapshot: Snapshot) -> None:
        staged = self._stage(json.dumps(snapshot.to_dict(), indent=2))
        try:
            self._commit(staged)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                staged.unlink()
            raise
        snapshot.dirty = False

    def _stage(self, content: str) -> Path:
        """Write ``content`` to a synced temporary file beside the state file."""
        fd, temp_name = tempfile.mkstemp(dir=self.state_dir, prefix=".state-", suffix=".tmp")
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                temp_path.unlink()
            raise
        return temp_path

    def _commit(self, staged: Path) -> None:
        """Atomically swap the staged file in as the new snapshot."""
        os.replace(staged, self.path)

    def upsert(self, env: Environment) -> Environment:
        self.with_lock(lambda snap: snap.put(env))
        return env

    def remove(self, name: str) -> Environment | None:
        return self.with_lock(lambda snap: snap.pop(name))

    def get(self, name: str) -> Environment | None:
        return self._read().environments.get(name)

    def list(self) -> list[Environment]:
        environments = self._read().environments.values()
        return sorted(environments, key=lambda env: env.created_at)

    def get_infrastructure(self, region: str) -> InfrastructureRecord | None:
        return self._read().infrastructure.get(region)

    def set_infrastructure(self, record: InfrastructureRecord) -> None:
        self.with_lock(lambda snap: snap.put_infrastructure(record))

    def infrastructure_references(self, region: str) -> int:
        """Number of non-terminated environments referencing ``region``'s record."""
        return sum(
            1
            for env in self._read().environments.values()
            if env.infrastructure == region and env.state.phase is not Phase.TERMINATED
        )

    def transition(
        self,
        name: str,
        update: Callable[[Environment], Environment],
        expected: LifecycleState | None = None,
    ) -> Environment:
        """Apply ``update`` to the stored environment under the lock.

        Parameters
        ----------
        name : str
            Environment name
        update : Callable[[Environment], Environment]
            Pure function producing the new record
        expected : LifecycleState | None
            If given, the stored state must still equal it

        Raises
        ------
        EnvironmentNotFoundError
            If the environment is not in the store
        StateConsistencyError
            If the stored state changed since ``expected`` was read
        """

        def _apply(snap: Snapshot) -> Environment:
            current = snap.environments.get(name)
            if current is None:
                raise EnvironmentNotFoundError("environment is not in the state store", resource=name)
            if expected is not None and current.state != expected:
                raise StateConsistencyError(
                    f"state changed concurrently (expected {expected}, found {current.state})",
                    resource=name,
                )
            updated = update(current)
            snap.put(updated)
            return updated

        return self.with_lock(_apply)

    def link(self, name: str, directory: Path) -> Path:
        """Link ``directory`` to environment ``name``."""
        link_dir = Path(directory) / LINK_DIR_NAME
        link_dir.mkdir(parents=True, exist_ok=True)
        link_file = link_dir / LINK_FILE_NAME

        if link_file.is_symlink():
            raise StateConsistencyError("link file cannot be a symlink", resource=str(link_file))

        link_file.write_text(f"{name}\n")
        return link_file

    def linked(self, directory: Path) -> str | None:
        """Return the environment name linked to ``directory``, if any."""
        link_file = Path(directory) / LINK_DIR_NAME / LINK_FILE_NAME

        if link_file.is_symlink():
            raise StateConsistencyError("link file cannot be a symlink", resource=str(link_file))

        try:
            name = link_file.read_text().strip()
        except FileNotFoundError:
            return None

        return name or None

    def unlink(self, directory: Path, name: str | None = None) -> bool:
        """Remove the link in ``directory`` (only if it points at ``name``)."""
        linked = self.linked(directory)
        if linked is None or (name is not None and linked != name):
            return False

        (Path(directory) / LINK_DIR_NAME / LINK_FILE_NAME).unlink()
        return True

    def resolve(self, name: str | None, directory: Path | None = None) -> Environment:
        """Resolve an explicit name, or the link of ``directory``, to an environment.

        Raises
        ------
        EnvironmentNotFoundError
            If no name was given and no link exists, or the name is unknown
        """
        if name is None:
            name = self.linked(directory or Path.cwd())
            if name is None:
                raise EnvironmentNotFoundError(
                    "no environment name given and the current directory is not linked"
                )

        env = self.get(name)
        if env is None:
            raise EnvironmentNotFoundError("unknown environment", resource=name)
        return env

    async def reconcile(self, name: str, gateway: Any) -> DriftReport | None:
        """Compare the stored environment with the live instance.

        The stored state is updated when the instance was terminated or
        stopped out-of-band. The drift is returned so callers can report it.

        Parameters
        ----------
        name : str
            Environment name
        gateway : ResourceGateway
            Gateway for the environment's region

        Returns
        -------
        DriftReport | None
            The drift found, or None when stored and live state agree
        """
        env = self.resolve(name)
        if env.instance_id is None or env.state.phase is Phase.TERMINATED:
            return None

        status = await gateway.describe_instance(env.instance_id)
        reconciled = _reconciled_state(env.state, status.state)
        if reconciled is None:
            return None

        try:
            self.transition(name, lambda current: current.with_state(reconciled), expected=env.state)
        except StateConsistencyError:
            logger.info("Environment %s changed while reconciling; keeping newer state", name)
            return None

        report = DriftReport(
            name=name,
            instance_id=env.instance_id,
            stored=env.state,
            live_state=status.state,
            reconciled=reconciled,
        )
        logger.warning("Drift detected: %s", report.describe())
        return report


def _reconciled_state(stored: LifecycleState, live: str | None) -> LifecycleState | None:
    """State the store should hold given the live provider state, or None if in sync."""
    if live is None or live == "terminated":
        return LifecycleState(Phase.TERMINATED)

    if live in OUT_OF_BAND_STOPPED_STATES and stored.phase is not Phase.TERMINATING:
        if stored.phase is Phase.FAILED:
            return None
        return failed(f"instance {live} out-of-band")

    return None
