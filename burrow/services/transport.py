"""Sessions to Ready environments over the SSM broker.

A session is opened per command. It starts a broker session for the
instance's SSH port, wraps it in a ``BrokerChannel`` and, for the shell, copy
and pipe capabilities, runs a paramiko SSH client over that channel. The
broker session is always terminated when the session closes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import posixpath
import select
import signal
import socket
import stat
import sys
import termios
import threading
import tty
from collections.abc import AsyncIterator, Callable, Iterator
from enum import Enum
from shutil import get_terminal_size
from typing import IO, Any

import paramiko
from paramiko.channel import Channel

from burrow.constants import (
    DEFAULT_TAG_NAMESPACE,
    SESSION_CONNECT_TIMEOUT_SECONDS,
    TERMINAL_POLL_SECONDS,
)
from burrow.core.models import BrokerSession, Environment
from burrow.core.states import Phase
from burrow.exceptions import ConfigurationError, EnvironmentNotReadyError, TransportError
from burrow.providers.aws.gateway import ResourceGateway
from burrow.providers.exceptions import CloudApiError
from burrow.services.broker import (
    BrokerChannel,
    ChannelFactory,
    ChannelSocket,
    PluginBrokerChannel,
)

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 32768


def _local_size(path: str) -> int:
    try:
        return os.path.getsize(path)
    except OSError as e:
        raise ConfigurationError(f"cannot read {path}: {e.strerror or e}") from e


class Capability(str, Enum):
    """What a session is opened for."""

    SHELL = "shell"
    COPY = "copy"
    PIPE = "pipe"


class InteractiveSession:
    """Relay the local terminal to a remote PTY channel.

    Parameters
    ----------
    channel : Channel
        paramiko channel with a PTY and a running shell or command
    """

    def __init__(self, channel: Channel) -> None:
        self._channel = channel
        self._old_tty_attrs: list[Any] | None = None
        self._original_sigwinch: Any = None

    def _setup_terminal(self) -> None:
        fd = sys.stdin.fileno()
        self._old_tty_attrs = termios.tcgetattr(fd)
        tty.setraw(fd)

    def _restore_terminal(self) -> None:
        if self._old_tty_attrs is None:
            return
        termios.tcsetattr(sys.stdin.fileno(), termios.TCSADRAIN, self._old_tty_attrs)
        self._old_tty_attrs = None

    def _resize_pty(self, *_: Any) -> None:
        try:
            width, height = get_terminal_size()
            self._channel.resize_pty(width=width, height=height)
        except Exception as e:
            logger.debug("Failed to resize remote PTY: %s", e)

    def _setup_sigwinch(self) -> None:
        self._original_sigwinch = signal.signal(signal.SIGWINCH, self._resize_pty)
        self._resize_pty()

    def _restore_sigwinch(self) -> None:
        if self._original_sigwinch is None:
            return
        signal.signal(signal.SIGWINCH, self._original_sigwinch)
        self._original_sigwinch = None

    def run(self) -> int:
        """Relay until the remote side closes; return its exit status."""
        stdin_fd = sys.stdin.fileno()
        interactive = sys.stdin.isatty()

        if interactive:
            self._setup_terminal()
            self._setup_sigwinch()

        sources: list[Any] = [self._channel, stdin_fd]

        try:
            while True:
                readable, _, _ = select.select(sources, [], [], TERMINAL_POLL_SECONDS)

                if self._channel in readable:
                    data = self._channel.recv(READ_CHUNK_BYTES)
                    if not data:
                        break
                    sys.stdout.buffer.write(data)
                    sys.stdout.buffer.flush()

                if stdin_fd in readable:
                    data = os.read(stdin_fd, READ_CHUNK_BYTES)
                    if not data:
                        sources.remove(stdin_fd)
                        self._channel.shutdown_write()
                    else:
                        self._channel.send(data)

                if self._channel.exit_status_ready() and not self._channel.recv_ready():
                    break

            self._channel.shutdown(2)
            return self._channel.recv_exit_status()
        finally:
            self._restore_sigwinch()
            self._restore_terminal()


class Session:
    """An open session to one environment.

    Parameters
    ----------
    environment : Environment
        The Ready environment
    broker : BrokerSession
        Broker session carrying the channel
    channel : BrokerChannel
        Open byte channel to the instance's SSH port
    capability : Capability
        What the session was opened for
    key_filename : str | None
        Private key to offer; the SSH agent and default keys are also tried
    """

    def __init__(
        self,
        environment: Environment,
        broker: BrokerSession,
        channel: BrokerChannel,
        capability: Capability,
        key_filename: str | None = None,
    ) -> None:
        self.environment = environment
        self.broker = broker
        self.capability = capability
        self.key_filename = key_filename
        self._channel = channel
        self._client: paramiko.SSHClient | None = None

    @property
    def channel(self) -> BrokerChannel:
        """The raw broker channel; bytes are passed through without framing."""
        return self._channel

    def _require(self, *capabilities: Capability) -> None:
        if self.capability not in capabilities:
            raise TransportError(
                f"session was opened for {self.capability.value}, "
                f"not {' or '.join(c.value for c in capabilities)}",
                resource=self.environment.name,
            )

    def ssh(self) -> paramiko.SSHClient:
        """SSH client running over the broker channel, connected on first use.

        Raises
        ------
        TransportError
            If the handshake or authentication fails
        """
        if self._client is not None:
            return self._client

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            client.connect(
                hostname=self.environment.instance_id,
                sock=ChannelSocket(self._channel),
                username=self.environment.ssh_username,
                key_filename=self.key_filename,
                look_for_keys=True,
                allow_agent=True,
                timeout=SESSION_CONNECT_TIMEOUT_SECONDS,
                banner_timeout=SESSION_CONNECT_TIMEOUT_SECONDS,
                auth_timeout=SESSION_CONNECT_TIMEOUT_SECONDS,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise TransportError(
                f"authentication failed for {self.environment.ssh_username}; "
                f"the key installed at boot must be available locally or in the agent",
                resource=self.environment.name,
            ) from e
        except (paramiko.SSHException, socket.timeout, EOFError, OSError) as e:
            client.close()
            raise TransportError(f"SSH handshake failed: {e}", resource=self.environment.name) from e

        self._client = client
        return client

    def _open_channel(self) -> Channel:
        transport = self.ssh().get_transport()
        if transport is None or not transport.is_active():
            raise TransportError("SSH connection was lost", resource=self.environment.name)
        try:
            return transport.open_session()
        except paramiko.SSHException as e:
            raise TransportError(f"failed to open channel: {e}", resource=self.environment.name) from e

    def shell(self, command: str | None = None) -> int:
        """Run an interactive shell (or ``command``) on a PTY.

        Returns
        -------
        int
            Remote exit status
        """
        self._require(Capability.SHELL)
        channel = self._open_channel()
        try:
            width, height = get_terminal_size()
            channel.get_pty(
                term=os.environ.get("TERM", "xterm-256color"), width=width, height=height
            )
            if command:
                channel.exec_command(command)
            else:
                channel.invoke_shell()
            return InteractiveSession(channel).run()
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"shell session failed: {e}", resource=self.environment.name) from e
        finally:
            channel.close()

    def put(self, local_path: str, remote_path: str) -> int:
        """Upload ``local_path``; return the number of bytes transferred.

        Raises
        ------
        ConfigurationError
            If ``local_path`` cannot be read
        TransportError
            If the transfer fails or is short
        """
        self._require(Capability.COPY)
        expected = _local_size(local_path)
        with self._sftp() as sftp:
            return self._transfer(
                lambda progress: sftp.put(local_path, remote_path, callback=progress),
                expected,
                f"{local_path} -> {remote_path}",
            )

    def get(self, remote_path: str, local_path: str) -> int:
        """Download ``remote_path``; return the number of bytes transferred.

        Raises
        ------
        ConfigurationError
            If ``remote_path`` is a directory
        TransportError
            If the remote file is missing, or the transfer fails or is short
        """
        self._require(Capability.COPY)
        with self._sftp() as sftp:
            try:
                attributes = sftp.stat(remote_path)
            except OSError as e:
                raise TransportError(
                    f"cannot read {remote_path}: {e}", resource=self.environment.name
                ) from e
            if stat.S_ISDIR(attributes.st_mode or 0):
                raise ConfigurationError(f"{remote_path} is a directory; copy it with --recursive")

            return self._transfer(
                lambda progress: sftp.get(remote_path, local_path, callback=progress),
                attributes.st_size,
                f"{remote_path} -> {local_path}",
            )

    def put_tree(self, local_dir: str, remote_dir: str) -> int:
        """Upload a directory tree; return the number of bytes transferred.

        Like ``scp -r``, the tree lands inside ``remote_dir`` when that
        directory already exists, and becomes ``remote_dir`` otherwise.
        Symlinked directories are not followed.

        Raises
        ------
        ConfigurationError
            If ``local_dir`` is not a directory
        TransportError
            If a directory cannot be created or a transfer fails
        """
        self._require(Capability.COPY)
        if not os.path.isdir(local_dir):
            raise ConfigurationError(f"{local_dir} is not a directory")
        root = os.path.abspath(local_dir)

        with self._sftp() as sftp:
            target = remote_dir
            if self._remote_is_dir(sftp, remote_dir):
                target = posixpath.join(remote_dir, os.path.basename(root))

            transferred = 0
            for directory, subdirectories, files in os.walk(root):
                subdirectories.sort()
                relative = os.path.relpath(directory, root)
                remote_directory = (
                    target if relative == os.curdir else posixpath.join(target, *relative.split(os.sep))
                )
                self._remote_mkdir(sftp, remote_directory)

                for filename in sorted(files):
                    local_path = os.path.join(directory, filename)
                    remote_path = posixpath.join(remote_directory, filename)
                    transferred += self._transfer(
                        lambda progress: sftp.put(local_path, remote_path, callback=progress),
                        _local_size(local_path),
                        f"{local_path} -> {remote_path}",
                    )

        logger.debug("Uploaded %s to %s (%d bytes)", local_dir, target, transferred)
        return transferred

    def get_tree(self, remote_dir: str, local_dir: str) -> int:
        """Download a directory tree; return the number of bytes transferred.

        The tree lands inside ``local_dir`` when that directory already
        exists, and becomes ``local_dir`` otherwise. Entries that are
        neither files nor directories are skipped.

        Raises
        ------
        ConfigurationError
            If ``remote_dir`` is not a directory
        TransportError
            If a listing, local write or transfer fails
        """
        self._require(Capability.COPY)
        remote_dir = remote_dir.rstrip("/") or remote_dir
        with self._sftp() as sftp:
            if not self._remote_is_dir(sftp, remote_dir):
                raise ConfigurationError(f"{remote_dir} is not a remote directory")

            target = local_dir
            name = posixpath.basename(remote_dir)
            if os.path.isdir(local_dir) and name not in ("", os.curdir, os.pardir):
                target = os.path.join(local_dir, name)

            transferred = self._get_tree(sftp, remote_dir, target)

        logger.debug("Downloaded %s to %s (%d bytes)", remote_dir, target, transferred)
        return transferred

    def _get_tree(self, sftp: paramiko.SFTPClient, remote_dir: str, local_dir: str) -> int:
        try:
            os.makedirs(local_dir, exist_ok=True)
            entries = sorted(sftp.listdir_attr(remote_dir), key=lambda entry: entry.filename)
        except OSError as e:
            raise TransportError(
                f"cannot copy {remote_dir} -> {local_dir}: {e}", resource=self.environment.name
            ) from e

        transferred = 0
        for entry in entries:
            remote_path = posixpath.join(remote_dir, entry.filename)
            local_path = os.path.join(local_dir, entry.filename)
            mode = entry.st_mode or 0

            if stat.S_ISDIR(mode):
                transferred += self._get_tree(sftp, remote_path, local_path)
            elif stat.S_ISREG(mode):
                transferred += self._transfer(
                    lambda progress: sftp.get(remote_path, local_path, callback=progress),
                    entry.st_size,
                    f"{remote_path} -> {local_path}",
                )
            else:
                logger.debug("Skipping %s: not a regular file", remote_path)
        return transferred

    @staticmethod
    def _remote_is_dir(sftp: paramiko.SFTPClient, path: str) -> bool:
        try:
            return stat.S_ISDIR(sftp.stat(path).st_mode or 0)
        except OSError:
            return False

    def _remote_mkdir(self, sftp: paramiko.SFTPClient, path: str) -> None:
        try:
            sftp.mkdir(path)
        except OSError as e:
            if not self._remote_is_dir(sftp, path):
                raise TransportError(
                    f"cannot create {path}: {e}", resource=self.environment.name
                ) from e

    @contextlib.contextmanager
    def _sftp(self) -> Iterator[paramiko.SFTPClient]:
        try:
            sftp = self.ssh().open_sftp()
        except paramiko.SSHException as e:
            raise TransportError(f"SFTP unavailable: {e}", resource=self.environment.name) from e

        try:
            yield sftp
        finally:
            sftp.close()

    def _transfer(
        self,
        operation: Callable[[Callable[[int, int], None]], Any],
        expected: int | None,
        description: str,
    ) -> int:
        transferred = 0

        def progress(done: int, _total: int) -> None:
            nonlocal transferred
            transferred = done

        try:
            operation(progress)
        except (OSError, paramiko.SSHException, EOFError) as e:
            raise TransportError(
                f"copy {description} interrupted after {transferred} bytes: {e}",
                resource=self.environment.name,
            ) from e

        if expected is not None and transferred != expected:
            raise TransportError(
                f"short copy {description}: {transferred} of {expected} bytes",
                resource=self.environment.name,
            )

        logger.debug("Copied %s (%d bytes)", description, transferred)
        return transferred

    def exec(
        self,
        command: str,
        stdin: IO[bytes] | None = None,
        stdout: IO[bytes] | None = None,
        stderr: IO[bytes] | None = None,
    ) -> int:
        """Run ``command`` without a PTY, relaying raw bytes.

        ``stdin`` is pumped to the remote process from a background thread
        until it reaches end of file; remote stdout and stderr are written to
        ``stdout`` and ``stderr`` as they arrive.

        Returns
        -------
        int
            Remote exit status
        """
        self._require(Capability.PIPE, Capability.SHELL)
        channel = self._open_channel()

        try:
            channel.exec_command(command)

            if stdin is not None:
                threading.Thread(
                    target=self._pump, args=(stdin, channel), daemon=True
                ).start()
            else:
                channel.shutdown_write()

            while True:
                if channel.recv_ready():
                    self._write(stdout, channel.recv(READ_CHUNK_BYTES))
                if channel.recv_stderr_ready():
                    self._write(stderr, channel.recv_stderr(READ_CHUNK_BYTES))
                if (
                    channel.exit_status_ready()
                    and not channel.recv_ready()
                    and not channel.recv_stderr_ready()
                ):
                    break
                select.select([channel], [], [], TERMINAL_POLL_SECONDS)

            return channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"remote command failed: {e}", resource=self.environment.name) from e
        finally:
            channel.close()

    @staticmethod
    def _pump(source: IO[bytes], channel: Channel) -> None:
        read = getattr(source, "read1", source.read)
        try:
            while True:
                data = read(READ_CHUNK_BYTES)
                if not data:
                    break
                channel.sendall(data)
            channel.shutdown_write()
        except (OSError, EOFError, paramiko.SSHException) as e:
            logger.debug("Input relay stopped: %s", e)

    @staticmethod
    def _write(sink: IO[bytes] | None, data: bytes) -> None:
        if sink is None or not data:
            return
        sink.write(data)
        sink.flush()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


class SessionTransport:
    """Open sessions to Ready environments.

    Parameters
    ----------
    gateway_factory : Callable[[str, str], ResourceGateway] | None
        Builds a gateway for ``(region, tag_namespace)``
    channel_factory : ChannelFactory | None
        Builds a byte channel for a broker session; defaults to the
        Session Manager plugin
    tag_namespace : str
        Tag namespace passed to the gateway factory
    key_filename : str | None
        Private key offered during SSH authentication
    """

    def __init__(
        self,
        gateway_factory: Callable[[str, str], Any] | None = None,
        channel_factory: ChannelFactory | None = None,
        tag_namespace: str = DEFAULT_TAG_NAMESPACE,
        key_filename: str | None = None,
    ) -> None:
        self.gateway_factory = gateway_factory or (
            lambda region, namespace: ResourceGateway(region, tag_namespace=namespace)
        )
        self.channel_factory = channel_factory or PluginBrokerChannel
        self.tag_namespace = tag_namespace
        self.key_filename = key_filename

    @contextlib.asynccontextmanager
    async def open(
        self, environment: Environment, capability: Capability | str = Capability.SHELL
    ) -> AsyncIterator[Session]:
        """Open a session for ``capability``.

        Raises
        ------
        EnvironmentNotReadyError
            If the environment is not Ready; raised before any broker call
        TransportError
            If the channel cannot be opened
        """
        capability = Capability(capability)

        if environment.state.phase is not Phase.READY or environment.instance_id is None:
            raise EnvironmentNotReadyError(
                f"environment is {environment.state}; sessions require Ready",
                resource=environment.name,
            )

        gateway = self.gateway_factory(environment.region, self.tag_namespace)
        broker = await gateway.open_broker_session(environment.instance_id)
        logger.debug("Broker session %s opened for %s", broker.session_id, environment.name)

        channel: BrokerChannel | None = None
        session: Session | None = None
        try:
            channel = self.channel_factory(broker)
            await asyncio.to_thread(channel.open)
            session = Session(
                environment, broker, channel, capability, key_filename=self.key_filename
            )
            yield session
        finally:
            if session is not None:
                session.close()
            if channel is not None:
                channel.close()
            try:
                await gateway.close_broker_session(broker.session_id)
            except CloudApiError as e:
                logger.warning("Failed to terminate broker session %s: %s", broker.session_id, e)
            logger.debug("Broker session %s closed", broker.session_id)
