"""Byte channels carried by an SSM broker session."""

from __future__ import annotations

import json
import logging
import shlex
import shutil
import socket
from collections.abc import Callable
from typing import Protocol

import paramiko
from paramiko.ssh_exception import ProxyCommandFailure

from burrow.constants import SSH_PORT
from burrow.core.models import BrokerSession
from burrow.exceptions import TransportError
from burrow.providers.aws.constants import SSH_SESSION_DOCUMENT

logger = logging.getLogger(__name__)

SESSION_MANAGER_PLUGIN = "session-manager-plugin"


class BrokerChannel(Protocol):
    """Bidirectional byte stream to the instance's SSH port.

    ``receive`` returns ``b""`` at end of stream and raises ``socket.timeout``
    when nothing arrives within ``timeout`` seconds.
    """

    def open(self) -> None: ...

    def send(self, data: bytes) -> int: ...

    def receive(self, size: int, timeout: float | None = None) -> bytes: ...

    def close(self) -> None: ...


ChannelFactory = Callable[[BrokerSession], BrokerChannel]


def plugin_command(session: BrokerSession, port: int = SSH_PORT, plugin: str = SESSION_MANAGER_PLUGIN) -> list[str]:
    """Arguments that make ``session-manager-plugin`` attach to ``session``.

    The plugin takes the StartSession response, the region, the operation
    name, an (empty) profile, the request parameters and the endpoint.
    """
    response = {
        "SessionId": session.session_id,
        "TokenValue": session.token,
        "StreamUrl": session.stream_url,
    }
    parameters = {
        "Target": session.instance_id,
        "DocumentName": SSH_SESSION_DOCUMENT,
        "Parameters": {"portNumber": [str(port)]},
    }
    return [
        plugin,
        json.dumps(response),
        session.region,
        "StartSession",
        "",
        json.dumps(parameters),
        f"https://ssm.{session.region}.amazonaws.com",
    ]


class PluginBrokerChannel:
    """Broker channel driven by a ``session-manager-plugin`` subprocess.

    Parameters
    ----------
    session : BrokerSession
        Session returned by ``ResourceGateway.open_broker_session``
    plugin : str
        Plugin executable name or path
    """

    def __init__(self, session: BrokerSession, plugin: str = SESSION_MANAGER_PLUGIN) -> None:
        self.session = session
        self.plugin = plugin
        self._proxy: paramiko.ProxyCommand | None = None

    def open(self) -> None:
        """Start the plugin process.

        Raises
        ------
        TransportError
            If the plugin is not installed or cannot be started
        """
        if shutil.which(self.plugin) is None:
            raise TransportError(
                f"{self.plugin} not found on PATH; install the AWS Session Manager plugin",
                resource=self.session.instance_id,
            )

        command = shlex.join(plugin_command(self.session, plugin=self.plugin))
        try:
            self._proxy = paramiko.ProxyCommand(command)
        except (OSError, ProxyCommandFailure) as e:
            raise TransportError(f"failed to start {self.plugin}: {e}", resource=self.session.instance_id) from e

        logger.debug("Broker channel open for session %s", self.session.session_id)

    def _require_proxy(self) -> paramiko.ProxyCommand:
        if self._proxy is None or self._proxy.closed:
            raise TransportError("broker channel is not open", resource=self.session.instance_id)
        return self._proxy

    def send(self, data: bytes) -> int:
        proxy = self._require_proxy()
        try:
            return proxy.send(data)
        except ProxyCommandFailure as e:
            raise TransportError(f"broker channel write failed: {e}", resource=self.session.instance_id) from e

    def receive(self, size: int, timeout: float | None = None) -> bytes:
        proxy = self._require_proxy()
        proxy.settimeout(timeout)
        try:
            return proxy.recv(size)
        except socket.timeout:
            if proxy.process.poll() is not None:
                return b""
            raise
        except ProxyCommandFailure as e:
            raise TransportError(f"broker channel read failed: {e}", resource=self.session.instance_id) from e

    def close(self) -> None:
        if self._proxy is not None and not self._proxy.closed:
            self._proxy.close()
        self._proxy = None


class ChannelSocket:
    """Socket-like adapter so a paramiko ``Transport`` can run over a channel.

    paramiko drives its socket with ``settimeout``, ``send``, ``recv`` and
    ``close``; that is all the adapter provides. Closing the adapter leaves
    the channel open since the session owns it.
    """

    def __init__(self, channel: BrokerChannel) -> None:
        self.channel = channel
        self.timeout: float | None = None
        self.closed = False

    def settimeout(self, timeout: float | None) -> None:
        self.timeout = timeout

    def gettimeout(self) -> float | None:
        return self.timeout

    def send(self, data: bytes) -> int:
        if self.closed:
            raise OSError("socket is closed")
        return self.channel.send(bytes(data))

    def sendall(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            sent = self.send(view.tobytes())
            view = view[sent:]

    def recv(self, size: int) -> bytes:
        if self.closed:
            return b""
        return self.channel.receive(size, self.timeout)

    def close(self) -> None:
        self.closed = True
