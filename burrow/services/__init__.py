"""Session transport and source synchronization over the SSM broker."""

from __future__ import annotations

from burrow.services.broker import BrokerChannel, ChannelSocket, PluginBrokerChannel
from burrow.services.sync import SyncBridge, SyncResult
from burrow.services.transport import Capability, Session, SessionTransport

__all__ = [
    "BrokerChannel",
    "ChannelSocket",
    "PluginBrokerChannel",
    "Capability",
    "Session",
    "SessionTransport",
    "SyncBridge",
    "SyncResult",
]
