"""Shared dataclasses used across registry/session/store modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping


class ServerType(str, Enum):
    """Deployment type detected when connecting."""

    STANDALONE = "standalone"
    CLUSTER = "cluster"
    SENTINEL = "sentinel"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    FAILED = "Failed"


@dataclass(frozen=True, slots=True)
class ServerInfo:
    """Server details detected on connection."""

    server_type: ServerType = ServerType.STANDALONE
    version: str = ""
    os: str = ""
    role: str = ""
    cluster_size: int | None = None

    @property
    def clustered(self) -> bool:
        return self.server_type is ServerType.CLUSTER


@dataclass(frozen=True, slots=True)
class ServerProfile:
    """Runtime representation of a saved server."""

    name: str
    uri: str
    tls: bool = False
    db: int = 0
    info: ServerInfo | None = None


@dataclass(frozen=True, slots=True)
class KeyInfo:
    key: str
    key_type: str
    ttl: int


@dataclass(frozen=True, slots=True)
class KeyValue:
    """Value of a single key, shaped by its data type."""

    key: str
    key_type: str
    value: object = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class StreamEntry:
    id: str
    fields: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class MonitorEntry:
    timestamp: str
    db: str
    client: str
    command: str


@dataclass(frozen=True, slots=True)
class PubSubMessage:
    timestamp: str
    channel: str
    message: str


@dataclass(frozen=True, slots=True)
class FeedFailure:
    """Terminal sentinel pushed by a feed producer that stopped on an error."""

    reason: str
    detail: str = ""


FeedItem = MonitorEntry | PubSubMessage | StreamEntry | FeedFailure


@dataclass(frozen=True, slots=True)
class ClientInfo:
    id: str
    addr: str
    name: str
    age: str
    idle: str
    flags: str
    db: str
    cmd: str


@dataclass(frozen=True, slots=True)
class SlowlogEntry:
    id: int
    timestamp: int
    duration: int
    command: str


@dataclass(frozen=True, slots=True)
class ConfigEntry:
    key: str
    value: str


@dataclass(frozen=True, slots=True)
class AclUser:
    name: str
    status: str
    rules: str


@dataclass(frozen=True, slots=True)
class InfoLine:
    """One line of INFO output; section headers carry an empty value."""

    key: str
    value: str = ""

    @property
    def is_section(self) -> bool:
        return self.key.startswith("#")


@dataclass(frozen=True, slots=True)
class StreamSummary:
    name: str
    length: int
    first_entry_id: str
    last_entry_id: str


@dataclass(frozen=True, slots=True)
class ChannelSummary:
    name: str
    subscribers: int


__all__ = [
    "AclUser",
    "ChannelSummary",
    "ClientInfo",
    "ConfigEntry",
    "ConnectionStatus",
    "FeedFailure",
    "FeedItem",
    "InfoLine",
    "KeyInfo",
    "KeyValue",
    "MonitorEntry",
    "PubSubMessage",
    "ServerInfo",
    "ServerProfile",
    "ServerType",
    "SlowlogEntry",
    "StreamEntry",
    "StreamSummary",
]
