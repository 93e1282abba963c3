"""Error types surfaced by the session core."""

from __future__ import annotations


class KvdashError(RuntimeError):
    """Base class for failures the control loop folds into status text."""


class DuplicateName(KvdashError):
    """Raised when a server profile with the same name already exists."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Server '{name}' already exists.")
        self.name = name


class NoActiveConnection(KvdashError):
    """Raised when a command needs a connection but none is active."""

    def __init__(self) -> None:
        super().__init__("No active connection.")


class ConnectTimeout(KvdashError):
    """Raised when a server does not answer within the connect timeout."""

    def __init__(self, name: str, timeout: float) -> None:
        super().__init__(f"Connection to '{name}' timed out after {timeout:g} seconds.")
        self.name = name
        self.timeout = timeout


class ConnectFailed(KvdashError):
    """Raised when the handshake with a server fails."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"Failed to connect to '{name}': {reason}")
        self.name = name
        self.reason = reason


class TransportLost(KvdashError):
    """Raised by feed sources when the underlying connection drops."""


class AtStart(KvdashError):
    """Raised when paging backwards from the first page."""

    def __init__(self) -> None:
        super().__init__("Already at the first page.")


class EnumerationFailed(KvdashError):
    """Raised when a key enumeration request fails."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Key scan failed: {reason}")
        self.reason = reason


__all__ = [
    "AtStart",
    "ConnectFailed",
    "ConnectTimeout",
    "DuplicateName",
    "EnumerationFailed",
    "KvdashError",
    "NoActiveConnection",
    "TransportLost",
]
