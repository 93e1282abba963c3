"""Resource views and the navigation stack."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ResourceKind(str, Enum):
    """Closed set of views the dashboard can show."""

    KEYS = "keys"
    SERVERS = "servers"
    CLIENTS = "clients"
    INFO = "info"
    SLOWLOG = "slowlog"
    CONFIG = "config"
    ACL = "acl"
    MONITOR = "monitor"
    STREAMS = "streams"
    PUBSUB = "pubsub"
    DESCRIBE = "describe"

    @property
    def title(self) -> str:
        return _TITLES[self]

    @property
    def live(self) -> bool:
        """Whether the view owns a live feed slot."""

        return self in LIVE_VIEWS

    @property
    def periodic(self) -> bool:
        """Whether the view reloads its data on the refresh interval."""

        return self in PERIODIC_VIEWS

    @classmethod
    def parse(cls, text: str) -> ResourceKind:
        value = text.strip().lower()
        for kind in cls:
            if kind.value == value or kind.title.lower() == value:
                return kind
        raise ValueError(f"Unknown resource '{text}'.")


_TITLES = {
    ResourceKind.KEYS: "Keys",
    ResourceKind.SERVERS: "Servers",
    ResourceKind.CLIENTS: "Clients",
    ResourceKind.INFO: "Info",
    ResourceKind.SLOWLOG: "Slowlog",
    ResourceKind.CONFIG: "Config",
    ResourceKind.ACL: "ACL",
    ResourceKind.MONITOR: "Monitor",
    ResourceKind.STREAMS: "Streams",
    ResourceKind.PUBSUB: "PubSub",
    ResourceKind.DESCRIBE: "Describe",
}

RESOURCE_DESCRIPTIONS = {
    ResourceKind.SERVERS: "Manage server connections",
    ResourceKind.KEYS: "Browse all keys",
    ResourceKind.STREAMS: "Streams",
    ResourceKind.PUBSUB: "Pub/Sub channels",
    ResourceKind.CLIENTS: "Connected clients",
    ResourceKind.MONITOR: "Real-time command monitor",
    ResourceKind.INFO: "Server information",
    ResourceKind.CONFIG: "Server configuration",
    ResourceKind.SLOWLOG: "Slow query log",
    ResourceKind.ACL: "Access Control List",
}

LIVE_VIEWS = frozenset({ResourceKind.MONITOR, ResourceKind.STREAMS, ResourceKind.PUBSUB})
PERIODIC_VIEWS = frozenset(
    {
        ResourceKind.SERVERS,
        ResourceKind.CLIENTS,
        ResourceKind.INFO,
        ResourceKind.SLOWLOG,
        ResourceKind.STREAMS,
        ResourceKind.PUBSUB,
    }
)


@dataclass(frozen=True, slots=True)
class ViewFrame:
    resource: ResourceKind
    item: str | None = None
    parent: ViewFrame | None = None

    @property
    def slot(self) -> str | None:
        """Feed slot owned by this frame, if its view is live."""

        return self.resource.value if self.resource.live else None

    @property
    def label(self) -> str:
        if self.item:
            return f"{self.resource.title}({self.item})"
        return self.resource.title


ROOT_FRAME = ViewFrame(ResourceKind.KEYS)


class ViewStack:
    """Navigation history; the key browser is the root and is never popped."""

    def __init__(self) -> None:
        self._frames: list[ViewFrame] = [ROOT_FRAME]

    @property
    def current(self) -> ViewFrame:
        return self._frames[-1]

    @property
    def frames(self) -> tuple[ViewFrame, ...]:
        return tuple(self._frames)

    @property
    def at_root(self) -> bool:
        return len(self._frames) == 1

    def select(self, resource: ResourceKind, item: str | None = None) -> ViewFrame:
        """Push a frame for the resource; re-selecting the current view is a no-op."""

        current = self.current
        if current.resource is resource and current.item == item:
            return current
        if resource is ResourceKind.KEYS and item is None:
            # Going "home" unwinds to the root rather than stacking another browser.
            self._frames = [ROOT_FRAME]
            return ROOT_FRAME
        frame = ViewFrame(resource, item, parent=current)
        self._frames.append(frame)
        return frame

    def back(self) -> ViewFrame | None:
        """Pop the current frame; returns it, or None at the root."""

        if self.at_root:
            return None
        return self._frames.pop()

    def breadcrumb(self) -> str:
        return " > ".join(frame.label for frame in self._frames)


__all__ = [
    "LIVE_VIEWS",
    "PERIODIC_VIEWS",
    "RESOURCE_DESCRIPTIONS",
    "ROOT_FRAME",
    "ResourceKind",
    "ViewFrame",
    "ViewStack",
]
