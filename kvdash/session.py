"""Session controller: folds user actions and feed batches into UI state."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Mapping

from .errors import KvdashError, NoActiveConnection
from .feeds import EMPTY_BATCH, FeedBatch, FeedController, FeedKind, FeedStatus, LiveFeedSession
from .models import (
    ConnectionStatus,
    FeedFailure,
    KeyInfo,
    KeyValue,
    MonitorEntry,
    PubSubMessage,
    ServerInfo,
    StreamEntry,
)
from .pager import DEFAULT_PAGE_SIZE, KeyPage, KeyspacePager, glob_for_filter
from .registry import ConnectionRegistry, profile_from_uri
from .store import FeedSource
from .uri import mask_uri
from .views import ResourceKind, ViewFrame, ViewStack

LOG = logging.getLogger(__name__)

LIVE_HISTORY = 1000

SessionListener = Callable[["SessionState"], None]


@dataclass(frozen=True, slots=True)
class Action:
    """A user intent posted by the presentation layer."""

    name: str
    argument: str | None = None
    value: str | None = None


@dataclass(frozen=True, slots=True)
class ServerRow:
    name: str
    uri: str
    status: ConnectionStatus
    active: bool
    info: ServerInfo | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class FeedState:
    """Live feed status of the active view's slot."""

    status: FeedStatus = FeedStatus.IDLE
    kind: FeedKind | None = None
    target: str | None = None
    dropped: int = 0
    failure: FeedFailure | None = None


@dataclass(frozen=True, slots=True)
class SessionState:
    """Immutable snapshot handed to the presentation layer."""

    frames: tuple[ViewFrame, ...]
    server: str | None
    connection_status: ConnectionStatus
    clustered: bool
    server_info: ServerInfo | None
    status: str
    error: str | None
    filter_text: str
    pattern: str
    page: KeyPage | None
    keys: tuple[KeyInfo, ...]
    total_keys: int | None
    describe: KeyValue | None
    rows: Mapping[ResourceKind, tuple[object, ...]]
    feed: FeedState
    monitor: tuple[MonitorEntry, ...]
    messages: tuple[PubSubMessage, ...]
    stream_entries: tuple[StreamEntry, ...]
    refreshed_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def view(self) -> ResourceKind:
        return self.frames[-1].resource

    @property
    def frame(self) -> ViewFrame:
        return self.frames[-1]

    @property
    def breadcrumb(self) -> str:
        return " > ".join(frame.label for frame in self.frames)

    @property
    def has_more(self) -> bool:
        return bool(self.page and self.page.has_more)

    @property
    def can_go_back(self) -> bool:
        return bool(self.page and self.page.can_go_back)


class _ActiveScanner:
    """Routes pager SCAN requests to whichever connection is active."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    async def scan(self, cursor: int, match: str, count: int) -> tuple[int, list[str]]:
        return await self._registry.active_store().scan(cursor, match, count)


class SessionController:
    """Owns registry, pager, feeds and views; mutated only by the control loop."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        feeds: FeedController | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        feed_capacity: int = LIVE_HISTORY,
    ) -> None:
        self._registry = registry
        self._feeds = feeds or FeedController(self._source_for, capacity=feed_capacity)
        self._registry.bind_feed_stopper(self._feeds.stop_connection)
        self._pager = KeyspacePager(_ActiveScanner(registry), page_size=page_size)
        self._page_size = page_size
        self._views = ViewStack()
        self._listeners: set[SessionListener] = set()
        self._status = "Not connected"
        self._error: str | None = None
        self._filter_text = ""
        self._page: KeyPage | None = None
        self._keys: tuple[KeyInfo, ...] = ()
        self._key_details: dict[tuple[str, int], tuple[KeyInfo, ...]] = {}
        self._total_keys: int | None = None
        self._describe: KeyValue | None = None
        self._rows: dict[ResourceKind, tuple[object, ...]] = {}
        self._monitor: deque[MonitorEntry] = deque(maxlen=LIVE_HISTORY)
        self._messages: deque[PubSubMessage] = deque(maxlen=LIVE_HISTORY)
        self._stream_entries: deque[StreamEntry] = deque(maxlen=LIVE_HISTORY)
        self._last_feed: dict[str, LiveFeedSession] = {}
        self._actions: dict[str, Callable[[Action], Awaitable[None]]] = {
            "select": self._select,
            "back": self._back,
            "describe": self._describe_key,
            "filter": self._filter,
            "next_page": self._next_page,
            "prev_page": self._prev_page,
            "refresh": self._refresh,
            "connect": self._connect,
            "disconnect": self._disconnect,
            "add_server": self._add_server,
            "delete_server": self._delete_server,
            "delete_key": self._delete_key,
            "toggle_feed": self._toggle_feed,
            "subscribe": self._subscribe_channel,
        }
        self._loaders: dict[ResourceKind, Callable[[], Awaitable[None]]] = {
            ResourceKind.KEYS: self._load_keys,
            ResourceKind.SERVERS: self._load_servers,
            ResourceKind.CLIENTS: self._load_clients,
            ResourceKind.INFO: self._load_info,
            ResourceKind.SLOWLOG: self._load_slowlog,
            ResourceKind.CONFIG: self._load_configs,
            ResourceKind.ACL: self._load_acls,
            ResourceKind.MONITOR: self._load_monitor,
            ResourceKind.STREAMS: self._load_streams,
            ResourceKind.PUBSUB: self._load_channels,
            ResourceKind.DESCRIBE: self._load_describe,
        }
        self._registry.subscribe(lambda _connection: self._load_server_rows())
        self._registry.subscribe_profiles(lambda _profiles: self._load_server_rows())
        self._load_server_rows()

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def feeds(self) -> FeedController:
        return self._feeds

    @property
    def pager(self) -> KeyspacePager:
        return self._pager

    @property
    def views(self) -> ViewStack:
        return self._views

    @property
    def actions(self) -> tuple[str, ...]:
        return tuple(self._actions)

    @property
    def active_slot(self) -> str | None:
        return self._views.current.slot

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Subscribe to state snapshots; returns an unsubscribe handle."""

        self._listeners.add(listener)
        listener(self.snapshot())

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def publish(self) -> SessionState:
        """Build a snapshot and hand it to every listener."""

        state = self.snapshot()
        for listener in tuple(self._listeners):
            listener(state)
        return state

    def snapshot(self) -> SessionState:
        name = self._registry.active_name
        status = ConnectionStatus.DISCONNECTED
        clustered = False
        info: ServerInfo | None = None
        if name is not None:
            connection = self._registry.connection(name)
            status = connection.status
            clustered = connection.clustered
            info = connection.info
        return SessionState(
            frames=self._views.frames,
            server=name,
            connection_status=status,
            clustered=clustered,
            server_info=info,
            status=self._status,
            error=self._error,
            filter_text=self._filter_text,
            pattern=glob_for_filter(self._filter_text),
            page=self._page,
            keys=self._keys,
            total_keys=self._total_keys,
            describe=self._describe,
            rows=dict(self._rows),
            feed=self._feed_state(),
            monitor=tuple(self._monitor),
            messages=tuple(self._messages),
            stream_entries=tuple(self._stream_entries),
        )

    async def handle(self, action: Action) -> None:
        """Apply one user action; KvdashError propagates to the control loop."""

        handler = self._actions.get(action.name)
        if handler is None:
            raise ValueError(f"Unknown action '{action.name}'.")
        self._error = None
        await handler(action)

    def report(self, message: str, *, error: bool = False) -> None:
        self._status = message
        self._error = message if error else None

    def drain_feed(self) -> FeedBatch:
        slot = self.active_slot
        if slot is None:
            return EMPTY_BATCH
        return self._feeds.drain(slot)

    def apply_feed(self, batch: FeedBatch) -> bool:
        """Fold drained items into state in delivery order; True if anything changed."""

        for item in batch.items:
            if isinstance(item, FeedFailure):
                self.report(f"Feed stopped: {item.reason} ({item.detail})", error=True)
            elif isinstance(item, MonitorEntry):
                self._monitor.appendleft(item)
            elif isinstance(item, PubSubMessage):
                self._messages.appendleft(item)
            elif isinstance(item, StreamEntry):
                self._stream_entries.appendleft(item)
        return bool(batch.items)

    async def reload(self) -> None:
        """Reload the data behind the current view (periodic refresh)."""

        await self._loaders[self._views.current.resource]()

    async def startup(self, server: str | None) -> None:
        if server is None:
            self._views.select(ResourceKind.SERVERS)
            self.report("No server configured. Add one to the config file or pass --host.")
            return
        await self._connect(Action("connect", server))

    async def shutdown(self) -> None:
        await self._feeds.close()
        await self._registry.close()

    # -- actions -------------------------------------------------------------

    async def _select(self, action: Action) -> None:
        resource = ResourceKind.parse(action.argument or "")
        self._views.select(resource, action.value)
        await self._view_changed()
        if action.value and resource in (ResourceKind.STREAMS, ResourceKind.PUBSUB):
            await self._start_feed(resource, action.value)

    async def _back(self, action: Action) -> None:
        popped = self._views.back()
        if popped is None:
            return
        if popped.slot is not None:
            await self._feeds.stop_slot(popped.slot)
        await self._view_changed()

    async def _describe_key(self, action: Action) -> None:
        if not action.argument:
            return
        self._views.select(ResourceKind.DESCRIBE, action.argument)
        await self._view_changed()

    async def _filter(self, action: Action) -> None:
        self._filter_text = (action.argument or "").strip()
        self._key_details.clear()
        page = await self._pager.refresh(glob_for_filter(self._filter_text), self._page_size)
        await self._show_page(page)

    async def _next_page(self, action: Action) -> None:
        position = self._pager.position
        page = await self._pager.next_page(glob_for_filter(self._filter_text), self._page_size)
        try:
            await self._show_page(page)
        except Exception:
            # Keep the pager on the page that is still on screen.
            if 0 <= position < self._pager.position:
                self._pager.prev_page()
            raise

    async def _prev_page(self, action: Action) -> None:
        page = self._pager.prev_page()
        await self._show_page(page)

    async def _refresh(self, action: Action) -> None:
        resource = self._views.current.resource
        if resource is ResourceKind.KEYS:
            await self._reload_keys()
        else:
            await self._loaders[resource]()
        self.report(f"Refreshed {resource.title}")

    async def _connect(self, action: Action) -> None:
        name = action.argument or self._registry.active_name
        if name is None:
            raise NoActiveConnection()
        self.report(f"Connecting to {name}...")
        self.publish()
        connection = await self._registry.connect(name)
        await self._feeds.stop_all()
        self._reset_data()
        self._views.select(ResourceKind.KEYS)
        await self._reload_keys()
        kind = connection.info.server_type.value if connection.info else "standalone"
        self.report(f"Connected to {name} ({kind})")

    async def _disconnect(self, action: Action) -> None:
        name = action.argument or self._registry.active_name
        if name is None:
            return
        await self._registry.disconnect(name)
        if self._registry.active_name is None:
            self._reset_data()
        self.report(f"Disconnected from {name}")

    async def _add_server(self, action: Action) -> None:
        name = (action.argument or "").strip()
        uri = (action.value or "").strip()
        if not uri:
            raise ValueError("URI cannot be empty.")
        self._registry.add_profile(profile_from_uri(name, uri))
        self.report(f"Added server {name} ({mask_uri(uri)})")

    async def _delete_server(self, action: Action) -> None:
        if not action.argument:
            return
        was_active = self._registry.active_name == action.argument
        await self._registry.remove_profile(action.argument)
        if was_active:
            self._reset_data()
        self.report(f"Deleted server {action.argument}")

    async def _delete_key(self, action: Action) -> None:
        if not action.argument:
            return
        deleted = await self._registry.active_store().delete_keys([action.argument])
        if self._views.current.resource is ResourceKind.DESCRIBE:
            self._views.back()
        await self._reload_keys()
        self.report(f"Deleted {deleted} key(s)")

    async def _toggle_feed(self, action: Action) -> None:
        slot = self.active_slot
        if slot is None:
            self.report("This view has no live feed.")
            return
        session = self._feeds.session_for(slot)
        if session is not None and session.running:
            await self._feeds.stop(session.id)
            self.report(f"Stopped {_feed_label(session)}")
            return
        await self._start_feed(self._views.current.resource, action.argument)

    async def _subscribe_channel(self, action: Action) -> None:
        channel = (action.argument or "").strip()
        if not channel:
            return
        if self._views.current.resource is not ResourceKind.PUBSUB:
            self._views.select(ResourceKind.PUBSUB)
            await self._view_changed()
        await self._start_feed(ResourceKind.PUBSUB, channel)

    # -- loaders -------------------------------------------------------------

    async def _load_keys(self) -> None:
        if self._pager.current is None:
            await self._reload_keys()

    async def _load_servers(self) -> None:
        self._load_server_rows()

    async def _load_clients(self) -> None:
        self._rows[ResourceKind.CLIENTS] = tuple(await self._registry.active_store().clients())

    async def _load_info(self) -> None:
        self._rows[ResourceKind.INFO] = tuple(await self._registry.active_store().info())

    async def _load_slowlog(self) -> None:
        self._rows[ResourceKind.SLOWLOG] = tuple(await self._registry.active_store().slowlog())

    async def _load_configs(self) -> None:
        self._rows[ResourceKind.CONFIG] = tuple(await self._registry.active_store().configs())

    async def _load_acls(self) -> None:
        self._rows[ResourceKind.ACL] = tuple(await self._registry.active_store().acls())

    async def _load_monitor(self) -> None:
        session = self._feeds.session_for(ResourceKind.MONITOR.value)
        if session is None or not session.running:
            await self._start_feed(ResourceKind.MONITOR, None)

    async def _load_streams(self) -> None:
        self._rows[ResourceKind.STREAMS] = tuple(await self._registry.active_store().streams())

    async def _load_channels(self) -> None:
        self._rows[ResourceKind.PUBSUB] = tuple(await self._registry.active_store().channels())

    async def _load_describe(self) -> None:
        key = self._views.current.item
        if key is None:
            self._describe = None
            return
        self._describe = await self._registry.active_store().fetch_value(key)

    # -- helpers -------------------------------------------------------------

    async def _view_changed(self) -> None:
        # A live session belongs to the view that started it.
        await self._feeds.stop_all(except_slot=self.active_slot)
        await self.reload()

    async def _start_feed(self, resource: ResourceKind, target: str | None) -> None:
        connection = self._registry.active_connection()
        previous = self._last_feed.get(resource.value)
        if resource is ResourceKind.MONITOR:
            session = LiveFeedSession.command_tail(connection.name)
            self._monitor.clear()
        elif resource is ResourceKind.PUBSUB:
            channel = target or (previous.target if previous else None)
            if not channel:
                self.report("Enter a channel to subscribe to.")
                return
            session = LiveFeedSession.channel(connection.name, channel)
            if previous is None or previous.target != channel:
                self._messages.clear()
        elif resource is ResourceKind.STREAMS:
            stream = target or self._views.current.item or (previous.target if previous else None)
            if not stream:
                self.report("Select a stream to consume.")
                return
            if previous is not None and previous.target == stream and previous.connection == connection.name:
                session = await self._feeds.resume(previous)
                self._last_feed[resource.value] = session
                self.report(f"Resumed {_feed_label(session)} after {session.last_id}")
                return
            session = LiveFeedSession.stream(connection.name, stream)
            self._stream_entries.clear()
        else:
            return
        await self._feeds.start(session)
        self._last_feed[resource.value] = session
        self.report(f"Started {_feed_label(session)}")

    def _source_for(self, session: LiveFeedSession) -> FeedSource:
        connection = self._registry.connection(session.connection)
        if not connection.connected or connection.store is None:
            raise NoActiveConnection()
        store = connection.store
        if session.kind is FeedKind.COMMAND_TAIL:
            return store.command_tail()
        if session.kind is FeedKind.CHANNEL:
            return store.channel(session.target or "")
        return store.stream(session.target or "", session.last_id)

    async def _reload_keys(self) -> None:
        store = self._registry.active_store()
        self._key_details.clear()
        page = await self._pager.refresh(glob_for_filter(self._filter_text), self._page_size)
        try:
            self._total_keys = await store.dbsize()
        except Exception:
            LOG.debug("DBSIZE failed", exc_info=True)
            self._total_keys = None
        await self._show_page(page)

    async def _show_page(self, page: KeyPage) -> None:
        cache_key = (self._pager.pattern or "*", page.sequence)
        details = self._key_details.get(cache_key)
        if details is None:
            details = tuple(await self._registry.active_store().key_details(page.keys))
            self._key_details[cache_key] = details
        self._page = page
        self._keys = details
        more = "more" if page.has_more else "end"
        self.report(f"Page {page.sequence + 1} ({len(page.keys)} keys, {more})")

    def _load_server_rows(self) -> None:
        rows = []
        for connection in self._registry.connections:
            rows.append(
                ServerRow(
                    name=connection.name,
                    uri=mask_uri(connection.profile.uri),
                    status=connection.status,
                    active=connection.active,
                    info=connection.info or connection.profile.info,
                    error=connection.error,
                )
            )
        self._rows[ResourceKind.SERVERS] = tuple(rows)

    def _reset_data(self) -> None:
        self._pager.reset()
        self._key_details.clear()
        self._page = None
        self._keys = ()
        self._total_keys = None
        self._describe = None
        servers = self._rows.get(ResourceKind.SERVERS, ())
        self._rows = {ResourceKind.SERVERS: servers}
        self._monitor.clear()
        self._messages.clear()
        self._stream_entries.clear()
        self._last_feed.clear()

    def _feed_state(self) -> FeedState:
        slot = self.active_slot
        session = self._feeds.session_for(slot) if slot else None
        if session is None:
            return FeedState()
        return FeedState(
            status=session.status,
            kind=session.kind,
            target=session.target,
            dropped=session.buffer.dropped,
            failure=session.failure,
        )


def _feed_label(session: LiveFeedSession) -> str:
    if session.kind is FeedKind.COMMAND_TAIL:
        return "command monitor"
    if session.kind is FeedKind.CHANNEL:
        return f"subscription to {session.target}"
    return f"stream consumer on {session.target}"


__all__ = [
    "Action",
    "FeedState",
    "KvdashError",
    "ServerRow",
    "SessionController",
    "SessionState",
]
