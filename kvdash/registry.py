"""Connection registry: named server profiles and their live connections."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Iterable

from .errors import ConnectFailed, ConnectTimeout, DuplicateName, NoActiveConnection
from .models import ConnectionStatus, ServerInfo, ServerProfile
from .store import RedisStore, StoreClient
from .uri import ConnectionSettings, mask_uri, parse_uri

LOG = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30.0

StoreFactory = Callable[[ConnectionSettings, float], StoreClient]
ConnectionListener = Callable[["Connection"], None]
ProfilesListener = Callable[[tuple[ServerProfile, ...]], None]
FeedStopper = Callable[[str], Awaitable[None]]


@dataclass(slots=True)
class Connection:
    """Runtime handle bound to exactly one profile."""

    profile: ServerProfile
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    error: str | None = None
    store: StoreClient | None = None
    info: ServerInfo | None = None
    active: bool = False

    @property
    def name(self) -> str:
        return self.profile.name

    @property
    def clustered(self) -> bool:
        return bool(self.info and self.info.clustered)

    @property
    def connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED and self.store is not None


def profile_from_uri(name: str, uri: str, info: ServerInfo | None = None) -> ServerProfile:
    """Build a profile, deriving the TLS flag and database from the URI."""

    settings = parse_uri(uri)
    return ServerProfile(name=name, uri=uri.strip(), tls=settings.tls, db=settings.db, info=info)


def _default_store_factory(settings: ConnectionSettings, timeout: float) -> StoreClient:
    return RedisStore.from_settings(settings, connect_timeout=timeout)


async def _no_feeds(_: str) -> None:
    return None


class ConnectionRegistry:
    """Owns profiles and at most one live connection per profile.

    Only the control loop calls into the registry, so the active pointer is
    never mutated concurrently.
    """

    def __init__(
        self,
        profiles: Iterable[ServerProfile] = (),
        *,
        store_factory: StoreFactory | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        stop_feeds: FeedStopper | None = None,
    ) -> None:
        self._profiles: dict[str, ServerProfile] = {}
        self._connections: dict[str, Connection] = {}
        self._store_factory = store_factory or _default_store_factory
        self._connect_timeout = connect_timeout
        self._stop_feeds = stop_feeds or _no_feeds
        self._active: str | None = None
        self._listeners: set[ConnectionListener] = set()
        self._profile_listeners: set[ProfilesListener] = set()
        for profile in profiles:
            self._store_profile(profile)

    @property
    def profiles(self) -> tuple[ServerProfile, ...]:
        return tuple(self._profiles.values())

    @property
    def connections(self) -> tuple[Connection, ...]:
        return tuple(self._connections.values())

    @property
    def active_name(self) -> str | None:
        return self._active

    def bind_feed_stopper(self, stop_feeds: FeedStopper) -> None:
        self._stop_feeds = stop_feeds

    def profile(self, name: str) -> ServerProfile:
        try:
            return self._profiles[name]
        except KeyError:
            raise ValueError(f"Server '{name}' not found.") from None

    def connection(self, name: str) -> Connection:
        self.profile(name)
        return self._connections[name]

    def active_connection(self) -> Connection:
        """Return the active connection or raise NoActiveConnection."""

        if self._active is None:
            raise NoActiveConnection()
        connection = self._connections.get(self._active)
        if connection is None or not connection.connected:
            raise NoActiveConnection()
        return connection

    def active_store(self) -> StoreClient:
        store = self.active_connection().store
        assert store is not None
        return store

    def add_profile(self, profile: ServerProfile) -> ServerProfile:
        """Store a new profile without connecting to it."""

        if not profile.name.strip():
            raise ValueError("Name cannot be empty.")
        if profile.name in self._profiles:
            raise DuplicateName(profile.name)
        self._store_profile(profile)
        self._notify_profiles()
        return profile

    async def remove_profile(self, name: str) -> None:
        self.profile(name)
        await self.disconnect(name)
        del self._profiles[name]
        del self._connections[name]
        self._notify_profiles()

    def ensure_default(self, host: str, port: int, db: int = 0) -> str:
        """Register the startup host/port/db triple as a profile; returns its name."""

        name = f"{host}:{port}"
        uri = f"redis://{host}:{port}/{db}"
        existing = self._profiles.get(name)
        if existing is None:
            self.add_profile(profile_from_uri(name, uri))
        elif existing.uri != uri:
            self._replace_profile(profile_from_uri(name, uri, existing.info))
        return name

    async def connect(self, name: str) -> Connection:
        """Connect to the profile and make it the active connection."""

        profile = self.profile(name)
        connection = self._connections[name]
        if connection.connected:
            await self._activate(connection)
            return connection
        settings = parse_uri(profile.uri)
        connection.status = ConnectionStatus.CONNECTING
        connection.error = None
        self._notify(connection)
        LOG.info("Connecting", extra={"server": name, "uri": mask_uri(profile.uri)})
        store = self._store_factory(settings, self._connect_timeout)
        try:
            await asyncio.wait_for(store.ping(), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            await self._discard(store)
            error = ConnectTimeout(name, self._connect_timeout)
            self._mark_failed(connection, str(error))
            raise error from None
        except Exception as exc:
            await self._discard(store)
            error = ConnectFailed(name, str(exc) or exc.__class__.__name__)
            self._mark_failed(connection, str(error))
            raise error from exc
        connection.store = store
        connection.status = ConnectionStatus.CONNECTED
        connection.info = await self._detect_info(store, name) or profile.info
        if connection.info is not None and connection.info != profile.info:
            self._replace_profile(replace(profile, info=connection.info))
        await self._activate(connection)
        LOG.info("Connected", extra={"server": name, "clustered": connection.clustered})
        return connection

    async def disconnect(self, name: str) -> None:
        """Stop the connection's feeds and release its transport; idempotent."""

        connection = self._connections.get(name)
        if connection is None:
            return
        await self._stop_feeds(name)
        store, connection.store = connection.store, None
        if store is not None:
            await self._discard(store)
        changed = connection.status is not ConnectionStatus.DISCONNECTED or connection.active
        connection.status = ConnectionStatus.DISCONNECTED
        connection.error = None
        connection.active = False
        if self._active == name:
            self._active = None
        if changed:
            LOG.info("Disconnected", extra={"server": name})
            self._notify(connection)

    async def close(self) -> None:
        for name in tuple(self._connections):
            await self.disconnect(name)

    def subscribe(self, listener: ConnectionListener) -> Callable[[], None]:
        """Subscribe to connection status changes; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def subscribe_profiles(self, listener: ProfilesListener) -> Callable[[], None]:
        """Subscribe to profile additions/removals (used to persist the config)."""

        self._profile_listeners.add(listener)

        def _unsubscribe() -> None:
            self._profile_listeners.discard(listener)

        return _unsubscribe

    async def _activate(self, connection: Connection) -> None:
        previous = self._active
        if previous is not None and previous != connection.name:
            await self._stop_feeds(previous)
            old = self._connections.get(previous)
            if old is not None:
                old.active = False
                self._notify(old)
        self._active = connection.name
        connection.active = True
        self._notify(connection)

    async def _detect_info(self, store: StoreClient, name: str) -> ServerInfo | None:
        try:
            return await asyncio.wait_for(store.server_info(), timeout=self._connect_timeout)
        except Exception:
            LOG.warning("Server detection failed", extra={"server": name}, exc_info=True)
            return None

    async def _discard(self, store: StoreClient) -> None:
        try:
            await store.close()
        except Exception:  # pragma: no cover
            LOG.debug("Closing store failed", exc_info=True)

    def _mark_failed(self, connection: Connection, reason: str) -> None:
        connection.status = ConnectionStatus.FAILED
        connection.error = reason
        connection.store = None
        LOG.error("Connection failed", extra={"server": connection.name, "reason": reason})
        self._notify(connection)

    def _store_profile(self, profile: ServerProfile) -> None:
        if profile.name in self._profiles:
            raise DuplicateName(profile.name)
        self._profiles[profile.name] = profile
        self._connections[profile.name] = Connection(profile)

    def _replace_profile(self, profile: ServerProfile) -> None:
        self._profiles[profile.name] = profile
        self._connections[profile.name].profile = profile
        self._notify_profiles()

    def _notify(self, connection: Connection) -> None:
        for listener in tuple(self._listeners):
            listener(connection)

    def _notify_profiles(self) -> None:
        profiles = self.profiles
        for listener in tuple(self._profile_listeners):
            listener(profiles)


__all__ = [
    "Connection",
    "ConnectionRegistry",
    "DEFAULT_CONNECT_TIMEOUT",
    "StoreFactory",
    "profile_from_uri",
]
