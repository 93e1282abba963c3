"""Store client wrapping redis-py's asyncio API, plus live feed sources."""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from datetime import datetime
from typing import Any, Iterable, Mapping, Protocol, Sequence

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import TransportLost
from .models import (
    AclUser,
    ChannelSummary,
    ClientInfo,
    ConfigEntry,
    FeedItem,
    InfoLine,
    KeyInfo,
    KeyValue,
    MonitorEntry,
    PubSubMessage,
    ServerInfo,
    ServerType,
    SlowlogEntry,
    StreamEntry,
    StreamSummary,
)
from .uri import ConnectionSettings

LOG = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)

STREAM_READ_COUNT = 100
SLOWLOG_LENGTH = 100


class FeedSource(Protocol):
    """A push-based data source read in bounded steps by a feed producer."""

    async def open(self) -> None: ...

    async def read(self, timeout: float) -> Sequence[FeedItem]:
        """Return the items received within `timeout` seconds (possibly none)."""

    async def close(self) -> None: ...


class StoreClient(Protocol):
    """Store commands used by the session core."""

    async def ping(self) -> bool: ...

    async def server_info(self) -> ServerInfo: ...

    async def scan(self, cursor: int, match: str, count: int) -> tuple[int, list[str]]: ...

    async def dbsize(self) -> int: ...

    async def key_details(self, keys: Sequence[str]) -> list[KeyInfo]: ...

    async def fetch_value(self, key: str) -> KeyValue: ...

    async def delete_keys(self, keys: Sequence[str]) -> int: ...

    async def clients(self) -> list[ClientInfo]: ...

    async def info(self) -> list[InfoLine]: ...

    async def slowlog(self) -> list[SlowlogEntry]: ...

    async def configs(self) -> list[ConfigEntry]: ...

    async def acls(self) -> list[AclUser]: ...

    async def streams(self) -> list[StreamSummary]: ...

    async def channels(self) -> list[ChannelSummary]: ...

    def command_tail(self) -> FeedSource: ...

    def channel(self, channel: str) -> FeedSource: ...

    def stream(self, name: str, last_id: str = "$") -> FeedSource: ...

    async def close(self) -> None: ...


class RedisStore:
    """Store client backed by `redis.asyncio.Redis`."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: ConnectionSettings, *, connect_timeout: float = 30.0) -> RedisStore:
        client = aioredis.Redis(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            username=settings.username,
            password=settings.password,
            ssl=settings.tls,
            socket_connect_timeout=connect_timeout,
            decode_responses=True,
        )
        return cls(client)

    @property
    def client(self) -> aioredis.Redis:
        return self._client

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()

    async def server_info(self) -> ServerInfo:
        """Detect the deployment type from INFO, falling back to CLUSTER INFO."""

        info = await self._client.info()
        version = str(info.get("redis_version", ""))
        os_name = str(info.get("os", ""))
        role = str(info.get("role", ""))
        mode = str(info.get("redis_mode", ""))
        if mode == "sentinel":
            return ServerInfo(ServerType.SENTINEL, version, os_name, "sentinel")
        if mode != "cluster" and not info.get("cluster_enabled"):
            return ServerInfo(ServerType.STANDALONE, version, os_name, role)
        try:
            raw = await self._client.execute_command("CLUSTER INFO")
        except ResponseError:
            return ServerInfo(ServerType.STANDALONE, version, os_name, role)
        details = _parse_colon_lines(raw)
        if details.get("cluster_state") != "ok":
            return ServerInfo(ServerType.STANDALONE, version, os_name, role)
        size = _to_int(details.get("cluster_size"), 0)
        return ServerInfo(ServerType.CLUSTER, version, os_name, role, cluster_size=size)

    async def scan(self, cursor: int, match: str, count: int) -> tuple[int, list[str]]:
        next_cursor, keys = await self._client.scan(cursor=cursor, match=match, count=count)
        return int(next_cursor), [str(key) for key in keys]

    async def dbsize(self) -> int:
        return int(await self._client.dbsize())

    async def key_details(self, keys: Sequence[str]) -> list[KeyInfo]:
        """Fetch TYPE and TTL for each key in one round trip."""

        if not keys:
            return []
        async with self._client.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.type(key)
                pipe.ttl(key)
            results = await pipe.execute()
        details: list[KeyInfo] = []
        for index, key in enumerate(keys):
            key_type = results[index * 2]
            ttl = results[index * 2 + 1]
            details.append(KeyInfo(key=key, key_type=str(key_type or "none"), ttl=_to_int(ttl, -1)))
        return details

    async def fetch_value(self, key: str) -> KeyValue:
        key_type = str(await self._client.type(key))
        client = self._client
        if key_type == "string":
            value: object = await client.get(key)
        elif key_type == "list":
            value = tuple(await client.lrange(key, 0, -1))
        elif key_type == "set":
            value = tuple(sorted(await client.smembers(key)))
        elif key_type == "zset":
            value = tuple((member, float(score)) for member, score in await client.zrange(key, 0, -1, withscores=True))
        elif key_type == "hash":
            value = dict(await client.hgetall(key))
        elif key_type == "stream":
            value = tuple(_stream_entries(await client.xrange(key, "-", "+")))
        elif key_type == "none":
            return KeyValue(key=key, key_type=key_type, error="Key does not exist.")
        else:
            return KeyValue(key=key, key_type=key_type, error=f"Unsupported type: {key_type}")
        return KeyValue(key=key, key_type=key_type, value=value)

    async def delete_keys(self, keys: Sequence[str]) -> int:
        deleted = 0
        for start in range(0, len(keys), 100):
            chunk = keys[start : start + 100]
            if chunk:
                deleted += int(await self._client.delete(*chunk))
        return deleted

    async def clients(self) -> list[ClientInfo]:
        rows = await self._client.client_list()
        return [
            ClientInfo(
                id=str(row.get("id", "")),
                addr=str(row.get("addr", "")),
                name=str(row.get("name", "")),
                age=str(row.get("age", "")),
                idle=str(row.get("idle", "")),
                flags=str(row.get("flags", "")),
                db=str(row.get("db", "")),
                cmd=str(row.get("cmd", "")),
            )
            for row in rows
        ]

    async def info(self) -> list[InfoLine]:
        return info_lines(await self._client.info())

    async def slowlog(self) -> list[SlowlogEntry]:
        rows = await self._client.slowlog_get(SLOWLOG_LENGTH)
        entries: list[SlowlogEntry] = []
        for row in rows:
            command = row.get("command", "")
            if isinstance(command, (list, tuple)):
                command = " ".join(str(part) for part in command)
            entries.append(
                SlowlogEntry(
                    id=_to_int(row.get("id"), 0),
                    timestamp=_to_int(row.get("start_time"), 0),
                    duration=_to_int(row.get("duration"), 0),
                    command=str(command),
                )
            )
        return entries

    async def configs(self) -> list[ConfigEntry]:
        values = await self._client.config_get("*")
        return [ConfigEntry(str(key), str(value)) for key, value in sorted(values.items())]

    async def acls(self) -> list[AclUser]:
        return parse_acl_list(await self._client.acl_list())

    async def streams(self) -> list[StreamSummary]:
        summaries: list[StreamSummary] = []
        async for name in self._client.scan_iter(_type="STREAM"):
            length = int(await self._client.xlen(name))
            first = await self._client.xrange(name, "-", "+", count=1)
            last = await self._client.xrevrange(name, "+", "-", count=1)
            summaries.append(
                StreamSummary(
                    name=str(name),
                    length=length,
                    first_entry_id=str(first[0][0]) if first else "-",
                    last_entry_id=str(last[0][0]) if last else "-",
                )
            )
        summaries.sort(key=lambda summary: summary.name)
        return summaries

    async def channels(self) -> list[ChannelSummary]:
        names = [str(name) for name in await self._client.pubsub_channels("*")]
        if not names:
            return []
        counts = dict(await self._client.pubsub_numsub(*names))
        return [ChannelSummary(name, _to_int(counts.get(name), 0)) for name in sorted(names)]

    def command_tail(self) -> MonitorSource:
        return MonitorSource(self._client)

    def channel(self, channel: str) -> ChannelSource:
        return ChannelSource(self._client, channel)

    def stream(self, name: str, last_id: str = "$") -> StreamSource:
        return StreamSource(self._client, name, last_id)


class MonitorSource:
    """Tails MONITOR output on a dedicated connection."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client
        self._stack = AsyncExitStack()
        self._monitor: Any = None
        self._pending: asyncio.Task[Any] | None = None

    async def open(self) -> None:
        try:
            self._monitor = await self._stack.enter_async_context(self._client.monitor())
        except _TRANSPORT_ERRORS as exc:
            raise TransportLost(str(exc)) from exc

    async def read(self, timeout: float) -> Sequence[FeedItem]:
        # The pending read survives a timeout so no reply is ever cut in half.
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._monitor.next_command())
        done, _ = await asyncio.wait({self._pending}, timeout=timeout)
        if not done:
            return ()
        task, self._pending = self._pending, None
        try:
            command = task.result()
        except _TRANSPORT_ERRORS as exc:
            raise TransportLost(str(exc)) from exc
        return (monitor_entry(command),)

    async def close(self) -> None:
        if self._pending is not None:
            pending, self._pending = self._pending, None
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
        try:
            await self._stack.aclose()
        except _TRANSPORT_ERRORS:
            LOG.debug("Monitor connection already closed")


class ChannelSource:
    """Receives messages from one subscribed channel."""

    def __init__(self, client: aioredis.Redis, channel: str) -> None:
        self._channel = channel
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)

    async def open(self) -> None:
        try:
            await self._pubsub.subscribe(self._channel)
        except _TRANSPORT_ERRORS as exc:
            raise TransportLost(str(exc)) from exc

    async def read(self, timeout: float) -> Sequence[FeedItem]:
        try:
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        except _TRANSPORT_ERRORS as exc:
            raise TransportLost(str(exc)) from exc
        if not message or message.get("type") != "message":
            return ()
        return (
            PubSubMessage(
                timestamp=datetime.now().strftime("%H:%M:%S"),
                channel=str(message.get("channel", self._channel)),
                message=str(message.get("data", "")),
            ),
        )

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe(self._channel)
        except _TRANSPORT_ERRORS:
            LOG.debug("Unsubscribe skipped; connection already closed", extra={"channel": self._channel})
        await self._pubsub.aclose()


class StreamSource:
    """Reads a stream with XREAD, continuing after the last delivered id."""

    def __init__(self, client: aioredis.Redis, name: str, last_id: str = "$") -> None:
        self._client = client
        self._name = name
        self.last_id = last_id

    async def open(self) -> None:
        """Pin `$` to the newest existing id so entries between reads are not skipped."""

        if self.last_id != "$":
            return
        try:
            newest = await self._client.xrevrange(self._name, "+", "-", count=1)
        except _TRANSPORT_ERRORS as exc:
            raise TransportLost(str(exc)) from exc
        self.last_id = str(newest[0][0]) if newest else "0-0"

    async def read(self, timeout: float) -> Sequence[FeedItem]:
        block_ms = max(1, int(timeout * 1000))
        try:
            response = await self._client.xread({self._name: self.last_id}, count=STREAM_READ_COUNT, block=block_ms)
        except _TRANSPORT_ERRORS as exc:
            raise TransportLost(str(exc)) from exc
        entries: list[StreamEntry] = []
        for _, messages in _xread_streams(response):
            entries.extend(_stream_entries(messages))
        if entries:
            self.last_id = entries[-1].id
        return entries

    async def close(self) -> None:
        return None


def monitor_entry(command: Mapping[str, Any]) -> MonitorEntry:
    """Convert a redis-py monitor record into a display entry."""

    raw_time = command.get("time")
    try:
        timestamp = datetime.fromtimestamp(float(raw_time)).strftime("%Y-%m-%d %H:%M:%S")
    except (TypeError, ValueError, OverflowError):
        timestamp = str(raw_time)
    address = command.get("client_address")
    port = command.get("client_port")
    if address and port:
        client = f"{address}:{port}"
    else:
        client = str(command.get("client_type") or address or "unknown")
    return MonitorEntry(
        timestamp=timestamp,
        db=str(command.get("db", "0")),
        client=client,
        command=str(command.get("command", "")),
    )


def info_lines(info: Mapping[str, Any]) -> list[InfoLine]:
    """Flatten a parsed INFO reply; keyspace entries become `db0.keys` lines."""

    lines: list[InfoLine] = []
    for key, value in info.items():
        if isinstance(value, Mapping):
            lines.append(InfoLine(f"# {key}"))
            for field_name, field_value in value.items():
                lines.append(InfoLine(f"{key}.{field_name}", str(field_value)))
        else:
            lines.append(InfoLine(str(key), str(value)))
    return lines


def parse_acl_list(lines: Iterable[str]) -> list[AclUser]:
    users: list[AclUser] = []
    for line in lines:
        parts = str(line).split()
        if len(parts) >= 3 and parts[0] == "user":
            users.append(AclUser(name=parts[1], status=parts[2], rules=" ".join(parts[3:])))
    return users


def _parse_colon_lines(raw: object) -> dict[str, str]:
    if isinstance(raw, Mapping):
        return {str(key): str(value) for key, value in raw.items()}
    if isinstance(raw, bytes):
        raw = raw.decode()
    details: dict[str, str] = {}
    for line in str(raw).splitlines():
        if ":" in line:
            key, value = line.split(":", 1)
            details[key.strip()] = value.strip()
    return details


def _xread_streams(response: object) -> list[tuple[str, list[Any]]]:
    if not response:
        return []
    return [(str(name), list(messages)) for name, messages in response]  # type: ignore[union-attr]


def _stream_entries(messages: Iterable[Any]) -> list[StreamEntry]:
    entries: list[StreamEntry] = []
    for entry_id, fields in messages:
        entries.append(StreamEntry(id=str(entry_id), fields={str(k): str(v) for k, v in (fields or {}).items()}))
    return entries


def _to_int(value: object, default: int) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


__all__ = [
    "ChannelSource",
    "FeedSource",
    "MonitorSource",
    "RedisStore",
    "StoreClient",
    "StreamSource",
    "monitor_entry",
    "parse_acl_list",
    "info_lines",
]
