"""Live feed controller: one cancellable producer per view slot."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable

from .errors import TransportLost
from .models import FeedFailure, FeedItem, StreamEntry
from .store import FeedSource

LOG = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000
DEFAULT_READ_TIMEOUT = 1.0
DEFAULT_STOP_TIMEOUT = 2.0

_SESSION_IDS = itertools.count(1)


class FeedKind(str, Enum):
    COMMAND_TAIL = "command_tail"
    CHANNEL = "channel"
    STREAM = "stream"


class FeedStatus(str, Enum):
    IDLE = "Idle"
    RUNNING = "Running"
    STOPPING = "Stopping"
    STOPPED = "Stopped"


class FeedBuffer:
    """Bounded FIFO that evicts the oldest item when full and counts drops."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("Feed capacity must be positive.")
        self._items: deque[FeedItem] = deque(maxlen=capacity)
        self.dropped = 0

    @property
    def capacity(self) -> int:
        return self._items.maxlen or 0

    def __len__(self) -> int:
        return len(self._items)

    def push(self, item: FeedItem) -> None:
        if len(self._items) == self._items.maxlen:
            self.dropped += 1
        self._items.append(item)

    def drain(self) -> list[FeedItem]:
        items = list(self._items)
        self._items.clear()
        return items


@dataclass(slots=True, eq=False)
class LiveFeedSession:
    """A live data source bound to one view slot and one connection."""

    kind: FeedKind
    slot: str
    connection: str
    target: str | None = None
    last_id: str = "$"
    id: int = field(default_factory=lambda: next(_SESSION_IDS))
    status: FeedStatus = FeedStatus.IDLE
    buffer: FeedBuffer = field(default_factory=FeedBuffer)
    failure: FeedFailure | None = None

    @classmethod
    def command_tail(cls, connection: str, *, slot: str = "monitor") -> LiveFeedSession:
        return cls(FeedKind.COMMAND_TAIL, slot, connection)

    @classmethod
    def channel(cls, connection: str, channel: str, *, slot: str = "pubsub") -> LiveFeedSession:
        return cls(FeedKind.CHANNEL, slot, connection, target=channel)

    @classmethod
    def stream(cls, connection: str, stream: str, *, last_id: str = "$", slot: str = "streams") -> LiveFeedSession:
        return cls(FeedKind.STREAM, slot, connection, target=stream, last_id=last_id)

    def resumed(self) -> LiveFeedSession:
        """Fresh session of the same kind and target, continuing from `last_id`."""

        return replace(
            self,
            id=next(_SESSION_IDS),
            status=FeedStatus.IDLE,
            buffer=FeedBuffer(self.buffer.capacity),
            failure=None,
        )

    @property
    def running(self) -> bool:
        return self.status is FeedStatus.RUNNING


@dataclass(frozen=True, slots=True)
class FeedBatch:
    """Items drained from a session in one tick."""

    session_id: int | None
    status: FeedStatus
    items: tuple[FeedItem, ...] = ()
    dropped: int = 0


EMPTY_BATCH = FeedBatch(session_id=None, status=FeedStatus.IDLE)

SourceFactory = Callable[[LiveFeedSession], FeedSource]
FeedListener = Callable[[LiveFeedSession, FeedStatus], None]


class FeedController:
    """Owns the producer tasks that bridge push sources into bounded buffers.

    Producers never touch application state; they only push into their
    session's buffer. The control loop pulls with `drain`.
    """

    def __init__(
        self,
        source_factory: SourceFactory,
        *,
        capacity: int = DEFAULT_CAPACITY,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
    ) -> None:
        self._source_factory = source_factory
        self._capacity = capacity
        self._read_timeout = read_timeout
        self._stop_timeout = stop_timeout
        self._slots: dict[str, LiveFeedSession] = {}
        self._sessions: dict[int, LiveFeedSession] = {}
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._stop_events: dict[int, asyncio.Event] = {}
        self._listeners: set[FeedListener] = set()

    def session_for(self, slot: str) -> LiveFeedSession | None:
        return self._slots.get(slot)

    def get(self, session_id: int) -> LiveFeedSession | None:
        return self._sessions.get(session_id)

    @property
    def running(self) -> tuple[LiveFeedSession, ...]:
        return tuple(session for session in self._slots.values() if session.running)

    def subscribe(self, listener: FeedListener) -> Callable[[], None]:
        """Subscribe to session status transitions; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    async def start(self, session: LiveFeedSession) -> LiveFeedSession:
        """Start a producer, first stopping whatever runs in the same slot."""

        previous = self._slots.get(session.slot)
        if previous is not None and previous is not session:
            await self.stop(previous.id)
            self._forget(previous)
        if session.buffer.capacity != self._capacity and not len(session.buffer):
            session.buffer = FeedBuffer(self._capacity)
        source = self._source_factory(session)
        stop_event = asyncio.Event()
        self._slots[session.slot] = session
        self._sessions[session.id] = session
        self._stop_events[session.id] = stop_event
        self._set_status(session, FeedStatus.RUNNING)
        self._tasks[session.id] = asyncio.create_task(
            self._produce(session, source, stop_event),
            name=f"kvdash-feed-{session.kind.value}-{session.id}",
        )
        LOG.info(
            "Feed started",
            extra={"session": session.id, "kind": session.kind.value, "target": session.target},
        )
        return session

    async def resume(self, session: LiveFeedSession) -> LiveFeedSession:
        """Start a fresh session of the same kind and target, continuing from its `last_id`."""

        return await self.start(session.resumed())

    def drain(self, slot: str) -> FeedBatch:
        """Take everything queued for the slot; never suspends."""

        session = self._slots.get(slot)
        if session is None:
            return EMPTY_BATCH
        items = session.buffer.drain()
        if session.kind is FeedKind.STREAM:
            for item in reversed(items):
                if isinstance(item, StreamEntry):
                    session.last_id = item.id
                    break
        return FeedBatch(
            session_id=session.id,
            status=session.status,
            items=tuple(items),
            dropped=session.buffer.dropped,
        )

    async def stop(self, session_id: int) -> None:
        """Ask the producer to exit and wait for it; safe to repeat."""

        session = self._sessions.get(session_id)
        if session is None or session.status is FeedStatus.STOPPED:
            return
        if session.status is FeedStatus.IDLE:
            self._set_status(session, FeedStatus.STOPPED)
            return
        self._set_status(session, FeedStatus.STOPPING)
        stop_event = self._stop_events.get(session_id)
        if stop_event is not None:
            stop_event.set()
        task = self._tasks.get(session_id)
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=self._stop_timeout)
            if not done:
                LOG.warning("Feed producer did not stop in time; cancelling", extra={"session": session_id})
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._tasks.pop(session_id, None)
        self._stop_events.pop(session_id, None)
        self._set_status(session, FeedStatus.STOPPED)
        LOG.info("Feed stopped", extra={"session": session_id})

    async def stop_slot(self, slot: str) -> None:
        session = self._slots.get(slot)
        if session is not None:
            await self.stop(session.id)

    async def stop_connection(self, connection: str) -> None:
        """Stop every session reading from the named connection."""

        for session in tuple(self._slots.values()):
            if session.connection == connection:
                await self.stop(session.id)

    async def stop_all(self, *, except_slot: str | None = None) -> None:
        for slot, session in tuple(self._slots.items()):
            if slot != except_slot:
                await self.stop(session.id)

    async def close(self) -> None:
        await self.stop_all()
        self._slots.clear()
        self._sessions.clear()

    async def _produce(self, session: LiveFeedSession, source: FeedSource, stop_event: asyncio.Event) -> None:
        try:
            await source.open()
            if session.kind is FeedKind.STREAM:
                session.last_id = getattr(source, "last_id", session.last_id)
            while not stop_event.is_set():
                items = await source.read(self._read_timeout)
                if stop_event.is_set():
                    break
                for item in items:
                    session.buffer.push(item)
        except TransportLost as exc:
            LOG.warning("Feed transport lost", extra={"session": session.id, "error": str(exc)})
            self._fail(session, FeedFailure("TransportLost", str(exc)))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOG.exception("Feed producer failed", extra={"session": session.id})
            self._fail(session, FeedFailure("ReadFailed", str(exc)))
        finally:
            try:
                await source.close()
            except Exception:
                LOG.debug("Feed source close failed", extra={"session": session.id}, exc_info=True)

    def _fail(self, session: LiveFeedSession, failure: FeedFailure) -> None:
        session.failure = failure
        session.buffer.push(failure)
        self._stop_events.pop(session.id, None)
        self._set_status(session, FeedStatus.STOPPED)

    def _forget(self, session: LiveFeedSession) -> None:
        if self._slots.get(session.slot) is session:
            del self._slots[session.slot]
        self._sessions.pop(session.id, None)
        self._tasks.pop(session.id, None)

    def _set_status(self, session: LiveFeedSession, status: FeedStatus) -> None:
        if session.status is status:
            return
        session.status = status
        for listener in tuple(self._listeners):
            listener(session, status)


__all__ = [
    "EMPTY_BATCH",
    "FeedBatch",
    "FeedBuffer",
    "FeedController",
    "FeedKind",
    "FeedStatus",
    "LiveFeedSession",
    "SourceFactory",
]
