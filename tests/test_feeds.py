"""Tests for the live feed controller and its bounded buffers."""

from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from fakes import FakeSource
from kvdash.errors import TransportLost
from kvdash.feeds import FeedBuffer, FeedController, FeedKind, FeedStatus, LiveFeedSession
from kvdash.models import FeedFailure, MonitorEntry, StreamEntry


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _entry(index: int) -> MonitorEntry:
    return MonitorEntry(timestamp=str(index), db="0", client="127.0.0.1:1", command=f"GET k{index}")


async def _eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class _Sources:
    def __init__(self) -> None:
        self.by_session: dict[int, FakeSource] = {}
        self.sessions: list[LiveFeedSession] = []

    def __call__(self, session: LiveFeedSession) -> FakeSource:
        source = FakeSource()
        self.by_session[session.id] = source
        self.sessions.append(session)
        return source


class _StuckSource(FakeSource):
    async def read(self, timeout: float):  # type: ignore[no-untyped-def]
        await asyncio.Event().wait()
        return ()


def test_buffer_drops_oldest_and_counts() -> None:
    buffer = FeedBuffer(3)

    for index in range(5):
        buffer.push(_entry(index))

    assert len(buffer) == 3
    assert buffer.dropped == 2
    assert [item.timestamp for item in buffer.drain()] == ["2", "3", "4"]
    assert buffer.drain() == []


def test_buffer_rejects_non_positive_capacity() -> None:
    with pytest.raises(ValueError):
        FeedBuffer(0)


@pytest.mark.anyio
async def test_overflow_keeps_most_recent_items() -> None:
    sources = _Sources()
    controller = FeedController(sources, capacity=3, read_timeout=0.01)
    session = await controller.start(LiveFeedSession.command_tail("local"))
    source = sources.by_session[session.id]
    source.push(*(_entry(index) for index in range(5)))

    await _eventually(lambda: not source.items and len(session.buffer) == 3)
    batch = controller.drain("monitor")

    assert [item.timestamp for item in batch.items] == ["2", "3", "4"]
    assert batch.dropped == 2
    assert batch.status is FeedStatus.RUNNING
    await controller.close()


@pytest.mark.anyio
async def test_drain_preserves_arrival_order_and_never_blocks() -> None:
    sources = _Sources()
    controller = FeedController(sources, read_timeout=0.01)
    session = await controller.start(LiveFeedSession.command_tail("local"))

    assert controller.drain("monitor").items == ()
    sources.by_session[session.id].push(_entry(1), _entry(2))
    await _eventually(lambda: len(session.buffer) == 2)

    assert [item.timestamp for item in controller.drain("monitor").items] == ["1", "2"]
    assert controller.drain("unknown").session_id is None
    await controller.close()


@pytest.mark.anyio
async def test_starting_in_occupied_slot_stops_previous_first() -> None:
    sources = _Sources()
    controller = FeedController(sources, read_timeout=0.01)
    events: list[tuple[int, FeedStatus]] = []
    controller.subscribe(lambda session, status: events.append((session.id, status)))

    first = await controller.start(LiveFeedSession.channel("local", "news"))
    second = await controller.start(LiveFeedSession.channel("local", "sports"))

    assert events == [
        (first.id, FeedStatus.RUNNING),
        (first.id, FeedStatus.STOPPING),
        (first.id, FeedStatus.STOPPED),
        (second.id, FeedStatus.RUNNING),
    ]
    assert sources.by_session[first.id].closed is True
    assert controller.session_for("pubsub") is second
    await controller.close()


@pytest.mark.anyio
async def test_stop_is_idempotent() -> None:
    sources = _Sources()
    controller = FeedController(sources, read_timeout=0.01)
    events: list[FeedStatus] = []
    controller.subscribe(lambda _session, status: events.append(status))
    session = await controller.start(LiveFeedSession.command_tail("local"))

    await controller.stop(session.id)
    await controller.stop(session.id)
    await controller.stop(12345)

    assert session.status is FeedStatus.STOPPED
    assert events.count(FeedStatus.STOPPED) == 1
    assert sources.by_session[session.id].closed is True


@pytest.mark.anyio
async def test_unresponsive_producer_is_cancelled_after_stop_timeout() -> None:
    stuck: list[_StuckSource] = []

    def factory(_session: LiveFeedSession) -> _StuckSource:
        source = _StuckSource()
        stuck.append(source)
        return source

    controller = FeedController(factory, read_timeout=0.01, stop_timeout=0.05)
    session = await controller.start(LiveFeedSession.command_tail("local"))
    await _eventually(lambda: stuck[0].opened)

    await controller.stop(session.id)

    assert session.status is FeedStatus.STOPPED
    assert stuck[0].closed is True


@pytest.mark.anyio
async def test_transport_loss_pushes_sentinel_and_stops() -> None:
    sources = _Sources()
    controller = FeedController(sources, read_timeout=0.01)
    session = await controller.start(LiveFeedSession.command_tail("local"))
    sources.by_session[session.id].fail(TransportLost("connection reset"))

    await _eventually(lambda: session.status is FeedStatus.STOPPED)
    batch = controller.drain("monitor")

    assert batch.items == (FeedFailure("TransportLost", "connection reset"),)
    assert batch.status is FeedStatus.STOPPED
    assert session.failure == FeedFailure("TransportLost", "connection reset")
    assert sources.by_session[session.id].closed is True
    await controller.stop(session.id)
    assert session.status is FeedStatus.STOPPED


@pytest.mark.anyio
async def test_unexpected_read_error_reports_read_failed() -> None:
    sources = _Sources()
    controller = FeedController(sources, read_timeout=0.01)
    session = await controller.start(LiveFeedSession.command_tail("local"))
    sources.by_session[session.id].fail(RuntimeError("bad reply"))

    await _eventually(lambda: session.status is FeedStatus.STOPPED)

    assert controller.drain("monitor").items == (FeedFailure("ReadFailed", "bad reply"),)


@pytest.mark.anyio
async def test_stream_drain_persists_last_id_and_resume_continues() -> None:
    sources = _Sources()
    controller = FeedController(sources, read_timeout=0.01)
    session = await controller.start(LiveFeedSession.stream("local", "orders"))
    assert session.last_id == "$"
    sources.by_session[session.id].push(StreamEntry("1-0", {"a": "1"}), StreamEntry("2-0", {"a": "2"}))

    await _eventually(lambda: len(session.buffer) == 2)
    controller.drain("streams")
    assert session.last_id == "2-0"

    await controller.stop(session.id)
    resumed = await controller.resume(session)

    assert resumed.id != session.id
    assert resumed.kind is FeedKind.STREAM
    assert resumed.target == "orders"
    assert resumed.last_id == "2-0"
    assert resumed.status is FeedStatus.RUNNING
    assert sources.sessions[-1] is resumed
    await controller.close()


class _PinnedStreamSource(FakeSource):
    def __init__(self, last_id: str) -> None:
        super().__init__()
        self.last_id = last_id

    async def open(self) -> None:
        await super().open()
        if self.last_id == "$":
            self.last_id = "7-0"


@pytest.mark.anyio
async def test_stream_records_opened_position_before_any_entry() -> None:
    opened: list[LiveFeedSession] = []

    def _factory(session: LiveFeedSession) -> FakeSource:
        opened.append(session)
        return _PinnedStreamSource(session.last_id)

    controller = FeedController(_factory, read_timeout=0.01)
    session = await controller.start(LiveFeedSession.stream("local", "orders"))

    await _eventually(lambda: session.last_id == "7-0")
    await controller.stop(session.id)
    resumed = await controller.resume(session)

    assert resumed.last_id == "7-0"
    assert opened[-1] is resumed
    await controller.close()


@pytest.mark.anyio
async def test_stop_connection_only_touches_that_connection() -> None:
    sources = _Sources()
    controller = FeedController(sources, read_timeout=0.01)
    monitor = await controller.start(LiveFeedSession.command_tail("a"))
    channel = await controller.start(LiveFeedSession.channel("b", "news"))

    await controller.stop_connection("a")

    assert monitor.status is FeedStatus.STOPPED
    assert channel.status is FeedStatus.RUNNING
    await controller.close()
    assert channel.status is FeedStatus.STOPPED


@pytest.mark.anyio
async def test_stop_all_can_spare_one_slot() -> None:
    sources = _Sources()
    controller = FeedController(sources, read_timeout=0.01)
    monitor = await controller.start(LiveFeedSession.command_tail("a"))
    channel = await controller.start(LiveFeedSession.channel("a", "news"))

    await controller.stop_all(except_slot="pubsub")

    assert monitor.status is FeedStatus.STOPPED
    assert channel.status is FeedStatus.RUNNING
    assert controller.running == (channel,)
    await controller.close()
