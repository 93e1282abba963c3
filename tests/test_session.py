"""Tests for the session controller wiring registry, pager, feeds and views."""

from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from fakes import FakeStore, FakeStoreFactory
from kvdash.errors import AtStart, NoActiveConnection, TransportLost
from kvdash.feeds import FeedBatch, FeedKind, FeedStatus
from kvdash.models import ClientInfo, ConnectionStatus, MonitorEntry, StreamEntry
from kvdash.registry import ConnectionRegistry, profile_from_uri
from kvdash.session import Action, ServerRow, SessionController, SessionState
from kvdash.views import ResourceKind


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _keys() -> dict[str, str]:
    return {"user:1": "string", "user:2": "hash", "cart:1": "list"}


def _session(*stores: tuple[str, FakeStore], page_size: int = 100) -> SessionController:
    factory = FakeStoreFactory(dict(stores))
    profiles = [profile_from_uri(name, f"redis://{name}:6379/0") for name, _ in stores]
    registry = ConnectionRegistry(profiles, store_factory=factory)
    return SessionController(registry, page_size=page_size)


async def _connected(store: FakeStore | None = None, **kwargs) -> tuple[SessionController, FakeStore]:  # type: ignore[no-untyped-def]
    store = store or FakeStore(_keys())
    session = _session(("local", store), **kwargs)
    await session.handle(Action("connect", "local"))
    return session, store


async def _eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _monitor(index: int) -> MonitorEntry:
    return MonitorEntry(timestamp=str(index), db="0", client="c", command=f"SET k{index} v")


@pytest.mark.anyio
async def test_connect_loads_first_key_page() -> None:
    session, store = await _connected()

    state = session.snapshot()

    assert state.server == "local"
    assert state.connection_status is ConnectionStatus.CONNECTED
    assert state.view is ResourceKind.KEYS
    assert [info.key for info in state.keys] == ["cart:1", "user:1", "user:2"]
    assert [info.key_type for info in state.keys] == ["list", "string", "hash"]
    assert state.total_keys == 3
    assert state.has_more is False
    assert state.status == "Connected to local (standalone)"
    assert store.scan_calls == [(0, "*", 100)]
    await session.shutdown()


@pytest.mark.anyio
async def test_filter_text_becomes_substring_glob() -> None:
    session, store = await _connected()

    await session.handle(Action("filter", "user"))

    assert store.scan_calls[-1] == (0, "*user*", 100)
    assert session.snapshot().pattern == "*user*"
    await session.handle(Action("filter", ""))
    assert store.scan_calls[-1] == (0, "*", 100)
    await session.shutdown()


@pytest.mark.anyio
async def test_prev_page_uses_cache_without_store_requests() -> None:
    store = FakeStore(pages={0: (5, ["a", "b", "c"]), 5: (0, ["d", "e"])})
    session, _ = await _connected(store, page_size=3)

    await session.handle(Action("next_page"))
    assert [info.key for info in session.snapshot().keys] == ["d", "e"]
    scans, details = len(store.scan_calls), len(store.detail_calls)

    await session.handle(Action("prev_page"))

    state = session.snapshot()
    assert [info.key for info in state.keys] == ["a", "b", "c"]
    assert state.has_more is True
    assert state.can_go_back is False
    assert (len(store.scan_calls), len(store.detail_calls)) == (scans, details)
    with pytest.raises(AtStart):
        await session.handle(Action("prev_page"))
    await session.shutdown()


@pytest.mark.anyio
async def test_next_page_stays_on_visible_page_when_details_fail() -> None:
    store = FakeStore(pages={0: (5, ["a", "b", "c"]), 5: (0, ["d", "e"])})
    session, _ = await _connected(store, page_size=3)
    working = store.key_details

    async def _broken(keys):  # type: ignore[no-untyped-def]
        raise TransportLost("pipeline failed")

    store.key_details = _broken  # type: ignore[method-assign]
    with pytest.raises(TransportLost):
        await session.handle(Action("next_page"))

    assert session.pager.position == 0
    assert [info.key for info in session.snapshot().keys] == ["a", "b", "c"]

    store.key_details = working  # type: ignore[method-assign]
    scans = len(store.scan_calls)
    await session.handle(Action("next_page"))

    assert [info.key for info in session.snapshot().keys] == ["d", "e"]
    assert len(store.scan_calls) == scans
    await session.shutdown()


@pytest.mark.anyio
async def test_actions_without_connection_raise() -> None:
    session = _session(("local", FakeStore()))

    with pytest.raises(NoActiveConnection):
        await session.handle(Action("next_page"))
    with pytest.raises(NoActiveConnection):
        await session.handle(Action("select", "clients"))


@pytest.mark.anyio
async def test_unknown_action_is_rejected() -> None:
    session = _session(("local", FakeStore()))

    with pytest.raises(ValueError, match="Unknown action"):
        await session.handle(Action("drop_database"))


@pytest.mark.anyio
async def test_describe_and_back() -> None:
    session, _ = await _connected()

    await session.handle(Action("describe", "user:1"))
    state = session.snapshot()
    assert state.view is ResourceKind.DESCRIBE
    assert state.breadcrumb == "Keys > Describe(user:1)"
    assert state.describe is not None
    assert state.describe.value == "value-of-user:1"

    await session.handle(Action("back"))
    assert session.snapshot().view is ResourceKind.KEYS
    await session.handle(Action("back"))
    assert session.snapshot().view is ResourceKind.KEYS
    await session.shutdown()


@pytest.mark.anyio
async def test_resource_views_load_rows() -> None:
    session, store = await _connected()

    await session.handle(Action("select", "clients"))
    assert session.snapshot().rows[ResourceKind.CLIENTS] == tuple(store.clients_result)

    store.clients_result = [ClientInfo("9", "10.0.0.1:1", "", "1", "0", "N", "0", "ping")]
    await session.reload()
    assert session.snapshot().rows[ResourceKind.CLIENTS][0].id == "9"  # type: ignore[attr-defined]

    for name in ("info", "slowlog", "config", "acl", "streams", "pubsub", "servers"):
        await session.handle(Action("select", name))
        assert session.snapshot().rows[ResourceKind.parse(name)]
    await session.shutdown()


@pytest.mark.anyio
async def test_monitor_view_starts_command_tail_newest_first() -> None:
    session, store = await _connected()

    await session.handle(Action("select", "monitor"))
    feed = session.feeds.session_for("monitor")
    assert feed is not None and feed.status is FeedStatus.RUNNING
    kind, _, _, source = store.sources[-1]
    assert kind == "command_tail"

    source.push(_monitor(1), _monitor(2))
    await _eventually(lambda: len(feed.buffer) == 2)
    assert session.apply_feed(session.drain_feed()) is True

    state = session.snapshot()
    assert [entry.timestamp for entry in state.monitor] == ["2", "1"]
    assert state.feed.kind is FeedKind.COMMAND_TAIL
    await session.shutdown()


@pytest.mark.anyio
async def test_leaving_live_view_stops_its_feed() -> None:
    session, _ = await _connected()
    await session.handle(Action("select", "monitor"))
    feed = session.feeds.session_for("monitor")
    assert feed is not None

    await session.handle(Action("select", "clients"))

    assert feed.status is FeedStatus.STOPPED
    await session.handle(Action("back"))
    await session.handle(Action("back"))
    assert session.snapshot().view is ResourceKind.KEYS
    await session.shutdown()


@pytest.mark.anyio
async def test_back_from_live_view_stops_feed() -> None:
    session, _ = await _connected()
    await session.handle(Action("subscribe", "news"))
    feed = session.feeds.session_for("pubsub")
    assert feed is not None and feed.target == "news"

    await session.handle(Action("back"))

    assert feed.status is FeedStatus.STOPPED
    await session.shutdown()


@pytest.mark.anyio
async def test_filter_change_keeps_running_feed() -> None:
    session, store = await _connected()
    await session.handle(Action("subscribe", "news"))
    assert store.sources[-1][:2] == ("channel", "news")

    await session.handle(Action("filter", "user"))

    feed = session.feeds.session_for("pubsub")
    assert feed is not None and feed.running
    await session.shutdown()


@pytest.mark.anyio
async def test_toggle_feed_resumes_stream_after_last_id() -> None:
    session, store = await _connected()
    await session.handle(Action("select", "streams", "orders"))
    feed = session.feeds.session_for("streams")
    assert feed is not None
    assert store.sources[-1][:3] == ("stream", "orders", "$")

    store.sources[-1][3].push(StreamEntry("5-0", {"total": "10"}))
    await _eventually(lambda: len(feed.buffer) == 1)
    session.apply_feed(session.drain_feed())
    assert session.snapshot().stream_entries[0].id == "5-0"

    await session.handle(Action("toggle_feed"))
    assert feed.status is FeedStatus.STOPPED
    await session.handle(Action("toggle_feed"))

    assert store.sources[-1][:3] == ("stream", "orders", "5-0")
    resumed = session.feeds.session_for("streams")
    assert resumed is not None and resumed.running
    assert session.snapshot().stream_entries[0].id == "5-0"
    await session.shutdown()


@pytest.mark.anyio
async def test_toggle_feed_outside_live_view_reports() -> None:
    session, _ = await _connected()

    await session.handle(Action("toggle_feed"))

    assert session.snapshot().status == "This view has no live feed."
    await session.shutdown()


@pytest.mark.anyio
async def test_transport_loss_reports_but_keeps_connection() -> None:
    session, store = await _connected()
    await session.handle(Action("select", "monitor"))
    feed = session.feeds.session_for("monitor")
    assert feed is not None
    store.sources[-1][3].fail(TransportLost("connection reset"))

    await _eventually(lambda: feed.status is FeedStatus.STOPPED)
    session.apply_feed(session.drain_feed())

    state = session.snapshot()
    assert state.error is not None and "TransportLost" in state.error
    assert state.feed.status is FeedStatus.STOPPED
    assert state.connection_status is ConnectionStatus.CONNECTED
    await session.shutdown()


def test_live_lists_are_capped() -> None:
    session = _session(("local", FakeStore()))
    items = tuple(_monitor(index) for index in range(1005))

    session.apply_feed(FeedBatch(session_id=1, status=FeedStatus.RUNNING, items=items))

    state = session.snapshot()
    assert len(state.monitor) == 1000
    assert state.monitor[0].timestamp == "1004"


@pytest.mark.anyio
async def test_switching_server_stops_feeds_and_resets_view() -> None:
    session = _session(("a", FakeStore(_keys())), ("b", FakeStore({"other": "string"})))
    await session.handle(Action("connect", "a"))
    await session.handle(Action("select", "monitor"))
    feed = session.feeds.session_for("monitor")
    assert feed is not None

    await session.handle(Action("connect", "b"))

    state = session.snapshot()
    assert feed.status is FeedStatus.STOPPED
    assert state.server == "b"
    assert state.view is ResourceKind.KEYS
    assert [info.key for info in state.keys] == ["other"]
    assert state.monitor == ()
    await session.shutdown()


@pytest.mark.anyio
async def test_delete_key_refreshes_page() -> None:
    session, store = await _connected()
    await session.handle(Action("describe", "user:1"))

    await session.handle(Action("delete_key", "user:1"))

    state = session.snapshot()
    assert "user:1" not in store.keys
    assert state.view is ResourceKind.KEYS
    assert [info.key for info in state.keys] == ["cart:1", "user:2"]
    assert state.status == "Deleted 1 key(s)"
    await session.shutdown()


@pytest.mark.anyio
async def test_add_and_delete_server_update_rows() -> None:
    session, _ = await _connected()

    await session.handle(Action("add_server", "staging", "redis://pw@staging:6379/1"))
    rows = session.snapshot().rows[ResourceKind.SERVERS]
    assert [row.name for row in rows] == ["local", "staging"]  # type: ignore[attr-defined]
    staging = rows[1]
    assert isinstance(staging, ServerRow)
    assert staging.uri == "redis://****@staging:6379/1"
    assert staging.status is ConnectionStatus.DISCONNECTED

    await session.handle(Action("delete_server", "local"))

    state = session.snapshot()
    assert [row.name for row in state.rows[ResourceKind.SERVERS]] == ["staging"]  # type: ignore[attr-defined]
    assert state.server is None
    assert state.keys == ()
    await session.shutdown()


@pytest.mark.anyio
async def test_disconnect_clears_data() -> None:
    session, store = await _connected()

    await session.handle(Action("disconnect"))

    state = session.snapshot()
    assert state.connection_status is ConnectionStatus.DISCONNECTED
    assert state.keys == ()
    assert store.closed is True


@pytest.mark.anyio
async def test_subscribers_receive_snapshots() -> None:
    session = _session(("local", FakeStore(_keys())))
    states: list[SessionState] = []

    unsubscribe = session.subscribe(states.append)
    await session.handle(Action("connect", "local"))
    session.publish()
    unsubscribe()
    session.publish()

    assert states[0].server is None
    assert states[1].status == "Connecting to local..."
    assert states[-1].server == "local"
    assert len(states) == 3
    await session.shutdown()


@pytest.mark.anyio
async def test_startup_without_server_shows_servers_view() -> None:
    registry = ConnectionRegistry(store_factory=FakeStoreFactory())
    session = SessionController(registry)

    await session.startup(None)

    state = session.snapshot()
    assert state.view is ResourceKind.SERVERS
    assert "No server configured" in state.status
