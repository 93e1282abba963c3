"""Table widget that renders whichever resource view is active."""

from __future__ import annotations

import json
from typing import Callable

from textual.widgets import DataTable

from kvdash.models import (
    AclUser,
    ChannelSummary,
    ClientInfo,
    ConfigEntry,
    InfoLine,
    SlowlogEntry,
    StreamEntry,
    StreamSummary,
)
from kvdash.session import ServerRow, SessionState
from kvdash.views import ResourceKind

Row = tuple[str | None, tuple[str, ...]]
TableData = tuple[tuple[str, ...], list[Row]]


def _keys(state: SessionState) -> TableData:
    rows: list[Row] = [(info.key, (info.key, info.key_type, _ttl(info.ttl))) for info in state.keys]
    return ("KEY", "TYPE", "TTL"), rows


def _servers(state: SessionState) -> TableData:
    rows: list[Row] = []
    for row in state.rows.get(ResourceKind.SERVERS, ()):
        assert isinstance(row, ServerRow)
        marker = "*" if row.active else ""
        server_type = row.info.server_type.value if row.info else ""
        version = row.info.version if row.info else ""
        rows.append((row.name, (marker, row.name, row.uri, server_type, version, row.status.value)))
    return ("", "NAME", "URI", "TYPE", "VERSION", "STATUS"), rows


def _clients(state: SessionState) -> TableData:
    rows: list[Row] = []
    for client in state.rows.get(ResourceKind.CLIENTS, ()):
        assert isinstance(client, ClientInfo)
        rows.append((None, (client.id, client.addr, client.name, client.age, client.idle, client.flags, client.db, client.cmd)))
    return ("ID", "ADDR", "NAME", "AGE", "IDLE", "FLAGS", "DB", "CMD"), rows


def _info(state: SessionState) -> TableData:
    rows: list[Row] = []
    for line in state.rows.get(ResourceKind.INFO, ()):
        assert isinstance(line, InfoLine)
        rows.append((None, (line.key, line.value)))
    return ("KEY", "VALUE"), rows


def _slowlog(state: SessionState) -> TableData:
    rows: list[Row] = []
    for entry in state.rows.get(ResourceKind.SLOWLOG, ()):
        assert isinstance(entry, SlowlogEntry)
        rows.append((None, (str(entry.id), str(entry.timestamp), f"{entry.duration} us", entry.command)))
    return ("ID", "TIMESTAMP", "DURATION", "COMMAND"), rows


def _config(state: SessionState) -> TableData:
    rows: list[Row] = []
    for entry in state.rows.get(ResourceKind.CONFIG, ()):
        assert isinstance(entry, ConfigEntry)
        rows.append((None, (entry.key, entry.value)))
    return ("KEY", "VALUE"), rows


def _acl(state: SessionState) -> TableData:
    rows: list[Row] = []
    for user in state.rows.get(ResourceKind.ACL, ()):
        assert isinstance(user, AclUser)
        rows.append((None, (user.name, user.status, user.rules)))
    return ("USER", "STATUS", "RULES"), rows


def _monitor(state: SessionState) -> TableData:
    rows: list[Row] = [(None, (entry.timestamp, entry.db, entry.client, entry.command)) for entry in state.monitor]
    return ("TIME", "DB", "CLIENT", "COMMAND"), rows


def _streams(state: SessionState) -> TableData:
    if state.frame.item:
        rows: list[Row] = [(None, (entry.id, _fields(entry))) for entry in state.stream_entries]
        return ("ID", "FIELDS"), rows
    rows = []
    for summary in state.rows.get(ResourceKind.STREAMS, ()):
        assert isinstance(summary, StreamSummary)
        rows.append(
            (summary.name, (summary.name, str(summary.length), summary.first_entry_id, summary.last_entry_id))
        )
    return ("STREAM", "LENGTH", "FIRST ID", "LAST ID"), rows


def _pubsub(state: SessionState) -> TableData:
    if state.feed.target or state.messages:
        rows: list[Row] = [(None, (message.timestamp, message.channel, message.message)) for message in state.messages]
        return ("TIME", "CHANNEL", "MESSAGE"), rows
    rows = []
    for channel in state.rows.get(ResourceKind.PUBSUB, ()):
        assert isinstance(channel, ChannelSummary)
        rows.append((channel.name, (channel.name, str(channel.subscribers))))
    return ("CHANNEL", "SUBSCRIBERS"), rows


def _describe(state: SessionState) -> TableData:
    value = state.describe
    if value is None:
        return ("FIELD", "VALUE"), []
    rows: list[Row] = [(None, ("key", value.key)), (None, ("type", value.key_type))]
    if value.error:
        rows.append((None, ("error", value.error)))
        return ("FIELD", "VALUE"), rows
    data = value.value
    if isinstance(data, dict):
        rows.extend((None, (str(field), str(item))) for field, item in data.items())
    elif isinstance(data, tuple):
        for index, item in enumerate(data):
            if isinstance(item, StreamEntry):
                rows.append((None, (item.id, _fields(item))))
            elif isinstance(item, tuple):
                rows.append((None, (str(item[0]), str(item[1]))))
            else:
                rows.append((None, (str(index), str(item))))
    else:
        rows.append((None, ("value", str(data))))
    return ("FIELD", "VALUE"), rows


TABLES: dict[ResourceKind, Callable[[SessionState], TableData]] = {
    ResourceKind.KEYS: _keys,
    ResourceKind.SERVERS: _servers,
    ResourceKind.CLIENTS: _clients,
    ResourceKind.INFO: _info,
    ResourceKind.SLOWLOG: _slowlog,
    ResourceKind.CONFIG: _config,
    ResourceKind.ACL: _acl,
    ResourceKind.MONITOR: _monitor,
    ResourceKind.STREAMS: _streams,
    ResourceKind.PUBSUB: _pubsub,
    ResourceKind.DESCRIBE: _describe,
}


def table_for(state: SessionState) -> TableData:
    """Columns and keyed rows for the state's current view."""

    return TABLES[state.view](state)


class ResourceTable(DataTable):
    """DataTable whose columns follow the active resource view."""

    DEFAULT_CSS = """
    ResourceTable {
        height: 1fr;
    }
    """

    def __init__(self) -> None:
        super().__init__(id="resource-table", cursor_type="row", zebra_stripes=True)
        self._columns: tuple[str, ...] = ()

    def show(self, state: SessionState) -> None:
        columns, rows = table_for(state)
        cursor = self.cursor_row
        if columns != self._columns:
            self.clear(columns=True)
            self.add_columns(*columns)
            self._columns = columns
            cursor = 0
        else:
            self.clear()
        seen: set[str] = set()
        for index, (key, cells) in enumerate(rows):
            # SCAN may repeat a key across pages; row keys must stay unique.
            row_key = f"item:{key}" if key is not None and key not in seen else f"row:{index}"
            if key is not None:
                seen.add(key)
            self.add_row(*cells, key=row_key)
        if rows:
            self.move_cursor(row=min(cursor, len(rows) - 1))

    def selected_item(self) -> str | None:
        """Identifier of the row under the cursor (key, server, stream or channel)."""

        if not self.row_count:
            return None
        row_key, _ = self.coordinate_to_cell_key(self.cursor_coordinate)
        value = row_key.value
        if value is None or not value.startswith("item:"):
            return None
        return value[len("item:") :]


def _ttl(ttl: int) -> str:
    if ttl == -1:
        return "none"
    if ttl == -2:
        return "expired"
    return f"{ttl}s"


def _fields(entry: StreamEntry) -> str:
    return json.dumps(dict(entry.fields), ensure_ascii=False)


__all__ = ["ResourceTable", "TABLES", "table_for"]