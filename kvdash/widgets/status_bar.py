"""Status bar widget that mirrors session information."""

from __future__ import annotations

from textual.widgets import Static

from kvdash.feeds import FeedStatus
from kvdash.session import SessionState


class StatusBar(Static):
    """Compact status strip rendered above Textual's footer."""

    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        padding: 0 1;
        background: $surface-darken-3;
        color: $text;
    }
    """

    def __init__(self) -> None:
        super().__init__("", id="status-bar")

    def show(self, state: SessionState) -> None:
        self.update(status_text(state))


def status_text(state: SessionState) -> str:
    server = state.server or "none"
    kind = ""
    if state.server_info is not None:
        label = " ".join(part for part in (state.server_info.server_type.value, state.server_info.version) if part)
        kind = f" [{label}]"
    refreshed = state.refreshed_at.astimezone().strftime("%H:%M:%S")
    parts = [
        f"Server: {server}{kind}",
        f"Connection: {state.connection_status.value}",
    ]
    if state.total_keys is not None:
        parts.append(f"Keys: {state.total_keys}")
    if state.feed.status is not FeedStatus.IDLE:
        feed = f"Feed: {state.feed.status.value}"
        if state.feed.dropped:
            feed += f" (dropped {state.feed.dropped})"
        parts.append(feed)
    parts.append(f"Status: {state.status}")
    parts.append(f"Refreshed: {refreshed}")
    if state.error and state.error != state.status:
        parts.append(f"Error: {state.error.splitlines()[0][:80]}")
    return " | ".join(parts)


__all__ = ["StatusBar", "status_text"]
