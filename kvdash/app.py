"""Textual application entry point for kvdash."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Callable, Sequence

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import Footer, Header, Input

from .config import LOG_LEVELS, AppConfig, ServerConfig, load_config, save_config
from .feeds import FeedController
from .loop import SessionLoop
from .models import ServerInfo, ServerProfile, ServerType
from .providers import ResourceSwitchProvider, ServerConnectProvider
from .registry import Connection, ConnectionRegistry, profile_from_uri
from .session import Action, SessionController, SessionState
from .views import ResourceKind
from .widgets import Breadcrumbs, ResourceTable, StatusBar

LOG = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6379

_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

_PROMPTS = {
    "filter": "Filter keys (text or glob)",
    "resource": "Resource (keys, servers, clients, info, slowlog, config, acl, monitor, streams, pubsub)",
    "subscribe": "Channel to subscribe to",
    "add_server": "New server as: <name> <uri>",
}


def profiles_from_config(config: AppConfig) -> list[ServerProfile]:
    """Build registry profiles from saved server entries, skipping invalid URIs."""

    profiles: list[ServerProfile] = []
    for entry in config.servers:
        info = None
        if entry.server_type:
            try:
                server_type = ServerType(entry.server_type)
            except ValueError:
                server_type = ServerType.STANDALONE
            info = ServerInfo(server_type, entry.version or "", role=entry.role or "")
        try:
            profiles.append(profile_from_uri(entry.name, entry.uri, info))
        except ValueError:
            LOG.warning("Skipping server with invalid URI", extra={"server": entry.name})
    return profiles


def config_with_profiles(config: AppConfig, profiles: Sequence[ServerProfile]) -> AppConfig:
    servers = [
        ServerConfig(
            name=profile.name,
            uri=profile.uri,
            server_type=profile.info.server_type.value if profile.info else None,
            version=(profile.info.version or None) if profile.info else None,
            role=(profile.info.role or None) if profile.info else None,
        )
        for profile in profiles
    ]
    return config.with_servers(servers)


class KvdashApp(App[None]):
    """Keyboard-driven dashboard for Redis-compatible servers."""

    TITLE = "kvdash"
    COMMANDS = App.COMMANDS | {ResourceSwitchProvider, ServerConnectProvider}
    CSS = """
    Screen {
        layout: vertical;
    }
    #prompt {
        display: none;
        height: 3;
    }
    #prompt.visible {
        display: block;
    }
    """

    BINDINGS = [
        Binding("q", "quit_dashboard", "Quit"),
        Binding("escape", "back", "Back"),
        Binding("colon", "prompt('resource')", "Resource"),
        Binding("slash", "prompt('filter')", "Filter"),
        Binding("n", "post('next_page')", "Next page"),
        Binding("p", "post('prev_page')", "Prev page"),
        Binding("r", "post('refresh')", "Refresh"),
        Binding("t", "post('toggle_feed')", "Start/stop feed"),
        Binding("s", "prompt('subscribe')", "Subscribe"),
        Binding("a", "prompt('add_server')", "Add server"),
        Binding("c", "connect", "Connect"),
        Binding("x", "post('disconnect')", "Disconnect"),
        Binding("d", "delete", "Delete"),
        Binding("ctrl+p", "command_palette", "Command Palette"),
    ]

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        registry: ConnectionRegistry | None = None,
        initial_server: str | None = None,
        persist: bool = True,
    ) -> None:
        super().__init__()
        self._config = config or load_config()
        self._persist = persist
        self._connections = registry or ConnectionRegistry(
            profiles_from_config(self._config),
            connect_timeout=self._config.connect_timeout,
        )
        self._session = SessionController(
            self._connections,
            page_size=self._config.page_size,
            feed_capacity=self._config.feed_capacity,
        )
        self._session_loop = SessionLoop(
            self._session,
            refresh_interval=self._config.refresh_interval,
        )
        self._initial_server = initial_server
        self._prompt_mode: str | None = None
        self._last_state: SessionState | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._connections.subscribe_profiles(self._remember_profiles)
        self._connections.subscribe(self._remember_active)
        # Profiles registered before the app existed (e.g. --host) are saved now.
        known = {server.name for server in self._config.servers}
        if any(profile.name not in known for profile in self._connections.profiles):
            self._remember_profiles(self._connections.profiles)

    @property
    def session(self) -> SessionController:
        return self._session

    @property
    def session_loop(self) -> SessionLoop:
        return self._session_loop

    @property
    def feeds(self) -> FeedController:
        return self._session.feeds

    @property
    def last_state(self) -> SessionState | None:
        return self._last_state

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield Breadcrumbs()
        yield ResourceTable()
        yield Input(id="prompt")
        yield StatusBar()
        yield Footer()

    async def on_mount(self) -> None:
        self.query_one(ResourceTable).focus()
        self._unsubscribe = self._session.subscribe(self._render_state)
        self.run_worker(self._run_loop(), name="session-loop", exclusive=True)

    async def _run_loop(self) -> None:
        await self._session_loop.run(self._initial_server)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.exit()

    def post_action(self, action: Action) -> None:
        self._session_loop.post(action)

    def action_post(self, name: str) -> None:
        self.post_action(Action(name))

    def action_quit_dashboard(self) -> None:
        self._session_loop.request_quit()

    async def action_quit(self) -> None:
        self._session_loop.request_quit()

    def action_back(self) -> None:
        if self._prompt_mode is not None:
            self._close_prompt()
            return
        self.post_action(Action("back"))

    def action_open(self) -> None:
        state = self._last_state
        item = self.query_one(ResourceTable).selected_item()
        if state is None or item is None:
            return
        if state.view is ResourceKind.KEYS:
            self.post_action(Action("describe", item))
        elif state.view is ResourceKind.SERVERS:
            self.post_action(Action("connect", item))
        elif state.view is ResourceKind.STREAMS:
            self.post_action(Action("select", ResourceKind.STREAMS.value, item))
        elif state.view is ResourceKind.PUBSUB:
            self.post_action(Action("subscribe", item))

    def on_data_table_row_selected(self, event: ResourceTable.RowSelected) -> None:
        event.stop()
        self.action_open()

    def action_connect(self) -> None:
        state = self._last_state
        item = self.query_one(ResourceTable).selected_item()
        if state is not None and state.view is ResourceKind.SERVERS and item:
            self.post_action(Action("connect", item))
        else:
            self.post_action(Action("connect"))

    def action_delete(self) -> None:
        state = self._last_state
        if state is None:
            return
        if state.view is ResourceKind.SERVERS:
            item = self.query_one(ResourceTable).selected_item()
            if item:
                self.post_action(Action("delete_server", item))
        elif state.view is ResourceKind.KEYS:
            item = self.query_one(ResourceTable).selected_item()
            if item:
                self.post_action(Action("delete_key", item))
        elif state.view is ResourceKind.DESCRIBE and state.frame.item:
            self.post_action(Action("delete_key", state.frame.item))

    def action_prompt(self, mode: str) -> None:
        prompt = self.query_one("#prompt", Input)
        self._prompt_mode = mode
        prompt.placeholder = _PROMPTS.get(mode, "")
        prompt.value = self._last_state.filter_text if mode == "filter" and self._last_state else ""
        prompt.add_class("visible")
        prompt.focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        mode = self._prompt_mode
        text = event.value.strip()
        self._close_prompt()
        if mode == "filter":
            self.post_action(Action("filter", text))
        elif mode == "resource" and text:
            resource, _, item = text.partition(" ")
            self.post_action(Action("select", resource, item.strip() or None))
        elif mode == "subscribe" and text:
            self.post_action(Action("subscribe", text))
        elif mode == "add_server" and text:
            name, _, uri = text.partition(" ")
            self.post_action(Action("add_server", name, uri.strip()))

    def _close_prompt(self) -> None:
        prompt = self.query_one("#prompt", Input)
        prompt.remove_class("visible")
        prompt.value = ""
        self._prompt_mode = None
        self.query_one(ResourceTable).focus()

    def _render_state(self, state: SessionState) -> None:
        self._last_state = state
        self.sub_title = state.server or "not connected"
        self.query_one(Breadcrumbs).show(state)
        self.query_one(ResourceTable).show(state)
        self.query_one(StatusBar).show(state)

    def _remember_profiles(self, profiles: tuple[ServerProfile, ...]) -> None:
        self._config = config_with_profiles(self._config, profiles)
        self._save()

    def _remember_active(self, connection: Connection) -> None:
        if not connection.active or self._config.active_server == connection.name:
            return
        self._config = self._config.with_active_server(connection.name)
        self._save()

    def _save(self) -> None:
        if not self._persist:
            return
        try:
            save_config(self._config)
        except OSError:
            LOG.exception("Failed to save config")


def configure_logging(level: str, path: str | Path) -> None:
    """Send log records to the log file; `off` disables logging."""

    if level == "off":
        logging.disable(logging.CRITICAL)
        return
    log_path = Path(path).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(_LEVELS[level])


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="kvdash", description="Terminal dashboard for Redis-compatible servers.")
    parser.add_argument("--host", help=f"Server host (default {DEFAULT_HOST})")
    parser.add_argument("--port", type=int, help=f"Server port (default {DEFAULT_PORT})")
    parser.add_argument("--db", type=int, default=0, help="Database index")
    parser.add_argument("--log-level", choices=LOG_LEVELS, help="Log level written to the log file")
    return parser.parse_args(argv)


def startup_server(config: AppConfig, registry: ConnectionRegistry, args: argparse.Namespace) -> str | None:
    """Pick the profile to auto-connect: explicit host/port first, then the saved active server."""

    if args.host is not None or args.port is not None or not registry.profiles:
        return registry.ensure_default(args.host or DEFAULT_HOST, args.port or DEFAULT_PORT, args.db)
    if config.active_server and any(p.name == config.active_server for p in registry.profiles):
        return config.active_server
    return registry.profiles[0].name


def main(argv: Sequence[str] | None = None) -> int:
    """Invoke the Textual application."""

    args = parse_args(sys.argv[1:] if argv is None else argv)
    config = load_config()
    configure_logging(args.log_level or config.log_level, config.log_file)
    registry = ConnectionRegistry(profiles_from_config(config), connect_timeout=config.connect_timeout)
    server = startup_server(config, registry, args)
    KvdashApp(config, registry=registry, initial_server=server).run()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
