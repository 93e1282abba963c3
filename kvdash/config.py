"""App configuration loading helpers."""

from __future__ import annotations

from pathlib import Path

import tomllib

from pydantic import BaseModel, Field

CONFIG_DIR = Path.home() / ".config" / "kvdash"
CONFIG_FILE = CONFIG_DIR / "config.toml"
LOG_FILE = CONFIG_DIR / "kvdash.log"

LOG_LEVELS = ("off", "error", "warn", "info", "debug")


class ServerConfig(BaseModel):
    """Server entry stored in config.toml."""

    name: str
    uri: str
    server_type: str | None = None
    version: str | None = None
    role: str | None = None


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    theme: str = "dark"
    servers: list[ServerConfig] = Field(default_factory=list)
    active_server: str | None = None
    page_size: int = 100
    feed_capacity: int = 1000
    connect_timeout: float = 30.0
    refresh_interval: float = 5.0
    log_level: str = "off"
    log_file: str = str(LOG_FILE)

    def server(self, name: str) -> ServerConfig | None:
        for entry in self.servers:
            if entry.name == name:
                return entry
        return None

    def with_servers(self, servers: list[ServerConfig]) -> AppConfig:
        """Return a copy with the server list replaced."""

        active = self.active_server
        if active is not None and all(entry.name != active for entry in servers):
            active = None
        return self.model_copy(update={"servers": list(servers), "active_server": active})

    def with_server(self, server: ServerConfig) -> AppConfig:
        """Return a copy with the server added or replaced in place."""

        servers = list(self.servers)
        for index, entry in enumerate(servers):
            if entry.name == server.name:
                servers[index] = server
                break
        else:
            servers.append(server)
        return self.with_servers(servers)

    def without_server(self, name: str) -> AppConfig:
        """Return a copy without the named server."""

        return self.with_servers([entry for entry in self.servers if entry.name != name])

    def with_server_info(self, name: str, server_type: str, version: str, role: str) -> AppConfig:
        """Return a copy with detected server details recorded on the entry."""

        entry = self.server(name)
        if entry is None:
            return self
        updated = entry.model_copy(update={"server_type": server_type, "version": version, "role": role})
        return self.with_server(updated)

    def with_active_server(self, name: str | None) -> AppConfig:
        """Return a copy with the active server updated."""

        return self.model_copy(update={"active_server": name})


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()

    servers_data = data.pop("servers", None)
    servers: list[ServerConfig] = []
    if isinstance(servers_data, list):
        servers = [
            ServerConfig(**server)
            for server in servers_data  # type: ignore[list-item]
            if isinstance(server, dict)
        ]
    return AppConfig(servers=servers, **data)  # type: ignore[arg-type]


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f"theme = {_quote(config.theme)}",
        f"page_size = {config.page_size}",
        f"feed_capacity = {config.feed_capacity}",
        f"connect_timeout = {float(config.connect_timeout)}",
        f"refresh_interval = {float(config.refresh_interval)}",
        f"log_level = {_quote(config.log_level)}",
        f"log_file = {_quote(config.log_file)}",
    ]
    if config.active_server:
        lines.append(f"active_server = {_quote(config.active_server)}")
    if config.servers:
        lines.append("")
        for server in config.servers:
            lines.append("[[servers]]")
            lines.append(f"name = {_quote(server.name)}")
            lines.append(f"uri = {_quote(server.uri)}")
            if server.server_type:
                lines.append(f"server_type = {_quote(server.server_type)}")
            if server.version:
                lines.append(f"version = {_quote(server.version)}")
            if server.role:
                lines.append(f"role = {_quote(server.role)}")
            lines.append("")
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if not isinstance(raw, dict):
        return data
    for key in ("theme", "active_server", "log_file"):
        value = raw.get(key)
        if isinstance(value, str):
            data[key] = value
    log_level = raw.get("log_level")
    if isinstance(log_level, str) and log_level.lower() in LOG_LEVELS:
        data["log_level"] = log_level.lower()
    for key in ("page_size", "feed_capacity"):
        value = raw.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            data[key] = value
    for key in ("connect_timeout", "refresh_interval"):
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            data[key] = float(value)
    servers = raw.get("servers")
    if isinstance(servers, list):
        parsed_servers: list[dict[str, object]] = []
        seen: set[str] = set()
        for server in servers:
            if not isinstance(server, dict):
                continue
            parsed: dict[str, object] = {}
            for key in ("name", "uri", "server_type", "version", "role"):
                value = server.get(key)
                if isinstance(value, str):
                    parsed[key] = value
            name = parsed.get("name")
            if name and parsed.get("uri") and name not in seen:
                seen.add(str(name))
                parsed_servers.append(parsed)
        data["servers"] = parsed_servers
    return data


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "LOG_FILE",
    "LOG_LEVELS",
    "ServerConfig",
    "load_config",
    "save_config",
]
