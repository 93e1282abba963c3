"""Connection URI parsing helpers."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6379

_PLAIN_SCHEMES = ("redis", "plain")
_TLS_SCHEMES = ("rediss", "secure")


@dataclass(frozen=True, slots=True)
class ConnectionSettings:
    """Parsed form of a server URI."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    db: int = 0
    username: str | None = None
    password: str | None = None
    tls: bool = False

    def to_uri(self, *, masked: bool = False) -> str:
        scheme = "rediss" if self.tls else "redis"
        auth = ""
        if self.password is not None:
            password = "****" if masked else self.password
            auth = f"{self.username or ''}:{password}@"
        elif self.username:
            auth = f"{self.username}@"
        return f"{scheme}://{auth}{self.host}:{self.port}/{self.db}"


def parse_uri(uri: str) -> ConnectionSettings:
    """Parse `scheme://[user:password@]host[:port][/db]`.

    `redis://` and `plain://` select a plain transport, `rediss://` and
    `secure://` select TLS. A URI without a scheme is treated as plain.
    """

    text = uri.strip()
    if not text:
        raise ValueError("URI cannot be empty.")
    tls = False
    rest = text
    if "://" in text:
        scheme, rest = text.split("://", 1)
        scheme = scheme.lower()
        if scheme in _TLS_SCHEMES:
            tls = True
        elif scheme not in _PLAIN_SCHEMES:
            raise ValueError(f"Unsupported URI scheme '{scheme}'.")

    username: str | None = None
    password: str | None = None
    if "@" in rest:
        auth, rest = rest.rsplit("@", 1)
        if ":" in auth:
            user, password = auth.split(":", 1)
            username = user or None
        else:
            password = auth

    db = 0
    if "/" in rest:
        rest, db_text = rest.split("/", 1)
        db = _parse_int(db_text, 0)

    host = rest or DEFAULT_HOST
    port = DEFAULT_PORT
    if host.startswith("["):
        # IPv6 literal, e.g. [::1]:6379
        bracket = host.find("]")
        if bracket != -1:
            tail = host[bracket + 1 :]
            host = host[1:bracket]
            if tail.startswith(":"):
                port = _parse_int(tail[1:], DEFAULT_PORT)
    elif ":" in host:
        host, port_text = host.rsplit(":", 1)
        port = _parse_int(port_text, DEFAULT_PORT)
        host = host or DEFAULT_HOST

    return ConnectionSettings(
        host=host,
        port=port,
        db=db,
        username=username,
        password=password,
        tls=tls,
    )


def mask_uri(uri: str) -> str:
    """Hide the password in a URI so it can be logged or displayed."""

    if "@" not in uri:
        return uri
    prefix = ""
    rest = uri
    if "://" in uri:
        scheme, rest = uri.split("://", 1)
        prefix = f"{scheme}://"
    auth, host = rest.rsplit("@", 1)
    if ":" in auth:
        user = auth.split(":", 1)[0]
        masked = f"{user}:****"
    else:
        masked = "****"
    return f"{prefix}{masked}@{host}"


def _parse_int(text: str, default: int) -> int:
    try:
        return int(text)
    except ValueError:
        return default


__all__ = ["ConnectionSettings", "DEFAULT_HOST", "DEFAULT_PORT", "mask_uri", "parse_uri"]
