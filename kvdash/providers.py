"""Command palette providers for core app features."""

from __future__ import annotations

from textual.command import DiscoveryHit, Hit, Hits, Provider
from textual.types import IgnoreReturnCallbackType

from .session import Action, SessionController
from .views import RESOURCE_DESCRIPTIONS, ResourceKind


class ResourceSwitchProvider(Provider):
    """Expose resource views to the command palette."""

    async def search(self, query: str) -> Hits:
        if self._session is None:
            return
        matcher = self.matcher(query)
        for resource, description in RESOURCE_DESCRIPTIONS.items():
            match = matcher.match(resource.title)
            if match > 0:
                yield Hit(
                    score=match,
                    match_display=f"Show: {matcher.highlight(resource.title)}",
                    command=self._build_callback(resource),
                    help=description,
                )

    async def discover(self) -> Hits:
        if self._session is None:
            return
        for resource, description in RESOURCE_DESCRIPTIONS.items():
            yield DiscoveryHit(
                display=f"Show: {resource.title}",
                command=self._build_callback(resource),
                help=description,
            )

    @property
    def _session(self) -> SessionController | None:
        session = getattr(self.app, "session", None)
        if isinstance(session, SessionController):
            return session
        return None

    def _build_callback(self, resource: ResourceKind) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            poster = getattr(self.app, "post_action", None)
            if poster is None:
                return
            poster(Action("select", resource.value))

        return _run


class ServerConnectProvider(Provider):
    """Expose saved servers to the command palette."""

    async def search(self, query: str) -> Hits:
        session = self._session
        if session is None:
            return
        matcher = self.matcher(query)
        for profile in session.registry.profiles:
            match = matcher.match(profile.name)
            if match > 0:
                yield Hit(
                    score=match,
                    match_display=f"Connect to: {matcher.highlight(profile.name)}",
                    command=self._build_callback(profile.name),
                    help="Make this server the active connection.",
                )

    async def discover(self) -> Hits:
        session = self._session
        if session is None:
            return
        for profile in session.registry.profiles:
            yield DiscoveryHit(
                display=f"Connect to: {profile.name}",
                command=self._build_callback(profile.name),
                help="Make this server the active connection.",
            )

    @property
    def _session(self) -> SessionController | None:
        session = getattr(self.app, "session", None)
        if isinstance(session, SessionController):
            return session
        return None

    def _build_callback(self, name: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            poster = getattr(self.app, "post_action", None)
            if poster is None:
                return
            poster(Action("connect", name))

        return _run


__all__ = ["ResourceSwitchProvider", "ServerConnectProvider"]
