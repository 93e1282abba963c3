"""Single control loop multiplexing user input, feed batches and periodic refresh."""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable

from .errors import KvdashError
from .session import Action, SessionController, SessionState

LOG = logging.getLogger(__name__)

TICK_INTERVAL = 0.1
REFRESH_INTERVAL = 5.0
GRACE_TIMEOUT = 2.0

QUIT = "quit"

RenderCallback = Callable[[SessionState], None]


class LoopState(str, Enum):
    IDLE = "Idle"
    AWAITING_INPUT = "AwaitingInput"
    RENDERING = "Rendering"
    STOPPED = "Stopped"


class SessionLoop:
    """Drives the session controller; the only task that mutates session state.

    Each tick waits briefly for one posted action, drains the active view's
    feed, applies feed items before the action, and renders when something
    changed. Handler failures become status text and never end the loop.
    """

    def __init__(
        self,
        session: SessionController,
        render: RenderCallback | None = None,
        *,
        tick_interval: float = TICK_INTERVAL,
        refresh_interval: float = REFRESH_INTERVAL,
        grace_timeout: float = GRACE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._render = render
        self._tick_interval = tick_interval
        self._refresh_interval = refresh_interval
        self._grace_timeout = grace_timeout
        self._clock = clock
        self._queue: asyncio.Queue[Action] = asyncio.Queue()
        self._state = LoopState.IDLE
        self._quit = False
        self._last_refresh = clock()

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def session(self) -> SessionController:
        return self._session

    @property
    def quitting(self) -> bool:
        return self._quit

    def post(self, action: Action) -> None:
        """Queue an action from the presentation layer; never blocks."""

        self._queue.put_nowait(action)

    def request_quit(self) -> None:
        self.post(Action(QUIT))

    async def run(self, initial_server: str | None = None) -> None:
        await self._guard(self._session.startup(initial_server))
        self._last_refresh = self._clock()
        self._draw()
        try:
            while not self._quit:
                await self.tick()
        finally:
            await self.shutdown()

    async def tick(self) -> bool:
        """Run one loop iteration; returns True when it rendered."""

        self._state = LoopState.AWAITING_INPUT
        action = await self._next_action()
        batch = self._session.drain_feed()
        changed = self._session.apply_feed(batch)
        if action is not None:
            if action.name == QUIT:
                self._quit = True
                self._state = LoopState.IDLE
                return False
            await self._guard(self._session.handle(action))
            self._last_refresh = self._clock()
            changed = True
        elif not changed and self._refresh_due():
            await self._guard(self._session.reload())
            self._last_refresh = self._clock()
            changed = True
        if changed:
            self._draw()
        self._state = LoopState.IDLE
        return changed

    async def shutdown(self) -> None:
        """Stop every feed and close every connection within the grace timeout."""

        if self._state is LoopState.STOPPED:
            return
        self._quit = True
        try:
            await asyncio.wait_for(self._session.shutdown(), timeout=self._grace_timeout)
        except asyncio.TimeoutError:
            LOG.warning("Shutdown exceeded grace timeout; exiting anyway", extra={"timeout": self._grace_timeout})
        except Exception:
            LOG.exception("Shutdown failed")
        self._state = LoopState.STOPPED

    async def _next_action(self) -> Action | None:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=self._tick_interval)
        except asyncio.TimeoutError:
            return None

    def _refresh_due(self) -> bool:
        if not self._session.views.current.resource.periodic:
            return False
        return self._clock() - self._last_refresh >= self._refresh_interval

    async def _guard(self, work: Awaitable[None]) -> None:
        try:
            await work
        except KvdashError as exc:
            LOG.info("Action failed", extra={"error": str(exc)})
            self._session.report(str(exc), error=True)
        except ValueError as exc:
            self._session.report(str(exc), error=True)
        except Exception as exc:
            LOG.exception("Unexpected error while handling action")
            self._session.report(str(exc) or exc.__class__.__name__, error=True)

    def _draw(self) -> None:
        self._state = LoopState.RENDERING
        state = self._session.publish()
        if self._render is not None:
            self._render(state)


__all__ = [
    "GRACE_TIMEOUT",
    "LoopState",
    "QUIT",
    "REFRESH_INTERVAL",
    "SessionLoop",
    "TICK_INTERVAL",
]
