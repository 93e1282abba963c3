"""Cursor-based keyspace pagination over SCAN."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from .errors import AtStart, EnumerationFailed, KvdashError

LOG = logging.getLogger(__name__)

START_CURSOR = 0
DONE_CURSOR = 0
DEFAULT_PAGE_SIZE = 100


class KeyScanner(Protocol):
    async def scan(self, cursor: int, match: str, count: int) -> tuple[int, list[str]]: ...


@dataclass(frozen=True, slots=True)
class KeyPage:
    """One fetched page plus the navigation flags the UI renders."""

    sequence: int
    cursor_in: int
    cursor_out: int
    keys: tuple[str, ...]

    @property
    def has_more(self) -> bool:
        return self.cursor_out != DONE_CURSOR

    @property
    def can_go_back(self) -> bool:
        return self.sequence > 0


class KeyspacePager:
    """Incremental, resumable enumeration of keys matching a glob pattern.

    Keys are returned in whatever order the server produces them. The server
    may return the same key on more than one page while the keyspace is being
    modified; such duplicates are passed through as-is and callers must not
    assume the pages are disjoint.
    """

    def __init__(self, scanner: KeyScanner, *, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self._scanner = scanner
        self._page_size = page_size
        self._pattern: str | None = None
        self._pages: list[KeyPage] = []
        self._position = -1

    @property
    def pattern(self) -> str | None:
        return self._pattern

    @property
    def position(self) -> int:
        """Index of the current page; -1 before the first fetch."""

        return self._position

    @property
    def pages(self) -> tuple[KeyPage, ...]:
        return tuple(self._pages)

    @property
    def current(self) -> KeyPage | None:
        if self._position < 0:
            return None
        return self._pages[self._position]

    def reset(self) -> None:
        self._pages.clear()
        self._position = -1

    async def next_page(self, pattern: str, page_size: int | None = None) -> KeyPage:
        """Move forward one page, fetching from the server only past the cached end."""

        if pattern != self._pattern:
            self.reset()
            self._pattern = pattern
        if self._position < len(self._pages) - 1:
            self._position += 1
            return self._pages[self._position]
        current = self.current
        if current is not None and not current.has_more:
            return current
        cursor = current.cursor_out if current is not None else START_CURSOR
        return await self._fetch(cursor, page_size)

    def prev_page(self) -> KeyPage:
        """Step back to the cached previous page without touching the server."""

        if self._position <= 0:
            raise AtStart()
        self._position -= 1
        return self._pages[self._position]

    async def refresh(self, pattern: str | None = None, page_size: int | None = None) -> KeyPage:
        """Drop the history and fetch the first page again."""

        if pattern is not None:
            self._pattern = pattern
        if self._pattern is None:
            self._pattern = "*"
        self.reset()
        return await self._fetch(START_CURSOR, page_size)

    async def _fetch(self, cursor: int, page_size: int | None) -> KeyPage:
        assert self._pattern is not None
        count = page_size or self._page_size
        try:
            cursor_out, keys = await self._scanner.scan(cursor, self._pattern, count)
        except KvdashError:
            raise
        except Exception as exc:
            LOG.debug("SCAN failed", extra={"cursor": cursor, "pattern": self._pattern})
            raise EnumerationFailed(str(exc)) from exc
        page = KeyPage(
            sequence=len(self._pages),
            cursor_in=cursor,
            cursor_out=int(cursor_out),
            keys=tuple(keys),
        )
        self._pages.append(page)
        self._position = len(self._pages) - 1
        return page


def glob_for_filter(text: str) -> str:
    """Turn free-form filter text into a SCAN MATCH pattern."""

    text = text.strip()
    if not text:
        return "*"
    if any(char in text for char in "*?["):
        return text
    return f"*{text}*"


__all__ = ["DEFAULT_PAGE_SIZE", "KeyPage", "KeyScanner", "KeyspacePager", "glob_for_filter"]
