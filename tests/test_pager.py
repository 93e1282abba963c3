"""Tests for SCAN cursor pagination."""

from __future__ import annotations

import pytest

from kvdash.errors import AtStart, EnumerationFailed
from kvdash.pager import KeyspacePager, glob_for_filter


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _FakeScanner:
    def __init__(self, pages: dict[int, tuple[int, list[str]]]) -> None:
        self.pages = pages
        self.calls: list[tuple[int, str, int]] = []
        self.error: Exception | None = None

    async def scan(self, cursor: int, match: str, count: int) -> tuple[int, list[str]]:
        self.calls.append((cursor, match, count))
        if self.error is not None:
            raise self.error
        return self.pages[cursor]


@pytest.mark.anyio
async def test_pages_forward_then_back_without_new_requests() -> None:
    scanner = _FakeScanner({0: (5, ["a", "b", "c"]), 5: (0, ["d", "e"])})
    pager = KeyspacePager(scanner, page_size=3)

    first = await pager.next_page("*")
    assert first.keys == ("a", "b", "c")
    assert first.has_more is True
    assert first.can_go_back is False

    second = await pager.next_page("*")
    assert second.keys == ("d", "e")
    assert second.cursor_in == 5
    assert second.has_more is False
    assert second.can_go_back is True

    back = pager.prev_page()
    assert back == first
    assert scanner.calls == [(0, "*", 3), (5, "*", 3)]


@pytest.mark.anyio
async def test_next_after_prev_returns_cached_page() -> None:
    scanner = _FakeScanner({0: (5, ["a"]), 5: (0, ["b"])})
    pager = KeyspacePager(scanner)

    await pager.next_page("*")
    second = await pager.next_page("*")
    pager.prev_page()

    assert await pager.next_page("*") is second
    assert len(scanner.calls) == 2


@pytest.mark.anyio
async def test_next_at_end_of_enumeration_does_not_rescan() -> None:
    scanner = _FakeScanner({0: (0, ["only"])})
    pager = KeyspacePager(scanner)

    page = await pager.next_page("*")
    again = await pager.next_page("*")

    assert again is page
    assert again.has_more is False
    assert len(scanner.calls) == 1


@pytest.mark.anyio
async def test_prev_on_first_page_raises_at_start() -> None:
    scanner = _FakeScanner({0: (9, ["a"])})
    pager = KeyspacePager(scanner)

    with pytest.raises(AtStart):
        pager.prev_page()
    await pager.next_page("*")
    with pytest.raises(AtStart):
        pager.prev_page()


@pytest.mark.anyio
async def test_empty_keyspace_yields_single_empty_page() -> None:
    scanner = _FakeScanner({0: (0, [])})
    pager = KeyspacePager(scanner)

    page = await pager.next_page("*")

    assert page.keys == ()
    assert page.has_more is False
    assert page.can_go_back is False


@pytest.mark.anyio
async def test_empty_intermediate_page_still_advances() -> None:
    scanner = _FakeScanner({0: (7, []), 7: (0, ["late"])})
    pager = KeyspacePager(scanner)

    first = await pager.next_page("user:*")
    second = await pager.next_page("user:*")

    assert first.keys == ()
    assert first.has_more is True
    assert second.keys == ("late",)


@pytest.mark.anyio
async def test_pattern_change_resets_history() -> None:
    scanner = _FakeScanner({0: (4, ["a"]), 4: (0, ["b"])})
    pager = KeyspacePager(scanner)
    await pager.next_page("*")
    await pager.next_page("*")

    page = await pager.next_page("a*")

    assert page.sequence == 0
    assert pager.pattern == "a*"
    assert pager.position == 0
    assert scanner.calls[-1] == (0, "a*", 100)


@pytest.mark.anyio
async def test_refresh_restarts_from_cursor_zero() -> None:
    scanner = _FakeScanner({0: (4, ["a"]), 4: (0, ["b"])})
    pager = KeyspacePager(scanner)
    await pager.next_page("*")
    await pager.next_page("*")

    page = await pager.refresh(page_size=10)

    assert page.sequence == 0
    assert len(pager.pages) == 1
    assert scanner.calls[-1] == (0, "*", 10)


@pytest.mark.anyio
async def test_duplicates_across_pages_are_passed_through() -> None:
    scanner = _FakeScanner({0: (3, ["a", "b"]), 3: (0, ["b", "c"])})
    pager = KeyspacePager(scanner)

    first = await pager.next_page("*")
    second = await pager.next_page("*")

    assert first.keys + second.keys == ("a", "b", "b", "c")


@pytest.mark.anyio
async def test_scan_errors_become_enumeration_failed_and_keep_history() -> None:
    scanner = _FakeScanner({0: (3, ["a"])})
    pager = KeyspacePager(scanner)
    first = await pager.next_page("*")
    scanner.error = ConnectionError("socket closed")

    with pytest.raises(EnumerationFailed, match="socket closed"):
        await pager.next_page("*")

    assert pager.current is first
    assert pager.pages == (first,)


@pytest.mark.parametrize(
    ("text", "pattern"),
    [
        ("", "*"),
        ("   ", "*"),
        ("user", "*user*"),
        ("user:*", "user:*"),
        ("session:?", "session:?"),
        ("[ab]c", "[ab]c"),
    ],
)
def test_glob_for_filter(text: str, pattern: str) -> None:
    assert glob_for_filter(text) == pattern
