"""Tests for resource kinds and the navigation stack."""

from __future__ import annotations

import pytest

from kvdash.views import LIVE_VIEWS, ROOT_FRAME, ResourceKind, ViewStack


def test_stack_starts_at_key_browser() -> None:
    stack = ViewStack()

    assert stack.current is ROOT_FRAME
    assert stack.at_root is True
    assert stack.breadcrumb() == "Keys"


def test_select_pushes_and_back_pops() -> None:
    stack = ViewStack()

    stack.select(ResourceKind.CLIENTS)
    stack.select(ResourceKind.DESCRIBE, "user:1")

    assert stack.breadcrumb() == "Keys > Clients > Describe(user:1)"
    popped = stack.back()
    assert popped is not None
    assert popped.item == "user:1"
    assert stack.current.resource is ResourceKind.CLIENTS
    assert stack.current.parent is ROOT_FRAME


def test_reselecting_current_view_is_noop() -> None:
    stack = ViewStack()
    stack.select(ResourceKind.INFO)

    stack.select(ResourceKind.INFO)

    assert len(stack.frames) == 2


def test_back_at_root_is_noop() -> None:
    stack = ViewStack()

    assert stack.back() is None
    assert stack.frames == (ROOT_FRAME,)


def test_selecting_keys_unwinds_to_root() -> None:
    stack = ViewStack()
    stack.select(ResourceKind.SERVERS)
    stack.select(ResourceKind.MONITOR)

    frame = stack.select(ResourceKind.KEYS)

    assert frame is ROOT_FRAME
    assert stack.at_root is True


def test_live_views_own_a_slot() -> None:
    stack = ViewStack()

    assert stack.current.slot is None
    for resource in LIVE_VIEWS:
        assert stack.select(resource).slot == resource.value


@pytest.mark.parametrize(
    ("text", "kind"),
    [("keys", ResourceKind.KEYS), (" PubSub ", ResourceKind.PUBSUB), ("acl", ResourceKind.ACL)],
)
def test_parse_resource_names(text: str, kind: ResourceKind) -> None:
    assert ResourceKind.parse(text) is kind


def test_parse_rejects_unknown_resource() -> None:
    with pytest.raises(ValueError, match="Unknown resource"):
        ResourceKind.parse("tables")


def test_periodic_flags() -> None:
    assert ResourceKind.CLIENTS.periodic is True
    assert ResourceKind.KEYS.periodic is False
    assert ResourceKind.MONITOR.live is True
    assert ResourceKind.CONFIG.live is False
