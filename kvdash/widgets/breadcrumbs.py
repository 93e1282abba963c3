"""Breadcrumb line showing the navigation path."""

from __future__ import annotations

from textual.widgets import Static

from kvdash.session import SessionState


class Breadcrumbs(Static):
    DEFAULT_CSS = """
    Breadcrumbs {
        height: 1;
        padding: 0 1;
        color: $accent;
    }
    """

    def __init__(self) -> None:
        super().__init__("", id="breadcrumbs")

    def show(self, state: SessionState) -> None:
        text = state.breadcrumb
        if state.view.value == "keys":
            text += f"  [{state.pattern}]"
            if state.page is not None:
                text += f"  page {state.page.sequence + 1}"
        self.update(text)


__all__ = ["Breadcrumbs"]
