"""Widget library for the Textual UI."""

from __future__ import annotations

from .breadcrumbs import Breadcrumbs
from .resource_table import ResourceTable
from .status_bar import StatusBar

__all__ = ["Breadcrumbs", "ResourceTable", "StatusBar"]
