"""Widget library for the Textual UI."""

from __future__ import annotations

from .status_bar import StatusBar, describe_session

__all__ = ["StatusBar", "describe_session"]
