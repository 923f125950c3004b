"""
Headless-browser driver contract.

The pool manager only ever talks to a BrowserDriver; browser and tab handles
are opaque values owned by the driver implementation.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

from ..schemas import LaunchOptions


class BrowserDriver(Protocol):
    def launch(self, options: LaunchOptions) -> Any:
        """Start a browser process and return its handle."""

    def new_tab(self, browser: Any) -> Any: ...

    def navigate(self, tab: Any, url: str, *, timeout_ms: int, wait_until: str = "load") -> Optional[int]:
        """Load `url`; returns the HTTP status or None if no response was received."""

    def content(self, tab: Any) -> str: ...

    def title(self, tab: Any) -> str: ...

    def url(self, tab: Any) -> str: ...

    def evaluate(self, tab: Any, script: str) -> Any: ...

    def click(self, tab: Any, selector: str, *, frame_selector: Optional[str] = None, timeout_ms: int = 5000) -> None: ...

    def fill(self, tab: Any, selector: str, value: str, *, timeout_ms: int = 5000) -> None: ...

    def wait_for(self, tab: Any, selector: str, *, timeout_ms: int, frame_selector: Optional[str] = None) -> bool:
        """Wait for `selector` to appear; False on timeout."""

    def screenshot(self, tab: Any) -> bytes: ...

    def close_tab(self, tab: Any) -> None: ...

    def close_browser(self, browser: Any) -> None: ...
