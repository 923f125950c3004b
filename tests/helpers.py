"""Test doubles shared across the AutoReach test suite."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

import httpx

from autoreach.pipeline.fetchers.static import StaticFetcher


Route = Tuple[int, Dict[str, str], bytes]


class ManualClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class RouteTransport(httpx.BaseTransport):
    """Serves fixed responses keyed by URL (or by (method, URL)); 404 otherwise."""

    def __init__(self, routes: Dict[object, Route]) -> None:
        self.routes = routes
        self.seen = []
        self._lock = threading.Lock()

    def handle_request(self, request: httpx.Request) -> httpx.Response:  # type: ignore[override]
        url = str(request.url)
        with self._lock:
            self.seen.append((request.method, url))
        route = self.routes.get((request.method, url)) or self.routes.get(url)
        status, headers, body = route or (404, {"Content-Type": "text/plain"}, b"Not Found")
        if request.method == "HEAD":
            body = b""
        return httpx.Response(status, headers=headers, content=body, request=request)


class FakeTab:
    def __init__(self) -> None:
        self.url = "about:blank"
        self.closed = False
        self.filled: Dict[str, str] = {}
        self.clicks = []


class FakeDriver:
    """In-memory BrowserDriver serving `pages`: url -> (status, html, title)."""

    def __init__(self, pages: Optional[Dict[str, Tuple[int, str, str]]] = None, *, solved: bool = True) -> None:
        self.pages = pages or {}
        self.solved = solved
        self.launched = []
        self.closed_browsers = []
        self.tabs = []
        self._lock = threading.Lock()

    def launch(self, options):
        handle = object()
        with self._lock:
            self.launched.append(handle)
        return handle

    def new_tab(self, browser):
        tab = FakeTab()
        with self._lock:
            self.tabs.append(tab)
        return tab

    def navigate(self, tab, url, *, timeout_ms, wait_until="load"):
        if url not in self.pages:
            raise RuntimeError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        tab.url = url
        return self.pages[url][0]

    def content(self, tab):
        return self.pages.get(tab.url, (0, "", ""))[1]

    def title(self, tab):
        return self.pages.get(tab.url, (0, "", ""))[2]

    def url(self, tab):
        return tab.url

    def evaluate(self, tab, script):
        return self.solved

    def click(self, tab, selector, *, frame_selector=None, timeout_ms=5000):
        tab.clicks.append(selector)

    def fill(self, tab, selector, value, *, timeout_ms=5000):
        tab.filled[selector] = value

    def wait_for(self, tab, selector, *, timeout_ms, frame_selector=None):
        return True

    def screenshot(self, tab):
        return b""

    def close_tab(self, tab):
        tab.closed = True

    def close_browser(self, browser):
        with self._lock:
            self.closed_browsers.append(browser)


def html_route(body: str, status: int = 200) -> Route:
    return (status, {"Content-Type": "text/html; charset=utf-8"}, body.encode("utf-8"))


def route_fetcher(routes: Dict[object, Route]) -> StaticFetcher:
    """A StaticFetcher whose network is the given route table."""
    fetcher = StaticFetcher(respect_robots=False)
    fetcher._client = httpx.Client(transport=RouteTransport(routes))
    return fetcher


LANDING_HTML = """
<html><head><title>Example Inc.</title></head><body>
  <nav><a href="/products">Products</a> <a href="/contact">Contact</a></nav>
  <p>Welcome to Example Inc.</p>
</body></html>
"""

CONTACT_HTML = """
<html><head><title>Contact Us</title></head><body>
  <h1>Contact Us</h1>
  <p>Write to <a href="mailto:info@example.com">info@example.com</a> or call +1 415 555 0134.</p>
  <form id="contact" action="/contact/send" method="post">
    <input name="name" required>
    <input name="email" type="email" required>
    <textarea name="message"></textarea>
    <button type="submit">Send</button>
  </form>
</body></html>
"""


def site_pages(contact_html: str = CONTACT_HTML) -> Dict[str, Tuple[int, str, str]]:
    """FakeDriver pages for a small site with a /contact page."""
    return {
        "https://example.com/": (200, LANDING_HTML, "Example Inc."),
        "https://example.com/contact": (200, contact_html, "Contact Us"),
    }


def site_routes(contact_html: str = CONTACT_HTML) -> Dict[object, Route]:
    """The same site as seen by the static fetcher."""
    return {
        "https://example.com/": html_route(LANDING_HTML),
        "https://example.com/contact": html_route(contact_html),
    }
