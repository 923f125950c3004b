from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Optional

from playwright.sync_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    sync_playwright,
)

from ..errors import BrowserLaunchError, DriverTimeout
from ..schemas import LaunchOptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrowserHandle:
    browser: Browser
    context: BrowserContext


class PlaywrightDriver:
    """BrowserDriver backed by Playwright's sync API.

    The sync API is bound to the thread that started it, so every call is
    marshalled onto one dedicated worker thread. Callers on other threads
    (the pool manager, the idle sweep, request handlers) block on the result
    for at most `call_timeout_s` seconds.
    """

    def __init__(self, *, call_timeout_s: float = 60.0) -> None:
        self.call_timeout_s = call_timeout_s
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="playwright")
        self._pw: Optional[Playwright] = None

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.call_timeout_s)
        except FutureTimeout as e:
            raise DriverTimeout(f"browser call {getattr(fn, '__name__', fn)} exceeded {self.call_timeout_s}s") from e

    def _playwright(self) -> Playwright:
        if self._pw is None:
            self._pw = sync_playwright().start()
        return self._pw

    # -- lifecycle ---------------------------------------------------------

    def launch(self, options: LaunchOptions) -> BrowserHandle:
        def _launch() -> BrowserHandle:
            pw = self._playwright()
            browser = pw.chromium.launch(headless=options.headless, args=list(options.args))
            kwargs: dict[str, Any] = {
                "viewport": {"width": options.viewport_width, "height": options.viewport_height},
            }
            if options.user_agent:
                kwargs["user_agent"] = options.user_agent
            context = browser.new_context(**kwargs)
            return BrowserHandle(browser=browser, context=context)

        try:
            return self._call(_launch)
        except DriverTimeout:
            raise
        except Exception as e:
            raise BrowserLaunchError(f"chromium launch failed: {e}") from e

    def new_tab(self, browser: BrowserHandle) -> Page:
        return self._call(browser.context.new_page)

    def close_tab(self, tab: Page) -> None:
        self._call(tab.close)

    def close_browser(self, browser: BrowserHandle) -> None:
        def _close() -> None:
            try:
                browser.context.close()
            finally:
                browser.browser.close()

        self._call(_close)

    def shutdown(self) -> None:
        def _stop() -> None:
            if self._pw is not None:
                self._pw.stop()
                self._pw = None

        try:
            self._call(_stop)
        finally:
            self._executor.shutdown(wait=False)

    # -- page operations ---------------------------------------------------

    def navigate(self, tab: Page, url: str, *, timeout_ms: int, wait_until: str = "load") -> Optional[int]:
        def _goto() -> Optional[int]:
            response = tab.goto(url, wait_until=wait_until, timeout=timeout_ms)
            return response.status if response else None

        return self._call(_goto)

    def content(self, tab: Page) -> str:
        return self._call(tab.content)

    def title(self, tab: Page) -> str:
        return self._call(tab.title)

    def url(self, tab: Page) -> str:
        return self._call(lambda: tab.url)

    def evaluate(self, tab: Page, script: str) -> Any:
        return self._call(tab.evaluate, script)

    def click(self, tab: Page, selector: str, *, frame_selector: Optional[str] = None, timeout_ms: int = 5000) -> None:
        def _click() -> None:
            if frame_selector:
                tab.frame_locator(frame_selector).locator(selector).first.click(timeout=timeout_ms)
            else:
                tab.locator(selector).first.click(timeout=timeout_ms)

        self._call(_click)

    def fill(self, tab: Page, selector: str, value: str, *, timeout_ms: int = 5000) -> None:
        self._call(lambda: tab.locator(selector).first.fill(value, timeout=timeout_ms))

    def wait_for(self, tab: Page, selector: str, *, timeout_ms: int, frame_selector: Optional[str] = None) -> bool:
        def _wait() -> bool:
            try:
                if frame_selector:
                    tab.frame_locator(frame_selector).locator(selector).first.wait_for(timeout=timeout_ms)
                else:
                    tab.wait_for_selector(selector, timeout=timeout_ms)
                return True
            except PlaywrightTimeoutError:
                return False

        return self._call(_wait)

    def screenshot(self, tab: Page) -> bytes:
        return self._call(lambda: tab.screenshot(full_page=True))
