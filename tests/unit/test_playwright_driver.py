import threading
import time

import pytest
from unittest.mock import patch, MagicMock

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from autoreach.browser.playwright_driver import BrowserHandle, PlaywrightDriver
from autoreach.errors import BrowserLaunchError, DriverTimeout
from autoreach.schemas import LaunchOptions


def _mock_playwright(mock_sync_playwright):
    mock_page = MagicMock()
    mock_context = MagicMock()
    mock_context.new_page.return_value = mock_page
    mock_browser = MagicMock()
    mock_browser.new_context.return_value = mock_context
    mock_playwright = MagicMock()
    mock_playwright.chromium.launch.return_value = mock_browser
    mock_sync_playwright.return_value.start.return_value = mock_playwright
    return mock_playwright, mock_browser, mock_context, mock_page


@patch('autoreach.browser.playwright_driver.sync_playwright')
def test_launch_applies_options(mock_sync_playwright):
    mock_playwright, mock_browser, mock_context, _ = _mock_playwright(mock_sync_playwright)
    driver = PlaywrightDriver()

    handle = driver.launch(LaunchOptions(headless=True, viewport_width=1280, viewport_height=720,
                                         user_agent="AutoReachTest/1.0", args=["--no-sandbox"]))

    assert isinstance(handle, BrowserHandle)
    assert handle.browser is mock_browser
    assert handle.context is mock_context
    mock_playwright.chromium.launch.assert_called_once_with(headless=True, args=["--no-sandbox"])
    mock_browser.new_context.assert_called_once_with(
        viewport={"width": 1280, "height": 720}, user_agent="AutoReachTest/1.0"
    )
    driver.shutdown()
    mock_playwright.stop.assert_called_once()


@patch('autoreach.browser.playwright_driver.sync_playwright')
def test_playwright_is_started_once(mock_sync_playwright):
    _mock_playwright(mock_sync_playwright)
    driver = PlaywrightDriver()
    driver.launch(LaunchOptions())
    driver.launch(LaunchOptions())
    assert mock_sync_playwright.return_value.start.call_count == 1
    driver.shutdown()


@patch('autoreach.browser.playwright_driver.sync_playwright')
def test_launch_failure_is_wrapped(mock_sync_playwright):
    mock_playwright, _, _, _ = _mock_playwright(mock_sync_playwright)
    mock_playwright.chromium.launch.side_effect = Exception("Executable doesn't exist")
    driver = PlaywrightDriver()

    with pytest.raises(BrowserLaunchError) as exc:
        driver.launch(LaunchOptions())
    assert "Executable doesn't exist" in str(exc.value)
    driver.shutdown()


@patch('autoreach.browser.playwright_driver.sync_playwright')
def test_navigate_returns_status_or_none(mock_sync_playwright):
    _, _, _, mock_page = _mock_playwright(mock_sync_playwright)
    driver = PlaywrightDriver()
    handle = driver.launch(LaunchOptions())
    tab = driver.new_tab(handle)
    assert tab is mock_page

    mock_response = MagicMock()
    mock_response.status = 200
    mock_page.goto.return_value = mock_response
    assert driver.navigate(tab, "http://example.com", timeout_ms=20000) == 200
    mock_page.goto.assert_called_with("http://example.com", wait_until="load", timeout=20000)

    mock_page.goto.return_value = None
    assert driver.navigate(tab, "http://example.com", timeout_ms=20000, wait_until="domcontentloaded") is None
    driver.shutdown()


@patch('autoreach.browser.playwright_driver.sync_playwright')
def test_calls_run_on_one_worker_thread(mock_sync_playwright):
    _, _, _, mock_page = _mock_playwright(mock_sync_playwright)
    threads = set()

    def _content():
        threads.add(threading.current_thread().name)
        return "<html></html>"

    mock_page.content.side_effect = _content
    driver = PlaywrightDriver()
    tab = driver.new_tab(driver.launch(LaunchOptions()))
    workers = [threading.Thread(target=driver.content, args=(tab,)) for _ in range(4)]
    for w in workers:
        w.start()
    for w in workers:
        w.join(timeout=5)

    assert len(threads) == 1
    assert next(iter(threads)).startswith("playwright")
    driver.shutdown()


@patch('autoreach.browser.playwright_driver.sync_playwright')
def test_wait_for_timeout_returns_false(mock_sync_playwright):
    _, _, _, mock_page = _mock_playwright(mock_sync_playwright)
    mock_page.wait_for_selector.side_effect = PlaywrightTimeoutError("Timeout 100ms exceeded")
    driver = PlaywrightDriver()
    tab = driver.new_tab(driver.launch(LaunchOptions()))

    assert driver.wait_for(tab, "form", timeout_ms=100) is False
    mock_page.wait_for_selector.side_effect = None
    assert driver.wait_for(tab, "form", timeout_ms=100) is True
    driver.shutdown()


@patch('autoreach.browser.playwright_driver.sync_playwright')
def test_click_inside_frame_uses_frame_locator(mock_sync_playwright):
    _, _, _, mock_page = _mock_playwright(mock_sync_playwright)
    driver = PlaywrightDriver()
    tab = driver.new_tab(driver.launch(LaunchOptions()))

    driver.click(tab, "#recaptcha-anchor", frame_selector='iframe[src*="recaptcha"]', timeout_ms=3000)

    mock_page.frame_locator.assert_called_once_with('iframe[src*="recaptcha"]')
    frame = mock_page.frame_locator.return_value
    frame.locator.assert_called_once_with("#recaptcha-anchor")
    frame.locator.return_value.first.click.assert_called_once_with(timeout=3000)
    driver.shutdown()


@patch('autoreach.browser.playwright_driver.sync_playwright')
def test_slow_call_raises_driver_timeout(mock_sync_playwright):
    _, _, _, mock_page = _mock_playwright(mock_sync_playwright)
    driver = PlaywrightDriver(call_timeout_s=0.05)
    tab = driver.new_tab(driver.launch(LaunchOptions()))
    mock_page.content.side_effect = lambda: time.sleep(0.3) or "<html></html>"

    with pytest.raises(DriverTimeout):
        driver.content(tab)
