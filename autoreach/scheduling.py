"""
Background housekeeping and cancellation primitives.

Each registry owns its sweeps: a PeriodicTask runs on a daemon thread and
sleeps on an Event so `stop()` interrupts it immediately.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import RequestCancelled

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PeriodicTask:
    """Run `fn` every `interval_s` seconds until stopped."""

    def __init__(self, name: str, interval_s: float, fn: Callable[[], object]) -> None:
        self.name = name
        self.interval_s = float(interval_s)
        self._fn = fn
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self.interval_s):
            try:
                self._fn()
            except Exception as e:
                # keep ticking; the next run retries
                logger.warning("periodic task %s failed: %s", self.name, e)


class CancelToken:
    """Cooperative cancellation flag checked at every wait point."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled("request cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout`; returns True if cancelled meanwhile."""
        return self._event.wait(timeout=max(0.0, timeout))
