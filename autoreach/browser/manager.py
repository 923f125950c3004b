"""
Browser resource manager: a bounded pool of headless browser instances.

Concurrency model:
- The pool RLock guards the instance registry and launch reservations.
- Each instance carries its own Lock guarding its tabs, leases and closed flag.
- Driver calls (launch, navigate, close) run outside the pool lock.
- The idle sweep decides and marks an instance closed under its instance lock,
  so a concurrent lease either happens before (and blocks reclaim) or fails.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..config import BrowserConfig
from ..errors import (
    AutomationError,
    BrowserLaunchError,
    InstanceNotFound,
    NavigationError,
    PoolExhausted,
    TabLimitExceeded,
    TabNotFound,
)
from ..scheduling import PeriodicTask, utcnow
from ..schemas import InstanceInfo, InstanceStatus, LaunchOptions, PoolStats, TabInfo, TabStatus
from .driver import BrowserDriver

logger = logging.getLogger(__name__)


class _Instance:
    def __init__(self, info: InstanceInfo, handle: Any) -> None:
        self.info = info
        self.handle = handle
        self.lock = threading.Lock()
        self.tab_handles: Dict[str, Any] = {}
        self.reserved_tabs = 0
        self.lease_since: Optional[datetime] = None
        self.closed = False


class TabSession:
    """A leased tab. Obtained from `BrowserResourceManager.open_session`."""

    def __init__(self, manager: "BrowserResourceManager", instance_id: str, tab_id: str) -> None:
        self.manager = manager
        self.instance_id = instance_id
        self.tab_id = tab_id

    @property
    def _driver(self) -> BrowserDriver:
        return self.manager.driver

    def _tab(self) -> Any:
        self.manager.touch(self.instance_id)
        return self.manager._tab_handle(self.instance_id, self.tab_id)

    def navigate(self, url: str, *, wait_until: str = "load") -> Optional[int]:
        return self.manager.navigate(self.instance_id, self.tab_id, url, wait_until=wait_until)

    def content(self) -> str:
        return self._driver.content(self._tab())

    def title(self) -> str:
        return self._driver.title(self._tab())

    @property
    def url(self) -> str:
        return self._driver.url(self._tab())

    def evaluate(self, script: str) -> Any:
        return self._driver.evaluate(self._tab(), script)

    def click(self, selector: str, *, frame_selector: Optional[str] = None, timeout_ms: int = 5000) -> None:
        self._driver.click(self._tab(), selector, frame_selector=frame_selector, timeout_ms=timeout_ms)

    def fill(self, selector: str, value: str, *, timeout_ms: int = 5000) -> None:
        self._driver.fill(self._tab(), selector, value, timeout_ms=timeout_ms)

    def wait_for(self, selector: str, *, timeout_ms: int, frame_selector: Optional[str] = None) -> bool:
        return self._driver.wait_for(self._tab(), selector, timeout_ms=timeout_ms, frame_selector=frame_selector)

    def screenshot(self) -> bytes:
        return self._driver.screenshot(self._tab())


class BrowserResourceManager:
    def __init__(
        self,
        driver: BrowserDriver,
        config: Optional[BrowserConfig] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        start_background: bool = True,
    ) -> None:
        self.driver = driver
        self.config = config or BrowserConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._instances: Dict[str, _Instance] = {}
        self._reserved = 0
        self._sweeper = PeriodicTask("browser-idle-sweep", self.config.cleanup_interval_s, self.reclaim_idle)
        if start_background:
            self._sweeper.start()

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def default_options(self) -> LaunchOptions:
        return LaunchOptions(
            headless=self.config.headless,
            viewport_width=self.config.viewport_width,
            viewport_height=self.config.viewport_height,
            user_agent=self.config.user_agent,
            args=list(self.config.args),
        )

    def create_instance(self, options: Optional[LaunchOptions] = None) -> InstanceInfo:
        """Launch a new browser; raises PoolExhausted at capacity."""
        opts = options or self.default_options()
        with self._lock:
            in_use = len(self._instances) + self._reserved
            if in_use >= self.config.max_instances:
                raise PoolExhausted(f"maximum browser instances ({self.config.max_instances}) reached")
            self._reserved += 1
        try:
            handle = self.driver.launch(opts)
        except Exception as e:
            with self._lock:
                self._reserved -= 1
            logger.error("browser launch failed: %s", e)
            if isinstance(e, AutomationError):
                raise
            raise BrowserLaunchError(str(e)) from e
        now = self._clock()
        info = InstanceInfo(id=f"browser_{uuid.uuid4().hex[:12]}", created_at=now, last_activity=now, options=opts)
        with self._lock:
            self._reserved -= 1
            self._instances[info.id] = _Instance(info, handle)
        logger.info("browser instance created: %s", info.id)
        return info.model_copy(deep=True)

    def _get(self, instance_id: str) -> _Instance:
        with self._lock:
            inst = self._instances.get(instance_id)
        if inst is None or inst.closed:
            raise InstanceNotFound(f"browser instance {instance_id} not found")
        return inst

    def get_instance(self, instance_id: str) -> Optional[InstanceInfo]:
        try:
            inst = self._get(instance_id)
        except InstanceNotFound:
            return None
        with inst.lock:
            return inst.info.model_copy(deep=True)

    def list_instances(self) -> List[InstanceInfo]:
        with self._lock:
            items = list(self._instances.values())
        out = []
        for inst in items:
            with inst.lock:
                if not inst.closed:
                    out.append(inst.info.model_copy(deep=True))
        return out

    def touch(self, instance_id: str) -> None:
        try:
            inst = self._get(instance_id)
        except InstanceNotFound:
            return
        with inst.lock:
            inst.info.last_activity = self._clock()
            inst.info.status = InstanceStatus.ACTIVE

    def close_instance(self, instance_id: str) -> bool:
        """Close an instance and all its tabs. False if it was already gone."""
        with self._lock:
            inst = self._instances.pop(instance_id, None)
        if inst is None:
            return False
        with inst.lock:
            inst.closed = True
        self._release(instance_id, inst)
        return True

    def _release(self, instance_id: str, inst: _Instance) -> None:
        with inst.lock:
            handles = list(inst.tab_handles.values())
            inst.tab_handles.clear()
            inst.info.tabs.clear()
            inst.info.status = InstanceStatus.CLOSED
        try:
            for tab in handles:
                try:
                    self.driver.close_tab(tab)
                except Exception as e:
                    logger.warning("error closing tab on %s: %s", instance_id, e)
        finally:
            try:
                self.driver.close_browser(inst.handle)
            except Exception as e:
                logger.warning("error closing browser %s: %s", instance_id, e)
        logger.info("browser instance closed: %s", instance_id)

    # ------------------------------------------------------------------
    # Tabs
    # ------------------------------------------------------------------

    def create_tab(self, instance_id: str, url: Optional[str] = None) -> str:
        inst = self._get(instance_id)
        with inst.lock:
            if inst.closed:
                raise InstanceNotFound(f"browser instance {instance_id} not found")
            if len(inst.tab_handles) + inst.reserved_tabs >= self.config.max_tabs_per_instance:
                raise TabLimitExceeded(
                    f"maximum tabs per instance ({self.config.max_tabs_per_instance}) reached for {instance_id}"
                )
            inst.reserved_tabs += 1
        return self._open_reserved_tab(inst, url)

    def _open_reserved_tab(self, inst: _Instance, url: Optional[str]) -> str:
        """Turn a slot already counted in `reserved_tabs` into a live tab."""
        instance_id = inst.info.id
        try:
            handle = self.driver.new_tab(inst.handle)
        except Exception as e:
            with inst.lock:
                inst.reserved_tabs -= 1
            raise NavigationError(f"could not open tab on {instance_id}: {e}") from e
        now = self._clock()
        tab_id = f"tab_{uuid.uuid4().hex[:12]}"
        with inst.lock:
            inst.reserved_tabs -= 1
            inst.tab_handles[tab_id] = handle
            inst.info.tabs[tab_id] = TabInfo(id=tab_id, created_at=now, last_activity=now)
            inst.info.last_activity = now
        if url:
            try:
                self.navigate(instance_id, tab_id, url)
            except NavigationError:
                self.close_tab(instance_id, tab_id)
                raise
        return tab_id

    def _tab_handle(self, instance_id: str, tab_id: str) -> Any:
        inst = self._get(instance_id)
        with inst.lock:
            handle = inst.tab_handles.get(tab_id)
        if handle is None:
            raise TabNotFound(f"tab {tab_id} not found on {instance_id}")
        return handle

    def navigate(self, instance_id: str, tab_id: str, url: str, *, wait_until: str = "load") -> Optional[int]:
        inst = self._get(instance_id)
        handle = self._tab_handle(instance_id, tab_id)
        self._update_tab(inst, tab_id, status=TabStatus.LOADING, url=url)
        try:
            status = self.driver.navigate(handle, url, timeout_ms=self.config.navigation_timeout_ms, wait_until=wait_until)
            title = self.driver.title(handle)
        except Exception as e:
            self._update_tab(inst, tab_id, status=TabStatus.ERROR)
            raise NavigationError(f"navigation to {url} failed: {e}") from e
        self._update_tab(inst, tab_id, status=TabStatus.LOADED, title=title or "")
        return status

    def _update_tab(self, inst: _Instance, tab_id: str, **fields: Any) -> None:
        now = self._clock()
        with inst.lock:
            tab = inst.info.tabs.get(tab_id)
            if tab is None:
                return
            for key, value in fields.items():
                setattr(tab, key, value)
            tab.last_activity = now
            inst.info.last_activity = now

    def close_tab(self, instance_id: str, tab_id: str) -> bool:
        with self._lock:
            inst = self._instances.get(instance_id)
        if inst is None:
            return False
        with inst.lock:
            handle = inst.tab_handles.pop(tab_id, None)
            inst.info.tabs.pop(tab_id, None)
            inst.info.last_activity = self._clock()
        if handle is None:
            return False
        try:
            self.driver.close_tab(handle)
        except Exception as e:
            logger.warning("error closing tab %s: %s", tab_id, e)
        return True

    def get_tab_info(self, instance_id: str, tab_id: str) -> Optional[TabInfo]:
        info = self.get_instance(instance_id)
        if info is None:
            return None
        return info.tabs.get(tab_id)

    def list_tabs(self, instance_id: str) -> List[TabInfo]:
        info = self.get_instance(instance_id)
        return list(info.tabs.values()) if info else []

    # ------------------------------------------------------------------
    # Leases and sessions
    # ------------------------------------------------------------------

    def _mark_leased(self, inst: _Instance) -> None:
        # caller holds inst.lock
        if inst.info.active_leases == 0:
            inst.lease_since = self._clock()
        inst.info.active_leases += 1
        inst.info.last_activity = self._clock()
        inst.info.status = InstanceStatus.ACTIVE

    def _acquire_lease(self, inst: _Instance) -> None:
        with inst.lock:
            if inst.closed:
                raise InstanceNotFound(f"browser instance {inst.info.id} not found")
            self._mark_leased(inst)

    def _release_lease(self, inst: _Instance) -> None:
        with inst.lock:
            inst.info.active_leases = max(0, inst.info.active_leases - 1)
            if inst.info.active_leases == 0:
                inst.lease_since = None
            inst.info.last_activity = self._clock()

    @contextmanager
    def lease(self, instance_id: str) -> Iterator[InstanceInfo]:
        """Mark in-flight use so the idle sweep leaves the instance alone."""
        inst = self._get(instance_id)
        self._acquire_lease(inst)
        try:
            yield inst.info
        finally:
            self._release_lease(inst)

    def _claim_slot(self, inst: _Instance) -> bool:
        """Lease the instance and reserve one tab slot in a single locked step."""
        with inst.lock:
            free = self.config.max_tabs_per_instance - len(inst.tab_handles) - inst.reserved_tabs
            if inst.closed or free <= 0:
                return False
            inst.reserved_tabs += 1
            self._mark_leased(inst)
        return True

    def _lease_instance_with_capacity(self, options: Optional[LaunchOptions]) -> _Instance:
        with self._lock:
            items = list(self._instances.values())
        for inst in items:
            if self._claim_slot(inst):
                return inst
        info = self.create_instance(options)
        inst = self._get(info.id)
        if not self._claim_slot(inst):
            raise TabLimitExceeded(f"no tab slot left on freshly launched {info.id}")
        return inst

    @contextmanager
    def open_session(self, url: Optional[str] = None, options: Optional[LaunchOptions] = None) -> Iterator[TabSession]:
        """Lease a tab (reusing an instance with room when possible).

        The tab is closed and the lease released on every exit path.
        """
        inst = self._lease_instance_with_capacity(options)
        instance_id = inst.info.id
        try:
            tab_id = self._open_reserved_tab(inst, url)
            try:
                yield TabSession(self, instance_id, tab_id)
            finally:
                self.close_tab(instance_id, tab_id)
        finally:
            self._release_lease(inst)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def reclaim_idle(self) -> List[str]:
        """Close instances idle longer than the idle timeout; returns their ids."""
        now = self._clock()
        idle_timeout = self.config.idle_timeout_s
        with self._lock:
            items = list(self._instances.items())
        doomed: List[str] = []
        for instance_id, inst in items:
            with inst.lock:
                if inst.closed:
                    continue
                idle_for = (now - inst.info.last_activity).total_seconds()
                if inst.info.active_leases > 0:
                    held_for = (now - inst.lease_since).total_seconds() if inst.lease_since else 0.0
                    if held_for <= 2 * idle_timeout:
                        continue
                    logger.warning("reclaiming %s with stale lease held %.0fs", instance_id, held_for)
                elif idle_for <= idle_timeout:
                    if idle_for > idle_timeout / 2:
                        inst.info.status = InstanceStatus.IDLE
                    continue
                inst.closed = True
            doomed.append(instance_id)
        for instance_id in doomed:
            with self._lock:
                inst = self._instances.pop(instance_id, None)
            if inst is not None:
                logger.info("reclaiming idle browser instance %s", instance_id)
                self._release(instance_id, inst)
        return doomed

    def get_stats(self) -> PoolStats:
        instances = self.list_instances()
        created = [i.created_at for i in instances]
        return PoolStats(
            total_instances=len(instances),
            active_instances=sum(1 for i in instances if i.status == InstanceStatus.ACTIVE),
            idle_instances=sum(1 for i in instances if i.status == InstanceStatus.IDLE),
            total_tabs=sum(len(i.tabs) for i in instances),
            max_instances=self.config.max_instances,
            max_tabs_per_instance=self.config.max_tabs_per_instance,
            oldest_instance=min(created) if created else None,
            newest_instance=max(created) if created else None,
        )

    def get_config(self) -> BrowserConfig:
        return self.config.model_copy(deep=True)

    def update_config(self, **changes: Any) -> BrowserConfig:
        updated = BrowserConfig.model_validate({**self.config.model_dump(), **changes})
        with self._lock:
            self.config = updated
        if "cleanup_interval_s" in changes and self._sweeper.running:
            self._sweeper.stop()
            self._sweeper = PeriodicTask("browser-idle-sweep", updated.cleanup_interval_s, self.reclaim_idle)
            self._sweeper.start()
        return self.get_config()

    def shutdown(self) -> None:
        self._sweeper.stop()
        with self._lock:
            ids = list(self._instances)
        for instance_id in ids:
            self.close_instance(instance_id)
        logger.info("browser pool shut down")
