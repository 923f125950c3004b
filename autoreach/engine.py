"""
Wiring of the engine components from an EngineConfig.

The CLI and the HTTP surface both build one Engine and shut it down on exit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .browser.driver import BrowserDriver
from .browser.manager import BrowserResourceManager
from .config import EngineConfig
from .monitor.connections import ConnectionMonitor
from .ops_logger import OpsLogger
from .pipeline.classifier import ContentClassifier, HttpContentClassifier
from .pipeline.detector import PageClassifier
from .pipeline.orchestrator import AutomationOrchestrator
from .pipeline.responder import DefenseResponder
from .policy.consent import ConsentManager
from .policy.origin import OriginValidator

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    config: EngineConfig
    browsers: BrowserResourceManager
    classifier: PageClassifier
    consent: ConsentManager
    origins: OriginValidator
    monitor: ConnectionMonitor
    orchestrator: AutomationOrchestrator
    ops: Optional[OpsLogger] = None
    _closers: list = field(default_factory=list)

    def shutdown(self) -> None:
        self.browsers.shutdown()
        self.consent.shutdown()
        self.monitor.shutdown()
        self.classifier.close()
        for close in self._closers:
            close()
        logger.info("engine shut down")


def build_engine(
    config: Optional[EngineConfig] = None,
    *,
    driver: Optional[BrowserDriver] = None,
    content_classifier: Optional[ContentClassifier] = None,
    start_background: bool = True,
) -> Engine:
    config = config or EngineConfig()
    closers = []
    if driver is None:
        from .browser.playwright_driver import PlaywrightDriver

        driver = PlaywrightDriver(call_timeout_s=config.browser.driver_call_timeout_s)
        closers.append(driver.shutdown)
    if content_classifier is None and config.classifier.classifier_endpoint:
        http_classifier = HttpContentClassifier(
            config.classifier.classifier_endpoint,
            timeout_s=config.classifier.classifier_timeout_s,
        )
        closers.append(http_classifier.close)
        content_classifier = http_classifier

    browsers = BrowserResourceManager(driver, config.browser, start_background=start_background)
    classifier = PageClassifier(config=config.classifier, classifier=content_classifier)
    consent = ConsentManager(config.consent, start_background=start_background)
    origins = OriginValidator(config.origin)
    monitor = ConnectionMonitor(config.monitor, start_background=start_background)
    orchestrator = AutomationOrchestrator(
        browsers=browsers,
        classifier=classifier,
        consent=consent,
        origins=origins,
        monitor=monitor,
        responder=DefenseResponder(config.defense),
    )
    ops = None
    if config.ops.ops_log:
        ops = OpsLogger(config.ops.ops_log, also_stdout=config.ops.ops_stdout)
    return Engine(
        config=config,
        browsers=browsers,
        classifier=classifier,
        consent=consent,
        origins=origins,
        monitor=monitor,
        orchestrator=orchestrator,
        ops=ops,
        _closers=closers,
    )
