"""
Automation orchestrator: one request end to end.

  origin gate -> consent grant -> connection record -> tab lease
  -> landing page (+ defenses) -> page classification
  -> contact page (+ defenses) -> extraction + forms (+ optional submit)
  -> tab release -> connection closed

Connection latency is the navigation round trip, not the run duration.

Policy rejections, pool exhaustion and cancellation raise. Everything that
goes wrong after the tab is leased is reported in the AutomationResult.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from ..browser.manager import BrowserResourceManager, TabSession
from ..errors import NavigationError, RequestCancelled, ResourceExhaustion, TransientIO
from ..monitor.connections import ConnectionMonitor
from ..policy.consent import ConsentManager
from ..policy.origin import OriginValidator
from ..scheduling import CancelToken, utcnow
from ..schemas import (
    AutomationRequest,
    AutomationResult,
    AutomationStatus,
    DefenseOutcome,
    ProtectionReport,
    SubmissionResult,
)
from .defense import DefenseDetector
from .detector import PageClassifier
from .extractors import ContentExtractor
from .forms import FormHandler
from .responder import DefenseResponder

logger = logging.getLogger(__name__)

AUTOMATION_ACTION = "form-automation"
READ_PERMISSIONS = ("read", "control")
SUBMIT_PERMISSIONS = ("read", "write", "control")


@dataclass
class _Run:
    started_at: datetime
    t0: float
    defenses: List[DefenseOutcome]
    protection: ProtectionReport
    connection_id: str


class AutomationOrchestrator:
    def __init__(
        self,
        *,
        browsers: BrowserResourceManager,
        classifier: PageClassifier,
        consent: ConsentManager,
        origins: OriginValidator,
        monitor: ConnectionMonitor,
        detector: Optional[DefenseDetector] = None,
        responder: Optional[DefenseResponder] = None,
        extractor: Optional[ContentExtractor] = None,
        forms: Optional[FormHandler] = None,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.browsers = browsers
        self.classifier = classifier
        self.consent = consent
        self.origins = origins
        self.monitor = monitor
        self.detector = detector or DefenseDetector()
        self.responder = responder or DefenseResponder()
        self.extractor = extractor or ContentExtractor()
        self.forms = forms or FormHandler()
        self._timer = timer

    def _check(self, cancel: Optional[CancelToken]) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()

    def _load(self, session: TabSession, url: str, run: _Run, cancel: Optional[CancelToken]) -> Tuple[str, str]:
        """Navigate, clear any challenge, and return (html, title)."""
        sent = self._timer()
        status = session.navigate(url)
        self.monitor.update_connection_activity(run.connection_id, latency_ms=(self._timer() - sent) * 1000)
        if status is not None and status >= 400:
            logger.info("%s answered HTTP %s", url, status)
        html = session.content()
        run.protection = _merge_protection(run.protection, self.detector.detect_protection(html))
        challenge = self.detector.detect(html)
        if challenge.present:
            self._check(cancel)
            outcome = self.responder.respond(session, challenge, cancel)
            run.defenses.append(outcome)
            html = session.content()
        return html, session.title()

    def run(self, request: AutomationRequest, cancel: Optional[CancelToken] = None) -> AutomationResult:
        origin = self.origins.require(request.origin)
        required = SUBMIT_PERMISSIONS if request.auto_submit else READ_PERMISSIONS
        self.consent.require(request.grant_id, origin, AUTOMATION_ACTION, required, user_id=request.user_id)
        self._check(cancel)

        connection_id = request.connection_id or f"conn_{uuid.uuid4().hex[:12]}"
        # a connection registered here lives only as long as this run
        owned = self.monitor.get_connection(connection_id) is None
        if owned:
            self.monitor.register_connection(connection_id, request.user_id, origin, {"target": request.url})

        run = _Run(
            started_at=utcnow(), t0=self._timer(), defenses=[], protection=ProtectionReport(),
            connection_id=connection_id,
        )
        reason = "error"
        try:
            result = self._execute(request, run, cancel)
            if result.status != AutomationStatus.FAILED:
                reason = "normal"
        finally:
            if owned:
                self.monitor.disconnect_connection(connection_id, reason)
        logger.info("automation for %s finished: %s", request.url, result.status.value)
        return result

    def _execute(self, request: AutomationRequest, run: _Run, cancel: Optional[CancelToken]) -> AutomationResult:
        try:
            with self.browsers.open_session() as session:
                result = self._run_in_session(session, request, run, cancel)
        except RequestCancelled:
            self.monitor.record_error(run.connection_id)
            logger.info("automation for %s cancelled", request.url)
            raise
        except ResourceExhaustion:
            raise
        except TransientIO as e:
            result = self._result(request, run, AutomationStatus.FAILED, error=str(e))
        except Exception as e:
            logger.exception("automation for %s failed", request.url)
            result = self._result(request, run, AutomationStatus.FAILED, error=f"{type(e).__name__}: {e}")
        if result.status == AutomationStatus.FAILED:
            self.monitor.record_error(run.connection_id)
        return result

    def _run_in_session(self, session: TabSession, request: AutomationRequest, run: _Run, cancel: Optional[CancelToken]) -> AutomationResult:
        try:
            landing_html, landing_title = self._load(session, request.url, run, cancel)
        except NavigationError as e:
            return self._result(request, run, AutomationStatus.FAILED, error=str(e))
        self._check(cancel)

        landing_url = session.url or request.url
        classification = self.classifier.classify(
            request.url,
            request.subject_name,
            render=lambda: (landing_url, landing_html, landing_title),
        )
        self._check(cancel)
        if not classification.found:
            return self._result(
                request, run, AutomationStatus.NO_CONTACT_PAGE,
                strategy_errors=classification.errors,
            )

        best = classification.best
        try:
            html, _ = self._load(session, best.url, run, cancel)
        except NavigationError as e:
            return self._result(
                request, run, AutomationStatus.FAILED,
                candidates=classification.candidates,
                strategy_errors=classification.errors,
                error=str(e),
            )
        self._check(cancel)

        contact_url = session.url or best.url
        extracted = self.extractor.extract(html, contact_url)
        analysis = self.forms.analyze(html)
        submission = None
        if request.auto_submit:
            submission = self._submit(session, request, analysis, run, cancel)
        return self._result(
            request, run, AutomationStatus.COMPLETED,
            contact_page_url=contact_url,
            candidates=classification.candidates,
            strategy_errors=classification.errors,
            extracted=extracted,
            form_analysis=analysis,
            submission=submission,
        )

    def _submit(self, session: TabSession, request: AutomationRequest, analysis, run: _Run, cancel: Optional[CancelToken]) -> SubmissionResult:
        form = analysis.best
        if form is None:
            return SubmissionResult(skipped_reason="no contact form found")
        if run.protection.detected:
            kinds = ",".join(p.value for p in run.protection.types)
            logger.info("submission skipped for %s: anti-bot protection (%s)", request.url, kinds)
            return SubmissionResult(skipped_reason=f"anti-bot protection detected: {kinds}")
        data = {**self.forms.default_contact_data(request.subject_name), **request.contact_data}
        filled = self.forms.fill(session, form, data)
        if filled == 0:
            return SubmissionResult(skipped_reason="no fields could be filled")
        self._check(cancel)
        try:
            return self.forms.submit(session, form)
        except Exception as e:
            logger.warning("form submission on %s failed: %s", request.url, e)
            return SubmissionResult(attempted=True, success=False, message=str(e))

    def _result(self, request: AutomationRequest, run: _Run, status: AutomationStatus, **fields) -> AutomationResult:
        return AutomationResult(
            request_url=request.url,
            status=status,
            defenses=list(run.defenses),
            protection=run.protection,
            started_at=run.started_at,
            duration_ms=int((self._timer() - run.t0) * 1000),
            **fields,
        )


def _merge_protection(a: ProtectionReport, b: ProtectionReport) -> ProtectionReport:
    types = list(dict.fromkeys(list(a.types) + list(b.types)))
    return ProtectionReport(types=types, confidence=min(100, max(a.confidence, b.confidence, 25 * len(types))))
