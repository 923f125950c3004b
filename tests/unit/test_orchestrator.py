from __future__ import annotations

import time

import pytest

from autoreach.browser.manager import BrowserResourceManager
from autoreach.config import BrowserConfig, DefenseConfig
from autoreach.errors import ConsentCode, ConsentRejected, OriginRejected, RequestCancelled, ResourceExhaustion
from autoreach.monitor.connections import ConnectionMonitor
from autoreach.pipeline.detector import PageClassifier
from autoreach.pipeline.orchestrator import (
    AUTOMATION_ACTION,
    READ_PERMISSIONS,
    SUBMIT_PERMISSIONS,
    AutomationOrchestrator,
)
from autoreach.pipeline.responder import DefenseResponder
from autoreach.policy.consent import ConsentManager
from autoreach.policy.origin import OriginValidator
from autoreach.scheduling import CancelToken
from autoreach.schemas import (
    AlertType,
    AutomationRequest,
    AutomationStatus,
    ConnectionQuality,
    DetectionMethod,
    HealthStatus,
    OutcomeTag,
    ProtectionType,
)
from tests.helpers import CONTACT_HTML, FakeDriver, html_route, route_fetcher, site_pages, site_routes


ORIGIN = "http://localhost:3000"
USER = "user-1"


class Stack:
    def __init__(self, clock, pages=None, routes=None, browser_config=None, classifier_cls=PageClassifier,
                 driver=None, timer=time.perf_counter):
        self.clock = clock
        self.driver = driver or FakeDriver(site_pages() if pages is None else pages)
        self.browsers = BrowserResourceManager(
            self.driver, browser_config or BrowserConfig(), clock=clock, start_background=False
        )
        self.classifier = classifier_cls(fetcher=route_fetcher(site_routes() if routes is None else routes))
        self.consent = ConsentManager(clock=clock, start_background=False)
        self.origins = OriginValidator(clock=clock)
        self.monitor = ConnectionMonitor(
            clock=clock, resource_sampler=lambda: {"cpu_pct": 5.0, "memory_pct": 20.0}, start_background=False
        )
        self.orchestrator = AutomationOrchestrator(
            browsers=self.browsers,
            classifier=self.classifier,
            consent=self.consent,
            origins=self.origins,
            monitor=self.monitor,
            responder=DefenseResponder(DefenseConfig(auto_wait_s=0, manual_wait_s=0), sleep=lambda s: None),
            timer=timer,
        )

    def grant(self, permissions=READ_PERMISSIONS, origin=ORIGIN) -> str:
        req = self.consent.create_consent_request(USER, origin, AUTOMATION_ACTION)
        return self.consent.grant_consent(req.id, permissions).id

    def request(self, grant_id, **kw) -> AutomationRequest:
        fields = dict(url="https://example.com/", user_id=USER, origin=ORIGIN, grant_id=grant_id, subject_name="Example Inc.")
        fields.update(kw)
        return AutomationRequest(**fields)


@pytest.fixture
def stack(clock):
    return Stack(clock)


def test_completed_run_reports_contact_page(stack):
    result = stack.orchestrator.run(stack.request(stack.grant(), connection_id="conn-1"))

    assert result.status == AutomationStatus.COMPLETED
    assert result.contact_page_url == "https://example.com/contact"
    assert result.candidates[0].method == DetectionMethod.LINK_TRAVERSAL
    assert "info@example.com" in result.extracted.emails
    assert result.form_analysis.best.selector == 'form[id="contact"]'
    assert result.submission is None
    assert result.defenses == []
    assert result.error is None

    assert stack.monitor.get_connection("conn-1") is None
    assert stack.browsers.get_stats().total_tabs == 0
    assert stack.browsers.list_instances()[0].active_leases == 0


def test_auto_submit_fills_and_submits_best_form(stack):
    grant_id = stack.grant(SUBMIT_PERMISSIONS)
    result = stack.orchestrator.run(stack.request(
        grant_id, auto_submit=True, contact_data={"email": "sales@buyer.example"},
    ))

    assert result.status == AutomationStatus.COMPLETED
    assert result.submission.attempted
    assert result.submission.success
    tab = stack.driver.tabs[0]
    assert tab.filled['form[id="contact"] >> [name="email"]'] == "sales@buyer.example"
    assert tab.filled['form[id="contact"] >> [name="name"]'] == "Test User from Example Inc."
    assert 'form[id="contact"] >> [name="message"]' in tab.filled
    assert tab.clicks == ['form[id="contact"] >> button[type="submit"]']


def test_auto_submit_needs_write_permission(stack):
    with pytest.raises(ConsentRejected) as exc:
        stack.orchestrator.run(stack.request(stack.grant(READ_PERMISSIONS), auto_submit=True))
    assert exc.value.code == ConsentCode.INSUFFICIENT_PERMISSIONS
    assert stack.driver.launched == []


def test_untrusted_origin_is_rejected_before_any_work(stack):
    grant_id = stack.grant()
    with pytest.raises(OriginRejected):
        stack.orchestrator.run(stack.request(grant_id, origin="https://evil.example"))
    assert stack.driver.launched == []
    assert stack.origins.violation_stats()["total"] == 1


def test_grant_for_another_origin_is_rejected(stack):
    grant_id = stack.grant(origin="http://localhost:3001")
    with pytest.raises(ConsentRejected) as exc:
        stack.orchestrator.run(stack.request(grant_id))
    assert exc.value.code == ConsentCode.ORIGIN_MISMATCH


def test_expired_grant_is_rejected(stack, clock):
    grant_id = stack.grant()
    clock.advance(minutes=31)
    with pytest.raises(ConsentRejected) as exc:
        stack.orchestrator.run(stack.request(grant_id))
    assert exc.value.code == ConsentCode.EXPIRED


def test_site_without_contact_page(clock):
    landing = "<html><head><title>Shop</title></head><body>Products and pricing</body></html>"
    stack = Stack(
        clock,
        pages={"https://example.com/": (200, landing, "Shop")},
        routes={"https://example.com/": html_route(landing)},
    )
    result = stack.orchestrator.run(stack.request(stack.grant()))
    assert result.status == AutomationStatus.NO_CONTACT_PAGE
    assert result.candidates == []
    assert result.contact_page_url is None


def test_unreachable_landing_page_fails_the_run(clock):
    stack = Stack(clock, pages={})
    stack.monitor.register_connection("conn-x", USER, ORIGIN)
    result = stack.orchestrator.run(stack.request(stack.grant(), connection_id="conn-x"))
    assert result.status == AutomationStatus.FAILED
    assert "navigation to https://example.com/ failed" in result.error
    assert stack.monitor.get_connection("conn-x").error_count == 1
    assert all(t.closed for t in stack.driver.tabs)


def test_protected_contact_page_skips_submission(clock):
    protected = CONTACT_HTML.replace("</form>", '<div class="g-recaptcha" data-sitekey="k"></div></form>')
    stack = Stack(clock, pages=site_pages(protected), routes=site_routes(protected))
    result = stack.orchestrator.run(stack.request(stack.grant(SUBMIT_PERMISSIONS), auto_submit=True))

    assert result.status == AutomationStatus.COMPLETED
    assert [d.tag for d in result.defenses] == [OutcomeTag.SOLVED]
    assert result.defenses[0].proceeding
    assert ProtectionType.CAPTCHA in result.protection.types
    assert result.submission.attempted is False
    assert result.submission.skipped_reason.startswith("anti-bot protection detected")
    assert stack.driver.tabs[0].filled == {}


def test_uncleared_challenge_still_proceeds(clock):
    protected = CONTACT_HTML.replace("</form>", '<div class="g-recaptcha" data-sitekey="k"></div></form>')
    stack = Stack(clock, pages=site_pages(protected), routes=site_routes(protected))
    stack.driver.solved = False
    result = stack.orchestrator.run(stack.request(stack.grant()))
    assert result.status == AutomationStatus.COMPLETED
    assert result.defenses[0].tag == OutcomeTag.TIMED_OUT
    assert "info@example.com" in result.extracted.emails


def test_cancellation_releases_the_tab(clock):
    token = CancelToken()

    class CancellingClassifier(PageClassifier):
        def classify(self, *args, **kwargs):
            result = super().classify(*args, **kwargs)
            token.cancel()
            return result

    stack = Stack(clock, classifier_cls=CancellingClassifier)
    stack.monitor.register_connection("conn-c", USER, ORIGIN)
    with pytest.raises(RequestCancelled):
        stack.orchestrator.run(stack.request(stack.grant(), connection_id="conn-c"), cancel=token)
    assert stack.driver.tabs[0].closed
    assert stack.browsers.get_stats().total_tabs == 0
    assert stack.monitor.get_connection("conn-c").error_count == 1


def test_cancelled_before_start_launches_nothing(stack):
    token = CancelToken()
    token.cancel()
    with pytest.raises(RequestCancelled):
        stack.orchestrator.run(stack.request(stack.grant()), cancel=token)
    assert stack.driver.launched == []


def test_full_pool_raises(clock):
    stack = Stack(clock, browser_config=BrowserConfig(max_instances=1, max_tabs_per_instance=1))
    grant_id = stack.grant()
    with stack.browsers.open_session():
        with pytest.raises(ResourceExhaustion):
            stack.orchestrator.run(stack.request(grant_id))


def test_grant_issued_to_another_user_is_rejected(stack):
    grant_id = stack.grant()
    with pytest.raises(ConsentRejected) as exc:
        stack.orchestrator.run(stack.request(grant_id, user_id="user-2"))
    assert exc.value.code == ConsentCode.USER_MISMATCH
    assert stack.driver.launched == []


def test_run_closes_its_connection_and_stays_quiet_afterwards(stack, clock):
    result = stack.orchestrator.run(stack.request(stack.grant()))
    assert result.status == AutomationStatus.COMPLETED
    assert stack.monitor.get_connection_stats()["total_connections"] == 0

    clock.advance(minutes=6)
    check = stack.monitor.perform_health_check()
    assert check.status == HealthStatus.HEALTHY
    assert stack.monitor.get_active_alerts() == []


def test_failed_run_closes_its_connection_with_error(clock):
    stack = Stack(clock, pages={})
    result = stack.orchestrator.run(stack.request(stack.grant()))
    assert result.status == AutomationStatus.FAILED
    assert stack.monitor.get_connection_stats()["total_connections"] == 0
    assert [a.type for a in stack.monitor.get_active_alerts()] == [AlertType.CONNECTION_LOST]


def test_caller_connection_outlives_the_run(stack):
    stack.monitor.register_connection("conn-keep", USER, ORIGIN)
    stack.orchestrator.run(stack.request(stack.grant(), connection_id="conn-keep"))
    conn = stack.monitor.get_connection("conn-keep")
    assert conn is not None
    assert conn.error_count == 0


class StepTimer:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_connection_latency_is_the_navigation_round_trip(clock):
    timer = StepTimer()

    class SlowNavigationDriver(FakeDriver):
        def navigate(self, tab, url, **kwargs):
            timer.now += 0.04
            return super().navigate(tab, url, **kwargs)

    class SlowClassifier(PageClassifier):
        def classify(self, *args, **kwargs):
            timer.now += 5.0
            return super().classify(*args, **kwargs)

    stack = Stack(clock, driver=SlowNavigationDriver(site_pages()), classifier_cls=SlowClassifier, timer=timer)
    stack.monitor.register_connection("conn-t", USER, ORIGIN)
    result = stack.orchestrator.run(stack.request(stack.grant(), connection_id="conn-t"))

    assert result.status == AutomationStatus.COMPLETED
    assert result.duration_ms >= 5000
    conn = stack.monitor.get_connection("conn-t")
    assert conn.latency_ms == pytest.approx(40.0)
    assert conn.quality == ConnectionQuality.EXCELLENT
    assert stack.monitor.get_active_alerts() == []
