from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from autoreach.api.server import create_app
from autoreach.config import EngineConfig
from autoreach.engine import build_engine
from tests.helpers import FakeDriver, ManualClock, RouteTransport, site_pages, site_routes


ORIGIN = "http://localhost:3000"
HEADERS = {"X-User-Id": "user-1", "Origin": ORIGIN}


@pytest.fixture
def engine():
    eng = build_engine(EngineConfig(), driver=FakeDriver(site_pages()), start_background=False)
    eng.classifier.fetcher._client = httpx.Client(transport=RouteTransport(site_routes()))
    yield eng
    eng.shutdown()


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


def _create(client, headers=HEADERS, **body):
    return client.post("/consent/requests", json=body, headers=headers)


def _granted(client, permissions=("read", "control")) -> str:
    req = _create(client).json()["data"]
    res = client.post(f"/consent/requests/{req['id']}/grant", json={"permissions": list(permissions)}, headers=HEADERS)
    assert res.status_code == 200
    return res.json()["data"]["id"]


def test_consent_request_requires_user(client):
    res = _create(client, headers={"Origin": ORIGIN})
    assert res.status_code == 401
    assert res.json() == {"success": False, "error": "authentication required"}


def test_consent_request_requires_origin_header(client):
    res = _create(client, headers={"X-User-Id": "user-1"})
    assert res.status_code == 400
    assert "Origin" in res.json()["error"]


def test_untrusted_origin_is_forbidden_and_logged(client):
    res = _create(client, headers={"X-User-Id": "user-1", "Origin": "https://evil.example"})
    assert res.status_code == 403
    assert res.json()["success"] is False

    stats = client.get("/origin/stats", headers=HEADERS).json()["data"]
    assert stats["total"] == 1
    assert stats["top_origins"][0]["origin"] == "https://evil.example"

    cleared = client.post("/origin/clear-log", headers=HEADERS).json()["data"]
    assert cleared == {"cleared": 1}


def test_consent_request_is_created_pending(client):
    res = _create(client, permissions=["read"], client_id="widget")
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "pending"
    assert data["origin"] == ORIGIN
    assert data["action"] == "form-automation"
    assert data["metadata"]["client_id"] == "widget"


def test_grant_and_list(client):
    grant_id = _granted(client)
    listing = client.get("/consent/requests", headers=HEADERS).json()["data"]
    assert listing["requests"][0]["status"] == "granted"
    assert [g["id"] for g in listing["grants"]] == [grant_id]
    assert listing["grants"][0]["permissions"] == ["read", "control"]


def test_grant_without_body_uses_default_permissions(client):
    req = _create(client).json()["data"]
    res = client.post(f"/consent/requests/{req['id']}/grant", headers=HEADERS)
    assert res.status_code == 200
    assert res.json()["data"]["permissions"] == ["read", "write"]


def test_grant_errors_map_to_status_codes(client):
    assert client.post("/consent/requests/consent_missing/grant", headers=HEADERS).status_code == 404

    req = _create(client).json()["data"]
    bad = client.post(f"/consent/requests/{req['id']}/grant", json={"permissions": ["admin"]}, headers=HEADERS)
    assert bad.status_code == 400
    assert bad.json()["error"] == "no_valid_permissions"

    assert client.post(f"/consent/requests/{req['id']}/deny", headers=HEADERS).status_code == 200
    again = client.post(f"/consent/requests/{req['id']}/grant", headers=HEADERS)
    assert again.status_code == 409
    assert again.json()["error"] == "not_pending"


def test_grant_of_another_users_request_is_forbidden(client):
    req = _create(client).json()["data"]
    res = client.post(
        f"/consent/requests/{req['id']}/grant",
        headers={"X-User-Id": "user-2", "Origin": ORIGIN},
    )
    assert res.status_code == 403


def test_expired_request_is_gone(client, engine):
    clock = ManualClock()
    engine.consent._clock = clock
    req = _create(client).json()["data"]
    clock.advance(minutes=11)
    res = client.post(f"/consent/requests/{req['id']}/grant", headers=HEADERS)
    assert res.status_code == 410
    assert res.json()["error"] == "expired"


def test_pending_request_cap(client):
    for _ in range(5):
        assert _create(client).status_code == 200
    res = _create(client)
    assert res.status_code == 429
    assert res.json()["error"] == "too_many_pending"


def test_unknown_action_is_rejected(client):
    res = _create(client, action="mine-crypto")
    assert res.status_code == 400
    assert res.json()["error"] == "action_not_allowed"


def test_revoke_only_own_grants(client):
    grant_id = _granted(client)
    other = client.delete(f"/consent/grants/{grant_id}", headers={"X-User-Id": "user-2"})
    assert other.status_code == 404
    res = client.delete(f"/consent/grants/{grant_id}", headers=HEADERS)
    assert res.status_code == 200
    assert res.json()["data"] == {"revoked": grant_id}
    assert client.delete(f"/consent/grants/{grant_id}", headers=HEADERS).status_code == 404


def test_consent_stats(client):
    _granted(client)
    _create(client)
    stats = client.get("/consent/stats", headers=HEADERS).json()["data"]
    assert stats["total_requests"] == 2
    assert stats["requests_by_status"]["granted"] == 1
    assert stats["requests_by_status"]["pending"] == 1
    assert stats["active_grants"] == 1


def test_config_read_and_update(client):
    res = client.get("/config", headers=HEADERS)
    assert set(res.json()["data"]) == {"browser", "consent", "origin", "monitor"}

    res = client.put("/config", json={"browser": {"max_instances": 5}, "monitor": {"error_threshold": 2}}, headers=HEADERS)
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["browser"]["max_instances"] == 5
    assert data["monitor"]["error_threshold"] == 2


def test_config_update_rejects_bad_input(client):
    assert client.put("/config", json={"database": {"url": "x"}}, headers=HEADERS).status_code == 400
    res = client.put("/config", json={"browser": {"max_instances": 0}}, headers=HEADERS)
    assert res.status_code == 400
    assert res.json()["error"].startswith("invalid config")
    assert client.get("/config", headers=HEADERS).json()["data"]["browser"]["max_instances"] == 3


def test_config_update_is_all_or_nothing(client):
    res = client.put(
        "/config",
        json={"browser": {"max_instances": 7}, "monitor": {"error_threshold": -1}},
        headers=HEADERS,
    )
    assert res.status_code == 400
    data = client.get("/config", headers=HEADERS).json()["data"]
    assert data["browser"]["max_instances"] == 3
    assert data["monitor"]["error_threshold"] == 10


def test_health_needs_no_auth(client):
    res = client.get("/health")
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "healthy"
    assert data["pool"]["max_instances"] == 3
    assert data["alerts"] == []


def test_automation_run_end_to_end(client):
    grant_id = _granted(client)
    res = client.post(
        "/automation/run",
        json={"url": "https://example.com/", "subject_name": "Example Inc.", "connection_id": "conn-api"},
        headers={**HEADERS, "X-Consent-Grant-Id": grant_id},
    )
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "completed"
    assert data["contact_page_url"] == "https://example.com/contact"
    assert "info@example.com" in data["extracted"]["emails"]

    health = client.get("/health").json()["data"]
    assert health["connections"]["total_connections"] == 0
    assert health["alerts"] == []


def test_automation_run_header_checks(client):
    body = {"url": "https://example.com/"}
    assert client.post("/automation/run", json=body, headers=HEADERS).status_code == 400
    missing_origin = client.post(
        "/automation/run", json=body, headers={"X-User-Id": "user-1", "X-Consent-Grant-Id": "grant_x"}
    )
    assert missing_origin.status_code == 400
    bad_url = client.post(
        "/automation/run", json={"url": "ftp://example.com"}, headers={**HEADERS, "X-Consent-Grant-Id": "grant_x"}
    )
    assert bad_url.status_code == 400


def test_automation_run_with_unknown_grant(client):
    res = client.post(
        "/automation/run",
        json={"url": "https://example.com/"},
        headers={**HEADERS, "X-Consent-Grant-Id": "grant_missing"},
    )
    assert res.status_code == 404
    assert res.json()["error"] == "not_found"


def test_automation_submit_with_read_grant_is_forbidden(client):
    grant_id = _granted(client)
    res = client.post(
        "/automation/run",
        json={"url": "https://example.com/", "auto_submit": True},
        headers={**HEADERS, "X-Consent-Grant-Id": grant_id},
    )
    assert res.status_code == 403
    assert res.json()["error"] == "insufficient_permissions"


def test_automation_run_on_another_users_grant_is_forbidden(client):
    grant_id = _granted(client)
    res = client.post(
        "/automation/run",
        json={"url": "https://example.com/"},
        headers={"X-User-Id": "user-2", "Origin": ORIGIN, "X-Consent-Grant-Id": grant_id},
    )
    assert res.status_code == 403
    assert res.json()["error"] == "user_mismatch"


def test_automation_run_when_pool_is_full(client, engine):
    grant_id = _granted(client)
    engine.browsers.update_config(max_instances=1, max_tabs_per_instance=1)
    with engine.browsers.open_session():
        res = client.post(
            "/automation/run",
            json={"url": "https://example.com/"},
            headers={**HEADERS, "X-Consent-Grant-Id": grant_id},
        )
    assert res.status_code == 503
    assert res.json()["success"] is False
