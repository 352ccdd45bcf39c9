"""Tests for the quota-gated job routes."""

import json

import httpx

from gateway.features.backend_client.client import verify_user_context
from gateway.features.tiers.service import Tier


INTERNAL_KEY = "internal-test-key"
KEY_PREFIX = "kloner-screenshots/u1/"


def test_requires_authenticated_user(anon_client):
    resp = anon_client.post("/api/screenshots/generate", json={"url": "https://example.com"})
    assert resp.status_code == 401
    body = resp.json()
    assert body["error"]["code"] == "unauthorized"
    assert body["error"]["request_id"] == resp.headers["x-request-id"]


def test_screenshot_forwards_signed_request(client, backend_calls):
    resp = client.post(
        "/api/screenshots/generate",
        json={"url": "https://example.com/page#top"},
        headers={"Idempotency-Key": "idem-1", "x-request-id": "rid-1"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "jobId": "job_1"}
    assert resp.headers["x-request-id"] == "rid-1"
    assert resp.headers["x-quota-limit"] == "3"
    assert resp.headers["x-quota-remaining"] == "2"

    [request] = backend_calls
    assert str(request.url) == "http://backend.test/generate-screenshots"
    assert request.headers["x-request-id"] == "rid-1"
    assert request.headers["idempotency-key"] == "idem-1"
    assert request.headers["x-internal-key"] == INTERNAL_KEY
    assert verify_user_context(request.headers["x-user-ctx"], request.headers["x-user-ctx-sig"], INTERNAL_KEY)
    assert json.loads(request.content) == {"url": "https://example.com/page"}


def test_free_user_is_refused_fourth_screenshot(client, backend_calls):
    for _ in range(3):
        assert client.post("/api/screenshots/generate", json={"url": "https://example.com"}).status_code == 200

    resp = client.post("/api/screenshots/generate", json={"url": "https://example.com"})
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "quota_exceeded"
    assert resp.headers["x-quota-remaining"] == "0"
    assert len(backend_calls) == 3


def test_paid_tier_uses_its_limit(client, app):
    app.state.tier_store.set_tier("u1", Tier.PRO)
    resp = client.post("/api/screenshots/generate", json={"url": "https://example.com"})
    assert resp.headers["x-quota-limit"] == "100"


def test_enterprise_has_no_quota_headers(client, app):
    app.state.tier_store.set_tier("u1", Tier.ENTERPRISE)
    resp = client.post("/api/screenshots/generate", json={"url": "https://example.com"})
    assert resp.status_code == 200
    assert "x-quota-limit" not in resp.headers


def test_invalid_url_is_rejected_before_quota(client, app, backend_calls):
    resp = client.post("/api/screenshots/generate", json={"url": "ftp://example.com"})
    assert resp.status_code == 422
    assert backend_calls == []
    assert client.get("/api/quota").json()["usage"]["screenshot"]["used"] == 0


def test_backend_timeout_is_accepted(client, backend_handler):
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    backend_handler["handler"] = slow
    resp = client.post("/api/screenshots/generate", json={"url": "https://example.com"})
    assert resp.status_code == 202
    assert resp.json() == {"started": True, "code": "TIMEOUT_ACCEPTED"}


def test_backend_down_is_502(client, backend_handler):
    def down(request):
        raise httpx.ConnectError("refused", request=request)

    backend_handler["handler"] = down
    resp = client.post("/api/screenshots/generate", json={"url": "https://example.com"})
    assert resp.status_code == 502
    assert resp.json() == {"error": "Backend fetch failed"}


def test_preview_forwards_keys_with_prefix(client, backend_calls):
    resp = client.post(
        "/api/preview/render",
        json={"keys": [KEY_PREFIX + "a.png", " ", KEY_PREFIX + "b.png"], "nameHint": "home"},
    )
    assert resp.status_code == 200
    [request] = backend_calls
    assert str(request.url) == "http://backend.test/api/v1/preview-render"
    body = json.loads(request.content)
    assert body["keys"] == [KEY_PREFIX + "a.png", KEY_PREFIX + "b.png"]
    assert body["nameHint"] == "home"
    assert resp.headers["x-quota-limit"] == "5"


def test_preview_rejects_foreign_keys(client, backend_calls):
    resp = client.post("/api/preview/render", json={"keys": ["kloner-screenshots/u2/a.png"]})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"
    assert backend_calls == []


def test_preview_requires_keys(client):
    resp = client.post("/api/preview/render", json={"keys": []})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_quota_summary(client):
    client.post("/api/screenshots/generate", json={"url": "https://example.com"})
    data = client.get("/api/quota").json()
    assert data["tier"] == "free"
    assert data["usage"]["screenshot"] == {"used": 1, "limit": 3, "remaining": 2}
    assert data["usage"]["preview"] == {"used": 0, "limit": 5, "remaining": 5}


def test_session_claim_tier_applies_until_billing_state_exists(client, app, user):
    user.claims["userTier"] = "agency"
    resp = client.post("/api/screenshots/generate", json={"url": "https://example.com"})
    assert resp.headers["x-quota-limit"] == "400"

    app.state.tier_store.set_tier("u1", Tier.FREE)
    resp = client.post("/api/screenshots/generate", json={"url": "https://example.com"})
    assert resp.headers["x-quota-limit"] == "3"
