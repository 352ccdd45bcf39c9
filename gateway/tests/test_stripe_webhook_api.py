"""Tests for POST /api/stripe/webhook with real signature verification."""

import json


def _checkout(event_id="evt_checkout", uid="u1"):
    return {
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "created": 1_700_000_000,
        "data": {"object": {"customer": "cus_1", "subscription": "sub_1", "metadata": {"uid": uid}}},
    }


def _subscription(event_id, status="active"):
    return {
        "id": event_id,
        "object": "event",
        "type": "customer.subscription.updated",
        "created": 1_700_000_100,
        "data": {"object": {
            "id": "sub_1",
            "customer": "cus_1",
            "status": status,
            "current_period_end": 1_800_000_000,
            "cancel_at_period_end": False,
            "items": {"data": [{"price": {"id": "price_pro_test"}}]},
        }},
    }


def test_valid_delivery_is_acknowledged(client, signed_event, app):
    body, headers = signed_event(_checkout())
    resp = client.post("/api/stripe/webhook", content=body, headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    assert app.state.processor.linker.resolve("cus_1") == "u1"


def test_checkout_then_subscription_sets_tier(client, signed_event):
    for event in (_checkout(), _subscription("evt_sub")):
        body, headers = signed_event(event)
        assert client.post("/api/stripe/webhook", content=body, headers=headers).status_code == 200

    resp = client.get("/api/billing/tier")
    assert resp.status_code == 200
    data = resp.json()
    assert data["tier"] == "pro"
    assert data["status"] == "active"
    assert data["current_period_end"] == 1_800_000_000


def test_missing_signature_is_400(client):
    resp = client.post("/api/stripe/webhook", content=json.dumps(_checkout()))
    assert resp.status_code == 400
    assert "error" in resp.json()


def test_wrong_secret_is_400_and_changes_nothing(client, signed_event, app):
    body, headers = signed_event(_checkout(), secret="whsec_other")
    resp = client.post("/api/stripe/webhook", content=body, headers=headers)
    assert resp.status_code == 400
    assert app.state.processor.linker.resolve("cus_1") is None


def test_tampered_body_is_400(client, signed_event):
    body, headers = signed_event(_checkout())
    tampered = body.replace(b'"u1"', b'"attacker"')
    resp = client.post("/api/stripe/webhook", content=tampered, headers=headers)
    assert resp.status_code == 400


def test_missing_webhook_secret_is_400(client, signed_event, app, monkeypatch):
    monkeypatch.setattr(app.state.processor.provider, "webhook_secret", None)
    body, headers = signed_event(_checkout())
    resp = client.post("/api/stripe/webhook", content=body, headers=headers)
    assert resp.status_code == 400


def test_ignored_kind_gets_same_acknowledgement(client, signed_event):
    body, headers = signed_event({"id": "evt_inv", "object": "event", "type": "invoice.paid", "data": {"object": {}}})
    resp = client.post("/api/stripe/webhook", content=body, headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"received": True}


def test_unlinked_subscription_is_acknowledged(client, signed_event):
    body, headers = signed_event(_subscription("evt_early"))
    resp = client.post("/api/stripe/webhook", content=body, headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"received": True}


def test_storage_fault_is_500(client, signed_event, app, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(app.state.processor.linker, "link", boom)
    body, headers = signed_event(_checkout())
    resp = client.post("/api/stripe/webhook", content=body, headers=headers)
    assert resp.status_code == 500
    assert resp.json() == {"error": "Webhook handler error"}


def test_redelivery_is_acknowledged(client, signed_event, app):
    body, headers = signed_event(_checkout())
    first = client.post("/api/stripe/webhook", content=body, headers=headers)
    second = client.post("/api/stripe/webhook", content=body, headers=headers)
    assert first.json() == second.json() == {"received": True}
    assert app.state.processor.event_log.is_processed("evt_checkout")
