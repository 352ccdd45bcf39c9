"""Tests for parked subscription events."""

from gateway.features.billing.events import SubscriptionChanged


def parked(event_id, created, status="active"):
    subscription = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": status,
        "items": {"data": [{"price": {"id": "price_pro"}}]},
    }
    event = SubscriptionChanged.from_subscription(
        subscription, event_id=event_id, event_type="customer.subscription.updated", created=created
    )
    return event, subscription


def test_park_and_get_leaves_row_in_place(pending):
    assert pending.park("cus_1", *parked("evt_1", 100))

    first = pending.get("cus_1")
    assert first.event_id == "evt_1"
    assert first.created == 100
    assert first.to_event().status == "active"
    assert pending.get("cus_1").event_id == "evt_1"


def test_older_event_is_not_parked_over_newer(pending):
    assert pending.park("cus_1", *parked("evt_new", 900, status="canceled"))
    assert not pending.park("cus_1", *parked("evt_old", 100))
    assert pending.peek("cus_1") == "evt_new"


def test_newer_event_replaces_parked(pending):
    pending.park("cus_1", *parked("evt_old", 100))
    assert pending.park("cus_1", *parked("evt_new", 900))
    assert pending.peek("cus_1") == "evt_new"


def test_discard_only_removes_the_replayed_event(pending):
    pending.park("cus_1", *parked("evt_old", 100))
    pending.park("cus_1", *parked("evt_new", 900))

    assert not pending.discard("cus_1", "evt_old")
    assert pending.peek("cus_1") == "evt_new"
    assert pending.discard("cus_1", "evt_new")
    assert pending.get("cus_1") is None
