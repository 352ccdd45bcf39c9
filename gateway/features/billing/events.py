"""
Typed Stripe events.

The webhook payload is parsed once into a closed set of variants; every
other event kind becomes IgnoredEvent. Only the fields the gateway reads
are extracted.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from gateway.features.billing.provider import BillingWebhookError


CHECKOUT_COMPLETED = "checkout.session.completed"

SUBSCRIPTION_EVENT_TYPES = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "customer.subscription.trial_will_end",
})

# Checkout metadata keys carrying the internal user id, in priority order
USER_ID_METADATA_KEYS = ("firebaseUid", "uid")


@dataclass(frozen=True)
class SubscriptionSnapshot:
    customer_id: str
    subscription_id: str
    price_id: Optional[str]
    status: str
    current_period_end: Optional[int]
    cancel_at_period_end: bool


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    created: Optional[int]
    customer_id: Optional[str]
    user_id: Optional[str]
    subscription_id: Optional[str]

    @property
    def event_type(self) -> str:
        return CHECKOUT_COMPLETED


@dataclass(frozen=True)
class SubscriptionChanged:
    event_id: str
    event_type: str
    created: Optional[int]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    price_id: Optional[str]
    status: str
    current_period_end: Optional[int]
    cancel_at_period_end: bool

    @classmethod
    def from_subscription(
        cls,
        sub: Mapping[str, Any],
        *,
        event_id: str,
        event_type: str = "customer.subscription.updated",
        created: Optional[int] = None,
    ) -> "SubscriptionChanged":
        """Build from a Stripe subscription object (webhook or API)."""
        first_item = _first_item(sub)
        return cls(
            event_id=event_id,
            event_type=event_type,
            created=created,
            customer_id=_id_of(sub.get("customer")),
            subscription_id=_str_or_none(sub.get("id")),
            price_id=_price_id(first_item),
            status=str(sub.get("status") or "unknown"),
            current_period_end=_period_end(sub, first_item),
            cancel_at_period_end=bool(sub.get("cancel_at_period_end") or False),
        )

    def snapshot(self) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            customer_id=self.customer_id or "",
            subscription_id=self.subscription_id or f"{self.customer_id}:unknown",
            price_id=self.price_id,
            status=self.status,
            current_period_end=self.current_period_end,
            cancel_at_period_end=self.cancel_at_period_end,
        )


@dataclass(frozen=True)
class IgnoredEvent:
    event_id: str
    event_type: str


BillingEvent = Union[CheckoutCompleted, SubscriptionChanged, IgnoredEvent]


def parse_event(payload: Mapping[str, Any]) -> BillingEvent:
    """
    Parse a verified Stripe event payload.

    Raises:
        BillingWebhookError: If the envelope lacks an id or type
    """
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not isinstance(event_id, str) or not isinstance(event_type, str):
        raise BillingWebhookError("Invalid payload: event id and type are required")

    created = _int_or_none(payload.get("created"))
    data = payload.get("data") or {}
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        obj = {}

    if event_type == CHECKOUT_COMPLETED:
        return CheckoutCompleted(
            event_id=event_id,
            created=created,
            customer_id=_id_of(obj.get("customer")),
            user_id=_user_id_from_metadata(obj.get("metadata")),
            subscription_id=_id_of(obj.get("subscription")),
        )

    if event_type in SUBSCRIPTION_EVENT_TYPES:
        return SubscriptionChanged.from_subscription(
            obj, event_id=event_id, event_type=event_type, created=created
        )

    return IgnoredEvent(event_id=event_id, event_type=event_type)


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _id_of(value: Any) -> Optional[str]:
    # Stripe sends ids as strings, or whole objects when expanded
    if isinstance(value, Mapping):
        return _str_or_none(value.get("id"))
    return _str_or_none(value)


def _user_id_from_metadata(metadata: Any) -> Optional[str]:
    if not isinstance(metadata, Mapping):
        return None
    for key in USER_ID_METADATA_KEYS:
        uid = _str_or_none(metadata.get(key))
        if uid:
            return uid
    return None


def _first_item(sub: Mapping[str, Any]) -> Dict[str, Any]:
    items = sub.get("items") or {}
    data = items.get("data") if isinstance(items, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        return data[0]
    return {}


def _price_id(item: Mapping[str, Any]) -> Optional[str]:
    price = item.get("price")
    if isinstance(price, Mapping):
        return _str_or_none(price.get("id"))
    return _str_or_none(price)


def _period_end(sub: Mapping[str, Any], item: Mapping[str, Any]) -> Optional[int]:
    # Newer API versions carry the period on the line item
    end = _int_or_none(sub.get("current_period_end"))
    if end is None:
        end = _int_or_none(item.get("current_period_end"))
    return end
