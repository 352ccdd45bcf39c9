"""
Billing event processor.

Coordinates one Stripe webhook delivery:
1. Verify the signature over the raw body (nothing runs before this)
2. Parse into a typed event
3. Skip events already processed
4. Link customers / apply subscription state
5. Record the outcome

Every state write is a deterministic overwrite keyed by the event's own
fields, so at-least-once redelivery leaves state unchanged.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from gateway.core.errors import LinkMissingError
from gateway.core.logging import log_event
from gateway.features.billing.event_log import BillingEventLog
from gateway.features.billing.events import (
    BillingEvent,
    CheckoutCompleted,
    IgnoredEvent,
    SubscriptionChanged,
    parse_event,
)
from gateway.features.billing.links import CustomerLinker
from gateway.features.billing.pending import PendingReconciliationQueue
from gateway.features.billing.provider import BillingProvider
from gateway.features.billing.state import TierStateStore, UserTierState
from gateway.features.tiers.service import Tier, effective_tier, tier_for_price


logger = logging.getLogger("gateway")

# Outcome actions
LINKED = "linked"
TIER_APPLIED = "tier_applied"
DROPPED = "dropped"
LINK_MISSING = "link_missing"
IGNORED = "ignored"
DUPLICATE = "duplicate"
STALE_LINK = "stale_link"


@dataclass
class WebhookOutcome:
    """Result of processing one webhook delivery."""
    event_id: str
    event_type: str
    action: str
    user_id: Optional[str] = None
    tier: Optional[Tier] = None


class BillingEventProcessor:
    def __init__(
        self,
        provider: BillingProvider,
        linker: CustomerLinker,
        tier_store: TierStateStore,
        event_log: BillingEventLog,
        pending: PendingReconciliationQueue,
        price_map: Mapping[str, str],
    ):
        self.provider = provider
        self.linker = linker
        self.tier_store = tier_store
        self.event_log = event_log
        self.pending = pending
        self.price_map = dict(price_map)

    def process(self, headers: Mapping[str, str], body: bytes) -> WebhookOutcome:
        """
        Process a webhook delivery (idempotent).

        Raises:
            BillingWebhookError: Signature or payload rejected (no state touched)
            Exception: Storage faults propagate to the caller
        """
        payload = self.provider.verify_event(headers, body)
        event = parse_event(payload)

        if self.event_log.is_processed(event.event_id):
            log_event("info", "billing.webhook.duplicate", event_id=event.event_id, event_type=event.event_type)
            return WebhookOutcome(event.event_id, event.event_type, DUPLICATE)

        self.event_log.record_received(event.event_id, event.event_type, body)
        try:
            outcome = self._dispatch(event, payload)
        except Exception as exc:
            try:
                self.event_log.mark_failed(event.event_id, str(exc))
            except Exception:
                logger.exception("billing.webhook.mark_failed_error", extra={"event_id": event.event_id})
            raise
        self.event_log.mark_processed(event.event_id)

        log_event(
            "info",
            f"billing.webhook.{outcome.action}",
            user_id=outcome.user_id,
            event_id=event.event_id,
            event_type=event.event_type,
        )
        return outcome

    def _dispatch(self, event: BillingEvent, payload: Mapping[str, Any]) -> WebhookOutcome:
        if isinstance(event, CheckoutCompleted):
            return self._handle_checkout(event)
        if isinstance(event, SubscriptionChanged):
            subscription = (payload.get("data") or {}).get("object") or {}
            return self._handle_subscription(event, subscription)
        if isinstance(event, IgnoredEvent):
            return WebhookOutcome(event.event_id, event.event_type, IGNORED)
        raise TypeError(f"unhandled billing event {type(event).__name__}")

    def _handle_checkout(self, event: CheckoutCompleted) -> WebhookOutcome:
        if not event.user_id or not event.customer_id:
            log_event(
                "warning",
                "billing.checkout.missing_identity",
                user_id=event.user_id,
                customer_id=event.customer_id,
                event_id=event.event_id,
            )
            return WebhookOutcome(event.event_id, event.event_type, DROPPED)

        # Tier is left to the subscription events, whichever order they arrive in
        linked = self.linker.link(event.customer_id, event.user_id, linked_at=event.created)
        if not linked:
            # A newer link owns the customer; parked state belongs to that owner
            owner = self.linker.resolve(event.customer_id)
            tier = self._replay_pending(event.customer_id, owner) if owner else None
            return WebhookOutcome(event.event_id, event.event_type, STALE_LINK, user_id=owner, tier=tier)

        tier = self._replay_pending(event.customer_id, event.user_id)
        return WebhookOutcome(event.event_id, event.event_type, LINKED, user_id=event.user_id, tier=tier)

    def _handle_subscription(self, event: SubscriptionChanged, subscription: Dict[str, Any]) -> WebhookOutcome:
        if not event.customer_id:
            log_event("warning", "billing.subscription.missing_customer", event_id=event.event_id)
            return WebhookOutcome(event.event_id, event.event_type, DROPPED)

        try:
            user_id = self._resolve_user(event.customer_id)
        except LinkMissingError as exc:
            # Retries cannot fix this; park it and acknowledge
            log_event(
                "warning",
                "billing.subscription.link_missing",
                customer_id=exc.customer_id,
                event_id=event.event_id,
                error_code=exc.code,
            )
            self.pending.park(event.customer_id, event, subscription)

            # A checkout may have linked and found nothing parked in between
            user_id = self.linker.resolve(event.customer_id)
            if not user_id:
                return WebhookOutcome(event.event_id, event.event_type, LINK_MISSING)
            tier = self._replay_pending(event.customer_id, user_id)
            return WebhookOutcome(event.event_id, event.event_type, TIER_APPLIED, user_id=user_id, tier=tier)

        tier = self._apply(user_id, event)
        return WebhookOutcome(event.event_id, event.event_type, TIER_APPLIED, user_id=user_id, tier=tier)

    def _replay_pending(self, customer_id: str, user_id: str) -> Optional[Tier]:
        """Apply the event parked for a customer, then remove it."""
        parked = self.pending.get(customer_id)
        if parked is None:
            return None
        replayed = parked.to_event()
        log_event(
            "info",
            "billing.pending.replay",
            user_id=user_id,
            customer_id=customer_id,
            event_id=replayed.event_id,
            event_type=replayed.event_type,
        )
        tier = self._apply(user_id, replayed)
        self.pending.discard(customer_id, parked.event_id)
        return tier

    def _resolve_user(self, customer_id: str) -> str:
        user_id = self.linker.resolve(customer_id)
        if not user_id:
            raise LinkMissingError(customer_id)
        return user_id

    def _apply(self, user_id: str, event: SubscriptionChanged) -> Tier:
        mapped = tier_for_price(event.price_id, self.price_map)
        effective = effective_tier(mapped, event.status)
        self.tier_store.apply_subscription(user_id, event.snapshot(), effective)
        return effective


class TierRefresher:
    """Re-derive a user's tier from Stripe's latest subscription."""

    def __init__(
        self,
        provider: BillingProvider,
        linker: CustomerLinker,
        tier_store: TierStateStore,
        price_map: Mapping[str, str],
    ):
        self.provider = provider
        self.linker = linker
        self.tier_store = tier_store
        self.price_map = dict(price_map)

    def refresh(self, user_id: str) -> UserTierState:
        state = self.tier_store.get(user_id)
        customer_id = (state.customer_id if state else None) or self.linker.customer_for_user(user_id)

        if not customer_id:
            self.tier_store.set_tier(user_id, Tier.FREE)
        else:
            sub = self.provider.latest_subscription(customer_id)
            if sub is None:
                self.tier_store.set_tier(user_id, Tier.FREE, customer_id=customer_id)
            else:
                event = SubscriptionChanged.from_subscription(sub, event_id=f"refresh:{user_id}")
                if not event.customer_id:
                    event = SubscriptionChanged.from_subscription(
                        {**dict(sub), "customer": customer_id}, event_id=f"refresh:{user_id}"
                    )
                mapped = tier_for_price(event.price_id, self.price_map)
                self.tier_store.apply_subscription(user_id, event.snapshot(), effective_tier(mapped, event.status))

        refreshed = self.tier_store.get(user_id)
        log_event("info", "billing.tier.refreshed", user_id=user_id, customer_id=customer_id)
        return refreshed
