"""
Pending reconciliation for out-of-order Stripe delivery.

A subscription event can arrive before the checkout event that links its
customer. Instead of dropping it, the newest subscription object per
customer (by the Stripe event's `created` time) is parked here and replayed
once the link exists.

A parked row is only removed after its replay has been applied, by
`discard(customer_id, event_id)`; a replay that fails leaves it in place
for the next delivery.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from gateway.core.database import pending_subscription_events, session_scope
from gateway.features.billing.events import SubscriptionChanged


@dataclass
class PendingSubscription:
    customer_id: str
    event_id: str
    event_type: str
    created: Optional[int]
    subscription: Dict[str, Any]

    def to_event(self) -> SubscriptionChanged:
        return SubscriptionChanged.from_subscription(
            self.subscription,
            event_id=self.event_id,
            event_type=self.event_type,
            created=self.created,
        )


class PendingReconciliationQueue:
    def __init__(self, engine: Engine):
        self._engine = engine

    def park(self, customer_id: str, event: SubscriptionChanged, subscription: Dict[str, Any]) -> bool:
        """
        Park a subscription event for an unlinked customer.

        Returns:
            True if stored, False if a newer event is already parked
        """
        table = pending_subscription_events
        values = {
            "stripe_event_id": event.event_id,
            "created": event.created,
            "payload": {"event_type": event.event_type, "subscription": dict(subscription)},
            "received_at": datetime.now(timezone.utc),
        }
        for attempt in range(2):
            try:
                with session_scope(self._engine) as session:
                    stmt = update(table).where(table.c.customer_id == customer_id).values(**values)
                    if event.created is not None:
                        stmt = stmt.where(or_(table.c.created.is_(None), table.c.created <= event.created))
                    if session.execute(stmt).rowcount == 1:
                        return True

                    exists = session.execute(
                        select(table.c.customer_id).where(table.c.customer_id == customer_id)
                    ).first()
                    if exists is not None:
                        return False
                    session.execute(insert(table).values(customer_id=customer_id, **values))
                    return True
            except IntegrityError:
                # Concurrent first park for this customer; go through UPDATE
                if attempt:
                    raise
        return False

    def get(self, customer_id: str) -> Optional[PendingSubscription]:
        """The parked event for a customer, left in place."""
        with session_scope(self._engine) as session:
            row = session.execute(
                select(pending_subscription_events)
                .where(pending_subscription_events.c.customer_id == customer_id)
            ).first()
        if row is None:
            return None
        payload = row.payload or {}
        return PendingSubscription(
            customer_id=customer_id,
            event_id=row.stripe_event_id,
            event_type=payload.get("event_type") or "customer.subscription.updated",
            created=row.created,
            subscription=payload.get("subscription") or {},
        )

    def discard(self, customer_id: str, event_id: str) -> bool:
        """Remove a replayed event; a newer one parked meanwhile is kept."""
        with session_scope(self._engine) as session:
            deleted = session.execute(
                delete(pending_subscription_events)
                .where(pending_subscription_events.c.customer_id == customer_id)
                .where(pending_subscription_events.c.stripe_event_id == event_id)
            ).rowcount
        return deleted == 1

    def peek(self, customer_id: str) -> Optional[str]:
        """Event id parked for a customer."""
        with session_scope(self._engine) as session:
            return session.execute(
                select(pending_subscription_events.c.stripe_event_id)
                .where(pending_subscription_events.c.customer_id == customer_id)
            ).scalar_one_or_none()
