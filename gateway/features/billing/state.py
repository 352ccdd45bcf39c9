"""
Persisted tier state.

The snapshot of a subscription and the user's tier are written together in
one transaction, so the tier always matches the latest applied snapshot.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from gateway.core.database import session_scope, subscription_snapshots, upsert, user_tiers
from gateway.features.billing.events import SubscriptionSnapshot
from gateway.features.tiers.service import Tier


@dataclass
class UserTierState:
    user_id: str
    tier: Tier
    source: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    updated_at: Optional[datetime]
    status: Optional[str] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: Optional[bool] = None


class TierStateStore:
    def __init__(self, engine: Engine):
        self._engine = engine

    def apply_subscription(self, user_id: str, snapshot: SubscriptionSnapshot, tier: Tier) -> None:
        """Overwrite the subscription snapshot and the user's tier atomically."""
        now = datetime.now(timezone.utc)
        for attempt in range(2):
            try:
                with session_scope(self._engine) as session:
                    upsert(
                        session,
                        subscription_snapshots,
                        key={"subscription_id": snapshot.subscription_id},
                        values={
                            "customer_id": snapshot.customer_id,
                            "price_id": snapshot.price_id,
                            "status": snapshot.status,
                            "current_period_end": snapshot.current_period_end,
                            "cancel_at_period_end": snapshot.cancel_at_period_end,
                            "updated_at": now,
                        },
                    )
                    upsert(
                        session,
                        user_tiers,
                        key={"user_id": user_id},
                        values={
                            "tier": Tier(tier).value,
                            "source": "stripe",
                            "customer_id": snapshot.customer_id,
                            "subscription_id": snapshot.subscription_id,
                            "updated_at": now,
                        },
                    )
                return
            except IntegrityError:
                if attempt:
                    raise

    def set_tier(self, user_id: str, tier: Tier, *, source: str = "stripe", customer_id: Optional[str] = None) -> None:
        """Set a tier with no subscription behind it (e.g. customer has none)."""
        now = datetime.now(timezone.utc)
        for attempt in range(2):
            try:
                with session_scope(self._engine) as session:
                    upsert(
                        session,
                        user_tiers,
                        key={"user_id": user_id},
                        values={
                            "tier": Tier(tier).value,
                            "source": source,
                            "customer_id": customer_id,
                            "subscription_id": None,
                            "updated_at": now,
                        },
                    )
                return
            except IntegrityError:
                if attempt:
                    raise

    def get(self, user_id: str) -> Optional[UserTierState]:
        with session_scope(self._engine) as session:
            row = session.execute(
                select(
                    user_tiers,
                    subscription_snapshots.c.status,
                    subscription_snapshots.c.current_period_end,
                    subscription_snapshots.c.cancel_at_period_end,
                )
                .select_from(
                    user_tiers.outerjoin(
                        subscription_snapshots,
                        subscription_snapshots.c.subscription_id == user_tiers.c.subscription_id,
                    )
                )
                .where(user_tiers.c.user_id == user_id)
            ).first()
        if row is None:
            return None
        return UserTierState(
            user_id=row.user_id,
            tier=Tier(row.tier),
            source=row.source,
            customer_id=row.customer_id,
            subscription_id=row.subscription_id,
            updated_at=row.updated_at,
            status=row.status,
            current_period_end=row.current_period_end,
            cancel_at_period_end=row.cancel_at_period_end,
        )

    def get_snapshot(self, subscription_id: str) -> Optional[SubscriptionSnapshot]:
        with session_scope(self._engine) as session:
            row = session.execute(
                select(subscription_snapshots).where(subscription_snapshots.c.subscription_id == subscription_id)
            ).first()
        if row is None:
            return None
        return SubscriptionSnapshot(
            customer_id=row.customer_id,
            subscription_id=row.subscription_id,
            price_id=row.price_id,
            status=row.status,
            current_period_end=row.current_period_end,
            cancel_at_period_end=row.cancel_at_period_end,
        )
