"""Audit log of delivered Stripe events."""
import hashlib
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from gateway.core.database import billing_events, session_scope


def payload_hash(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


class BillingEventLog:
    def __init__(self, engine: Engine):
        self._engine = engine

    def is_processed(self, event_id: str) -> bool:
        with session_scope(self._engine) as session:
            processed = session.execute(
                select(billing_events.c.processed).where(billing_events.c.stripe_event_id == event_id)
            ).scalar_one_or_none()
        return bool(processed)

    def record_received(self, event_id: str, event_type: str, body: bytes) -> None:
        """Record a delivery; a redelivery of an unprocessed event clears its error."""
        try:
            with session_scope(self._engine) as session:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=event_id,
                        event_type=event_type,
                        payload_hash=payload_hash(body),
                        processed=False,
                        received_at=datetime.now(timezone.utc),
                    )
                )
        except IntegrityError:
            with session_scope(self._engine) as session:
                session.execute(
                    update(billing_events)
                    .where(billing_events.c.stripe_event_id == event_id)
                    .values(error=None)
                )

    def mark_processed(self, event_id: str) -> None:
        with session_scope(self._engine) as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event_id)
                .values(processed=True, processed_at=datetime.now(timezone.utc), error=None)
            )

    def mark_failed(self, event_id: str, error: str) -> None:
        with session_scope(self._engine) as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event_id)
                .values(error=error[:2000])
            )

    def get_error(self, event_id: str) -> Optional[str]:
        with session_scope(self._engine) as session:
            return session.execute(
                select(billing_events.c.error).where(billing_events.c.stripe_event_id == event_id)
            ).scalar_one_or_none()
