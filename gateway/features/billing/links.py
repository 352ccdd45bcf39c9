"""
Stripe customer -> internal user links.

One user per customer; the later write wins. When both writes carry the
Stripe event time, an older write arriving late is ignored.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, select, update, insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from gateway.core.database import customer_links, session_scope
from gateway.core.logging import log_event


logger = logging.getLogger("gateway")


class CustomerLinker:
    def __init__(self, engine: Engine):
        self._engine = engine

    def link(self, customer_id: str, user_id: str, linked_at: Optional[int] = None) -> bool:
        """
        Upsert the link for a customer.

        Args:
            customer_id: Stripe customer id
            user_id: Internal user id
            linked_at: Stripe event `created` time, when known

        Returns:
            True if the write was applied, False if a newer link already exists
        """
        now = datetime.now(timezone.utc)
        for _ in range(2):
            try:
                with session_scope(self._engine) as session:
                    existing = session.execute(
                        select(customer_links.c.user_id, customer_links.c.linked_at)
                        .where(customer_links.c.customer_id == customer_id)
                    ).first()

                    if existing is None:
                        session.execute(
                            insert(customer_links).values(
                                customer_id=customer_id,
                                user_id=user_id,
                                linked_at=linked_at,
                                updated_at=now,
                            )
                        )
                        return True

                    if existing.user_id != user_id:
                        # Last write wins; a changed owner is worth an operator's look
                        log_event(
                            "warning",
                            "billing.link.owner_changed",
                            user_id=user_id,
                            customer_id=customer_id,
                            extra={"previous_user_id": existing.user_id},
                        )

                    stmt = (
                        update(customer_links)
                        .where(customer_links.c.customer_id == customer_id)
                        .values(user_id=user_id, linked_at=linked_at, updated_at=now)
                    )
                    if linked_at is not None:
                        stmt = stmt.where(
                            or_(
                                customer_links.c.linked_at.is_(None),
                                customer_links.c.linked_at <= linked_at,
                            )
                        )
                    applied = session.execute(stmt).rowcount == 1
                    if not applied:
                        logger.info(
                            "billing.link.stale_ignored",
                            extra={"customer_id": customer_id, "user_id": user_id},
                        )
                    return applied
            except IntegrityError:
                # Concurrent first link for this customer; retry as an update
                continue
        return False

    def resolve(self, customer_id: str) -> Optional[str]:
        with session_scope(self._engine) as session:
            return session.execute(
                select(customer_links.c.user_id).where(customer_links.c.customer_id == customer_id)
            ).scalar_one_or_none()

    def customer_for_user(self, user_id: str) -> Optional[str]:
        """Most recently linked customer for a user (reverse lookup)."""
        with session_scope(self._engine) as session:
            return session.execute(
                select(customer_links.c.customer_id)
                .where(customer_links.c.user_id == user_id)
                .order_by(customer_links.c.updated_at.desc())
                .limit(1)
            ).scalar_one_or_none()
