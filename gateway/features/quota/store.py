"""
Quota counter store.

Per-user, per-kind, per-day counters with the limit check and the
increment fused into one conditional UPDATE, so concurrent requests from
the same user can never consume past the ceiling.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import and_, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from gateway.core.database import quota_counters, session_scope
from gateway.core.errors import QuotaExceededError
from gateway.features.quota.policy import OperationKind, QuotaLimit, limit_for
from gateway.features.tiers.service import Tier


logger = logging.getLogger("gateway")

# Attempts at the insert-or-update dance when two first requests of the day race
_MAX_ATTEMPTS = 3


@dataclass
class QuotaDecision:
    allowed: bool
    kind: OperationKind
    day: str
    used: int
    limit: QuotaLimit

    @property
    def remaining(self) -> Union[int, str]:
        if self.limit.unlimited:
            return "unlimited"
        return max(self.limit.daily - self.used, 0)

    def headers(self) -> Dict[str, str]:
        if self.limit.unlimited:
            return {}
        return {
            "X-Quota-Limit": str(self.limit.daily),
            "X-Quota-Remaining": str(self.remaining),
        }


class QuotaStore:
    """Daily quota counters backed by the `quota_counters` table."""

    def __init__(self, engine: Engine, timezone: str = "UTC"):
        self._engine = engine
        self._tz = ZoneInfo(timezone)

    def today(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(self._tz)
        if now.tzinfo is None:
            now = now.replace(tzinfo=self._tz)
        return now.astimezone(self._tz).date().isoformat()

    def _key(self, user_id: str, kind: OperationKind, day: str):
        return and_(
            quota_counters.c.user_id == user_id,
            quota_counters.c.kind == kind.value,
            quota_counters.c.day == day,
        )

    def used_today(self, user_id: str, kind: OperationKind, day: Optional[str] = None) -> int:
        kind = OperationKind(kind)
        day = day or self.today()
        with session_scope(self._engine) as session:
            count = session.execute(
                select(quota_counters.c.count).where(self._key(user_id, kind, day))
            ).scalar_one_or_none()
        return int(count or 0)

    def try_consume(self, user_id: str, tier: Tier, kind: OperationKind, day: Optional[str] = None) -> QuotaDecision:
        """
        Consume one unit if the tier's daily limit allows it.

        The limit predicate lives in the UPDATE's WHERE clause; a refused
        request changes nothing.
        """
        kind = OperationKind(kind)
        limit = limit_for(tier, kind)
        day = day or self.today()
        key = self._key(user_id, kind, day)

        for _ in range(_MAX_ATTEMPTS):
            try:
                with session_scope(self._engine) as session:
                    stmt = update(quota_counters).where(key).values(count=quota_counters.c.count + 1)
                    if not limit.unlimited:
                        stmt = stmt.where(quota_counters.c.count < limit.daily)
                    result = session.execute(stmt)
                    if result.rowcount == 1:
                        used = session.execute(select(quota_counters.c.count).where(key)).scalar_one()
                        return QuotaDecision(True, kind, day, int(used), limit)

                    current = session.execute(select(quota_counters.c.count).where(key)).scalar_one_or_none()
                    if current is not None:
                        return QuotaDecision(False, kind, day, int(current), limit)

                    # First unit of the day; every limit is >= 1 or unlimited
                    session.execute(
                        insert(quota_counters).values(user_id=user_id, kind=kind.value, day=day, count=1)
                    )
                    return QuotaDecision(True, kind, day, 1, limit)
            except IntegrityError:
                # Another request created today's row first; go through UPDATE
                continue
        raise RuntimeError(f"quota counter contention for user {user_id} ({kind.value}, {day})")

    def consume(self, user_id: str, tier: Tier, kind: OperationKind, day: Optional[str] = None) -> QuotaDecision:
        """Like try_consume, but raises QuotaExceededError on refusal."""
        decision = self.try_consume(user_id, tier, kind, day)
        if not decision.allowed:
            logger.info(
                "quota.exceeded",
                extra={"user_id": user_id, "status": 429},
            )
            raise QuotaExceededError(
                f"Daily {decision.kind.value} limit reached ({decision.limit.daily})",
                headers=decision.headers(),
            )
        return decision

    def usage_summary(self, user_id: str, tier: Tier, day: Optional[str] = None) -> Dict[str, Dict[str, object]]:
        day = day or self.today()
        summary = {}
        for kind in OperationKind:
            limit = limit_for(tier, kind)
            used = self.used_today(user_id, kind, day)
            summary[kind.value] = {
                "used": used,
                "limit": "unlimited" if limit.unlimited else limit.daily,
                "remaining": QuotaDecision(True, kind, day, used, limit).remaining,
            }
        return summary
