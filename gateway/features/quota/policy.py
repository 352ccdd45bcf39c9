"""
Daily quota policy for gated operations.

Static table of {tier, kind} -> daily limit. Unlimited is its own variant
rather than a magic number; the config table still accepts 0 and maps it to
UNLIMITED on load. The check here is pure: incrementing the counter is the
store's job (see gateway.features.quota.store).
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from gateway.features.tiers.service import Tier


class OperationKind(str, Enum):
    SCREENSHOT = "screenshot"
    PREVIEW = "preview"


@dataclass(frozen=True)
class QuotaLimit:
    """Daily ceiling for one tier/kind; `daily is None` means unlimited."""
    daily: Optional[int]

    @property
    def unlimited(self) -> bool:
        return self.daily is None

    @classmethod
    def from_config(cls, value: int) -> "QuotaLimit":
        # 0 in the config table means "no ceiling"
        if value < 0:
            raise ValueError(f"quota limit must be >= 0, got {value}")
        return UNLIMITED if value == 0 else cls(daily=value)

    def as_config(self) -> int:
        return 0 if self.daily is None else self.daily


UNLIMITED = QuotaLimit(daily=None)


# tier -> (screenshot daily, preview daily); 0 means unlimited
QUOTA_CONFIG: Dict[Tier, Tuple[int, int]] = {
    Tier.FREE: (3, 5),
    Tier.PRO: (100, 200),
    Tier.AGENCY: (400, 800),
    Tier.ENTERPRISE: (0, 0),
}


def _build_limits(config: Dict[Tier, Tuple[int, int]]) -> Dict[Tuple[Tier, OperationKind], QuotaLimit]:
    limits = {}
    for tier, (screenshots, previews) in config.items():
        limits[(tier, OperationKind.SCREENSHOT)] = QuotaLimit.from_config(screenshots)
        limits[(tier, OperationKind.PREVIEW)] = QuotaLimit.from_config(previews)
    return limits


QUOTA_LIMITS = _build_limits(QUOTA_CONFIG)


def limit_for(tier: Tier, kind: OperationKind) -> QuotaLimit:
    """Daily limit for a tier/kind. Unknown tiers fall back to the free row."""
    tier = Tier(tier)
    kind = OperationKind(kind)
    return QUOTA_LIMITS.get((tier, kind), QUOTA_LIMITS[(Tier.FREE, kind)])


def can_consume(tier: Tier, kind: OperationKind, used_today: int) -> bool:
    limit = limit_for(tier, kind)
    if limit.unlimited:
        return True
    return used_today < limit.daily
