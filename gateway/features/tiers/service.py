"""
Tier resolution.

Pure functions: map a Stripe price id and subscription status to the tier
the gateway gates on. Nothing here touches storage.
"""
from enum import Enum
from typing import Any, Mapping, Optional


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"
    AGENCY = "agency"
    ENTERPRISE = "enterprise"


# Unknown or missing prices resolve here
DEFAULT_TIER = Tier.FREE

PAYING_STATUSES = frozenset({"active", "trialing"})


def tier_for_price(price_id: Optional[str], price_map: Mapping[str, str]) -> Tier:
    """
    Look up the tier for a Stripe price id.

    Args:
        price_id: Price id of the subscription's first line item (may be None)
        price_map: Configured price id -> tier name (Settings.price_map)

    Returns:
        The mapped tier, or DEFAULT_TIER when the price is unknown or None.
    """
    if not price_id:
        return DEFAULT_TIER
    name = price_map.get(price_id)
    if name is None:
        return DEFAULT_TIER
    try:
        return Tier(name)
    except ValueError:
        return DEFAULT_TIER


def effective_tier(mapped_tier: Tier, status: Optional[str]) -> Tier:
    """Only active or trialing subscriptions keep their paid tier."""
    if status in PAYING_STATUSES:
        return mapped_tier
    return Tier.FREE


def tier_from_claims(claims: Optional[Mapping[str, Any]]) -> Tier:
    """Normalize the `userTier` claim of an authenticated session."""
    if not claims:
        return DEFAULT_TIER
    raw = claims.get("userTier")
    if not isinstance(raw, str):
        return DEFAULT_TIER
    try:
        return Tier(raw.strip().lower())
    except ValueError:
        return DEFAULT_TIER
