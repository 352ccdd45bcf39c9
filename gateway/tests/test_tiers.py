"""Tests for price -> tier resolution."""

from gateway.features.tiers.service import (
    DEFAULT_TIER,
    Tier,
    effective_tier,
    tier_for_price,
    tier_from_claims,
)


PRICE_MAP = {"price_pro": "pro", "price_agency": "agency", "price_ent": "enterprise"}


def test_known_prices_map_to_their_tier():
    assert tier_for_price("price_pro", PRICE_MAP) == Tier.PRO
    assert tier_for_price("price_agency", PRICE_MAP) == Tier.AGENCY
    assert tier_for_price("price_ent", PRICE_MAP) == Tier.ENTERPRISE


def test_unknown_or_missing_price_is_free():
    assert tier_for_price("price_mystery", PRICE_MAP) == Tier.FREE
    assert tier_for_price(None, PRICE_MAP) == Tier.FREE
    assert tier_for_price("", PRICE_MAP) == Tier.FREE
    assert DEFAULT_TIER == Tier.FREE


def test_empty_price_map_resolves_everything_to_free():
    assert tier_for_price("price_pro", {}) == Tier.FREE


def test_misconfigured_tier_name_is_free():
    assert tier_for_price("price_x", {"price_x": "platinum"}) == Tier.FREE


def test_effective_tier_keeps_paid_tier_only_when_paying():
    assert effective_tier(Tier.PRO, "active") == Tier.PRO
    assert effective_tier(Tier.AGENCY, "trialing") == Tier.AGENCY
    for status in ("canceled", "past_due", "unpaid", "incomplete", "incomplete_expired", "paused", None):
        assert effective_tier(Tier.PRO, status) == Tier.FREE


def test_tier_from_claims_normalizes():
    assert tier_from_claims({"userTier": "PRO "}) == Tier.PRO
    assert tier_from_claims({"userTier": "enterprise"}) == Tier.ENTERPRISE
    assert tier_from_claims({"userTier": "gold"}) == Tier.FREE
    assert tier_from_claims({"userTier": 3}) == Tier.FREE
    assert tier_from_claims({}) == Tier.FREE
    assert tier_from_claims(None) == Tier.FREE
