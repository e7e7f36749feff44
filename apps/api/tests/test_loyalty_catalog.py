from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

import pytest

from agrimarket_api.models.loyalty import LoyaltyCardType, LoyaltyRewardType
from agrimarket_api.services.loyalty import (
    CatalogRegistry,
    RewardDefinition,
    TierDefinition,
    build_catalog,
    decode_sequence_cursor,
    default_catalog,
    encode_sequence_cursor,
)
from agrimarket_api.services.loyalty.catalog import DEFAULT_TIERS
from agrimarket_api.services.loyalty.errors import InvalidCatalog, InvalidInput, LoyaltyNotFound
from agrimarket_api.services.loyalty.rounding import floor_points, round_currency, to_decimal
from agrimarket_api.services.loyalty.rules import (
    EligibilityCriteria,
    compute_purchase_points,
    generate_card_id,
)
from agrimarket_api.services.loyalty.tiers import classify, progress


def _tier(name: str, threshold: int, order: int, discount: int = 0) -> TierDefinition:
    return TierDefinition(name=name, point_threshold=threshold, discount_percentage=discount, display_order=order)


@pytest.mark.parametrize(
    ("points", "expected"),
    [
        (0, "Sprout"),
        (99, "Sprout"),
        (100, "Seedling"),
        (265, "Seedling"),
        (299, "Seedling"),
        (300, "Cultivator"),
        (600, "Bloom"),
        (999, "Bloom"),
        (1000, "Harvester"),
        (7500, "Harvester"),
    ],
)
def test_default_catalog_classifies_by_threshold(points: int, expected: str) -> None:
    assert default_catalog().classify(points).name == expected


def test_classify_falls_back_to_floor_tier_for_negative_balance() -> None:
    assert classify(-5, DEFAULT_TIERS).name == "Sprout"


def test_progress_reports_distance_to_next_tier() -> None:
    snapshot = progress(265, DEFAULT_TIERS)
    assert snapshot.current.name == "Seedling"
    assert snapshot.next_tier.name == "Cultivator"
    assert snapshot.points_to_next == 35
    assert snapshot.progress_percentage == 82

    top = progress(1500, DEFAULT_TIERS)
    assert top.next_tier is None
    assert top.points_to_next == 0
    assert top.progress_percentage == 100


def test_default_catalog_contents() -> None:
    catalog = default_catalog()
    assert [tier.name for tier in catalog.tiers] == ["Sprout", "Seedling", "Cultivator", "Bloom", "Harvester"]
    assert [tier.discount_percentage for tier in catalog.tiers] == [0, 5, 10, 15, 20]
    assert catalog.tier("Harvester").card_type == LoyaltyCardType.PLATINUM
    assert catalog.tier("Gold") is None
    assert catalog.next_tier("Bloom").name == "Harvester"
    assert catalog.next_tier("Harvester") is None

    assert catalog.reward("free-shipping").cost == 75
    assert catalog.reward("bonus-points").value == Decimal("2")
    assert [reward.name for reward in catalog.rewards_of_type(LoyaltyRewardType.BONUS)] == ["bonus-points"]
    with pytest.raises(LoyaltyNotFound):
        catalog.reward("espresso")


def test_build_catalog_orders_tiers_by_display_order() -> None:
    catalog = build_catalog([_tier("Seedling", 50, 2), _tier("Sprout", 0, 1)], [])
    assert [tier.name for tier in catalog.tiers] == ["Sprout", "Seedling"]


@pytest.mark.parametrize(
    "tiers",
    [
        [],
        [_tier("Gold", 0, 1)],
        [_tier("Sprout", 0, 1), _tier("Sprout", 10, 2)],
        [_tier("Sprout", 10, 1)],
        [_tier("Sprout", 0, 1), _tier("Seedling", 0, 2)],
        [_tier("Sprout", 0, 1), _tier("Seedling", 300, 2), _tier("Cultivator", 200, 3)],
        [_tier("Sprout", 0, 1, discount=120)],
    ],
)
def test_build_catalog_rejects_invalid_tiers(tiers) -> None:
    with pytest.raises(InvalidCatalog):
        build_catalog(tiers, [])


@pytest.mark.parametrize(
    "reward",
    [
        RewardDefinition("", 10, LoyaltyRewardType.SHIPPING),
        RewardDefinition("free", 0, LoyaltyRewardType.SHIPPING),
        RewardDefinition("big-discount", 10, LoyaltyRewardType.DISCOUNT, Decimal("150")),
        RewardDefinition("weak-bonus", 10, LoyaltyRewardType.BONUS, Decimal("0.5")),
    ],
)
def test_build_catalog_rejects_invalid_rewards(reward: RewardDefinition) -> None:
    with pytest.raises(InvalidCatalog):
        build_catalog(DEFAULT_TIERS, [reward])


def test_build_catalog_rejects_duplicate_reward_names() -> None:
    reward = RewardDefinition("free-shipping", 75, LoyaltyRewardType.SHIPPING)
    with pytest.raises(InvalidCatalog):
        build_catalog(DEFAULT_TIERS, [reward, reward])


def test_registry_publish_bumps_version_and_keeps_old_snapshot() -> None:
    registry = CatalogRegistry()
    before = registry.current()
    assert before.version == 1

    tiers = [_tier("Sprout", 0, 1), _tier("Seedling", 50, 2, discount=5)]
    published = registry.publish(tiers, before.rewards)

    assert published.version == 2
    assert registry.current() is published
    assert published.classify(60).name == "Seedling"
    assert before.classify(60).name == "Sprout"

    with pytest.raises(InvalidCatalog):
        registry.publish([_tier("Sprout", 5, 1)], [])
    assert registry.current() is published

    registry.reset()
    assert registry.current().version == 1


@pytest.mark.parametrize(
    ("amount", "premium", "multiplier", "expected"),
    [
        (Decimal("40"), False, None, 40),
        (Decimal("99.99"), False, None, 99),
        (Decimal("100"), False, None, 150),
        (Decimal("150"), False, None, 225),
        (Decimal("5000"), False, None, 7500),
        (Decimal("50"), True, None, 60),
        (Decimal("150"), True, None, 270),
        (Decimal("40"), False, Decimal("2"), 80),
        (Decimal("0"), False, None, 0),
        (Decimal("-10"), True, Decimal("2"), 0),
    ],
)
def test_compute_purchase_points(amount, premium, multiplier, expected) -> None:
    assert compute_purchase_points(amount, premium=premium, reward_multiplier=multiplier) == expected


def test_eligibility_is_either_threshold_and_never_revoked() -> None:
    criteria = EligibilityCriteria(purchase_count_threshold=5, total_spent_threshold=Decimal("5000"))
    assert not criteria.is_met(4, Decimal("4999.99"))
    assert criteria.is_met(5, Decimal("0"))
    assert criteria.is_met(0, Decimal("5000"))
    assert criteria.evaluate(currently_eligible=True, purchase_count=0, total_spent=Decimal("0"))
    assert criteria.as_dict() == {"purchaseCount": 5, "totalSpent": 5000.0}


def test_generate_card_id_format() -> None:
    user_id = UUID("12345678-1234-5678-1234-56789abcdef0")
    issued_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    millis = str(int(issued_at.timestamp() * 1000))

    card_id = generate_card_id(user_id, issued_at)
    assert card_id == f"LOYAL-BCDEF0-{millis[-6:]}"
    assert generate_card_id(user_id, issued_at, attempt=1) != card_id


def test_rounding_policy() -> None:
    assert floor_points(Decimal("10.99")) == 10
    assert round_currency(Decimal("2.345")) == Decimal("2.35")
    assert round_currency(Decimal("2.344")) == Decimal("2.34")
    assert to_decimal("12.50") == Decimal("12.50")
    assert to_decimal(float("nan")) is None
    assert to_decimal(float("inf")) is None
    assert to_decimal(True) is None
    assert to_decimal("abc") is None
    assert to_decimal(None) is None


def test_sequence_cursor_round_trip_and_rejection() -> None:
    assert decode_sequence_cursor(encode_sequence_cursor(42)) == 42
    with pytest.raises(InvalidInput):
        decode_sequence_cursor("not-a-cursor")
