"""Versioned reward and tier catalog injected into the loyalty engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from threading import Lock
from typing import Iterable, Sequence

from agrimarket_api.models.loyalty import LoyaltyCardType, LoyaltyRewardType, LoyaltyTierName

from .errors import InvalidCatalog, LoyaltyNotFound
from .tiers import classify


@dataclass(frozen=True, slots=True)
class TierDefinition:
    name: str
    point_threshold: int
    discount_percentage: int
    benefits: tuple[str, ...] = ()
    display_order: int = 0
    card_type: LoyaltyCardType = LoyaltyCardType.BRONZE


@dataclass(frozen=True, slots=True)
class RewardDefinition:
    name: str
    cost: int
    reward_type: LoyaltyRewardType
    value: Decimal = Decimal("0")
    description: str = ""


@dataclass(frozen=True, slots=True)
class LoyaltyCatalog:
    """Immutable snapshot; admin edits publish a new instance with a higher version."""

    tiers: tuple[TierDefinition, ...]
    rewards: tuple[RewardDefinition, ...]
    version: int = 1
    _rewards_by_name: dict[str, RewardDefinition] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        self._rewards_by_name.update({reward.name: reward for reward in self.rewards})

    @property
    def floor_tier(self) -> TierDefinition:
        return self.tiers[0]

    def classify(self, points: int) -> TierDefinition:
        return classify(points, self.tiers)

    def tier(self, name: str) -> TierDefinition | None:
        return next((tier for tier in self.tiers if tier.name == name), None)

    def next_tier(self, name: str) -> TierDefinition | None:
        for index, tier in enumerate(self.tiers):
            if tier.name == name:
                return self.tiers[index + 1] if index + 1 < len(self.tiers) else None
        return None

    def find_reward(self, name: str) -> RewardDefinition | None:
        return self._rewards_by_name.get(name)

    def reward(self, name: str) -> RewardDefinition:
        reward = self.find_reward(name)
        if reward is None:
            raise LoyaltyNotFound(f"Reward '{name}' does not exist", resource="reward", name=name)
        return reward

    def rewards_of_type(self, reward_type: LoyaltyRewardType) -> list[RewardDefinition]:
        return [reward for reward in self.rewards if reward.reward_type == reward_type]


def build_catalog(
    tiers: Iterable[TierDefinition],
    rewards: Iterable[RewardDefinition],
    *,
    version: int = 1,
) -> LoyaltyCatalog:
    """Validate definitions and return an immutable catalog.

    Tiers are ordered by ``display_order``; thresholds must strictly increase
    along that order and exactly one tier (the first) sits at threshold 0.
    """

    ordered = sorted(tiers, key=lambda tier: tier.display_order)
    _validate_tiers(ordered)
    reward_list = list(rewards)
    _validate_rewards(reward_list)
    return LoyaltyCatalog(tiers=tuple(ordered), rewards=tuple(reward_list), version=version)


def _validate_tiers(tiers: Sequence[TierDefinition]) -> None:
    if not tiers:
        raise InvalidCatalog("At least one tier is required")

    allowed = {member.value for member in LoyaltyTierName}
    seen: set[str] = set()
    for tier in tiers:
        if tier.name not in allowed:
            raise InvalidCatalog(f"Unknown tier name '{tier.name}'", allowed=sorted(allowed))
        if tier.name in seen:
            raise InvalidCatalog(f"Duplicate tier '{tier.name}'")
        seen.add(tier.name)
        if tier.point_threshold < 0:
            raise InvalidCatalog(f"Tier '{tier.name}' has a negative threshold")
        if not 0 <= tier.discount_percentage <= 100:
            raise InvalidCatalog(f"Tier '{tier.name}' discount must be between 0 and 100")

    zero_tiers = [tier.name for tier in tiers if tier.point_threshold == 0]
    if len(zero_tiers) != 1:
        raise InvalidCatalog("Exactly one tier must have a zero threshold", zero_threshold_tiers=zero_tiers)

    for lower, upper in zip(tiers, tiers[1:]):
        if upper.point_threshold <= lower.point_threshold:
            raise InvalidCatalog(
                "Tier thresholds must strictly increase with display order",
                lower=lower.name,
                upper=upper.name,
            )


def _validate_rewards(rewards: Sequence[RewardDefinition]) -> None:
    seen: set[str] = set()
    for reward in rewards:
        if not reward.name:
            raise InvalidCatalog("Reward name is required")
        if reward.name in seen:
            raise InvalidCatalog(f"Duplicate reward '{reward.name}'")
        seen.add(reward.name)
        if reward.cost <= 0:
            raise InvalidCatalog(f"Reward '{reward.name}' must cost a positive number of points")
        if reward.reward_type == LoyaltyRewardType.DISCOUNT and not Decimal("0") < reward.value <= Decimal("100"):
            raise InvalidCatalog(f"Discount reward '{reward.name}' needs a percentage between 0 and 100")
        if reward.reward_type == LoyaltyRewardType.BONUS and reward.value < Decimal("1"):
            raise InvalidCatalog(f"Bonus reward '{reward.name}' needs a multiplier of at least 1")


_BASE_BENEFITS = ("Earn 1 point per 1 spent",)

DEFAULT_TIERS: tuple[TierDefinition, ...] = (
    TierDefinition(
        name=LoyaltyTierName.SPROUT.value,
        point_threshold=0,
        discount_percentage=0,
        benefits=_BASE_BENEFITS + ("Access to basic rewards",),
        display_order=1,
        card_type=LoyaltyCardType.BRONZE,
    ),
    TierDefinition(
        name=LoyaltyTierName.SEEDLING.value,
        point_threshold=100,
        discount_percentage=5,
        benefits=_BASE_BENEFITS
        + ("5% discount on all purchases", "Priority customer support", "Early access to sales"),
        display_order=2,
        card_type=LoyaltyCardType.BRONZE,
    ),
    TierDefinition(
        name=LoyaltyTierName.CULTIVATOR.value,
        point_threshold=300,
        discount_percentage=10,
        benefits=_BASE_BENEFITS
        + (
            "10% discount on all purchases",
            "Priority customer support",
            "Early access to sales",
            "Free shipping on orders over 50",
        ),
        display_order=3,
        card_type=LoyaltyCardType.SILVER,
    ),
    TierDefinition(
        name=LoyaltyTierName.BLOOM.value,
        point_threshold=600,
        discount_percentage=15,
        benefits=_BASE_BENEFITS
        + (
            "15% discount on all purchases",
            "Priority customer support",
            "Early access to sales",
            "Free shipping on all orders",
            "Exclusive product access",
        ),
        display_order=4,
        card_type=LoyaltyCardType.GOLD,
    ),
    TierDefinition(
        name=LoyaltyTierName.HARVESTER.value,
        point_threshold=1000,
        discount_percentage=20,
        benefits=_BASE_BENEFITS
        + (
            "20% discount on all purchases",
            "Dedicated account manager",
            "Early access to sales",
            "Free shipping on all orders",
            "Exclusive product access",
            "VIP customer events",
        ),
        display_order=5,
        card_type=LoyaltyCardType.PLATINUM,
    ),
)

DEFAULT_REWARDS: tuple[RewardDefinition, ...] = (
    RewardDefinition("discount-5", 100, LoyaltyRewardType.DISCOUNT, Decimal("5"), "5% off your next order"),
    RewardDefinition("discount-10", 150, LoyaltyRewardType.DISCOUNT, Decimal("10"), "10% off your next order"),
    RewardDefinition("discount-15", 200, LoyaltyRewardType.DISCOUNT, Decimal("15"), "15% off your next order"),
    RewardDefinition("discount-20", 300, LoyaltyRewardType.DISCOUNT, Decimal("20"), "20% off your next order"),
    RewardDefinition("free-shipping", 75, LoyaltyRewardType.SHIPPING, Decimal("0"), "Free shipping on next order"),
    RewardDefinition("bonus-points", 25, LoyaltyRewardType.BONUS, Decimal("2"), "Double points on next purchase"),
)


def default_catalog(*, version: int = 1) -> LoyaltyCatalog:
    return build_catalog(DEFAULT_TIERS, DEFAULT_REWARDS, version=version)


class CatalogRegistry:
    """Process-wide holder of the current catalog snapshot, swapped atomically."""

    def __init__(self, catalog: LoyaltyCatalog | None = None) -> None:
        self._lock = Lock()
        self._catalog = catalog or default_catalog()

    def current(self) -> LoyaltyCatalog:
        with self._lock:
            return self._catalog

    def publish(
        self,
        tiers: Iterable[TierDefinition],
        rewards: Iterable[RewardDefinition],
    ) -> LoyaltyCatalog:
        """Validate and install a new catalog version."""

        tiers = list(tiers)
        rewards = list(rewards)
        with self._lock:
            self._catalog = build_catalog(tiers, rewards, version=self._catalog.version + 1)
            return self._catalog

    def reset(self) -> None:
        with self._lock:
            self._catalog = default_catalog()


_REGISTRY = CatalogRegistry()


def get_catalog_registry() -> CatalogRegistry:
    return _REGISTRY


__all__ = [
    "CatalogRegistry",
    "DEFAULT_REWARDS",
    "DEFAULT_TIERS",
    "LoyaltyCatalog",
    "RewardDefinition",
    "TierDefinition",
    "build_catalog",
    "default_catalog",
    "get_catalog_registry",
]
