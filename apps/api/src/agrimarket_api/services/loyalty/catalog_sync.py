"""Persisted tier and reward definitions and their sync into the catalog registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from agrimarket_api.models.loyalty import LoyaltyReward, LoyaltyTier, LoyaltyTierName

from .catalog import (
    DEFAULT_REWARDS,
    DEFAULT_TIERS,
    CatalogRegistry,
    LoyaltyCatalog,
    RewardDefinition,
    TierDefinition,
)


@dataclass
class SeedSummary:
    tiers_created: int = 0
    tiers_updated: int = 0
    rewards_created: int = 0
    rewards_updated: int = 0


@dataclass
class CatalogDrift:
    missing: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    extra: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.missing or self.changed or self.extra)


def tier_from_row(row: LoyaltyTier) -> TierDefinition:
    name = row.name.value if isinstance(row.name, LoyaltyTierName) else str(row.name)
    return TierDefinition(
        name=name,
        point_threshold=int(row.point_threshold),
        discount_percentage=int(row.discount_percentage or 0),
        benefits=tuple(row.benefits or ()),
        display_order=int(row.display_order),
        card_type=row.card_type,
    )


def reward_from_row(row: LoyaltyReward) -> RewardDefinition:
    return RewardDefinition(
        name=row.name,
        cost=int(row.cost),
        reward_type=row.reward_type,
        value=Decimal(str(row.value or 0)),
        description=row.description or "",
    )


def _apply_tier(row: LoyaltyTier, tier: TierDefinition) -> bool:
    changed = False
    for attr, value in (
        ("point_threshold", tier.point_threshold),
        ("discount_percentage", tier.discount_percentage),
        ("benefits", list(tier.benefits)),
        ("display_order", tier.display_order),
        ("card_type", tier.card_type),
        ("is_active", True),
    ):
        if getattr(row, attr) != value:
            setattr(row, attr, value)
            changed = True
    return changed


def _apply_reward(row: LoyaltyReward, reward: RewardDefinition) -> bool:
    changed = False
    for attr, value in (
        ("cost", reward.cost),
        ("reward_type", reward.reward_type),
        ("value", reward.value),
        ("description", reward.description),
        ("is_active", True),
    ):
        current = getattr(row, attr)
        if attr == "value":
            current = Decimal(str(current)) if current is not None else None
        if current != value:
            setattr(row, attr, value)
            changed = True
    return changed


async def fetch_definitions(session: AsyncSession) -> tuple[list[TierDefinition], list[RewardDefinition]]:
    """Return active definitions currently stored in the database."""

    tier_rows = (
        await session.execute(
            select(LoyaltyTier).where(LoyaltyTier.is_active.is_(True)).order_by(LoyaltyTier.display_order.asc())
        )
    ).scalars().all()
    reward_rows = (
        await session.execute(
            select(LoyaltyReward).where(LoyaltyReward.is_active.is_(True)).order_by(LoyaltyReward.cost.asc())
        )
    ).scalars().all()
    return [tier_from_row(row) for row in tier_rows], [reward_from_row(row) for row in reward_rows]


async def seed_default_catalog(session: AsyncSession, *, reset: bool = False) -> SeedSummary:
    """Upsert the default tiers and rewards. ``reset`` wipes stored definitions first."""

    summary = SeedSummary()
    if reset:
        await session.execute(delete(LoyaltyTier))
        await session.execute(delete(LoyaltyReward))
        await session.flush()

    existing_tiers = {
        tier_from_row(row).name: row for row in (await session.execute(select(LoyaltyTier))).scalars().all()
    }
    for tier in DEFAULT_TIERS:
        row = existing_tiers.get(tier.name)
        if row is None:
            session.add(
                LoyaltyTier(
                    name=LoyaltyTierName(tier.name),
                    point_threshold=tier.point_threshold,
                    discount_percentage=tier.discount_percentage,
                    benefits=list(tier.benefits),
                    display_order=tier.display_order,
                    card_type=tier.card_type,
                    is_active=True,
                )
            )
            summary.tiers_created += 1
        elif _apply_tier(row, tier):
            summary.tiers_updated += 1

    existing_rewards = {row.name: row for row in (await session.execute(select(LoyaltyReward))).scalars().all()}
    for reward in DEFAULT_REWARDS:
        row = existing_rewards.get(reward.name)
        if row is None:
            session.add(
                LoyaltyReward(
                    name=reward.name,
                    cost=reward.cost,
                    reward_type=reward.reward_type,
                    value=reward.value,
                    description=reward.description,
                    is_active=True,
                )
            )
            summary.rewards_created += 1
        elif _apply_reward(row, reward):
            summary.rewards_updated += 1

    await session.commit()
    logger.info(
        "Seeded loyalty catalog",
        reset=reset,
        tiers_created=summary.tiers_created,
        tiers_updated=summary.tiers_updated,
        rewards_created=summary.rewards_created,
        rewards_updated=summary.rewards_updated,
    )
    return summary


async def compare_with_defaults(session: AsyncSession) -> CatalogDrift:
    """Report stored definitions that differ from the built-in defaults."""

    tiers, rewards = await fetch_definitions(session)
    stored = {f"tier:{tier.name}": tier for tier in tiers}
    stored.update({f"reward:{reward.name}": reward for reward in rewards})
    expected = {f"tier:{tier.name}": tier for tier in DEFAULT_TIERS}
    expected.update({f"reward:{reward.name}": reward for reward in DEFAULT_REWARDS})

    drift = CatalogDrift()
    for key, definition in expected.items():
        if key not in stored:
            drift.missing.append(key)
        elif stored[key] != definition:
            drift.changed.append(key)
    drift.extra.extend(sorted(set(stored) - set(expected)))
    return drift


async def load_catalog(session: AsyncSession, registry: CatalogRegistry, *, seed: bool = True) -> LoyaltyCatalog:
    """Publish the stored catalog into ``registry``, seeding defaults into empty tables."""

    tiers, rewards = await fetch_definitions(session)
    if not tiers and seed:
        await seed_default_catalog(session)
        tiers, rewards = await fetch_definitions(session)
    if not tiers:
        logger.warning("No stored loyalty tiers; keeping built-in catalog")
        return registry.current()

    catalog = registry.publish(tiers, rewards)
    logger.info(
        "Loaded loyalty catalog",
        version=catalog.version,
        tiers=len(catalog.tiers),
        rewards=len(catalog.rewards),
    )
    return catalog


__all__ = [
    "CatalogDrift",
    "SeedSummary",
    "compare_with_defaults",
    "fetch_definitions",
    "load_catalog",
    "reward_from_row",
    "seed_default_catalog",
    "tier_from_row",
]
