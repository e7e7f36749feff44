"""Operator workflows: catalog edits, customer listings, stats, and bulk actions."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agrimarket_api.core.settings import Settings, settings as default_settings
from agrimarket_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyCardType,
    LoyaltyLedgerEntry,
    LoyaltyLedgerSource,
    LoyaltyReward,
    LoyaltyRewardType,
    LoyaltyTier,
    LoyaltyTierName,
)
from agrimarket_api.models.user import User

from .catalog import CatalogRegistry, LoyaltyCatalog, build_catalog, get_catalog_registry
from .catalog_sync import fetch_definitions
from .errors import InvalidCatalog, InvalidInput, LoyaltyError, LoyaltyNotFound
from .loyalty_service import LoyaltyService

_TIER_FIELDS = {"point_threshold", "discount_percentage", "benefits", "display_order", "card_type", "is_active"}
_REWARD_FIELDS = {"cost", "reward_type", "value", "description", "is_active"}


@dataclass
class CustomerSummary:
    user_id: UUID
    email: Optional[str]
    display_name: Optional[str]
    points: int
    tier: str
    purchase_count: int
    total_spent: Decimal
    is_eligible: bool
    card_id: Optional[str]


@dataclass
class LoyaltyStats:
    total_accounts: int
    eligible_accounts: int
    cards_issued: int
    points_outstanding: int
    points_earned: int
    points_redeemed: int
    tier_distribution: dict[str, int]
    catalog_version: int


@dataclass
class BulkOutcome:
    user_id: UUID
    success: bool
    points: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None


@dataclass
class BulkReport:
    outcomes: list[BulkOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded


class LoyaltyAdminService:
    """Administrative entry points over the loyalty catalog and accounts."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        registry: CatalogRegistry | None = None,
        config: Settings | None = None,
    ) -> None:
        self._db = db_session
        self._registry = registry or get_catalog_registry()
        self._config = config or default_settings

    def loyalty_service(self) -> LoyaltyService:
        return LoyaltyService(self._db, catalog=self._registry.current(), config=self._config)

    # Catalog -----------------------------------------------------------

    async def list_tiers(self) -> list[LoyaltyTier]:
        stmt = select(LoyaltyTier).order_by(LoyaltyTier.display_order.asc())
        return list((await self._db.execute(stmt)).scalars().all())

    async def list_rewards(self) -> list[LoyaltyReward]:
        stmt = select(LoyaltyReward).order_by(LoyaltyReward.cost.asc())
        return list((await self._db.execute(stmt)).scalars().all())

    async def create_tier(self, data: dict[str, Any]) -> LoyaltyTier:
        try:
            name = LoyaltyTierName(data.get("name"))
        except ValueError as exc:
            raise InvalidCatalog(
                f"Unknown tier name '{data.get('name')}'",
                allowed=[member.value for member in LoyaltyTierName],
            ) from exc
        existing = await self._db.execute(select(LoyaltyTier.id).where(LoyaltyTier.name == name))
        if existing.first() is not None:
            raise InvalidCatalog(f"Tier '{name.value}' already exists")

        tier = LoyaltyTier(name=name, benefits=[], discount_percentage=0, is_active=True)
        self._assign(tier, data, _TIER_FIELDS)
        if tier.point_threshold is None or tier.display_order is None:
            raise InvalidInput("Tier threshold and display order are required")
        self._db.add(tier)
        await self._publish("tier_created", name.value)
        await self._reclassify_after_tier_edit(tier)
        return tier

    async def update_tier(self, name: str, changes: dict[str, Any]) -> LoyaltyTier:
        tier = await self._get_tier(name)
        self._assign(tier, changes, _TIER_FIELDS)
        await self._publish("tier_updated", name)
        await self._reclassify_after_tier_edit(tier)
        return tier

    async def create_reward(self, data: dict[str, Any]) -> LoyaltyReward:
        name = str(data.get("name") or "").strip()
        if not name:
            raise InvalidCatalog("Reward name is required")
        existing = await self._db.execute(select(LoyaltyReward.id).where(LoyaltyReward.name == name))
        if existing.first() is not None:
            raise InvalidCatalog(f"Reward '{name}' already exists")

        reward = LoyaltyReward(name=name, value=Decimal("0"), is_active=True)
        self._assign(reward, data, _REWARD_FIELDS)
        if reward.cost is None or reward.reward_type is None:
            raise InvalidInput("Reward cost and type are required")
        self._db.add(reward)
        await self._publish("reward_created", name)
        return reward

    async def update_reward(self, name: str, changes: dict[str, Any]) -> LoyaltyReward:
        reward = (
            await self._db.execute(select(LoyaltyReward).where(LoyaltyReward.name == name))
        ).scalar_one_or_none()
        if reward is None:
            raise LoyaltyNotFound(f"Reward '{name}' does not exist", resource="reward", name=name)
        self._assign(reward, changes, _REWARD_FIELDS)
        await self._publish("reward_updated", name)
        return reward

    async def _get_tier(self, name: str) -> LoyaltyTier:
        try:
            tier_name = LoyaltyTierName(name)
        except ValueError as exc:
            raise LoyaltyNotFound(f"Tier '{name}' does not exist", resource="tier", name=name) from exc
        tier = (await self._db.execute(select(LoyaltyTier).where(LoyaltyTier.name == tier_name))).scalar_one_or_none()
        if tier is None:
            raise LoyaltyNotFound(f"Tier '{name}' does not exist", resource="tier", name=name)
        return tier

    @staticmethod
    def _assign(target: Any, values: dict[str, Any], allowed: set[str]) -> None:
        for key, value in values.items():
            if key not in allowed or value is None:
                continue
            try:
                if key == "card_type":
                    value = LoyaltyCardType(value)
                elif key == "reward_type":
                    value = LoyaltyRewardType(value)
                elif key == "benefits":
                    value = [str(item) for item in value]
                elif key == "value":
                    value = Decimal(str(value))
            except (ValueError, TypeError, ArithmeticError) as exc:
                raise InvalidCatalog(f"Invalid value for {key}", field=key) from exc
            setattr(target, key, value)

    async def _publish(self, action: str, subject: str) -> LoyaltyCatalog:
        """Validate stored definitions after an edit, then commit and swap the catalog."""

        await self._db.flush()
        tiers, rewards = await fetch_definitions(self._db)
        try:
            build_catalog(tiers, rewards)
        except InvalidCatalog:
            await self._db.rollback()
            logger.warning("Rejected loyalty catalog edit", action=action, subject=subject)
            raise
        await self._db.commit()
        catalog = self._registry.publish(tiers, rewards)
        logger.info("Published loyalty catalog", action=action, subject=subject, version=catalog.version)
        return catalog

    async def _reclassify_after_tier_edit(self, tier: LoyaltyTier) -> None:
        # Stored tiers must match the thresholds that were just published.
        changed = await self.reclassify_accounts()
        await self._db.refresh(tier)
        logger.info("Reclassified accounts after tier edit", tier=tier.name.value, changed=changed)

    async def reclassify_accounts(self) -> int:
        return await self.loyalty_service().reclassify_all()

    # Customers ---------------------------------------------------------

    async def list_customers(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        tier: str | None = None,
        eligible: bool | None = None,
    ) -> tuple[list[CustomerSummary], int]:
        """Page through accounts ordered by lifetime spend."""

        filters = []
        if tier:
            filters.append(LoyaltyAccount.tier == tier)
        if eligible is not None:
            filters.append(LoyaltyAccount.is_eligible.is_(eligible))

        total = (await self._db.execute(select(func.count(LoyaltyAccount.id)).where(*filters))).scalar_one()
        stmt = (
            select(LoyaltyAccount, User.email, User.display_name)
            .join(User, User.id == LoyaltyAccount.user_id)
            .where(*filters)
            .order_by(LoyaltyAccount.total_spent.desc(), LoyaltyAccount.user_id.asc())
            .limit(max(1, min(limit, 200)))
            .offset(max(0, offset))
        )
        rows = (await self._db.execute(stmt)).all()
        summaries = [
            CustomerSummary(
                user_id=account.user_id,
                email=email,
                display_name=display_name,
                points=int(account.points or 0),
                tier=account.tier,
                purchase_count=int(account.purchase_count or 0),
                total_spent=Decimal(str(account.total_spent or 0)),
                is_eligible=bool(account.is_eligible),
                card_id=account.card_id,
            )
            for account, email, display_name in rows
        ]
        return summaries, int(total or 0)

    async def stats(self) -> LoyaltyStats:
        totals = (
            await self._db.execute(
                select(
                    func.count(LoyaltyAccount.id),
                    func.coalesce(func.sum(LoyaltyAccount.points), 0),
                )
            )
        ).one()
        eligible = (
            await self._db.execute(select(func.count(LoyaltyAccount.id)).where(LoyaltyAccount.is_eligible.is_(True)))
        ).scalar_one()
        cards = (
            await self._db.execute(select(func.count(LoyaltyAccount.id)).where(LoyaltyAccount.card_id.is_not(None)))
        ).scalar_one()
        distribution_rows = (
            await self._db.execute(select(LoyaltyAccount.tier, func.count(LoyaltyAccount.id)).group_by(LoyaltyAccount.tier))
        ).all()
        earned = (
            await self._db.execute(
                select(func.coalesce(func.sum(LoyaltyLedgerEntry.points), 0)).where(LoyaltyLedgerEntry.points > 0)
            )
        ).scalar_one()
        redeemed = (
            await self._db.execute(
                select(func.coalesce(func.sum(LoyaltyLedgerEntry.points), 0)).where(
                    LoyaltyLedgerEntry.source == LoyaltyLedgerSource.REWARD_REDEEMED
                )
            )
        ).scalar_one()

        catalog = self._registry.current()
        distribution = {tier.name: 0 for tier in catalog.tiers}
        for tier_name, count in distribution_rows:
            distribution[tier_name] = int(count)

        return LoyaltyStats(
            total_accounts=int(totals[0] or 0),
            eligible_accounts=int(eligible or 0),
            cards_issued=int(cards or 0),
            points_outstanding=int(totals[1] or 0),
            points_earned=int(earned or 0),
            points_redeemed=abs(int(redeemed or 0)),
            tier_distribution=distribution,
            catalog_version=catalog.version,
        )

    async def bulk_add_points(self, user_ids: Iterable[UUID], points: Any, reason: str) -> BulkReport:
        """Adjust each account independently; one failure does not stop the rest."""

        service = self.loyalty_service()
        report = BulkReport()
        for user_id in user_ids:
            try:
                account, _entry = await service.adjust_points(user_id, points, reason)
            except LoyaltyError as exc:
                report.outcomes.append(
                    BulkOutcome(user_id=user_id, success=False, error=exc.code, message=exc.message)
                )
                continue
            report.outcomes.append(BulkOutcome(user_id=user_id, success=True, points=int(account.points)))

        logger.info(
            "Bulk loyalty adjustment finished",
            succeeded=report.succeeded,
            failed=report.failed,
            points=points,
        )
        return report


__all__ = [
    "BulkOutcome",
    "BulkReport",
    "CustomerSummary",
    "LoyaltyAdminService",
    "LoyaltyStats",
]
