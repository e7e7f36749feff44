"""Service layer for loyalty points, tiers, redemptions, and cards."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

from loguru import logger
from opentelemetry import trace
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from agrimarket_api.core.settings import Settings, settings as default_settings
from agrimarket_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyLedgerEntry,
    LoyaltyLedgerSource,
    LoyaltyRewardType,
)
from agrimarket_api.models.order import Order
from agrimarket_api.models.user import User
from agrimarket_api.observability.loyalty import get_loyalty_store

from .catalog import LoyaltyCatalog, RewardDefinition, TierDefinition, get_catalog_registry
from .errors import (
    AlreadyIssued,
    ConcurrencyConflict,
    DuplicateOrder,
    InsufficientPoints,
    InvalidInput,
    LoyaltyError,
    LoyaltyNotFound,
    NotEligible,
    RewardAlreadyUsed,
)
from .rounding import round_currency, to_decimal
from .rules import EligibilityCriteria, compute_purchase_points, generate_card_id
from .tiers import progress

T = TypeVar("T")

MAX_CARD_ID_ATTEMPTS = 20
DEFAULT_TEST_POINTS = 100

tracer = trace.get_tracer(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back without tzinfo.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _decimal(value: Any) -> Decimal:
    return to_decimal(value) or Decimal("0")


_UNIQUE_VIOLATION_MARKERS = ("unique constraint", "duplicate key")


def _is_unique_violation(exc: IntegrityError) -> bool:
    """True for a concurrent insert on a unique key; CHECK and FK failures are not retried."""

    if getattr(exc.orig, "sqlstate", None) == "23505":
        return True
    message = str(exc.orig).lower()
    return any(marker in message for marker in _UNIQUE_VIOLATION_MARKERS)


@dataclass
class LoyaltyCard:
    """Serializable view of the one-time issued card."""

    card_id: str
    card_type: str
    tier: str
    discount_percentage: int
    issued_at: datetime
    expires_at: datetime
    active: bool

    def is_valid(self, at: datetime) -> bool:
        return self.active and at < self.expires_at

    def as_dict(self) -> dict[str, Any]:
        return {
            "cardId": self.card_id,
            "cardType": self.card_type,
            "tier": self.tier,
            "discountPercentage": self.discount_percentage,
            "issuedAt": self.issued_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "active": self.active,
        }


@dataclass
class LoyaltyStatus:
    """Read-only snapshot of an account for UI display."""

    user_id: UUID
    points: int
    tier: str
    discount_percentage: int
    is_eligible: bool
    purchase_count: int
    total_spent: Decimal
    card: Optional[LoyaltyCard]
    next_tier: Optional[str]
    points_to_next_tier: int
    progress_percentage: int
    benefits: list[str]
    criteria: dict[str, object]

    @property
    def card_issued(self) -> bool:
        return self.card is not None


@dataclass(frozen=True)
class TierChange:
    user_id: UUID
    previous: Optional[str]
    current: str
    points: int


@dataclass
class AwardResult:
    account: LoyaltyAccount
    points_awarded: int
    duplicate: bool = False
    skipped: bool = False
    tier_change: Optional[TierChange] = None
    became_eligible: bool = False
    bonus_reward: Optional[str] = None
    entry: Optional[LoyaltyLedgerEntry] = None

    @property
    def tier_changed(self) -> bool:
        return self.tier_change is not None


@dataclass
class RedemptionResult:
    account: LoyaltyAccount
    entry: LoyaltyLedgerEntry
    reward: RewardDefinition
    tier_change: Optional[TierChange] = None

    @property
    def remaining_points(self) -> int:
        return int(self.account.points)


@dataclass
class RewardPreview:
    reward: RewardDefinition
    can_redeem: bool
    points_needed: int


@dataclass
class UsableReward:
    entry: LoyaltyLedgerEntry
    reward: Optional[RewardDefinition]


@dataclass
class DiscountQuote:
    discount_percentage: int
    discount_amount: Decimal
    card_valid: bool
    reason: Optional[str] = None
    card: Optional[LoyaltyCard] = None


@dataclass
class LedgerAudit:
    user_id: UUID
    points: int
    ledger_sum: int
    entry_count: int
    tier: str
    expected_tier: str
    discrepancies: list[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.discrepancies


class LoyaltyService:
    """Coordinates the loyalty ledger and account lifecycle.

    Every balance mutation runs as one transaction against a freshly locked
    account row. The account's version column turns lost updates into
    ``StaleDataError``, which is retried with a bounded budget.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        catalog: LoyaltyCatalog | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db_session
        self._catalog = catalog or get_catalog_registry().current()
        self._config = config or default_settings
        self._clock = clock or _utcnow
        self._store = get_loyalty_store()
        self._criteria = EligibilityCriteria(
            purchase_count_threshold=self._config.loyalty_purchase_count_threshold,
            total_spent_threshold=Decimal(str(self._config.loyalty_total_spent_threshold)),
        )

    @property
    def catalog(self) -> LoyaltyCatalog:
        return self._catalog

    @property
    def criteria(self) -> EligibilityCriteria:
        return self._criteria

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_account(self, user_id: UUID) -> LoyaltyAccount | None:
        stmt = select(LoyaltyAccount).where(LoyaltyAccount.user_id == user_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def require_account(self, user_id: UUID) -> LoyaltyAccount:
        account = await self.get_account(user_id)
        if account is None:
            raise LoyaltyNotFound("Loyalty account not found", resource="account", user_id=str(user_id))
        return account

    async def get_or_create_account(
        self,
        user_id: UUID,
        *,
        exclude_order_id: str | None = None,
    ) -> LoyaltyAccount:
        """Fetch the account, creating it with backfilled purchase counters when absent."""

        account = await self.get_account(user_id)
        if account is not None:
            return account

        user = await self._db.get(User, user_id)
        if user is None:
            raise LoyaltyNotFound("User not found", resource="user", user_id=str(user_id))

        purchase_count, total_spent = await self._backfill_purchases(user_id, exclude_order_id)
        floor_tier = self._catalog.floor_tier
        account = LoyaltyAccount(
            user_id=user_id,
            points=0,
            purchase_count=purchase_count,
            total_spent=total_spent,
            tier=floor_tier.name,
            discount_percentage=floor_tier.discount_percentage,
            is_eligible=self._criteria.is_met(purchase_count, total_spent),
            ledger_sequence=0,
            card_active=False,
        )
        self._db.add(account)
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            logger.warning("Detected race when creating loyalty account", user_id=str(user_id))
            return await self.require_account(user_id)

        await self._db.commit()
        logger.info(
            "Created loyalty account",
            user_id=str(user_id),
            account_id=str(account.id),
            purchase_count=purchase_count,
            total_spent=str(total_spent),
            is_eligible=account.is_eligible,
        )
        return account

    async def _backfill_purchases(self, user_id: UUID, exclude_order_id: str | None) -> tuple[int, Decimal]:
        statuses = self._config.backfill_order_statuses
        if not statuses:
            return 0, Decimal("0")

        stmt = select(func.count(Order.id), func.coalesce(func.sum(Order.total), 0)).where(
            Order.user_id == user_id,
            func.lower(Order.status).in_(statuses),
        )
        if exclude_order_id:
            stmt = stmt.where(Order.order_number != exclude_order_id)
            try:
                stmt = stmt.where(Order.id != UUID(exclude_order_id))
            except ValueError:
                pass

        count, total = (await self._db.execute(stmt)).one()
        return int(count or 0), round_currency(_decimal(total))

    async def _lock_account(self, user_id: UUID) -> LoyaltyAccount | None:
        """Reload the account under a row lock, discarding any cached state."""

        stmt = (
            select(LoyaltyAccount)
            .where(LoyaltyAccount.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _run_account_transaction(
        self,
        user_id: UUID,
        operation: str,
        mutate: Callable[[LoyaltyAccount], Awaitable[T]],
    ) -> T:
        """Apply ``mutate`` to the current account state and commit, retrying on write conflicts."""

        budget = self._config.loyalty_max_write_retries
        for attempt in range(1, budget + 1):
            try:
                account = await self._lock_account(user_id)
                if account is None:
                    raise LoyaltyNotFound("Loyalty account not found", resource="account", user_id=str(user_id))
                outcome = await mutate(account)
                await self._db.commit()
                return outcome
            except (StaleDataError, IntegrityError) as exc:
                await self._db.rollback()
                if isinstance(exc, IntegrityError) and not _is_unique_violation(exc):
                    logger.error(
                        "Loyalty write violated a constraint",
                        operation=operation,
                        user_id=str(user_id),
                        error=str(exc.orig),
                    )
                    raise
                exhausted = attempt == budget
                self._store.record_conflict(operation, exhausted=exhausted)
                logger.warning(
                    "Loyalty write conflict",
                    operation=operation,
                    user_id=str(user_id),
                    attempt=attempt,
                    error=type(exc).__name__,
                )
            except LoyaltyError:
                await self._db.rollback()
                raise

        logger.error("Loyalty write conflict budget exhausted", operation=operation, user_id=str(user_id))
        raise ConcurrencyConflict(
            "Loyalty account is being updated concurrently, try again",
            operation=operation,
            attempts=budget,
        )

    def _next_sequence(self, account: LoyaltyAccount) -> int:
        account.ledger_sequence = int(account.ledger_sequence or 0) + 1
        return account.ledger_sequence

    def _apply_balance(self, account: LoyaltyAccount, delta: int) -> TierChange | None:
        """Move the balance and reclassify in the same unit of work."""

        balance = int(account.points or 0)
        new_balance = balance + delta
        if new_balance < 0:
            raise InsufficientPoints(shortfall=-new_balance, balance=balance, required=-delta)
        account.points = new_balance
        return self._reclassify(account)

    def _reclassify(self, account: LoyaltyAccount) -> TierChange | None:
        """Bring tier, discount, and card type in line with the balance.

        The returned change is only reported through ``_record_tier_change``
        once the surrounding transaction has committed.
        """

        tier = self._catalog.classify(int(account.points or 0))
        previous = account.tier
        change = None
        if previous != tier.name:
            account.tier = tier.name
            change = TierChange(
                user_id=account.user_id,
                previous=previous,
                current=tier.name,
                points=int(account.points or 0),
            )
        if account.discount_percentage != tier.discount_percentage:
            account.discount_percentage = tier.discount_percentage
        if account.card_id is not None and account.card_type != tier.card_type:
            account.card_type = tier.card_type
        return change

    def _record_tier_change(self, change: TierChange | None) -> None:
        if change is None:
            return
        self._store.record_tier_change(change.previous or "none", change.current)
        logger.info(
            "Loyalty tier changed",
            user_id=str(change.user_id),
            from_tier=change.previous,
            to_tier=change.current,
            points=change.points,
        )

    def _evaluate_eligibility(self, account: LoyaltyAccount) -> bool:
        """Flip eligibility on when criteria are met. Returns whether it flipped."""

        eligible = self._criteria.evaluate(
            currently_eligible=bool(account.is_eligible),
            purchase_count=int(account.purchase_count or 0),
            total_spent=_decimal(account.total_spent),
        )
        if eligible and not account.is_eligible:
            account.is_eligible = True
            logger.info("Loyalty account became card eligible", user_id=str(account.user_id))
            return True
        return False

    # ------------------------------------------------------------------
    # Purchase award
    # ------------------------------------------------------------------

    async def award_for_purchase(
        self,
        user_id: UUID,
        order_amount: Any,
        order_id: str,
        *,
        premium: bool = False,
    ) -> AwardResult:
        """Credit points for a paid order. Repeated calls for one order are no-ops."""

        order_key = (order_id or "").strip() if isinstance(order_id, str) else ""
        if not order_key:
            raise InvalidInput("Order id is required", field="orderId")

        amount = to_decimal(order_amount)
        if amount is None and not isinstance(order_amount, (float, Decimal)):
            raise InvalidInput("Order amount must be numeric", field="orderAmount")

        with tracer.start_as_current_span("loyalty.award_for_purchase") as span:
            span.set_attribute("loyalty.order_id", order_key)
            account = await self.get_or_create_account(user_id, exclude_order_id=order_key)

            if amount is None or amount <= 0:
                self._store.record_award("skipped")
                logger.info(
                    "Skipped loyalty award for non-positive amount",
                    user_id=str(user_id),
                    order_id=order_key,
                    order_amount=str(order_amount),
                )
                return AwardResult(account=account, points_awarded=0, skipped=True)

            async def mutate(locked: LoyaltyAccount) -> AwardResult:
                existing = await self._db.execute(
                    select(LoyaltyLedgerEntry.id).where(
                        LoyaltyLedgerEntry.account_id == locked.id,
                        LoyaltyLedgerEntry.order_id == order_key,
                    )
                )
                if existing.first() is not None:
                    raise DuplicateOrder("Order already credited", order_id=order_key)

                bonus_entry, multiplier = await self._pending_bonus(locked)
                earned = compute_purchase_points(amount, premium=premium)
                if bonus_entry is not None and earned > 0:
                    earned = compute_purchase_points(amount, premium=premium, reward_multiplier=multiplier)
                    bonus_entry.used = True
                else:
                    bonus_entry = None

                entry = LoyaltyLedgerEntry.for_order(
                    locked,
                    sequence=self._next_sequence(locked),
                    points=earned,
                    order_id=order_key,
                )
                self._db.add(entry)
                locked.purchase_count = int(locked.purchase_count or 0) + 1
                locked.total_spent = round_currency(_decimal(locked.total_spent) + amount)
                tier_change = self._apply_balance(locked, earned)
                became_eligible = self._evaluate_eligibility(locked)
                await self._db.flush()
                return AwardResult(
                    account=locked,
                    points_awarded=earned,
                    tier_change=tier_change,
                    became_eligible=became_eligible,
                    bonus_reward=bonus_entry.reward_name if bonus_entry is not None else None,
                    entry=entry,
                )

            try:
                result = await self._run_account_transaction(user_id, "award", mutate)
            except DuplicateOrder:
                self._store.record_award("duplicate")
                logger.info("Ignored duplicate loyalty award", user_id=str(user_id), order_id=order_key)
                account = await self.require_account(user_id)
                return AwardResult(account=account, points_awarded=0, duplicate=True)

            span.set_attribute("loyalty.points_awarded", result.points_awarded)
            self._store.record_award("awarded", result.points_awarded)
            self._record_tier_change(result.tier_change)
            logger.info(
                "Awarded loyalty points",
                user_id=str(user_id),
                order_id=order_key,
                points=result.points_awarded,
                balance=result.account.points,
                tier=result.account.tier,
                premium=premium,
                bonus_reward=result.bonus_reward,
            )
            return result

    async def _pending_bonus(self, account: LoyaltyAccount) -> tuple[LoyaltyLedgerEntry | None, Decimal | None]:
        bonus_rewards = {reward.name: reward for reward in self._catalog.rewards_of_type(LoyaltyRewardType.BONUS)}
        if not bonus_rewards:
            return None, None
        stmt = (
            select(LoyaltyLedgerEntry)
            .where(
                LoyaltyLedgerEntry.account_id == account.id,
                LoyaltyLedgerEntry.source == LoyaltyLedgerSource.REWARD_REDEEMED,
                LoyaltyLedgerEntry.used.is_(False),
                LoyaltyLedgerEntry.reward_name.in_(list(bonus_rewards)),
            )
            .order_by(LoyaltyLedgerEntry.sequence.asc())
            .limit(1)
        )
        entry = (await self._db.execute(stmt)).scalar_one_or_none()
        if entry is None:
            return None, None
        return entry, Decimal(bonus_rewards[entry.reward_name].value)

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------

    async def redeem(self, user_id: UUID, reward_name: str) -> RedemptionResult:
        """Exchange points for a catalog reward."""

        reward = self._catalog.reward(reward_name)
        with tracer.start_as_current_span("loyalty.redeem") as span:
            span.set_attribute("loyalty.reward", reward.name)
            await self.get_or_create_account(user_id)

            async def mutate(locked: LoyaltyAccount) -> RedemptionResult:
                tier_change = self._apply_balance(locked, -reward.cost)
                entry = LoyaltyLedgerEntry.for_redemption(
                    locked,
                    sequence=self._next_sequence(locked),
                    cost=reward.cost,
                    reward_name=reward.name,
                )
                self._db.add(entry)
                await self._db.flush()
                return RedemptionResult(account=locked, entry=entry, reward=reward, tier_change=tier_change)

            try:
                result = await self._run_account_transaction(user_id, "redeem", mutate)
            except InsufficientPoints as exc:
                self._store.record_redemption("insufficient_points", reward.name)
                logger.info(
                    "Loyalty redemption rejected",
                    user_id=str(user_id),
                    reward=reward.name,
                    shortfall=exc.shortfall,
                )
                raise

            self._store.record_redemption("succeeded", reward.name, reward.cost)
            self._record_tier_change(result.tier_change)
            logger.info(
                "Redeemed loyalty reward",
                user_id=str(user_id),
                reward=reward.name,
                cost=reward.cost,
                remaining=result.remaining_points,
            )
            return result

    async def preview_rewards(self, user_id: UUID) -> list[RewardPreview]:
        account = await self.get_or_create_account(user_id)
        balance = int(account.points or 0)
        return [
            RewardPreview(
                reward=reward,
                can_redeem=balance >= reward.cost,
                points_needed=max(reward.cost - balance, 0),
            )
            for reward in sorted(self._catalog.rewards, key=lambda item: item.cost)
        ]

    async def list_usable_rewards(self, user_id: UUID) -> list[UsableReward]:
        account = await self.get_or_create_account(user_id)
        stmt = (
            select(LoyaltyLedgerEntry)
            .where(
                LoyaltyLedgerEntry.account_id == account.id,
                LoyaltyLedgerEntry.source == LoyaltyLedgerSource.REWARD_REDEEMED,
                LoyaltyLedgerEntry.used.is_(False),
            )
            .order_by(LoyaltyLedgerEntry.sequence.asc())
        )
        entries = (await self._db.execute(stmt)).scalars().all()
        return [UsableReward(entry=entry, reward=self._catalog.find_reward(entry.reward_name)) for entry in entries]

    async def apply_redeemed_reward(
        self,
        user_id: UUID,
        entry_id: UUID,
        *,
        order_id: str | None = None,
    ) -> LoyaltyLedgerEntry:
        """Mark a redeemed reward as used. The flag only ever moves from false to true."""

        account_id = (await self.require_account(user_id)).id
        stmt = (
            update(LoyaltyLedgerEntry)
            .where(
                LoyaltyLedgerEntry.id == entry_id,
                LoyaltyLedgerEntry.account_id == account_id,
                LoyaltyLedgerEntry.source == LoyaltyLedgerSource.REWARD_REDEEMED,
                LoyaltyLedgerEntry.used.is_(False),
            )
            .values(used=True)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount == 0:
            await self._db.rollback()
            entry = await self._get_redemption_entry(account_id, entry_id)
            if entry is None:
                raise LoyaltyNotFound("Redeemed reward not found", resource="reward_entry", entry_id=str(entry_id))
            raise RewardAlreadyUsed("Reward has already been applied", entry_id=str(entry_id))

        await self._db.commit()
        entry = await self._get_redemption_entry(account_id, entry_id, refresh=True)
        logger.info(
            "Applied redeemed loyalty reward",
            user_id=str(user_id),
            entry_id=str(entry_id),
            reward=entry.reward_name,
            order_id=order_id,
        )
        return entry

    async def _get_redemption_entry(
        self,
        account_id: UUID,
        entry_id: UUID,
        *,
        refresh: bool = False,
    ) -> LoyaltyLedgerEntry | None:
        stmt = select(LoyaltyLedgerEntry).where(
            LoyaltyLedgerEntry.id == entry_id,
            LoyaltyLedgerEntry.account_id == account_id,
            LoyaltyLedgerEntry.source == LoyaltyLedgerSource.REWARD_REDEEMED,
        )
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------

    def card_for(self, account: LoyaltyAccount) -> LoyaltyCard | None:
        if account.card_id is None:
            return None
        card_type = account.card_type
        return LoyaltyCard(
            card_id=account.card_id,
            card_type=card_type.value if hasattr(card_type, "value") else str(card_type),
            tier=account.tier,
            discount_percentage=int(account.discount_percentage or 0),
            issued_at=_as_utc(account.card_issued_at),
            expires_at=_as_utc(account.card_expires_at),
            active=bool(account.card_active),
        )

    async def issue_card(self, user_id: UUID) -> LoyaltyCard:
        """Issue the account's loyalty card once eligibility has been reached."""

        await self.get_or_create_account(user_id)

        async def mutate(locked: LoyaltyAccount) -> LoyaltyCard:
            existing = self.card_for(locked)
            if existing is not None:
                raise AlreadyIssued(existing)
            if not locked.is_eligible:
                raise NotEligible(
                    "Loyalty card criteria not met yet",
                    criteria=self._criteria.as_dict(),
                    purchase_count=int(locked.purchase_count or 0),
                    total_spent=float(_decimal(locked.total_spent)),
                )

            issued_at = self._clock()
            tier = self._catalog.tier(locked.tier) or self._catalog.classify(int(locked.points or 0))
            locked.card_id = await self._unique_card_id(locked.user_id, issued_at)
            locked.card_type = tier.card_type
            locked.card_issued_at = issued_at
            locked.card_expires_at = issued_at + timedelta(days=self._config.loyalty_card_validity_days)
            locked.card_active = True
            locked.discount_percentage = tier.discount_percentage
            await self._db.flush()
            return self.card_for(locked)

        try:
            card = await self._run_account_transaction(user_id, "issue_card", mutate)
        except AlreadyIssued:
            self._store.record_card_event("already_issued")
            raise
        except NotEligible:
            self._store.record_card_event("not_eligible")
            raise

        self._store.record_card_event("issued", card.card_type)
        logger.info("Issued loyalty card", user_id=str(user_id), card_id=card.card_id, card_type=card.card_type)
        return card

    async def _unique_card_id(self, user_id: UUID, issued_at: datetime) -> str:
        for attempt in range(MAX_CARD_ID_ATTEMPTS):
            candidate = generate_card_id(user_id, issued_at, attempt=attempt)
            clash = await self._db.execute(select(LoyaltyAccount.id).where(LoyaltyAccount.card_id == candidate))
            if clash.first() is None:
                return candidate
            logger.debug("Loyalty card id collision", candidate=candidate)
        # The unique constraint still guards the final candidate.
        return generate_card_id(user_id, issued_at, attempt=MAX_CARD_ID_ATTEMPTS)

    async def get_card(self, user_id: UUID) -> LoyaltyCard:
        account = await self.get_account(user_id)
        card = self.card_for(account) if account is not None else None
        if card is None:
            raise LoyaltyNotFound("No loyalty card issued", resource="card", user_id=str(user_id))
        return card

    async def quote_discount(self, user_id: UUID, order_amount: Any) -> DiscountQuote:
        """Price the card discount for an order. Expiry and activation are checked here."""

        amount = to_decimal(order_amount)
        if amount is None or amount < 0:
            raise InvalidInput("Order amount must be a non-negative number", field="orderAmount")

        account = await self.get_account(user_id)
        card = self.card_for(account) if account is not None else None
        if card is None:
            return DiscountQuote(0, Decimal("0.00"), False, reason="no_card")
        if not card.active:
            return DiscountQuote(0, Decimal("0.00"), False, reason="card_inactive", card=card)
        if not card.is_valid(self._clock()):
            return DiscountQuote(0, Decimal("0.00"), False, reason="card_expired", card=card)

        percentage = int(account.discount_percentage or 0)
        discount = round_currency(amount * Decimal(percentage) / Decimal(100))
        return DiscountQuote(percentage, discount, True, card=card)

    # ------------------------------------------------------------------
    # Status and history
    # ------------------------------------------------------------------

    async def get_status(self, user_id: UUID) -> LoyaltyStatus:
        account = await self.get_or_create_account(user_id)
        return self.status_for(account)

    def status_for(self, account: LoyaltyAccount) -> LoyaltyStatus:
        points = int(account.points or 0)
        tier_progress = progress(points, self._catalog.tiers)
        current: TierDefinition = self._catalog.tier(account.tier) or tier_progress.current
        return LoyaltyStatus(
            user_id=account.user_id,
            points=points,
            tier=account.tier,
            discount_percentage=int(account.discount_percentage or 0),
            is_eligible=bool(account.is_eligible),
            purchase_count=int(account.purchase_count or 0),
            total_spent=round_currency(_decimal(account.total_spent)),
            card=self.card_for(account),
            next_tier=tier_progress.next_tier.name if tier_progress.next_tier else None,
            points_to_next_tier=tier_progress.points_to_next,
            progress_percentage=tier_progress.progress_percentage,
            benefits=list(current.benefits),
            criteria=self._criteria.as_dict(),
        )

    async def list_ledger_entries(
        self,
        account: LoyaltyAccount,
        *,
        limit: int = 25,
        cursor: int | None = None,
        sources: list[LoyaltyLedgerSource] | None = None,
    ) -> tuple[list[LoyaltyLedgerEntry], int | None]:
        """Return a newest-first page of ledger entries and the cursor for the next page."""

        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(LoyaltyLedgerEntry)
            .where(LoyaltyLedgerEntry.account_id == account.id)
            .order_by(LoyaltyLedgerEntry.sequence.desc())
        )
        if sources:
            stmt = stmt.where(LoyaltyLedgerEntry.source.in_(sources))
        if cursor is not None:
            stmt = stmt.where(LoyaltyLedgerEntry.sequence < cursor)

        rows = list((await self._db.execute(stmt.limit(bounded_limit + 1))).scalars().all())
        entries = rows[:bounded_limit]
        next_cursor = entries[-1].sequence if len(rows) > bounded_limit and entries else None
        return entries, next_cursor

    async def audit_account(self, user_id: UUID) -> LedgerAudit:
        """Compare the stored balance and tier against the ledger."""

        account = await self.require_account(user_id)
        stmt = select(
            func.coalesce(func.sum(LoyaltyLedgerEntry.points), 0),
            func.count(LoyaltyLedgerEntry.id),
        ).where(LoyaltyLedgerEntry.account_id == account.id)
        ledger_sum, entry_count = (await self._db.execute(stmt)).one()

        points = int(account.points or 0)
        expected = self._catalog.classify(points)
        audit = LedgerAudit(
            user_id=user_id,
            points=points,
            ledger_sum=int(ledger_sum or 0),
            entry_count=int(entry_count or 0),
            tier=account.tier,
            expected_tier=expected.name,
        )
        if audit.ledger_sum != points:
            audit.discrepancies.append("balance_mismatch")
        if account.tier != expected.name:
            audit.discrepancies.append("tier_mismatch")
        if int(account.discount_percentage or 0) != expected.discount_percentage:
            audit.discrepancies.append("discount_mismatch")
        if not audit.consistent:
            logger.warning("Loyalty ledger audit found discrepancies", user_id=str(user_id), issues=audit.discrepancies)
        return audit

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def adjust_points(
        self,
        user_id: UUID,
        points: Any,
        reason: str,
        *,
        source: LoyaltyLedgerSource = LoyaltyLedgerSource.ADMIN_ADJUSTMENT,
    ) -> tuple[LoyaltyAccount, LoyaltyLedgerEntry]:
        """Apply a manual ledger delta. The balance can never be taken below zero."""

        if isinstance(points, bool) or not isinstance(points, int) or points == 0:
            raise InvalidInput("Points must be a non-zero integer", field="points")
        if source == LoyaltyLedgerSource.TEST_POINTS and points < 0:
            raise InvalidInput("Test points must be positive", field="points")
        cleaned_reason = (reason or "").strip()
        if not cleaned_reason:
            raise InvalidInput("A reason is required for point adjustments", field="reason")

        await self.require_account(user_id)

        async def mutate(
            locked: LoyaltyAccount,
        ) -> tuple[LoyaltyAccount, LoyaltyLedgerEntry, TierChange | None]:
            tier_change = self._apply_balance(locked, points)
            entry = LoyaltyLedgerEntry.for_adjustment(
                locked,
                sequence=self._next_sequence(locked),
                points=points,
                reason=cleaned_reason,
                source=source,
            )
            self._db.add(entry)
            await self._db.flush()
            return locked, entry, tier_change

        account, entry, tier_change = await self._run_account_transaction(user_id, "adjust", mutate)
        self._store.record_adjustment(points)
        self._record_tier_change(tier_change)
        logger.info(
            "Adjusted loyalty points",
            user_id=str(user_id),
            points=points,
            source=source.value,
            reason=cleaned_reason,
            balance=account.points,
        )
        return account, entry

    async def grant_test_points(
        self,
        user_id: UUID,
        points: int = DEFAULT_TEST_POINTS,
    ) -> tuple[LoyaltyAccount, LoyaltyLedgerEntry]:
        if not self._config.allows_test_points:
            raise InvalidInput("Test points are disabled in this environment", environment=self._config.environment)
        await self.get_or_create_account(user_id)
        return await self.adjust_points(
            user_id,
            points,
            "Test points for development",
            source=LoyaltyLedgerSource.TEST_POINTS,
        )

    async def update_counters(
        self,
        user_id: UUID,
        *,
        purchase_count: Any = None,
        total_spent: Any = None,
    ) -> LoyaltyAccount:
        """Raise purchase counters (never lower them) and re-evaluate eligibility."""

        new_count: int | None = None
        if purchase_count is not None:
            if isinstance(purchase_count, bool) or not isinstance(purchase_count, int) or purchase_count < 0:
                raise InvalidInput("Purchase count must be a non-negative integer", field="purchaseCount")
            new_count = purchase_count
        new_total: Decimal | None = None
        if total_spent is not None:
            parsed = to_decimal(total_spent)
            if parsed is None or parsed < 0:
                raise InvalidInput("Total spent must be a non-negative number", field="totalSpent")
            new_total = round_currency(parsed)

        await self.require_account(user_id)

        async def mutate(locked: LoyaltyAccount) -> LoyaltyAccount:
            if new_count is not None:
                if new_count < int(locked.purchase_count or 0):
                    raise InvalidInput(
                        "Purchase count cannot decrease",
                        field="purchaseCount",
                        current=int(locked.purchase_count or 0),
                    )
                locked.purchase_count = new_count
            if new_total is not None:
                current_total = _decimal(locked.total_spent)
                if new_total < current_total:
                    raise InvalidInput(
                        "Total spent cannot decrease",
                        field="totalSpent",
                        current=float(current_total),
                    )
                locked.total_spent = new_total
            self._evaluate_eligibility(locked)
            await self._db.flush()
            return locked

        account = await self._run_account_transaction(user_id, "update_counters", mutate)
        logger.info(
            "Updated loyalty counters",
            user_id=str(user_id),
            purchase_count=account.purchase_count,
            total_spent=str(account.total_spent),
            is_eligible=account.is_eligible,
        )
        return account

    async def reclassify_all(self) -> int:
        """Re-run tier classification for every account. Returns the number of tier changes."""

        user_ids = (await self._db.execute(select(LoyaltyAccount.user_id))).scalars().all()
        changed = 0

        async def mutate(locked: LoyaltyAccount) -> TierChange | None:
            tier_change = self._reclassify(locked)
            await self._db.flush()
            return tier_change

        for user_id in user_ids:
            tier_change = await self._run_account_transaction(user_id, "reclassify", mutate)
            if tier_change is not None:
                self._record_tier_change(tier_change)
                changed += 1

        logger.info(
            "Reclassified loyalty accounts",
            accounts=len(user_ids),
            changed=changed,
            catalog_version=self._catalog.version,
        )
        return changed


def encode_sequence_cursor(sequence: int) -> str:
    """Encode pagination cursor for ledger queries."""

    return base64.urlsafe_b64encode(f"seq:{sequence}".encode("utf-8")).decode("utf-8")


def decode_sequence_cursor(cursor: str) -> int:
    """Decode pagination cursor; raises ``InvalidInput`` for malformed values."""

    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        prefix, value = raw.split(":", 1)
        if prefix != "seq":
            raise ValueError(prefix)
        return int(value)
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidInput("Invalid cursor", field="cursor") from exc


__all__ = [
    "AwardResult",
    "DiscountQuote",
    "LedgerAudit",
    "LoyaltyCard",
    "LoyaltyService",
    "LoyaltyStatus",
    "RedemptionResult",
    "RewardPreview",
    "UsableReward",
    "decode_sequence_cursor",
    "encode_sequence_cursor",
]
