"""Loyalty account, ledger, and catalog models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    true,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from agrimarket_api.db.base import Base


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoyaltyTierName(str, Enum):
    """Closed, ordered set of tier names."""

    SPROUT = "Sprout"
    SEEDLING = "Seedling"
    CULTIVATOR = "Cultivator"
    BLOOM = "Bloom"
    HARVESTER = "Harvester"


class LoyaltyCardType(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class LoyaltyRewardType(str, Enum):
    DISCOUNT = "discount"
    SHIPPING = "shipping"
    BONUS = "bonus"


class LoyaltyLedgerSource(str, Enum):
    """Origin of a ledger delta. Each source fixes which references an entry carries."""

    ORDER_PROCESSED = "order_processed"
    REWARD_REDEEMED = "reward_redeemed"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    TEST_POINTS = "test_points"


class LoyaltyTier(Base):
    """Admin-editable tier definition backing the in-memory catalog."""

    __tablename__ = "loyalty_tiers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(
        SqlEnum(LoyaltyTierName, name="loyalty_tier_name", values_callable=_enum_values),
        nullable=False,
        unique=True,
    )
    point_threshold = Column(Integer, nullable=False)
    discount_percentage = Column(Integer, nullable=False, default=0, server_default="0")
    benefits = Column(JSON, nullable=False, default=list)
    display_order = Column(Integer, nullable=False)
    card_type = Column(
        SqlEnum(LoyaltyCardType, name="loyalty_card_type", values_callable=_enum_values),
        nullable=False,
        default=LoyaltyCardType.BRONZE,
        server_default=LoyaltyCardType.BRONZE.value,
    )
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class LoyaltyReward(Base):
    """Admin-editable reward definition backing the in-memory catalog."""

    __tablename__ = "loyalty_rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(64), nullable=False, unique=True, index=True)
    cost = Column(Integer, nullable=False)
    reward_type = Column(
        SqlEnum(LoyaltyRewardType, name="loyalty_reward_type", values_callable=_enum_values),
        nullable=False,
    )
    value = Column(Numeric(8, 2), nullable=False, default=0, server_default="0")
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class LoyaltyAccount(Base):
    """Per-user loyalty summary. ``points`` always equals the ledger sum."""

    __tablename__ = "loyalty_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_loyalty_accounts_user_id"),
        UniqueConstraint("card_id", name="uq_loyalty_accounts_card_id"),
        CheckConstraint("points >= 0", name="points_non_negative"),
        CheckConstraint("purchase_count >= 0", name="purchase_count_non_negative"),
        CheckConstraint("total_spent >= 0", name="total_spent_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    points = Column(Integer, nullable=False, default=0, server_default="0")
    purchase_count = Column(Integer, nullable=False, default=0, server_default="0")
    total_spent = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    tier = Column(String(32), nullable=False, default=LoyaltyTierName.SPROUT.value, server_default=LoyaltyTierName.SPROUT.value)
    discount_percentage = Column(Integer, nullable=False, default=0, server_default="0")
    is_eligible = Column(Boolean, nullable=False, default=False, server_default=false())
    ledger_sequence = Column(Integer, nullable=False, default=0, server_default="0")

    card_id = Column(String(32), nullable=True)
    card_type = Column(
        SqlEnum(LoyaltyCardType, name="loyalty_card_type", values_callable=_enum_values),
        nullable=True,
    )
    card_issued_at = Column(DateTime(timezone=True), nullable=True)
    card_expires_at = Column(DateTime(timezone=True), nullable=True)
    card_active = Column(Boolean, nullable=False, default=False, server_default=false())

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    ledger_entries = relationship(
        "LoyaltyLedgerEntry",
        back_populates="account",
        order_by="LoyaltyLedgerEntry.sequence",
        cascade="all, delete-orphan",
        lazy="raise",
    )

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    @property
    def card_issued(self) -> bool:
        return self.card_id is not None


class LoyaltyLedgerEntry(Base):
    """Immutable point delta. Only ``used`` may change, and only from false to true."""

    __tablename__ = "loyalty_ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "order_id", name="uq_loyalty_ledger_entries_account_order"),
        UniqueConstraint("account_id", "sequence", name="uq_loyalty_ledger_entries_account_sequence"),
        CheckConstraint(
            "(source = 'order_processed' AND order_id IS NOT NULL AND reward_name IS NULL AND points >= 0)"
            " OR (source = 'reward_redeemed' AND reward_name IS NOT NULL AND order_id IS NULL AND points < 0)"
            " OR (source = 'admin_adjustment' AND reason IS NOT NULL AND order_id IS NULL"
            " AND reward_name IS NULL AND points <> 0)"
            " OR (source = 'test_points' AND order_id IS NULL AND reward_name IS NULL AND points > 0)",
            name="source_variant",
        ),
        CheckConstraint("used = false OR source = 'reward_redeemed'", name="used_only_on_redemptions"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence = Column(Integer, nullable=False)
    points = Column(Integer, nullable=False)
    source = Column(
        SqlEnum(LoyaltyLedgerSource, name="loyalty_ledger_source", values_callable=_enum_values),
        nullable=False,
    )
    order_id = Column(String(64), nullable=True)
    reward_name = Column(String(64), nullable=True)
    reason = Column(Text, nullable=True)
    used = Column(Boolean, nullable=False, default=False, server_default=false())
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    account = relationship("LoyaltyAccount", back_populates="ledger_entries")

    @classmethod
    def for_order(cls, account: LoyaltyAccount, *, sequence: int, points: int, order_id: str) -> "LoyaltyLedgerEntry":
        return cls(
            account_id=account.id,
            sequence=sequence,
            points=points,
            source=LoyaltyLedgerSource.ORDER_PROCESSED,
            order_id=order_id,
        )

    @classmethod
    def for_redemption(
        cls, account: LoyaltyAccount, *, sequence: int, cost: int, reward_name: str
    ) -> "LoyaltyLedgerEntry":
        return cls(
            account_id=account.id,
            sequence=sequence,
            points=-cost,
            source=LoyaltyLedgerSource.REWARD_REDEEMED,
            reward_name=reward_name,
        )

    @classmethod
    def for_adjustment(
        cls,
        account: LoyaltyAccount,
        *,
        sequence: int,
        points: int,
        reason: str,
        source: LoyaltyLedgerSource = LoyaltyLedgerSource.ADMIN_ADJUSTMENT,
    ) -> "LoyaltyLedgerEntry":
        if source not in {LoyaltyLedgerSource.ADMIN_ADJUSTMENT, LoyaltyLedgerSource.TEST_POINTS}:
            raise ValueError(f"{source.value} entries cannot be created as adjustments")
        return cls(
            account_id=account.id,
            sequence=sequence,
            points=points,
            source=source,
            reason=reason,
        )
