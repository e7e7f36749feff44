"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    LoyaltyAccount,
    LoyaltyCardType,
    LoyaltyLedgerEntry,
    LoyaltyLedgerSource,
    LoyaltyReward,
    LoyaltyRewardType,
    LoyaltyTier,
    LoyaltyTierName,
)
from .order import Order, OrderStatusEnum  # noqa: F401
from .user import User, UserRoleEnum  # noqa: F401
