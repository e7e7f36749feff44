"""Pure earning, eligibility, and card rules."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from .rounding import floor_points

POINTS_PER_CURRENCY_UNIT = Decimal("1")
BONUS_THRESHOLD = Decimal("100")
BONUS_MULTIPLIER = Decimal("1.5")
PREMIUM_CATEGORY_MULTIPLIER = Decimal("1.2")

CARD_ID_PREFIX = "LOYAL"


def compute_purchase_points(
    order_amount: Decimal,
    *,
    premium: bool = False,
    reward_multiplier: Decimal | None = None,
) -> int:
    """Points earned for a purchase. Every multiplier step floors to whole points."""

    if order_amount <= 0:
        return 0

    points = floor_points(order_amount * POINTS_PER_CURRENCY_UNIT)
    if order_amount >= BONUS_THRESHOLD:
        points = floor_points(points * BONUS_MULTIPLIER)
    if premium:
        points = floor_points(points * PREMIUM_CATEGORY_MULTIPLIER)
    if reward_multiplier is not None:
        points = floor_points(points * reward_multiplier)
    return points


@dataclass(frozen=True)
class EligibilityCriteria:
    purchase_count_threshold: int
    total_spent_threshold: Decimal

    def is_met(self, purchase_count: int, total_spent: Decimal) -> bool:
        return (
            purchase_count >= self.purchase_count_threshold
            or total_spent >= self.total_spent_threshold
        )

    def evaluate(self, *, currently_eligible: bool, purchase_count: int, total_spent: Decimal) -> bool:
        """Eligibility never flips back once granted."""

        return currently_eligible or self.is_met(purchase_count, total_spent)

    def as_dict(self) -> dict[str, object]:
        return {
            "purchaseCount": self.purchase_count_threshold,
            "totalSpent": float(self.total_spent_threshold),
        }


def generate_card_id(user_id: object, issued_at: datetime, *, attempt: int = 0) -> str:
    """Build ``LOYAL-<user suffix>-<timestamp suffix>``.

    ``attempt`` bumps the timestamp component when a previous candidate collided.
    """

    user_suffix = str(user_id).replace("-", "")[-6:].upper()
    millis = int(issued_at.timestamp() * 1000) + attempt
    return f"{CARD_ID_PREFIX}-{user_suffix}-{str(millis)[-6:]}"


__all__ = [
    "BONUS_MULTIPLIER",
    "BONUS_THRESHOLD",
    "CARD_ID_PREFIX",
    "EligibilityCriteria",
    "POINTS_PER_CURRENCY_UNIT",
    "PREMIUM_CATEGORY_MULTIPLIER",
    "compute_purchase_points",
    "generate_card_id",
]
