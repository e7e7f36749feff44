"""API endpoints for member loyalty status, redemptions, cards, and purchase awards."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from agrimarket_api.api.dependencies.security import require_internal_api_key
from agrimarket_api.api.dependencies.session import require_member_session
from agrimarket_api.db.session import get_session
from agrimarket_api.models.loyalty import LoyaltyLedgerEntry, LoyaltyLedgerSource
from agrimarket_api.models.user import User
from agrimarket_api.services.loyalty import (
    LoyaltyCard,
    LoyaltyService,
    LoyaltyStatus,
    decode_sequence_cursor,
    encode_sequence_cursor,
)
from agrimarket_api.services.loyalty.errors import InvalidInput


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class LoyaltyCardResponse(BaseModel):
    cardId: str
    cardType: str
    tier: str
    discountPercentage: int
    issuedAt: datetime
    expiresAt: datetime
    active: bool


class LoyaltyStatusResponse(BaseModel):
    userId: UUID
    points: int
    tier: str
    discountPercentage: int
    isEligible: bool
    cardIssued: bool
    card: Optional[LoyaltyCardResponse]
    purchaseCount: int
    totalSpent: float
    nextTier: Optional[str]
    pointsToNextTier: int
    progressPercentage: int
    benefits: List[str]
    criteria: dict[str, Any]


class LedgerEntryResponse(BaseModel):
    id: UUID
    sequence: int
    points: int
    source: str
    orderId: Optional[str]
    rewardName: Optional[str]
    reason: Optional[str]
    used: bool
    createdAt: datetime


class LedgerWindowResponse(BaseModel):
    entries: List[LedgerEntryResponse]
    nextCursor: Optional[str]


class LoyaltyTierResponse(BaseModel):
    name: str
    pointThreshold: int
    discountPercentage: int
    benefits: List[str]
    displayOrder: int
    cardType: str


class RewardPreviewResponse(BaseModel):
    name: str
    cost: int
    type: str
    value: float
    description: str
    canRedeem: bool
    pointsNeeded: int


class UsableRewardResponse(BaseModel):
    entryId: UUID
    rewardName: str
    type: Optional[str]
    value: Optional[float]
    description: Optional[str]
    redeemedAt: datetime


class RedeemRequest(BaseModel):
    rewardName: str = Field(..., min_length=1, max_length=64, description="Catalog reward to redeem")


class RedeemResponse(BaseModel):
    remainingPoints: int
    tier: str
    entry: LedgerEntryResponse


class PurchaseAwardRequest(BaseModel):
    userId: UUID
    orderId: str = Field(..., min_length=1, max_length=64, description="Idempotency key for the paid order")
    orderAmount: float = Field(..., description="Order total in currency units")
    premium: bool = Field(False, description="Order contains premium-category products")


class PurchaseAwardResponse(BaseModel):
    userId: UUID
    orderId: str
    pointsAwarded: int
    points: int
    tier: str
    discountPercentage: int
    isEligible: bool
    duplicate: bool
    skipped: bool
    tierChanged: bool
    becameEligible: bool
    bonusReward: Optional[str]


class ApplyRewardRequest(BaseModel):
    userId: UUID
    orderId: Optional[str] = Field(None, max_length=64, description="Order the reward was applied to")


class DiscountQuoteResponse(BaseModel):
    userId: UUID
    discountPercentage: int
    discountAmount: float
    cardValid: bool
    reason: Optional[str]
    card: Optional[LoyaltyCardResponse]


def serialize_card(card: LoyaltyCard | None) -> LoyaltyCardResponse | None:
    if card is None:
        return None
    return LoyaltyCardResponse(
        cardId=card.card_id,
        cardType=card.card_type,
        tier=card.tier,
        discountPercentage=card.discount_percentage,
        issuedAt=card.issued_at,
        expiresAt=card.expires_at,
        active=card.active,
    )


def serialize_status(snapshot: LoyaltyStatus) -> LoyaltyStatusResponse:
    return LoyaltyStatusResponse(
        userId=snapshot.user_id,
        points=snapshot.points,
        tier=snapshot.tier,
        discountPercentage=snapshot.discount_percentage,
        isEligible=snapshot.is_eligible,
        cardIssued=snapshot.card_issued,
        card=serialize_card(snapshot.card),
        purchaseCount=snapshot.purchase_count,
        totalSpent=float(snapshot.total_spent),
        nextTier=snapshot.next_tier,
        pointsToNextTier=snapshot.points_to_next_tier,
        progressPercentage=snapshot.progress_percentage,
        benefits=snapshot.benefits,
        criteria=snapshot.criteria,
    )


def serialize_entry(entry: LoyaltyLedgerEntry) -> LedgerEntryResponse:
    source = entry.source.value if isinstance(entry.source, LoyaltyLedgerSource) else str(entry.source)
    return LedgerEntryResponse(
        id=entry.id,
        sequence=entry.sequence,
        points=entry.points,
        source=source,
        orderId=entry.order_id,
        rewardName=entry.reward_name,
        reason=entry.reason,
        used=bool(entry.used),
        createdAt=entry.created_at,
    )


def parse_sources(values: list[str] | None) -> list[LoyaltyLedgerSource] | None:
    if not values:
        return None
    try:
        return [LoyaltyLedgerSource(value) for value in values]
    except ValueError as error:
        raise InvalidInput(
            "Unknown ledger source",
            field="source",
            allowed=[member.value for member in LoyaltyLedgerSource],
        ) from error


# Member surface ----------------------------------------------------------


@router.get("/status", response_model=LoyaltyStatusResponse)
async def get_loyalty_status(
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> LoyaltyStatusResponse:
    """Return the member's balance, tier, eligibility, and card."""

    service = LoyaltyService(db)
    return serialize_status(await service.get_status(current_user.id))


@router.get("/tiers", response_model=List[LoyaltyTierResponse])
async def list_loyalty_tiers(db: AsyncSession = Depends(get_session)) -> List[LoyaltyTierResponse]:
    service = LoyaltyService(db)
    return [
        LoyaltyTierResponse(
            name=tier.name,
            pointThreshold=tier.point_threshold,
            discountPercentage=tier.discount_percentage,
            benefits=list(tier.benefits),
            displayOrder=tier.display_order,
            cardType=tier.card_type.value,
        )
        for tier in service.catalog.tiers
    ]


@router.get("/rewards", response_model=List[RewardPreviewResponse])
async def list_loyalty_rewards(
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> List[RewardPreviewResponse]:
    """List catalog rewards with redeemability against the member's balance."""

    service = LoyaltyService(db)
    previews = await service.preview_rewards(current_user.id)
    return [
        RewardPreviewResponse(
            name=preview.reward.name,
            cost=preview.reward.cost,
            type=preview.reward.reward_type.value,
            value=float(preview.reward.value),
            description=preview.reward.description,
            canRedeem=preview.can_redeem,
            pointsNeeded=preview.points_needed,
        )
        for preview in previews
    ]


@router.get("/rewards/usable", response_model=List[UsableRewardResponse])
async def list_usable_rewards(
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> List[UsableRewardResponse]:
    """Rewards the member redeemed and has not applied to an order yet."""

    service = LoyaltyService(db)
    usable = await service.list_usable_rewards(current_user.id)
    return [
        UsableRewardResponse(
            entryId=item.entry.id,
            rewardName=item.entry.reward_name,
            type=item.reward.reward_type.value if item.reward else None,
            value=float(item.reward.value) if item.reward else None,
            description=item.reward.description if item.reward else None,
            redeemedAt=item.entry.created_at,
        )
        for item in usable
    ]


@router.post("/redeem", response_model=RedeemResponse)
async def redeem_reward(
    payload: RedeemRequest,
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> RedeemResponse:
    """Exchange points for a reward; 409 with the shortfall when the balance is too low."""

    service = LoyaltyService(db)
    result = await service.redeem(current_user.id, payload.rewardName)
    return RedeemResponse(
        remainingPoints=result.remaining_points,
        tier=result.account.tier,
        entry=serialize_entry(result.entry),
    )


@router.post("/issue-card", response_model=LoyaltyCardResponse, status_code=status.HTTP_201_CREATED)
async def issue_loyalty_card(
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> LoyaltyCardResponse:
    service = LoyaltyService(db)
    card = await service.issue_card(current_user.id)
    return serialize_card(card)


@router.get("/digital-card", response_model=LoyaltyCardResponse)
async def get_digital_card(
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> LoyaltyCardResponse:
    service = LoyaltyService(db)
    return serialize_card(await service.get_card(current_user.id))


@router.get("/history", response_model=LedgerWindowResponse)
async def list_points_history(
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    source: list[str] | None = Query(None, description="Filter ledger sources"),
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    """Return the member's ledger newest first."""

    service = LoyaltyService(db)
    account = await service.get_or_create_account(current_user.id)
    entries, next_sequence = await service.list_ledger_entries(
        account,
        limit=limit,
        cursor=decode_sequence_cursor(cursor) if cursor else None,
        sources=parse_sources(source),
    )
    return LedgerWindowResponse(
        entries=[serialize_entry(entry) for entry in entries],
        nextCursor=encode_sequence_cursor(next_sequence) if next_sequence is not None else None,
    )


# Collaborator surface ----------------------------------------------------


@router.post(
    "/purchases",
    response_model=PurchaseAwardResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def award_purchase(
    payload: PurchaseAwardRequest,
    db: AsyncSession = Depends(get_session),
) -> PurchaseAwardResponse:
    """Credit points for a paid order. Safe to call more than once per order."""

    service = LoyaltyService(db)
    result = await service.award_for_purchase(
        payload.userId,
        payload.orderAmount,
        payload.orderId,
        premium=payload.premium,
    )
    account = result.account
    return PurchaseAwardResponse(
        userId=payload.userId,
        orderId=payload.orderId,
        pointsAwarded=result.points_awarded,
        points=int(account.points),
        tier=account.tier,
        discountPercentage=int(account.discount_percentage),
        isEligible=bool(account.is_eligible),
        duplicate=result.duplicate,
        skipped=result.skipped,
        tierChanged=result.tier_changed,
        becameEligible=result.became_eligible,
        bonusReward=result.bonus_reward,
    )


@router.post(
    "/rewards/{entry_id}/apply",
    response_model=LedgerEntryResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def apply_redeemed_reward(
    entry_id: UUID,
    payload: ApplyRewardRequest,
    db: AsyncSession = Depends(get_session),
) -> LedgerEntryResponse:
    """Mark a redeemed reward as consumed by an order."""

    service = LoyaltyService(db)
    entry = await service.apply_redeemed_reward(payload.userId, entry_id, order_id=payload.orderId)
    return serialize_entry(entry)


@router.get(
    "/discount-quote",
    response_model=DiscountQuoteResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def get_discount_quote(
    userId: UUID = Query(..., description="Customer placing the order"),
    orderAmount: float = Query(..., ge=0, description="Order subtotal"),
    db: AsyncSession = Depends(get_session),
) -> DiscountQuoteResponse:
    """Price the card discount for an order, honouring card activation and expiry."""

    service = LoyaltyService(db)
    quote = await service.quote_discount(userId, orderAmount)
    return DiscountQuoteResponse(
        userId=userId,
        discountPercentage=quote.discount_percentage,
        discountAmount=float(quote.discount_amount),
        cardValid=quote.card_valid,
        reason=quote.reason,
        card=serialize_card(quote.card),
    )
