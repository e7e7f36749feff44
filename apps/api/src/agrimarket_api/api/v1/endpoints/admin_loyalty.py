"""Operator endpoints for the loyalty catalog and customer accounts."""

from __future__ import annotations

from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from agrimarket_api.api.dependencies.security import require_admin_api_key
from agrimarket_api.core.settings import settings
from agrimarket_api.db.session import get_session
from agrimarket_api.models.loyalty import LoyaltyReward, LoyaltyTier
from agrimarket_api.services.loyalty import (
    LoyaltyAdminService,
    decode_sequence_cursor,
    encode_sequence_cursor,
)

from .loyalty import (
    LedgerEntryResponse,
    LedgerWindowResponse,
    LoyaltyStatusResponse,
    parse_sources,
    serialize_entry,
    serialize_status,
)


router = APIRouter(
    prefix="/admin/loyalty",
    tags=["loyalty-admin"],
    dependencies=[Depends(require_admin_api_key)],
)


class TierRecordResponse(BaseModel):
    id: UUID
    name: str
    pointThreshold: int
    discountPercentage: int
    benefits: List[str]
    displayOrder: int
    cardType: str
    isActive: bool


class TierCreateRequest(BaseModel):
    name: str
    pointThreshold: int = Field(..., ge=0)
    discountPercentage: int = Field(0, ge=0, le=100)
    benefits: List[str] = Field(default_factory=list)
    displayOrder: int
    cardType: Literal["bronze", "silver", "gold", "platinum"] = "bronze"


class TierUpdateRequest(BaseModel):
    pointThreshold: Optional[int] = Field(None, ge=0)
    discountPercentage: Optional[int] = Field(None, ge=0, le=100)
    benefits: Optional[List[str]] = None
    displayOrder: Optional[int] = None
    cardType: Optional[Literal["bronze", "silver", "gold", "platinum"]] = None
    isActive: Optional[bool] = None


class RewardRecordResponse(BaseModel):
    id: UUID
    name: str
    cost: int
    type: str
    value: float
    description: Optional[str]
    isActive: bool


class RewardCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    cost: int = Field(..., gt=0)
    type: Literal["discount", "shipping", "bonus"]
    value: float = Field(0, ge=0)
    description: Optional[str] = None


class RewardUpdateRequest(BaseModel):
    cost: Optional[int] = Field(None, gt=0)
    type: Optional[Literal["discount", "shipping", "bonus"]] = None
    value: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    isActive: Optional[bool] = None


class ReclassifyResponse(BaseModel):
    changed: int
    catalogVersion: int


class CustomerRecordResponse(BaseModel):
    userId: UUID
    email: Optional[str]
    displayName: Optional[str]
    points: int
    tier: str
    purchaseCount: int
    totalSpent: float
    isEligible: bool
    cardId: Optional[str]


class CustomerListResponse(BaseModel):
    customers: List[CustomerRecordResponse]
    total: int
    limit: int
    offset: int


class CounterUpdateRequest(BaseModel):
    purchaseCount: Optional[int] = Field(None, ge=0)
    totalSpent: Optional[float] = Field(None, ge=0)


class AdjustPointsRequest(BaseModel):
    points: int = Field(..., description="Signed point delta")
    reason: str = Field(..., min_length=1, max_length=500)


class AdjustPointsResponse(BaseModel):
    points: int
    tier: str
    entry: LedgerEntryResponse


class TestPointsRequest(BaseModel):
    points: int = Field(100, gt=0, le=100_000)


class LedgerAuditResponse(BaseModel):
    userId: UUID
    points: int
    ledgerSum: int
    entryCount: int
    tier: str
    expectedTier: str
    consistent: bool
    discrepancies: List[str]


class StatsResponse(BaseModel):
    totalAccounts: int
    eligibleAccounts: int
    cardsIssued: int
    pointsOutstanding: int
    pointsEarned: int
    pointsRedeemed: int
    tierDistribution: dict[str, int]
    catalogVersion: int


class BulkActionRequest(BaseModel):
    action: Literal["add_points"]
    userIds: List[UUID] = Field(..., min_length=1, max_length=500)
    points: int
    reason: str = Field(..., min_length=1, max_length=500)


class BulkOutcomeResponse(BaseModel):
    userId: UUID
    success: bool
    points: Optional[int]
    error: Optional[str]
    message: Optional[str]


class BulkActionResponse(BaseModel):
    succeeded: int
    failed: int
    results: List[BulkOutcomeResponse]


def _serialize_tier(tier: LoyaltyTier) -> TierRecordResponse:
    return TierRecordResponse(
        id=tier.id,
        name=tier.name.value,
        pointThreshold=tier.point_threshold,
        discountPercentage=tier.discount_percentage,
        benefits=list(tier.benefits or []),
        displayOrder=tier.display_order,
        cardType=tier.card_type.value,
        isActive=bool(tier.is_active),
    )


def _serialize_reward(reward: LoyaltyReward) -> RewardRecordResponse:
    return RewardRecordResponse(
        id=reward.id,
        name=reward.name,
        cost=reward.cost,
        type=reward.reward_type.value,
        value=float(reward.value or 0),
        description=reward.description,
        isActive=bool(reward.is_active),
    )


def _tier_changes(payload: TierCreateRequest | TierUpdateRequest) -> dict[str, object]:
    return {
        "point_threshold": payload.pointThreshold,
        "discount_percentage": payload.discountPercentage,
        "benefits": payload.benefits,
        "display_order": payload.displayOrder,
        "card_type": payload.cardType,
        "is_active": getattr(payload, "isActive", None),
    }


def _reward_changes(payload: RewardCreateRequest | RewardUpdateRequest) -> dict[str, object]:
    return {
        "cost": payload.cost,
        "reward_type": payload.type,
        "value": payload.value,
        "description": payload.description,
        "is_active": getattr(payload, "isActive", None),
    }


# Catalog -----------------------------------------------------------------


@router.get("/tiers", response_model=List[TierRecordResponse])
async def list_tiers(db: AsyncSession = Depends(get_session)) -> List[TierRecordResponse]:
    service = LoyaltyAdminService(db)
    return [_serialize_tier(tier) for tier in await service.list_tiers()]


@router.post("/tiers", response_model=TierRecordResponse, status_code=status.HTTP_201_CREATED)
async def create_tier(payload: TierCreateRequest, db: AsyncSession = Depends(get_session)) -> TierRecordResponse:
    service = LoyaltyAdminService(db)
    tier = await service.create_tier({"name": payload.name, **_tier_changes(payload)})
    return _serialize_tier(tier)


@router.patch("/tiers/{name}", response_model=TierRecordResponse)
async def update_tier(
    name: str,
    payload: TierUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> TierRecordResponse:
    service = LoyaltyAdminService(db)
    tier = await service.update_tier(name, _tier_changes(payload))
    return _serialize_tier(tier)


@router.get("/rewards", response_model=List[RewardRecordResponse])
async def list_rewards(db: AsyncSession = Depends(get_session)) -> List[RewardRecordResponse]:
    service = LoyaltyAdminService(db)
    return [_serialize_reward(reward) for reward in await service.list_rewards()]


@router.post("/rewards", response_model=RewardRecordResponse, status_code=status.HTTP_201_CREATED)
async def create_reward(payload: RewardCreateRequest, db: AsyncSession = Depends(get_session)) -> RewardRecordResponse:
    service = LoyaltyAdminService(db)
    reward = await service.create_reward({"name": payload.name, **_reward_changes(payload)})
    return _serialize_reward(reward)


@router.patch("/rewards/{name}", response_model=RewardRecordResponse)
async def update_reward(
    name: str,
    payload: RewardUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> RewardRecordResponse:
    service = LoyaltyAdminService(db)
    reward = await service.update_reward(name, _reward_changes(payload))
    return _serialize_reward(reward)


@router.post("/reclassify", response_model=ReclassifyResponse)
async def reclassify_accounts(db: AsyncSession = Depends(get_session)) -> ReclassifyResponse:
    """Re-run tier classification on every account against the current catalog."""

    service = LoyaltyAdminService(db)
    changed = await service.reclassify_accounts()
    return ReclassifyResponse(changed=changed, catalogVersion=service.loyalty_service().catalog.version)


# Customers ---------------------------------------------------------------


@router.get("/customers", response_model=CustomerListResponse)
async def list_customers(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    tier: str | None = Query(None),
    eligible: bool | None = Query(None),
    db: AsyncSession = Depends(get_session),
) -> CustomerListResponse:
    service = LoyaltyAdminService(db)
    customers, total = await service.list_customers(limit=limit, offset=offset, tier=tier, eligible=eligible)
    return CustomerListResponse(
        customers=[
            CustomerRecordResponse(
                userId=item.user_id,
                email=item.email,
                displayName=item.display_name,
                points=item.points,
                tier=item.tier,
                purchaseCount=item.purchase_count,
                totalSpent=float(item.total_spent),
                isEligible=item.is_eligible,
                cardId=item.card_id,
            )
            for item in customers
        ],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/customers/{user_id}", response_model=LoyaltyStatusResponse)
async def get_customer(user_id: UUID, db: AsyncSession = Depends(get_session)) -> LoyaltyStatusResponse:
    service = LoyaltyAdminService(db).loyalty_service()
    account = await service.require_account(user_id)
    return serialize_status(service.status_for(account))


@router.patch("/customers/{user_id}", response_model=LoyaltyStatusResponse)
async def update_customer_counters(
    user_id: UUID,
    payload: CounterUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> LoyaltyStatusResponse:
    """Raise purchase counters; lowering them is rejected."""

    service = LoyaltyAdminService(db).loyalty_service()
    account = await service.update_counters(
        user_id,
        purchase_count=payload.purchaseCount,
        total_spent=payload.totalSpent,
    )
    return serialize_status(service.status_for(account))


@router.post("/customers/{user_id}/adjust", response_model=AdjustPointsResponse)
async def adjust_customer_points(
    user_id: UUID,
    payload: AdjustPointsRequest,
    db: AsyncSession = Depends(get_session),
) -> AdjustPointsResponse:
    service = LoyaltyAdminService(db).loyalty_service()
    account, entry = await service.adjust_points(user_id, payload.points, payload.reason)
    return AdjustPointsResponse(points=int(account.points), tier=account.tier, entry=serialize_entry(entry))


@router.post("/customers/{user_id}/test-points", response_model=AdjustPointsResponse)
async def grant_test_points(
    user_id: UUID,
    payload: TestPointsRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> AdjustPointsResponse:
    """Development helper; unavailable in production."""

    if not settings.allows_test_points:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Test points are disabled in production")

    service = LoyaltyAdminService(db).loyalty_service()
    points = payload.points if payload else 100
    account, entry = await service.grant_test_points(user_id, points)
    return AdjustPointsResponse(points=int(account.points), tier=account.tier, entry=serialize_entry(entry))


@router.get("/customers/{user_id}/audit", response_model=LedgerAuditResponse)
async def audit_customer(user_id: UUID, db: AsyncSession = Depends(get_session)) -> LedgerAuditResponse:
    service = LoyaltyAdminService(db).loyalty_service()
    audit = await service.audit_account(user_id)
    return LedgerAuditResponse(
        userId=audit.user_id,
        points=audit.points,
        ledgerSum=audit.ledger_sum,
        entryCount=audit.entry_count,
        tier=audit.tier,
        expectedTier=audit.expected_tier,
        consistent=audit.consistent,
        discrepancies=audit.discrepancies,
    )


@router.get("/history/{user_id}", response_model=LedgerWindowResponse)
async def get_customer_history(
    user_id: UUID,
    limit: int = Query(50, ge=1, le=100),
    cursor: str | None = Query(None),
    source: list[str] | None = Query(None),
    db: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    service = LoyaltyAdminService(db).loyalty_service()
    account = await service.require_account(user_id)
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


@router.get("/stats", response_model=StatsResponse)
async def get_stats(db: AsyncSession = Depends(get_session)) -> StatsResponse:
    stats = await LoyaltyAdminService(db).stats()
    return StatsResponse(
        totalAccounts=stats.total_accounts,
        eligibleAccounts=stats.eligible_accounts,
        cardsIssued=stats.cards_issued,
        pointsOutstanding=stats.points_outstanding,
        pointsEarned=stats.points_earned,
        pointsRedeemed=stats.points_redeemed,
        tierDistribution=stats.tier_distribution,
        catalogVersion=stats.catalog_version,
    )


@router.post("/bulk", response_model=BulkActionResponse)
async def run_bulk_action(payload: BulkActionRequest, db: AsyncSession = Depends(get_session)) -> BulkActionResponse:
    """Apply the same point adjustment to many customers, reporting per-user outcomes."""

    service = LoyaltyAdminService(db)
    report = await service.bulk_add_points(payload.userIds, payload.points, payload.reason)
    return BulkActionResponse(
        succeeded=report.succeeded,
        failed=report.failed,
        results=[
            BulkOutcomeResponse(
                userId=outcome.user_id,
                success=outcome.success,
                points=outcome.points,
                error=outcome.error,
                message=outcome.message,
            )
            for outcome in report.outcomes
        ],
    )
