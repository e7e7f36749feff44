from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from agrimarket_api.core.settings import settings
from agrimarket_api.models.loyalty import LoyaltyTier, LoyaltyTierName
from agrimarket_api.observability.loyalty import get_loyalty_store
from agrimarket_api.services.loyalty import LoyaltyAdminService, LoyaltyService, get_catalog_registry
from agrimarket_api.services.loyalty.catalog_sync import (
    compare_with_defaults,
    load_catalog,
    seed_default_catalog,
)
from agrimarket_api.services.loyalty.errors import InvalidCatalog


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_seed_and_load_catalog(session_factory) -> None:
    registry = get_catalog_registry()

    async with session_factory() as session:
        catalog = await load_catalog(session, registry)
        assert catalog.version == 2
        assert [tier.name for tier in catalog.tiers] == ["Sprout", "Seedling", "Cultivator", "Bloom", "Harvester"]
        assert len(catalog.rewards) == 6

        drift = await compare_with_defaults(session)
        assert drift.clean

        summary = await seed_default_catalog(session)
        assert summary.tiers_created == 0
        assert summary.rewards_created == 0


@pytest.mark.asyncio
async def test_load_catalog_without_seed_keeps_builtin(session_factory) -> None:
    registry = get_catalog_registry()

    async with session_factory() as session:
        catalog = await load_catalog(session, registry, seed=False)

    assert catalog.version == 1


@pytest.mark.asyncio
async def test_tier_edit_publishes_new_catalog_version(session_factory, make_user) -> None:
    registry = get_catalog_registry()
    user = await make_user(session_factory)

    async with session_factory() as session:
        await load_catalog(session, registry)
        service = LoyaltyService(session, catalog=registry.current())
        await service.award_for_purchase(user.id, 80, "order-1")

    async with session_factory() as session:
        admin = LoyaltyAdminService(session, registry=registry)
        tier = await admin.update_tier("Seedling", {"point_threshold": 75, "discount_percentage": 6})
        assert tier.point_threshold == 75

        catalog = registry.current()
        assert catalog.version == 3
        assert catalog.tier("Seedling").point_threshold == 75

        assert await admin.reclassify_accounts() == 0

    async with session_factory() as session:
        account = await LoyaltyService(session).require_account(user.id)
        assert account.tier == "Seedling"
        assert account.discount_percentage == 6

        drift = await compare_with_defaults(session)
        assert drift.changed == ["tier:Seedling"]


@pytest.mark.asyncio
async def test_status_follows_published_thresholds(session_factory, make_user) -> None:
    registry = get_catalog_registry()
    user = await make_user(session_factory)

    async with session_factory() as session:
        await load_catalog(session, registry)
        service = LoyaltyService(session, catalog=registry.current())
        await service.get_or_create_account(user.id)
        await service.adjust_points(user.id, 60, "Field day credit")

    async with session_factory() as session:
        await LoyaltyAdminService(session, registry=registry).update_tier("Seedling", {"point_threshold": 50})

    async with session_factory() as session:
        service = LoyaltyService(session, catalog=registry.current())
        status = await service.get_status(user.id)
        assert status.tier == "Seedling"
        assert status.discount_percentage == 5

        audit = await service.audit_account(user.id)
        assert audit.consistent

    assert get_loyalty_store().snapshot().tier_changes == {"total": 1, "Sprout->Seedling": 1}


@pytest.mark.asyncio
async def test_invalid_tier_edit_is_rolled_back(session_factory) -> None:
    registry = get_catalog_registry()

    async with session_factory() as session:
        await load_catalog(session, registry)

    async with session_factory() as session:
        admin = LoyaltyAdminService(session, registry=registry)
        with pytest.raises(InvalidCatalog):
            await admin.update_tier("Bloom", {"point_threshold": 200})

    assert registry.current().version == 2

    async with session_factory() as session:
        stored = (
            await session.execute(select(LoyaltyTier).where(LoyaltyTier.name == LoyaltyTierName.BLOOM))
        ).scalar_one()
        assert stored.point_threshold == 600


@pytest.mark.asyncio
async def test_admin_catalog_endpoints(app_with_db) -> None:
    app, session_factory = app_with_db

    async with session_factory() as session:
        await load_catalog(session, get_catalog_registry())

    async with _client(app) as client:
        tiers = await client.get("/api/v1/admin/loyalty/tiers")
        assert tiers.status_code == 200
        assert len(tiers.json()) == 5

        created = await client.post(
            "/api/v1/admin/loyalty/rewards",
            json={"name": "seed-sampler", "cost": 40, "type": "shipping", "description": "Free seed sampler"},
        )
        assert created.status_code == 201
        assert created.json()["cost"] == 40

        duplicate = await client.post(
            "/api/v1/admin/loyalty/rewards",
            json={"name": "seed-sampler", "cost": 40, "type": "shipping"},
        )
        assert duplicate.status_code == 422

        invalid = await client.patch("/api/v1/admin/loyalty/rewards/discount-5", json={"value": 140})
        assert invalid.status_code == 422
        assert invalid.json()["error"] == "invalid_catalog"

        conflict = await client.patch("/api/v1/admin/loyalty/tiers/Harvester", json={"pointThreshold": 0})
        assert conflict.status_code == 422

        missing = await client.patch("/api/v1/admin/loyalty/tiers/Gold", json={"pointThreshold": 10})
        assert missing.status_code == 404

        member_rewards = await client.get("/api/v1/loyalty/tiers")
        assert member_rewards.status_code == 200

    catalog = get_catalog_registry().current()
    assert catalog.version == 3
    assert catalog.find_reward("seed-sampler") is not None
    assert catalog.reward("discount-5").value == 5


@pytest.mark.asyncio
async def test_admin_customer_endpoints(app_with_db, make_user) -> None:
    app, session_factory = app_with_db
    rich = await make_user(session_factory, email="rich@example.com")
    modest = await make_user(session_factory, email="modest@example.com")

    async with session_factory() as session:
        service = LoyaltyService(session)
        await service.award_for_purchase(rich.id, 5000, "order-1")
        await service.award_for_purchase(modest.id, 40, "order-2")

    async with _client(app) as client:
        listing = (await client.get("/api/v1/admin/loyalty/customers")).json()
        assert listing["total"] == 2
        assert [item["email"] for item in listing["customers"]] == ["rich@example.com", "modest@example.com"]

        eligible = (await client.get("/api/v1/admin/loyalty/customers", params={"eligible": True})).json()
        assert [item["email"] for item in eligible["customers"]] == ["rich@example.com"]

        detail = await client.get(f"/api/v1/admin/loyalty/customers/{modest.id}")
        assert detail.json()["points"] == 40

        adjusted = await client.post(
            f"/api/v1/admin/loyalty/customers/{modest.id}/adjust",
            json={"points": 70, "reason": "Harvest festival goodwill"},
        )
        assert adjusted.status_code == 200
        assert adjusted.json()["points"] == 110
        assert adjusted.json()["tier"] == "Seedling"
        assert adjusted.json()["entry"]["source"] == "admin_adjustment"

        overdraw = await client.post(
            f"/api/v1/admin/loyalty/customers/{modest.id}/adjust",
            json={"points": -500, "reason": "Clawback"},
        )
        assert overdraw.status_code == 409

        lowered = await client.patch(
            f"/api/v1/admin/loyalty/customers/{modest.id}",
            json={"purchaseCount": 0},
        )
        assert lowered.status_code == 422

        raised = await client.patch(
            f"/api/v1/admin/loyalty/customers/{modest.id}",
            json={"purchaseCount": 5},
        )
        assert raised.json()["isEligible"] is True

        audit = (await client.get(f"/api/v1/admin/loyalty/customers/{modest.id}/audit")).json()
        assert audit["consistent"] is True
        assert audit["ledgerSum"] == 110

        history = (await client.get(f"/api/v1/admin/loyalty/history/{modest.id}")).json()
        assert [entry["points"] for entry in history["entries"]] == [70, 40]

        stats = (await client.get("/api/v1/admin/loyalty/stats")).json()
        assert stats["totalAccounts"] == 2
        assert stats["eligibleAccounts"] == 2
        assert stats["pointsOutstanding"] == 7610
        assert stats["tierDistribution"]["Harvester"] == 1
        assert stats["tierDistribution"]["Seedling"] == 1
        assert stats["tierDistribution"]["Bloom"] == 0

        unknown = await client.get(f"/api/v1/admin/loyalty/customers/{uuid4()}")
        assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_bulk_add_points_reports_each_user(app_with_db, make_user) -> None:
    app, session_factory = app_with_db
    member = await make_user(session_factory)
    newcomer = await make_user(session_factory)

    async with session_factory() as session:
        await LoyaltyService(session).get_or_create_account(member.id)

    async with _client(app) as client:
        response = await client.post(
            "/api/v1/admin/loyalty/bulk",
            json={
                "action": "add_points",
                "userIds": [str(member.id), str(newcomer.id)],
                "points": 50,
                "reason": "Spring promotion",
            },
        )

    assert response.status_code == 200
    body = response.json()
    assert body["succeeded"] == 1
    assert body["failed"] == 1
    outcomes = {item["userId"]: item for item in body["results"]}
    assert outcomes[str(member.id)]["points"] == 50
    assert outcomes[str(newcomer.id)]["error"] == "not_found"


@pytest.mark.asyncio
async def test_test_points_forbidden_in_production(app_with_db, make_user, monkeypatch) -> None:
    app, session_factory = app_with_db
    user = await make_user(session_factory)

    async with _client(app) as client:
        granted = await client.post(f"/api/v1/admin/loyalty/customers/{user.id}/test-points", json={"points": 30})
        assert granted.status_code == 200
        assert granted.json()["points"] == 30
        assert granted.json()["entry"]["source"] == "test_points"

        monkeypatch.setattr(settings, "environment", "production")
        refused = await client.post(f"/api/v1/admin/loyalty/customers/{user.id}/test-points")
        assert refused.status_code == 403


@pytest.mark.asyncio
async def test_admin_routes_require_admin_key(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "admin_api_key", "ops-secret")

    async with _client(app) as client:
        denied = await client.get("/api/v1/admin/loyalty/stats")
        allowed = await client.get("/api/v1/admin/loyalty/stats", headers={"X-API-Key": "ops-secret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
