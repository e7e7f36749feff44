from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from agrimarket_api.core.settings import settings


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _member(user) -> dict[str, str]:
    return {"X-Session-User": str(user.id)}


@pytest.mark.asyncio
async def test_status_requires_session_user(app_with_db, make_user) -> None:
    app, session_factory = app_with_db
    await make_user(session_factory)

    async with _client(app) as client:
        missing = await client.get("/api/v1/loyalty/status")
        malformed = await client.get("/api/v1/loyalty/status", headers={"X-Session-User": "grower"})
        unknown = await client.get("/api/v1/loyalty/status", headers={"X-Session-User": str(uuid4())})

    assert missing.status_code == 401
    assert missing.json()["error"] == "session_required"
    assert malformed.status_code == 400
    assert malformed.json()["error"] == "invalid_session"
    assert unknown.status_code == 404
    assert unknown.json()["resource"] == "user"


@pytest.mark.asyncio
async def test_purchase_award_flow_updates_status(app_with_db, make_user) -> None:
    app, session_factory = app_with_db
    user = await make_user(session_factory)

    async with _client(app) as client:
        status_resp = await client.get("/api/v1/loyalty/status", headers=_member(user))
        assert status_resp.status_code == 200
        status = status_resp.json()
        assert status["points"] == 0
        assert status["tier"] == "Sprout"
        assert status["nextTier"] == "Seedling"
        assert status["cardIssued"] is False
        assert status["criteria"] == {"purchaseCount": 5, "totalSpent": 5000.0}

        award_resp = await client.post(
            "/api/v1/loyalty/purchases",
            json={"userId": str(user.id), "orderId": "AGRI-1001", "orderAmount": 150},
        )
        assert award_resp.status_code == 200
        award = award_resp.json()
        assert award["pointsAwarded"] == 225
        assert award["points"] == 225
        assert award["tier"] == "Seedling"
        assert award["tierChanged"] is True
        assert award["duplicate"] is False

        repeat_resp = await client.post(
            "/api/v1/loyalty/purchases",
            json={"userId": str(user.id), "orderId": "AGRI-1001", "orderAmount": 150},
        )
        assert repeat_resp.status_code == 200
        assert repeat_resp.json()["duplicate"] is True
        assert repeat_resp.json()["points"] == 225

        status = (await client.get("/api/v1/loyalty/status", headers=_member(user))).json()
        assert status["points"] == 225
        assert status["discountPercentage"] == 5
        assert status["pointsToNextTier"] == 75
        assert status["purchaseCount"] == 1


@pytest.mark.asyncio
async def test_purchase_award_for_unknown_user_is_not_found(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        response = await client.post(
            "/api/v1/loyalty/purchases",
            json={"userId": str(uuid4()), "orderId": "AGRI-1", "orderAmount": 10},
        )

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_collaborator_routes_require_internal_key(app_with_db, make_user, monkeypatch) -> None:
    app, session_factory = app_with_db
    user = await make_user(session_factory)
    monkeypatch.setattr(settings, "internal_api_key", "orders-secret")

    payload = {"userId": str(user.id), "orderId": "AGRI-7", "orderAmount": 20}
    async with _client(app) as client:
        denied = await client.post("/api/v1/loyalty/purchases", json=payload)
        allowed = await client.post(
            "/api/v1/loyalty/purchases",
            json=payload,
            headers={"X-API-Key": "orders-secret"},
        )

    assert denied.status_code == 401
    assert allowed.status_code == 200


@pytest.mark.asyncio
async def test_redeem_shortfall_returns_conflict(app_with_db, make_user) -> None:
    app, session_factory = app_with_db
    user = await make_user(session_factory)

    async with _client(app) as client:
        await client.post(
            "/api/v1/loyalty/purchases",
            json={"userId": str(user.id), "orderId": "AGRI-1", "orderAmount": 40},
        )
        response = await client.post(
            "/api/v1/loyalty/redeem",
            json={"rewardName": "free-shipping"},
            headers=_member(user),
        )
        unknown = await client.post(
            "/api/v1/loyalty/redeem",
            json={"rewardName": "espresso"},
            headers=_member(user),
        )

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "insufficient_points"
    assert body["shortfall"] == 35
    assert body["balance"] == 40
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_redeem_and_apply_reward(app_with_db, make_user) -> None:
    app, session_factory = app_with_db
    user = await make_user(session_factory)

    async with _client(app) as client:
        await client.post(
            "/api/v1/loyalty/purchases",
            json={"userId": str(user.id), "orderId": "AGRI-1", "orderAmount": 100},
        )

        rewards = (await client.get("/api/v1/loyalty/rewards", headers=_member(user))).json()
        redeemable = {item["name"]: item["canRedeem"] for item in rewards}
        assert redeemable["free-shipping"] is True
        assert redeemable["discount-20"] is False

        redeem_resp = await client.post(
            "/api/v1/loyalty/redeem",
            json={"rewardName": "free-shipping"},
            headers=_member(user),
        )
        assert redeem_resp.status_code == 200
        redemption = redeem_resp.json()
        assert redemption["remainingPoints"] == 75
        assert redemption["entry"]["points"] == -75
        assert redemption["entry"]["source"] == "reward_redeemed"

        usable = (await client.get("/api/v1/loyalty/rewards/usable", headers=_member(user))).json()
        assert [item["rewardName"] for item in usable] == ["free-shipping"]
        entry_id = usable[0]["entryId"]

        applied = await client.post(
            f"/api/v1/loyalty/rewards/{entry_id}/apply",
            json={"userId": str(user.id), "orderId": "AGRI-2"},
        )
        assert applied.status_code == 200
        assert applied.json()["used"] is True

        again = await client.post(
            f"/api/v1/loyalty/rewards/{entry_id}/apply",
            json={"userId": str(user.id)},
        )
        assert again.status_code == 409
        assert again.json()["error"] == "reward_already_used"


@pytest.mark.asyncio
async def test_card_issue_and_discount_quote(app_with_db, make_user) -> None:
    app, session_factory = app_with_db
    user = await make_user(session_factory)

    async with _client(app) as client:
        not_eligible = await client.post("/api/v1/loyalty/issue-card", headers=_member(user))
        assert not_eligible.status_code == 400
        assert not_eligible.json()["error"] == "not_eligible"

        missing_card = await client.get("/api/v1/loyalty/digital-card", headers=_member(user))
        assert missing_card.status_code == 404

        await client.post(
            "/api/v1/loyalty/purchases",
            json={"userId": str(user.id), "orderId": "AGRI-1", "orderAmount": 5000},
        )

        issued = await client.post("/api/v1/loyalty/issue-card", headers=_member(user))
        assert issued.status_code == 201
        card = issued.json()
        assert card["cardId"].startswith("LOYAL-")
        assert card["cardType"] == "platinum"
        assert card["discountPercentage"] == 20

        repeat = await client.post("/api/v1/loyalty/issue-card", headers=_member(user))
        assert repeat.status_code == 409
        assert repeat.json()["card"]["cardId"] == card["cardId"]

        digital = await client.get("/api/v1/loyalty/digital-card", headers=_member(user))
        assert digital.json()["cardId"] == card["cardId"]

        quote = await client.get(
            "/api/v1/loyalty/discount-quote",
            params={"userId": str(user.id), "orderAmount": 80},
        )
        assert quote.status_code == 200
        assert quote.json()["cardValid"] is True
        assert quote.json()["discountAmount"] == 16.0


@pytest.mark.asyncio
async def test_history_paginates_with_cursor(app_with_db, make_user) -> None:
    app, session_factory = app_with_db
    user = await make_user(session_factory)

    async with _client(app) as client:
        for index in range(3):
            await client.post(
                "/api/v1/loyalty/purchases",
                json={"userId": str(user.id), "orderId": f"AGRI-{index}", "orderAmount": 10},
            )

        first = (await client.get("/api/v1/loyalty/history", params={"limit": 2}, headers=_member(user))).json()
        assert [entry["orderId"] for entry in first["entries"]] == ["AGRI-2", "AGRI-1"]
        assert first["nextCursor"]

        second = (
            await client.get(
                "/api/v1/loyalty/history",
                params={"limit": 2, "cursor": first["nextCursor"]},
                headers=_member(user),
            )
        ).json()
        assert [entry["orderId"] for entry in second["entries"]] == ["AGRI-0"]
        assert second["nextCursor"] is None

        bad_cursor = await client.get(
            "/api/v1/loyalty/history",
            params={"cursor": "garbage"},
            headers=_member(user),
        )
        assert bad_cursor.status_code == 422

        bad_source = await client.get(
            "/api/v1/loyalty/history",
            params={"source": "cashback"},
            headers=_member(user),
        )
        assert bad_source.status_code == 422


@pytest.mark.asyncio
async def test_tiers_listing(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        response = await client.get("/api/v1/loyalty/tiers")

    assert response.status_code == 200
    tiers = response.json()
    assert [tier["name"] for tier in tiers] == ["Sprout", "Seedling", "Cultivator", "Bloom", "Harvester"]
    assert tiers[-1]["cardType"] == "platinum"


@pytest.mark.asyncio
async def test_health_endpoints(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        health = await client.get("/api/v1/healthz")
        ready = await client.get("/api/v1/readyz")

    assert health.json() == {"status": "ok"}
    assert ready.status_code == 200
    assert ready.json()["database"] == "ready"
    assert ready.json()["catalogVersion"] == 1
