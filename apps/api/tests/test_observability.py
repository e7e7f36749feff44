from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from agrimarket_api.core.settings import settings
from agrimarket_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store


def test_store_snapshot_groups_events() -> None:
    store = LoyaltyObservabilityStore()
    store.record_award("awarded", 225)
    store.record_award("duplicate")
    store.record_redemption("succeeded", "free-shipping", 75)
    store.record_redemption("insufficient_points", "discount-20")
    store.record_adjustment(-15)
    store.record_card_event("issued", "gold")
    store.record_tier_change("Sprout", "Seedling")
    store.record_conflict("redeem")
    store.record_conflict("redeem", exhausted=True)

    snapshot = store.snapshot().as_dict()
    assert snapshot["awards"] == {"awarded": 1, "duplicate": 1}
    assert snapshot["points"] == {"awarded": 225, "redeemed": 75, "adjusted_down": 15}
    assert snapshot["redemptions"]["by_reward"] == {"free-shipping": 1, "discount-20": 1}
    assert snapshot["cards"] == {"issued": 1, "type:gold": 1}
    assert snapshot["tier_changes"] == {"total": 1, "Sprout->Seedling": 1}
    assert snapshot["conflicts"] == {"retry:redeem": 2, "exhausted:redeem": 1}

    store.reset()
    assert store.snapshot().awards == {}


@pytest.mark.asyncio
async def test_loyalty_snapshot_endpoint(app_with_db) -> None:
    app, _ = app_with_db
    get_loyalty_store().record_award("awarded", 40)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/observability/loyalty")

    assert response.status_code == 200
    payload = response.json()
    assert payload["awards"] == {"awarded": 1}
    assert payload["catalog_version"] == 1


@pytest.mark.asyncio
async def test_prometheus_metrics_requires_key(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "admin_api_key", "prom-key")
    store = get_loyalty_store()
    store.record_award("awarded", 40)
    store.record_conflict("award", exhausted=True)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        denied = await client.get("/api/v1/observability/prometheus")
        response = await client.get("/api/v1/observability/prometheus", headers={"X-API-Key": "prom-key"})

    assert denied.status_code == 401
    assert response.status_code == 200
    body = response.text
    assert 'agrimarket_loyalty_awards_total{outcome="awarded"} 1' in body
    assert 'agrimarket_loyalty_points_total{bucket="awarded"} 40' in body
    assert 'agrimarket_loyalty_write_conflicts_total{kind="exhausted",operation="award"} 1' in body
    assert "agrimarket_loyalty_catalog_version 1" in body
