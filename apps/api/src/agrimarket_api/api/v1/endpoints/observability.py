"""Observability endpoints for loyalty telemetry and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from agrimarket_api.api.dependencies.security import require_admin_api_key
from agrimarket_api.observability.loyalty import get_loyalty_store
from agrimarket_api.services.loyalty import get_catalog_registry


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/loyalty",
    dependencies=[Depends(require_admin_api_key)],
    summary="Loyalty engine telemetry snapshot",
)
async def get_loyalty_metrics() -> dict[str, object]:
    snapshot = get_loyalty_store().snapshot().as_dict()
    snapshot["catalog_version"] = get_catalog_registry().current().version
    return snapshot


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    dependencies=[Depends(require_admin_api_key)],
    summary="Prometheus-formatted observability metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_loyalty_store().snapshot().as_dict()
    lines: list[str] = []

    for outcome, value in snapshot["awards"].items():
        lines.extend(
            _format_metric(
                "agrimarket_loyalty_awards_total",
                "Purchase award calls grouped by outcome",
                value,
                labels={"outcome": outcome},
            )
        )

    for bucket, value in snapshot["points"].items():
        lines.extend(
            _format_metric(
                "agrimarket_loyalty_points_total",
                "Loyalty points moved grouped by direction",
                value,
                labels={"bucket": bucket},
            )
        )

    for outcome, value in snapshot["redemptions"].get("by_outcome", {}).items():
        lines.extend(
            _format_metric(
                "agrimarket_loyalty_redemptions_total",
                "Reward redemptions grouped by outcome",
                value,
                labels={"outcome": outcome},
            )
        )

    for reward, value in snapshot["redemptions"].get("by_reward", {}).items():
        lines.extend(
            _format_metric(
                "agrimarket_loyalty_redemptions_by_reward_total",
                "Reward redemption attempts grouped by reward",
                value,
                labels={"reward": reward},
            )
        )

    for event, value in snapshot["cards"].items():
        lines.extend(
            _format_metric(
                "agrimarket_loyalty_card_events_total",
                "Loyalty card lifecycle events",
                value,
                labels={"event": event},
            )
        )

    lines.extend(
        _format_metric(
            "agrimarket_loyalty_tier_changes_total",
            "Tier reclassifications applied to accounts",
            snapshot["tier_changes"].get("total", 0),
        )
    )

    for key, value in snapshot["conflicts"].items():
        kind, _, operation = key.partition(":")
        lines.extend(
            _format_metric(
                "agrimarket_loyalty_write_conflicts_total",
                "Optimistic concurrency conflicts on loyalty accounts",
                value,
                labels={"kind": kind, "operation": operation},
            )
        )

    lines.extend(
        _format_metric(
            "agrimarket_loyalty_catalog_version",
            "Currently published loyalty catalog version",
            get_catalog_registry().current().version,
        )
    )

    return PlainTextResponse("\n".join(lines) + "\n")
