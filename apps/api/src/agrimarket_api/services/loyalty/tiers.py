"""Tier classification over an ordered list of tier definitions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from .catalog import TierDefinition


@dataclass(frozen=True)
class TierProgress:
    current: "TierDefinition"
    next_tier: "TierDefinition | None"
    points_to_next: int
    progress_percentage: int


def classify(points: int, tiers: Sequence["TierDefinition"]) -> "TierDefinition":
    """Return the highest tier whose threshold does not exceed ``points``.

    ``tiers`` must be ordered by ascending threshold with the first at zero.
    Negative balances fall back to the floor tier.
    """

    selected = tiers[0]
    for tier in tiers:
        if points >= tier.point_threshold:
            selected = tier
        else:
            break
    return selected


def progress(points: int, tiers: Sequence["TierDefinition"]) -> TierProgress:
    current = classify(points, tiers)
    index = tiers.index(current)
    upcoming = tiers[index + 1] if index + 1 < len(tiers) else None
    if upcoming is None:
        return TierProgress(current=current, next_tier=None, points_to_next=0, progress_percentage=100)

    span = upcoming.point_threshold - current.point_threshold
    earned = max(points - current.point_threshold, 0)
    percentage = min(100, (earned * 100) // span) if span > 0 else 100
    return TierProgress(
        current=current,
        next_tier=upcoming,
        points_to_next=upcoming.point_threshold - points,
        progress_percentage=percentage,
    )
