from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    awards: Dict[str, int]
    points: Dict[str, int]
    redemptions: Dict[str, Dict[str, int]]
    cards: Dict[str, int]
    tier_changes: Dict[str, int]
    conflicts: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "awards": dict(self.awards),
            "points": dict(self.points),
            "redemptions": {key: dict(value) for key, value in self.redemptions.items()},
            "cards": dict(self.cards),
            "tier_changes": dict(self.tier_changes),
            "conflicts": dict(self.conflicts),
        }


class LoyaltyObservabilityStore:
    """Collect loyalty engine telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._awards: Dict[str, int] = defaultdict(int)
        self._points: Dict[str, int] = defaultdict(int)
        self._redemption_outcomes: Dict[str, int] = defaultdict(int)
        self._redemption_rewards: Dict[str, int] = defaultdict(int)
        self._cards: Dict[str, int] = defaultdict(int)
        self._tier_changes: Dict[str, int] = defaultdict(int)
        self._conflicts: Dict[str, int] = defaultdict(int)

    def record_award(self, outcome: str, points: int = 0) -> None:
        with self._lock:
            self._awards[outcome] += 1
            if points:
                self._points["awarded"] += points

    def record_redemption(self, outcome: str, reward_name: str | None = None, cost: int = 0) -> None:
        with self._lock:
            self._redemption_outcomes[outcome] += 1
            if reward_name:
                self._redemption_rewards[reward_name] += 1
            if cost:
                self._points["redeemed"] += cost

    def record_adjustment(self, points: int) -> None:
        with self._lock:
            key = "adjusted_up" if points > 0 else "adjusted_down"
            self._points[key] += abs(points)

    def record_card_event(self, event: str, card_type: str | None = None) -> None:
        with self._lock:
            self._cards[event] += 1
            if card_type:
                self._cards[f"type:{card_type}"] += 1

    def record_tier_change(self, from_tier: str, to_tier: str) -> None:
        with self._lock:
            self._tier_changes["total"] += 1
            self._tier_changes[f"{from_tier}->{to_tier}"] += 1

    def record_conflict(self, operation: str, *, exhausted: bool = False) -> None:
        with self._lock:
            self._conflicts[f"retry:{operation}"] += 1
            if exhausted:
                self._conflicts[f"exhausted:{operation}"] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                awards=dict(self._awards),
                points=dict(self._points),
                redemptions={
                    "by_outcome": dict(self._redemption_outcomes),
                    "by_reward": dict(self._redemption_rewards),
                },
                cards=dict(self._cards),
                tier_changes=dict(self._tier_changes),
                conflicts=dict(self._conflicts),
            )

    def reset(self) -> None:
        with self._lock:
            self._awards.clear()
            self._points.clear()
            self._redemption_outcomes.clear()
            self._redemption_rewards.clear()
            self._cards.clear()
            self._tier_changes.clear()
            self._conflicts.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
