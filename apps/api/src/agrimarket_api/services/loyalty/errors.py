"""Loyalty engine error taxonomy.

Every business-rule failure carries a stable ``code`` and a ``details``
mapping so the HTTP boundary can render a structured response.
"""

from __future__ import annotations

from typing import Any


class LoyaltyError(Exception):
    code = "loyalty_error"
    status_code = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class LoyaltyNotFound(LoyaltyError):
    code = "not_found"
    status_code = 404


class InsufficientPoints(LoyaltyError):
    code = "insufficient_points"
    status_code = 409

    def __init__(self, *, shortfall: int, balance: int, required: int) -> None:
        super().__init__(
            f"{shortfall} more points needed",
            shortfall=shortfall,
            balance=balance,
            required=required,
        )
        self.shortfall = shortfall


class NotEligible(LoyaltyError):
    code = "not_eligible"
    status_code = 400


class AlreadyIssued(LoyaltyError):
    """Card already exists. Recoverable: the existing card travels with the error."""

    code = "already_issued"
    status_code = 409

    def __init__(self, card: Any) -> None:
        super().__init__("Loyalty card already issued")
        self.card = card

    def as_dict(self) -> dict[str, Any]:
        payload = super().as_dict()
        if hasattr(self.card, "as_dict"):
            payload["card"] = self.card.as_dict()
        return payload


class DuplicateOrder(LoyaltyError):
    """Raised inside the award transaction; never leaves the service."""

    code = "duplicate_order"
    status_code = 200


class InvalidInput(LoyaltyError):
    code = "invalid_input"
    status_code = 422


class RewardAlreadyUsed(LoyaltyError):
    code = "reward_already_used"
    status_code = 409


class InvalidCatalog(InvalidInput):
    code = "invalid_catalog"


class SessionRequired(LoyaltyError):
    code = "session_required"
    status_code = 401


class InvalidSession(LoyaltyError):
    code = "invalid_session"
    status_code = 400


class ConcurrencyConflict(LoyaltyError):
    """Write conflict persisted after the retry budget was spent."""

    code = "concurrency_conflict"
    status_code = 503


__all__ = [
    "AlreadyIssued",
    "ConcurrencyConflict",
    "DuplicateOrder",
    "InsufficientPoints",
    "InvalidCatalog",
    "InvalidInput",
    "InvalidSession",
    "LoyaltyError",
    "LoyaltyNotFound",
    "NotEligible",
    "RewardAlreadyUsed",
    "SessionRequired",
]
