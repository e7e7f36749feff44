"""Loyalty service exports."""

from .admin import BulkOutcome, BulkReport, CustomerSummary, LoyaltyAdminService, LoyaltyStats  # noqa: F401
from .catalog import (  # noqa: F401
    CatalogRegistry,
    LoyaltyCatalog,
    RewardDefinition,
    TierDefinition,
    build_catalog,
    default_catalog,
    get_catalog_registry,
)
from .loyalty_service import (  # noqa: F401
    AwardResult,
    DiscountQuote,
    LedgerAudit,
    LoyaltyCard,
    LoyaltyService,
    LoyaltyStatus,
    RedemptionResult,
    RewardPreview,
    UsableReward,
    decode_sequence_cursor,
    encode_sequence_cursor,
)
