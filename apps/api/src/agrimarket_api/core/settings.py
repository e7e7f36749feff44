from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./agrimarket.db"
    database_echo: bool = False
    log_level: str = "INFO"
    tracing_console_export: bool = False

    # Internal API security
    # An empty key disables the check (local development only).
    admin_api_key: str = ""
    internal_api_key: str = ""

    # Loyalty engine
    loyalty_max_write_retries: int = Field(default=3, ge=1)
    loyalty_purchase_count_threshold: int = Field(default=5, ge=1)
    loyalty_total_spent_threshold: float = Field(default=5000.0, gt=0)
    loyalty_card_validity_days: int = Field(default=365, ge=1)
    loyalty_seed_catalog_on_startup: bool = True
    # Comma separated order statuses counted by the one-time account backfill.
    loyalty_backfill_order_statuses: str = "completed"

    @property
    def backfill_order_statuses(self) -> list[str]:
        return [item.strip().lower() for item in self.loyalty_backfill_order_statuses.split(",") if item.strip()]

    @property
    def allows_test_points(self) -> bool:
        return self.environment != "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
