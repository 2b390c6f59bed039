"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (StripeConfig, BillingConfig, CatalogConfig) are
env-overridable via the double-underscore delimiter, e.g.:
    STRIPE__MAX_ATTEMPTS=8
    BILLING__USAGE_RECORD_INTERVAL_SECONDS=30
    CATALOG__CACHE_PATH=./billing/cache/stripe_plans.json
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StripeConfig(BaseModel):
    """Stripe credentials and remote call retry policy."""

    secret_key: str = ""
    publishable_key: str = ""
    # Extra attempts after the first call when Stripe answers 429
    max_attempts: int = 5
    initial_backoff_ms: int = 10


class BillingConfig(BaseModel):
    """Subscription and usage policy."""

    # Prefix of every metadata key planbill writes to Stripe objects
    metadata_prefix: str = "planbill"
    usage_record_interval_seconds: float = 10.0
    max_line_item_count: int = 1000
    # Currency used for charging and for upgrade/downgrade decisions
    policy_currency: str = "usd"
    # Restrict plan lookups to one account type (None = whole catalog)
    account_type: str | None = None


class CatalogConfig(BaseModel):
    """Locations of catalog definitions and the synchronized cache."""

    plans_path: str = "./billing/plans.json"
    line_items_path: str = "./billing/line_items.json"
    cache_path: str = "./billing/cache/stripe_plans.json"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Stripe keys, as written in deploy .env files
    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""

    # Name of the cache entry to serve (one per deploy target)
    environment: str = "development"

    # Shared secret required by the HTTP API
    api_key: str = ""

    debug: bool = False

    stripe: StripeConfig = Field(default_factory=StripeConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)

    def stripe_config(self) -> StripeConfig:
        """Stripe config with top-level keys taking precedence over nested ones."""
        return self.stripe.model_copy(
            update={
                "secret_key": self.stripe_secret_key or self.stripe.secret_key,
                "publishable_key": self.stripe_publishable_key or self.stripe.publishable_key,
            }
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
