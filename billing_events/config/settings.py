"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Inbound webhooks
    webhook_secret: str = Field(..., description="Shared secret for inbound webhook HMAC")
    webhook_tolerance_seconds: int = Field(
        default=300, description="Maximum allowed clock skew for webhook timestamps"
    )

    # Payment processor
    processor_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    processor_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    redis_lock_timeout: int = Field(default=30, description="Distributed lock TTL (seconds)")
    lock_acquire_timeout_ms: int = Field(
        default=2000, description="How long to wait for a distributed lock (milliseconds)"
    )

    # Application Configuration
    app_name: str = Field(default="billing-events", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    # Billing cycle
    billing_cycle_interval_seconds: int = Field(
        default=900, description="How often the billing scheduler runs"
    )
    scheduler_batch_size: int = Field(default=500, description="Subscriptions per scheduler pass")
    incomplete_expiry_hours: int = Field(
        default=23, description="Hours before an incomplete subscription expires"
    )
    dunning_retry_days: List[int] = Field(
        default=[3, 5, 7], description="Days after the first failure to retry payment"
    )
    dunning_retry_timeout_hours: int = Field(
        default=24, description="Hours to wait for the outcome of the last payment retry"
    )
    dunning_grace_period_days: int = Field(
        default=14, description="Days an unpaid subscription is kept before the final action"
    )
    dunning_final_action: str = Field(
        default="canceled", description="Final dunning action (canceled/revoked)"
    )

    # Ledger and payouts
    platform_account_id: str = Field(default="platform", description="Ledger account for fees")
    payout_minimum_amount: int = Field(default=1000, description="Minimum payout in cents")
    payout_transfer_fee_rates: Dict[str, Decimal] = Field(
        default={"US": Decimal("0")},
        description="Per-country transfer fee rate",
    )
    payout_default_transfer_fee_rate: Decimal = Field(
        default=Decimal("0.0025"), description="Transfer fee rate for unlisted countries"
    )
    payout_fee_rate: Decimal = Field(default=Decimal("0.0025"), description="Payout fee rate")
    payout_fee_flat: int = Field(default=25, description="Flat payout fee in cents")
    payout_settlement_delay_hours: int = Field(
        default=24, description="Delay between transfer and payout trigger"
    )
    payout_stuck_after_hours: int = Field(
        default=168, description="In-transit payouts older than this are reported"
    )

    # Outbound delivery
    delivery_timeout_seconds: float = Field(
        default=30.0, description="Response-time window for outbound webhook deliveries"
    )
    delivery_batch_size: int = Field(default=100, description="Deliveries per worker pass")
    delivery_poll_interval_seconds: float = Field(
        default=5.0, description="Delivery worker polling interval"
    )

    # Crash recovery
    event_replay_after_seconds: int = Field(
        default=300, description="Stored inbound events older than this are replayed"
    )
    event_replay_interval_seconds: float = Field(
        default=60.0, description="Event replayer polling interval"
    )
    event_max_replay_age_hours: int = Field(
        default=72, description="Inbound events still failing after this long are abandoned"
    )

    # Workers
    payout_worker_interval_seconds: float = Field(
        default=300.0, description="How often pending transfers and due payouts are processed"
    )
    reconciliation_interval_seconds: float = Field(
        default=3600.0, description="How often ledger reconciliation runs"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("processor_secret_key")
    @classmethod
    def validate_processor_key(cls, v: str) -> str:
        """Validate that the Stripe secret key has a known prefix."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("dunning_final_action")
    @classmethod
    def validate_final_action(cls, v: str) -> str:
        if v not in ("canceled", "revoked"):
            raise ValueError("dunning_final_action must be 'canceled' or 'revoked'")
        return v

    @field_validator("dunning_retry_days")
    @classmethod
    def validate_retry_days(cls, v: List[int]) -> List[int]:
        if not v or any(day <= 0 for day in v) or sorted(v) != v:
            raise ValueError("dunning_retry_days must be positive and ascending")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def transfer_fee_rate(self, country: str) -> Decimal:
        """Transfer fee rate for a payee account's country."""
        return self.payout_transfer_fee_rates.get(
            country.upper(), self.payout_default_transfer_fee_rate
        )

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.processor_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
