"""Application configuration management using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Required settings will raise validation errors if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="pinvault-backend", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )

    # Supabase
    supabase_url: str = Field(..., description="Supabase project URL")
    supabase_secret_key: str = Field(..., description="Supabase secret key for backend operations")
    supabase_signing_key_jwk: str = Field(default="", description="Supabase signing key JWK (JSON string) for JWT token verification")
    admin_role: str = Field(default="admin", description="JWT role allowed to use inventory admin routes")

    # Stripe
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    gateway_retry_attempts: int = Field(default=3, ge=1, description="Attempts for gateway calls on network errors")
    gateway_timeout_seconds: int = Field(default=15, ge=1, description="Timeout applied to each gateway request")

    # Checkout
    currency: str = Field(default="ghs", description="ISO currency code used for all orders")
    frontend_url: str = Field(default="http://localhost:3000", description="Frontend application URL")
    checkout_success_url: str | None = Field(default=None, description="Redirect after successful payment")
    checkout_cancel_url: str | None = Field(default=None, description="Redirect after abandoned payment")

    # Allocation
    claim_ttl_seconds: int = Field(
        default=2400,
        ge=1800,
        description="How long a checkout may hold claimed units; Stripe sessions cannot expire sooner than 30 minutes",
    )
    claim_max_rounds: int = Field(default=50, ge=1, description="Upper bound on candidate rounds in one claim")
    claim_candidate_batch: int = Field(default=10, ge=0, description="Extra candidates fetched per claim round")
    storage_retry_attempts: int = Field(default=3, ge=1, description="Attempts for storage calls on transport errors")

    # Expiry sweep
    expiry_sweep_interval_seconds: int = Field(default=60, ge=1, description="Seconds between expiry sweeps")
    expiry_sweep_batch_size: int = Field(default=200, ge=1, description="Max expired units handled per sweep")

    # Inventory
    low_stock_threshold: int = Field(default=10, ge=0, description="Available count at or below which stock is low")

    @model_validator(mode="after")
    def set_checkout_url_defaults(self) -> "Settings":
        """Derive checkout redirect URLs from the frontend URL when unset."""
        base = self.frontend_url.rstrip("/")
        if not self.checkout_success_url:
            self.checkout_success_url = f"{base}/checkout/success"
        if not self.checkout_cancel_url:
            self.checkout_cancel_url = f"{base}/checkout/cancel"
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_stripe_test_mode(self) -> bool:
        """Check if using Stripe test keys."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
