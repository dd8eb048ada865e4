"""Unit tests for configuration module."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from src.core.config import Settings, get_settings

REQUIRED_ENV = {
    "SUPABASE_URL": "https://test.supabase.co",
    "SUPABASE_SECRET_KEY": "test-secret",
}


class TestSettings:
    """Tests for Settings class."""

    def test_settings_loads_from_environment(self) -> None:
        """Test that Settings loads values from environment variables."""
        env_vars = {
            **REQUIRED_ENV,
            "APP_NAME": "test-app",
            "APP_ENV": "testing",
            "DEBUG": "true",
            "PORT": "9000",
            "CURRENCY": "usd",
            "CLAIM_TTL_SECONDS": "3600",
            "EXPIRY_SWEEP_INTERVAL_SECONDS": "30",
        }

        with patch.dict(os.environ, env_vars, clear=False):
            settings = Settings()

            assert settings.app_name == "test-app"
            assert settings.app_env == "testing"
            assert settings.debug is True
            assert settings.port == 9000
            assert settings.currency == "usd"
            assert settings.claim_ttl_seconds == 3600
            assert settings.expiry_sweep_interval_seconds == 30

    def test_allocation_defaults(self) -> None:
        """Allocation settings have sensible defaults."""
        with patch.dict(os.environ, REQUIRED_ENV, clear=True):
            settings = Settings(_env_file=None)

            assert settings.claim_ttl_seconds == 2400
            assert settings.claim_max_rounds == 50
            assert settings.storage_retry_attempts == 3
            assert settings.gateway_retry_attempts == 3
            assert settings.currency == "ghs"

    def test_checkout_urls_derived_from_frontend(self) -> None:
        """Redirect URLs default to paths under the frontend URL."""
        env_vars = {**REQUIRED_ENV, "FRONTEND_URL": "https://shop.example.com/"}

        with patch.dict(os.environ, env_vars, clear=True):
            settings = Settings(_env_file=None)

            assert settings.checkout_success_url == "https://shop.example.com/checkout/success"
            assert settings.checkout_cancel_url == "https://shop.example.com/checkout/cancel"

    def test_explicit_checkout_urls_kept(self) -> None:
        """Explicit redirect URLs are not overwritten."""
        env_vars = {**REQUIRED_ENV, "CHECKOUT_SUCCESS_URL": "https://pay.example.com/done"}

        with patch.dict(os.environ, env_vars, clear=True):
            settings = Settings(_env_file=None)

            assert settings.checkout_success_url == "https://pay.example.com/done"

    def test_settings_cors_origins_list(self) -> None:
        """Test that CORS origins are correctly parsed into a list."""
        env_vars = {
            **REQUIRED_ENV,
            "CORS_ORIGINS": "http://localhost:3000, http://example.com , http://test.com",
        }

        with patch.dict(os.environ, env_vars, clear=False):
            origins = Settings().cors_origins_list

            assert origins == ["http://localhost:3000", "http://example.com", "http://test.com"]

    def test_stripe_test_mode(self) -> None:
        """Test keys are detected."""
        with patch.dict(os.environ, {**REQUIRED_ENV, "STRIPE_SECRET_KEY": "sk_test_abc"}, clear=False):
            assert Settings().is_stripe_test_mode is True

    def test_settings_requires_supabase(self) -> None:
        """Supabase credentials are required."""
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_rejects_non_positive_ttl(self) -> None:
        """Claim TTL must be positive."""
        with patch.dict(os.environ, {**REQUIRED_ENV, "CLAIM_TTL_SECONDS": "0"}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_rejects_ttl_shorter_than_checkout_session(self) -> None:
        """Claims may not expire before the shortest Stripe session lifetime."""
        with patch.dict(os.environ, {**REQUIRED_ENV, "CLAIM_TTL_SECONDS": "900"}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)


class TestGetSettings:
    """Tests for the cached accessor."""

    def test_get_settings_is_cached(self, test_settings: Settings) -> None:
        """Repeated calls return the same instance."""
        assert get_settings() is get_settings()
