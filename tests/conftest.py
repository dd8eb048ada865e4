"""Pytest configuration and fixtures."""

import os
from collections.abc import Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from tests.tokens import TEST_SIGNING_KEY_JWK

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ["SUPABASE_SIGNING_KEY_JWK"] = TEST_SIGNING_KEY_JWK
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_stripe_secret_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_webhook_secret")
os.environ.setdefault("EXPIRY_SWEEP_INTERVAL_SECONDS", "3600")

from tests.fakes import FakeSupabase  # noqa: E402


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    # Clear the cache to ensure fresh settings
    get_settings.cache_clear()

    settings = get_settings()
    yield settings

    # Clean up cache after tests
    get_settings.cache_clear()


@pytest.fixture
def fake_db() -> FakeSupabase:
    """Provide an empty in-memory Supabase."""
    return FakeSupabase()


@pytest.fixture
def mock_gateway() -> MagicMock:
    """Provide a payment gateway whose calls are all mocked."""
    from src.services.payment_gateway import PaymentInitialization

    gateway = MagicMock()
    gateway.initialize = AsyncMock(
        side_effect=lambda **kwargs: PaymentInitialization(
            redirect_url=f"https://checkout.stripe.com/c/pay/cs_{kwargs['order_id']}",
            reference=f"cs_{kwargs['order_id']}",
        )
    )
    gateway.verify = AsyncMock()
    gateway.expire = AsyncMock(return_value=True)
    return gateway


@pytest.fixture
def fulfillment(fake_db: FakeSupabase, mock_gateway: MagicMock) -> Any:
    """Provide a FulfillmentService wired to the in-memory store."""
    from src.services.allocator import Allocator
    from src.services.catalog_service import CatalogService
    from src.services.fulfillment_service import FulfillmentService
    from src.services.order_ledger import OrderLedger
    from src.services.unit_pool_service import UnitPoolService

    return FulfillmentService(
        allocator=Allocator(supabase_client=fake_db),
        ledger=OrderLedger(supabase_client=fake_db),
        unit_pool=UnitPoolService(supabase_client=fake_db),
        catalog=CatalogService(supabase_client=fake_db),
        gateway=mock_gateway,
    )


@pytest.fixture
def mock_supabase_client() -> Generator[MagicMock, None, None]:
    """Provide a mocked Supabase client.

    Yields:
        MagicMock: Mocked Supabase client for testing.
    """
    mock_client = MagicMock()

    # Configure default mock responses
    mock_response = MagicMock()
    mock_response.data = []
    mock_client.table.return_value.select.return_value.limit.return_value.execute.return_value = (
        mock_response
    )

    with patch("src.core.supabase.get_supabase_client", return_value=mock_client):
        yield mock_client


@pytest.fixture
def client(
    mock_supabase_client: MagicMock,
    fake_db: FakeSupabase,
    fulfillment: Any,
) -> Generator[TestClient, None, None]:
    """Provide a test client whose services run on the in-memory store.

    Args:
        mock_supabase_client: Mocked Supabase client fixture.
        fake_db: In-memory Supabase fixture.
        fulfillment: Fulfillment service fixture.

    Yields:
        TestClient: FastAPI test client.
    """
    from src.api.deps import get_fulfillment_service, get_stock_monitor_service, get_unit_pool_service
    from src.main import app
    from src.services.stock_monitor_service import StockMonitorService
    from src.services.unit_pool_service import UnitPoolService

    app.dependency_overrides[get_fulfillment_service] = lambda: fulfillment
    app.dependency_overrides[get_unit_pool_service] = lambda: UnitPoolService(supabase_client=fake_db)
    app.dependency_overrides[get_stock_monitor_service] = lambda: StockMonitorService(supabase_client=fake_db)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
