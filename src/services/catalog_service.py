"""Read-only catalog adapter used at checkout and in stock reporting."""

import logging
from uuid import UUID

from supabase import Client

from src.core.retry import execute_with_retry
from src.core.supabase import get_supabase_client
from src.models.product import Product

logger = logging.getLogger(__name__)

PRODUCT_COLUMNS = "id, name, price_cents, active, stock_mode, stock_quantity, low_stock_threshold"


class CatalogService:
    """Looks up authoritative product prices and availability."""

    def __init__(self, supabase_client: Client | None = None):
        """Initialize catalog service.

        Args:
            supabase_client: Optional Supabase client for testing.
        """
        self._supabase_client = supabase_client

    @property
    def supabase(self) -> Client:
        """Get Supabase client."""
        if self._supabase_client is None:
            self._supabase_client = get_supabase_client()
        return self._supabase_client

    async def get_product(self, product_id: UUID | str) -> Product | None:
        """Get a product by ID, active or not."""
        response = execute_with_retry(
            self.supabase.table("products")
            .select(PRODUCT_COLUMNS)
            .eq("id", str(product_id))
            .limit(1)
        )
        return response.data[0] if response.data else None

    async def get_active_product(self, product_id: UUID | str) -> Product | None:
        """Get a product only if it is active.

        Args:
            product_id: The product's UUID.

        Returns:
            Product | None: The product, or None if missing or inactive.
        """
        product = await self.get_product(product_id)
        if not product or not product.get("active", False):
            return None
        return product

    async def list_products(self, active_only: bool = False) -> list[Product]:
        """List products ordered by name."""
        query = self.supabase.table("products").select(PRODUCT_COLUMNS)
        if active_only:
            query = query.eq("active", True)
        response = execute_with_retry(query.order("name"))
        return response.data or []
