"""Stock levels across the catalog and the inventory alerts they raise.

Alerts are persisted in ``inventory_alerts``. A product has at most one
open alert per type; an open alert is resolved automatically once its
condition stops holding, or by an administrator.
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from supabase import Client

from src.api.middleware.error_handler import NotFoundError, ValidationError
from src.core.config import get_settings
from src.core.retry import execute_with_retry
from src.core.supabase import get_supabase_client
from src.models.inventory_alert import AlertType, InventoryAlert
from src.models.product import Product, StockMode
from src.services.catalog_service import CatalogService
from src.services.unit_pool_service import UnitPoolService, low_stock_threshold_for

logger = logging.getLogger(__name__)


class StockMonitorService:
    """Stock overview, per-product thresholds and inventory alerts."""

    def __init__(
        self,
        supabase_client: Client | None = None,
        unit_pool: UnitPoolService | None = None,
        catalog: CatalogService | None = None,
    ):
        """Initialize stock monitor service.

        Args:
            supabase_client: Optional Supabase client for testing.
            unit_pool: Optional unit pool service for testing.
            catalog: Optional catalog adapter for testing.
        """
        self._supabase_client = supabase_client
        self.settings = get_settings()
        self.unit_pool = unit_pool or UnitPoolService(supabase_client=supabase_client)
        self.catalog = catalog or CatalogService(supabase_client=supabase_client)

    @property
    def supabase(self) -> Client:
        """Get Supabase client."""
        if self._supabase_client is None:
            self._supabase_client = get_supabase_client()
        return self._supabase_client

    def _alerts(self) -> Any:
        return self.supabase.table("inventory_alerts")

    async def stock_level(self, product: Product) -> dict[str, Any]:
        """Available stock for one product, with its threshold and flags.

        Unit-pool products count available units; counter-backed products
        report their ``stock_quantity``.
        """
        if product.get("stock_mode") == StockMode.COUNTER.value:
            available = int(product.get("stock_quantity") or 0)
        else:
            available = await self.unit_pool.count_available(product["id"])

        threshold = low_stock_threshold_for(product, self.settings.low_stock_threshold)
        return {
            "product_id": str(product["id"]),
            "name": product.get("name", ""),
            "stock_mode": product.get("stock_mode") or StockMode.UNIT_POOL.value,
            "active": bool(product.get("active", False)),
            "available": available,
            "low_stock_threshold": threshold,
            "is_low_stock": available <= threshold,
            "is_out_of_stock": available == 0,
        }

    async def stock_overview(self) -> dict[str, Any]:
        """Stock levels for every product in the catalog.

        Returns:
            dict: ``items`` per product plus ``low_stock_count`` and
                ``out_of_stock_count`` over active products.
        """
        items = [await self.stock_level(product) for product in await self.catalog.list_products()]
        active = [item for item in items if item["active"]]
        return {
            "items": items,
            "total_products": len(items),
            "low_stock_count": sum(1 for item in active if item["is_low_stock"]),
            "out_of_stock_count": sum(1 for item in active if item["is_out_of_stock"]),
        }

    async def set_low_stock_threshold(self, product_id: UUID | str, threshold: int | None) -> Product:
        """Set a product's low stock threshold.

        Args:
            product_id: The product's UUID.
            threshold: New threshold, or None to use the configured default.

        Returns:
            Product: The updated product.

        Raises:
            ValidationError: If the threshold is negative.
            NotFoundError: If the product does not exist.
        """
        if threshold is not None and threshold < 0:
            raise ValidationError("Low stock threshold cannot be negative")

        response = execute_with_retry(
            self.supabase.table("products")
            .update({"low_stock_threshold": threshold})
            .eq("id", str(product_id))
        )
        if not response.data:
            raise NotFoundError("Product not found")

        logger.info("Low stock threshold for product %s set to %s", product_id, threshold)
        product = await self.catalog.get_product(product_id)
        return product or response.data[0]

    async def list_alerts(
        self,
        include_resolved: bool = False,
        product_id: UUID | str | None = None,
    ) -> list[InventoryAlert]:
        """List inventory alerts, newest first."""
        query = self._alerts().select("*")
        if not include_resolved:
            query = query.eq("is_resolved", False)
        if product_id is not None:
            query = query.eq("product_id", str(product_id))
        response = execute_with_retry(query.order("created_at", desc=True))
        return response.data or []

    async def resolve_alert(self, alert_id: UUID | str) -> InventoryAlert:
        """Mark an alert resolved. Resolving twice is a no-op.

        Raises:
            NotFoundError: If the alert does not exist.
        """
        response = execute_with_retry(
            self._alerts()
            .update({"is_resolved": True, "resolved_at": datetime.now(timezone.utc).isoformat()})
            .eq("id", str(alert_id))
            .eq("is_resolved", False)
        )
        if response.data:
            logger.info("Inventory alert %s resolved", alert_id)
            return response.data[0]

        existing = execute_with_retry(self._alerts().select("*").eq("id", str(alert_id)).limit(1))
        if not existing.data:
            raise NotFoundError("Alert not found")
        return existing.data[0]

    async def check_stock_levels(self) -> list[InventoryAlert]:
        """Raise alerts for active products at or below their threshold.

        Out of stock takes precedence over low stock. Open alerts whose
        condition no longer holds are resolved.

        Returns:
            list[InventoryAlert]: Alerts created by this check.
        """
        created: list[InventoryAlert] = []
        for product in await self.catalog.list_products(active_only=True):
            level = await self.stock_level(product)
            holds = {
                AlertType.OUT_OF_STOCK.value: level["is_out_of_stock"],
                AlertType.LOW_STOCK.value: level["is_low_stock"],
            }
            open_types = set()
            for alert in await self.list_alerts(product_id=product["id"]):
                if holds.get(alert["alert_type"]):
                    open_types.add(alert["alert_type"])
                else:
                    await self.resolve_alert(alert["id"])

            if level["is_out_of_stock"]:
                alert_type = AlertType.OUT_OF_STOCK
            elif level["is_low_stock"]:
                alert_type = AlertType.LOW_STOCK
            else:
                continue
            if alert_type.value in open_types:
                continue

            response = execute_with_retry(
                self._alerts().insert(
                    {
                        "product_id": str(product["id"]),
                        "alert_type": alert_type.value,
                        "current_stock": level["available"],
                        "threshold": 0 if alert_type == AlertType.OUT_OF_STOCK else level["low_stock_threshold"],
                        "is_resolved": False,
                    }
                )
            )
            alert = response.data[0]
            logger.warning(
                "Inventory alert for %s (%s): %s, %d available",
                product.get("name"),
                product["id"],
                alert_type.value,
                level["available"],
            )
            created.append(alert)
        return created
