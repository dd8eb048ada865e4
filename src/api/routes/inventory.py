"""Inventory administration routes.

All endpoints require the administrator role.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, status

from src.api.deps import AdminUser, Fulfillment, StockMonitor, UnitPool
from src.api.middleware.error_handler import NotFoundError
from src.schemas.checkout import OrderResponse
from src.schemas.inventory import (
    AlertListResponse,
    InventoryAlertResponse,
    ReconciliationListResponse,
    RestockRequest,
    RestockResponse,
    StockCheckResponse,
    StockLevelResponse,
    StockOverviewResponse,
    StockSummaryResponse,
    SweepResponse,
    ThresholdUpdateRequest,
    ThresholdUpdateResponse,
    UnitResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inventory", tags=["inventory"])


@router.post(
    "/{product_id}/units",
    response_model=RestockResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Restock units",
    description="Adds serial/secret pairs to a product's pool as available units.",
)
async def restock_units(
    product_id: UUID,
    data: RestockRequest,
    admin: AdminUser,
    unit_pool: UnitPool,
    service: Fulfillment,
    monitor: StockMonitor,
) -> RestockResponse:
    """Add units to a product's pool.

    Raises:
        NotFoundError: 404 if the product does not exist.
        ValidationError: 422 on duplicate serial numbers.
    """
    if not await service.catalog.get_product(product_id):
        raise NotFoundError("Product not found")

    created = await unit_pool.add_units(product_id, [unit.model_dump() for unit in data.units])
    logger.info("Admin %s added %d units to product %s", admin.user_id, len(created), product_id)
    await monitor.check_stock_levels()
    return RestockResponse(
        product_id=product_id,
        added=len(created),
        units=[UnitResponse(**unit) for unit in created],
    )


@router.get(
    "/overview",
    response_model=StockOverviewResponse,
    summary="Stock overview",
    description="Returns available stock, threshold and low/out-of-stock flags for every product.",
)
async def get_stock_overview(admin: AdminUser, monitor: StockMonitor) -> StockOverviewResponse:
    """Get stock levels across the catalog."""
    overview = await monitor.stock_overview()
    return StockOverviewResponse(
        items=[StockLevelResponse(**item) for item in overview["items"]],
        total_products=overview["total_products"],
        low_stock_count=overview["low_stock_count"],
        out_of_stock_count=overview["out_of_stock_count"],
    )


@router.get(
    "/alerts",
    response_model=AlertListResponse,
    summary="Inventory alerts",
    description="Lists open inventory alerts, or all alerts with include_resolved=true.",
)
async def list_alerts(
    admin: AdminUser,
    monitor: StockMonitor,
    include_resolved: bool = False,
) -> AlertListResponse:
    """List inventory alerts, newest first."""
    alerts = await monitor.list_alerts(include_resolved=include_resolved)
    return AlertListResponse(items=[InventoryAlertResponse(**alert) for alert in alerts])


@router.patch(
    "/alerts/{alert_id}/resolve",
    response_model=InventoryAlertResponse,
    summary="Resolve alert",
    description="Closes an inventory alert.",
)
async def resolve_alert(alert_id: UUID, admin: AdminUser, monitor: StockMonitor) -> InventoryAlertResponse:
    """Resolve an inventory alert.

    Raises:
        NotFoundError: 404 if the alert does not exist.
    """
    alert = await monitor.resolve_alert(alert_id)
    logger.info("Admin %s resolved inventory alert %s", admin.user_id, alert_id)
    return InventoryAlertResponse(**alert)


@router.post(
    "/check-stock",
    response_model=StockCheckResponse,
    summary="Check stock levels",
    description="Runs the stock-level check now and returns the alerts it raised.",
)
async def check_stock(admin: AdminUser, monitor: StockMonitor) -> StockCheckResponse:
    """Run one stock-level check."""
    created = await monitor.check_stock_levels()
    return StockCheckResponse(alerts_created=[InventoryAlertResponse(**alert) for alert in created])


@router.get(
    "/reconciliation",
    response_model=ReconciliationListResponse,
    summary="Orders needing reconciliation",
    description="Lists orders whose payment and allocation disagree.",
)
async def list_reconciliation(admin: AdminUser, service: Fulfillment) -> ReconciliationListResponse:
    """List orders flagged for manual reconciliation."""
    orders = await service.ledger.list_needing_reconciliation()
    return ReconciliationListResponse(items=[OrderResponse(**order) for order in orders])


@router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Run expiry sweep",
    description="Releases lapsed claims now instead of waiting for the background sweeper.",
)
async def run_sweep(admin: AdminUser, service: Fulfillment) -> SweepResponse:
    """Run one expiry sweep."""
    result = await service.sweep_expired()
    return SweepResponse(
        released_units=result.released_units,
        failed_orders=result.failed_orders,
    )


@router.post(
    "/units/{unit_id}/reverse",
    response_model=UnitResponse,
    summary="Reverse a sale",
    description="Returns a sold unit to the available pool.",
)
async def reverse_sale(unit_id: UUID, admin: AdminUser, service: Fulfillment) -> UnitResponse:
    """Administrative reversal of a sold unit.

    Raises:
        NotFoundError: 404 if no sold unit has this ID.
    """
    unit = await service.allocator.reverse_sale(unit_id)
    logger.warning("Admin %s reversed sale of unit %s", admin.user_id, unit_id)
    return UnitResponse(**unit)


@router.patch(
    "/{product_id}/threshold",
    response_model=ThresholdUpdateResponse,
    summary="Set low stock threshold",
    description="Sets the product's low stock threshold and rechecks stock levels.",
)
async def update_threshold(
    product_id: UUID,
    data: ThresholdUpdateRequest,
    admin: AdminUser,
    monitor: StockMonitor,
) -> ThresholdUpdateResponse:
    """Set a product's low stock threshold.

    Raises:
        NotFoundError: 404 if the product does not exist.
    """
    product = await monitor.set_low_stock_threshold(product_id, data.low_stock_threshold)
    created = await monitor.check_stock_levels()
    logger.info(
        "Admin %s set low stock threshold of product %s to %s",
        admin.user_id,
        product_id,
        data.low_stock_threshold,
    )
    return ThresholdUpdateResponse(
        product_id=product["id"],
        name=product.get("name", ""),
        low_stock_threshold=product.get("low_stock_threshold"),
        alerts_created=len(created),
    )


@router.get(
    "/{product_id}",
    response_model=StockSummaryResponse,
    summary="Stock summary",
    description="Returns derived available, claimed and sold counts for a product.",
)
async def get_stock_summary(
    product_id: UUID,
    admin: AdminUser,
    unit_pool: UnitPool,
) -> StockSummaryResponse:
    """Get a product's stock counts."""
    summary = await unit_pool.stock_summary(product_id)
    return StockSummaryResponse(**summary)
