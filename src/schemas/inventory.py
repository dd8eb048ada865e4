"""Inventory administration schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from src.schemas.checkout import OrderResponse


class UnitInput(BaseModel):
    """A serial/secret pair to add to the pool."""

    model_config = ConfigDict(from_attributes=True)

    serial_number: str = Field(min_length=1, max_length=128, description="Globally unique serial number")
    secret: str | None = Field(default=None, max_length=512, description="PIN or secret payload")


class RestockRequest(BaseModel):
    """Schema for adding units via POST /inventory/{product_id}/units."""

    model_config = ConfigDict(from_attributes=True)

    units: list[UnitInput] = Field(min_length=1, max_length=5000, description="Units to add")


class UnitResponse(BaseModel):
    """Schema for a unit, without its secret."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Unit UUID")
    product_id: UUID = Field(description="Product UUID")
    serial_number: str = Field(description="Serial number")
    state: str = Field(description="available, claimed or sold")
    order_id: UUID | None = Field(default=None, description="Owning order when claimed or sold")
    claimed_at: datetime | None = Field(default=None, description="Claim timestamp")
    sold_at: datetime | None = Field(default=None, description="Sale timestamp")
    expires_at: datetime | None = Field(default=None, description="Claim expiry")


class RestockResponse(BaseModel):
    """Schema for restock results."""

    model_config = ConfigDict(from_attributes=True)

    product_id: UUID = Field(description="Product UUID")
    added: int = Field(description="Number of units added")
    units: list[UnitResponse] = Field(description="The created units")


class StockSummaryResponse(BaseModel):
    """Schema for a product's derived stock counts."""

    model_config = ConfigDict(from_attributes=True)

    product_id: UUID = Field(description="Product UUID")
    available: int = Field(description="Units available to claim")
    claimed: int = Field(description="Units held by open checkouts")
    sold: int = Field(description="Units sold")
    total: int = Field(description="All units ever added")
    low_stock_threshold: int = Field(description="Threshold for the low stock flag")
    is_low_stock: bool = Field(description="available <= threshold")
    is_out_of_stock: bool = Field(description="available == 0")


class SweepResponse(BaseModel):
    """Schema for a manual expiry sweep."""

    model_config = ConfigDict(from_attributes=True)

    released_units: int = Field(description="Claimed units returned to the pool")
    failed_orders: list[str] = Field(description="Orders marked failed")


class ReconciliationListResponse(BaseModel):
    """Schema for orders needing manual reconciliation."""

    model_config = ConfigDict(from_attributes=True)

    items: list[OrderResponse] = Field(description="Flagged orders")


class ThresholdUpdateRequest(BaseModel):
    """Schema for PATCH /inventory/{product_id}/threshold."""

    model_config = ConfigDict(from_attributes=True)

    low_stock_threshold: int | None = Field(
        ge=0,
        description="Available count at or below which the product is low on stock; null for the default",
    )


class ThresholdUpdateResponse(BaseModel):
    """Schema for a threshold change."""

    model_config = ConfigDict(from_attributes=True)

    product_id: UUID = Field(description="Product UUID")
    name: str = Field(description="Product name")
    low_stock_threshold: int | None = Field(description="Stored threshold; null means the default applies")
    alerts_created: int = Field(description="Alerts raised by the stock check that followed")


class StockLevelResponse(BaseModel):
    """Schema for one product in the stock overview."""

    model_config = ConfigDict(from_attributes=True)

    product_id: UUID = Field(description="Product UUID")
    name: str = Field(description="Product name")
    stock_mode: str = Field(description="unit_pool or counter")
    active: bool = Field(description="Whether the product is on sale")
    available: int = Field(description="Units or counter stock available")
    low_stock_threshold: int = Field(description="Threshold in effect")
    is_low_stock: bool = Field(description="available <= threshold")
    is_out_of_stock: bool = Field(description="available == 0")


class StockOverviewResponse(BaseModel):
    """Schema for GET /inventory/overview."""

    model_config = ConfigDict(from_attributes=True)

    items: list[StockLevelResponse] = Field(description="Stock level per product")
    total_products: int = Field(description="Number of products")
    low_stock_count: int = Field(description="Active products at or below their threshold")
    out_of_stock_count: int = Field(description="Active products with nothing available")


class InventoryAlertResponse(BaseModel):
    """Schema for an inventory alert."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Alert UUID")
    product_id: UUID = Field(description="Product UUID")
    alert_type: str = Field(description="low_stock or out_of_stock")
    current_stock: int = Field(description="Available stock when the alert was raised")
    threshold: int = Field(description="Threshold the stock was compared against")
    is_resolved: bool = Field(description="Whether the alert is closed")
    resolved_at: datetime | None = Field(default=None, description="When the alert was closed")
    created_at: datetime | None = Field(default=None, description="When the alert was raised")


class AlertListResponse(BaseModel):
    """Schema for a list of inventory alerts."""

    model_config = ConfigDict(from_attributes=True)

    items: list[InventoryAlertResponse] = Field(description="Alerts, newest first")


class StockCheckResponse(BaseModel):
    """Schema for a manual stock-level check."""

    model_config = ConfigDict(from_attributes=True)

    alerts_created: list[InventoryAlertResponse] = Field(description="Alerts raised by this check")
