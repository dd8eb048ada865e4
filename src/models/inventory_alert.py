"""Inventory alert model type definitions for database operations.

Alerts are raised by the stock-level check when a product's available
stock reaches its threshold, and stay open until resolved by an
administrator or by the stock recovering.

Expected table constraints:
    - ``alert_type`` CHECK IN ('low_stock', 'out_of_stock')
    - index on (product_id, is_resolved)
"""

from datetime import datetime
from enum import Enum
from typing import TypedDict
from uuid import UUID


class AlertType(str, Enum):
    """Why an alert was raised."""

    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


class InventoryAlert(TypedDict):
    """Inventory alerts table row representation."""

    id: UUID
    product_id: UUID
    alert_type: str
    current_stock: int
    threshold: int
    is_resolved: bool
    resolved_at: datetime | None
    created_at: datetime
