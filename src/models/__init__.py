"""Database model type definitions."""

from src.models.inventory_alert import AlertType, InventoryAlert
from src.models.order import OPEN_STATUSES, Order, OrderCreate, OrderLineItem, OrderStatus
from src.models.product import Product, StockMode
from src.models.unit import RELEASED_FIELDS, Unit, UnitCreate, UnitState

__all__ = [
    "AlertType",
    "InventoryAlert",
    "OPEN_STATUSES",
    "Order",
    "OrderCreate",
    "OrderLineItem",
    "OrderStatus",
    "Product",
    "RELEASED_FIELDS",
    "StockMode",
    "Unit",
    "UnitCreate",
    "UnitState",
]
