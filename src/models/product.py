"""Product model type definitions for database operations."""

from enum import Enum
from typing import TypedDict
from uuid import UUID


class StockMode(str, Enum):
    """How a product's stock is tracked.

    Unit-pool products sell individually identified units through the
    allocator. Counter-backed products only carry a quantity.
    """

    UNIT_POOL = "unit_pool"
    COUNTER = "counter"


class Product(TypedDict):
    """Product table row representation.

    A null ``low_stock_threshold`` falls back to the configured default.
    """

    id: UUID
    name: str
    price_cents: int
    active: bool
    stock_mode: str
    stock_quantity: int
    low_stock_threshold: int | None
