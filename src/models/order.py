"""Order model type definitions for database operations."""

from datetime import datetime
from enum import Enum
from typing import Any, TypedDict
from uuid import UUID


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    CANCELLED = "cancelled"
    FAILED = "failed"


# States from which an order can still be paid, cancelled or failed
OPEN_STATUSES: tuple[str, ...] = (
    OrderStatus.PENDING.value,
    OrderStatus.AWAITING_PAYMENT.value,
)


class OrderLineItem(TypedDict):
    """Structure for a single line item in an order.

    Stored as part of the items JSONB array. Prices are in minor units.
    """

    product_id: str
    product_name: str
    stock_mode: str
    quantity: int
    unit_price_cents: int
    line_total_cents: int


class Order(TypedDict):
    """Order table row representation.

    Represents an order stored in the orders table.
    Maps directly to the database schema.
    """

    id: UUID
    order_number: str
    user_id: UUID
    customer_email: str | None
    items: list[OrderLineItem]
    total_cents: int
    currency: str
    status: str
    payment_reference: str | None
    payment_evidence: dict[str, Any] | None
    failure_reason: str | None
    needs_reconciliation: bool
    created_at: datetime
    paid_at: datetime | None
    cancelled_at: datetime | None
    failed_at: datetime | None


class OrderCreate(TypedDict, total=False):
    """Data required to create a new order."""

    id: str
    order_number: str
    user_id: str
    customer_email: str | None
    items: list[OrderLineItem]
    total_cents: int
    currency: str
    status: str
    needs_reconciliation: bool
    created_at: str
