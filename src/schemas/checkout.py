"""Checkout and order Pydantic schemas for API request/response models."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, HttpUrl


class CheckoutItem(BaseModel):
    """A candidate line from the cart.

    Prices are never accepted from the client; they are re-read from the
    catalog at checkout.
    """

    model_config = ConfigDict(from_attributes=True)

    product_id: UUID = Field(description="Product UUID")
    quantity: int = Field(gt=0, le=1000, description="Number of units requested")


class CheckoutCreate(BaseModel):
    """Schema for starting a checkout via POST /checkout."""

    model_config = ConfigDict(from_attributes=True)

    items: list[CheckoutItem] = Field(min_length=1, description="Lines to purchase")
    customer_email: str | None = Field(default=None, description="Email for the receipt")
    success_url: HttpUrl | None = Field(default=None, description="URL to redirect after successful payment")
    cancel_url: HttpUrl | None = Field(default=None, description="URL to redirect if payment is abandoned")


class OrderLineItemSchema(BaseModel):
    """Schema for a single line item in an order."""

    model_config = ConfigDict(from_attributes=True)

    product_id: str = Field(description="Product UUID")
    product_name: str = Field(default="", description="Product name at checkout time")
    stock_mode: str = Field(description="unit_pool or counter")
    quantity: int = Field(ge=1, description="Quantity ordered")
    unit_price_cents: int = Field(ge=0, description="Unit price in minor units")
    line_total_cents: int = Field(ge=0, description="quantity x unit price")


class OrderResponse(BaseModel):
    """Schema for order API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Order unique identifier")
    order_number: str = Field(description="Human-presentable order number")
    user_id: UUID = Field(description="Owner of the order")
    status: str = Field(description="Order status")
    items: list[OrderLineItemSchema] = Field(description="Order line items")
    total_cents: int = Field(description="Total amount in minor units")
    currency: str = Field(description="Currency code")
    customer_email: str | None = Field(default=None, description="Customer email")
    payment_reference: str | None = Field(default=None, description="Gateway payment reference")
    failure_reason: str | None = Field(default=None, description="Why the order failed, if it did")
    needs_reconciliation: bool = Field(default=False, description="Payment and allocation disagree")
    created_at: datetime = Field(description="Creation timestamp")
    paid_at: datetime | None = Field(default=None, description="Payment timestamp")
    cancelled_at: datetime | None = Field(default=None, description="Cancellation timestamp")
    failed_at: datetime | None = Field(default=None, description="Failure timestamp")


class OrderListResponse(BaseModel):
    """Schema for order list API responses."""

    model_config = ConfigDict(from_attributes=True)

    items: list[OrderResponse] = Field(description="List of orders")


class CheckoutResponse(BaseModel):
    """Schema for checkout creation response."""

    model_config = ConfigDict(from_attributes=True)

    order: OrderResponse = Field(description="The order awaiting payment")
    checkout_url: str = Field(description="Gateway URL to redirect the customer to")
    payment_reference: str = Field(description="Reference to verify the payment with")


class VerifyPaymentRequest(BaseModel):
    """Schema for client-initiated payment verification."""

    model_config = ConfigDict(from_attributes=True)

    reference: str = Field(min_length=1, description="Payment reference returned at checkout")


class PaymentConfirmationResponse(BaseModel):
    """Schema for payment verification results."""

    model_config = ConfigDict(from_attributes=True)

    order: OrderResponse = Field(description="The order after processing")
    payment_status: str = Field(description="success, failed or pending")
    already_processed: bool = Field(default=False, description="True if an earlier confirmation won")
    units_confirmed: int = Field(default=0, description="Units moved to sold by this call")


class FulfilledUnit(BaseModel):
    """A sold unit's deliverable data."""

    model_config = ConfigDict(from_attributes=True)

    product_id: str = Field(description="Product UUID")
    serial_number: str = Field(description="Unit serial number")
    secret: str | None = Field(default=None, description="Unit PIN or secret payload")


class FulfilledUnitsResponse(BaseModel):
    """Schema for the receipt export of a paid order."""

    model_config = ConfigDict(from_attributes=True)

    order_id: UUID = Field(description="Order UUID")
    units: list[FulfilledUnit] = Field(description="Units sold to the order")
