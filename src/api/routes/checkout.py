"""Checkout and order API routes."""

import logging
from uuid import UUID

from fastapi import APIRouter, status

from src.api.deps import CurrentUser, Fulfillment
from src.schemas.checkout import (
    CheckoutCreate,
    CheckoutResponse,
    FulfilledUnit,
    FulfilledUnitsResponse,
    OrderListResponse,
    OrderResponse,
    PaymentConfirmationResponse,
    VerifyPaymentRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post(
    "",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start checkout",
    description="Claims units for every line, creates a pending order and starts payment.",
)
async def create_checkout(
    data: CheckoutCreate,
    user: CurrentUser,
    service: Fulfillment,
) -> CheckoutResponse:
    """Start a checkout for the authenticated user.

    Stock is held for the configured claim TTL. The frontend should
    redirect to the returned checkout_url.

    Raises:
        InsufficientStockError: 409 with one detail per short line.
        ValidationError: 422 if a product is missing or inactive.
        PaymentGatewayError: 502 if payment could not be started.
    """
    result = await service.checkout(
        user_id=user.user_id,
        items=[item.model_dump() for item in data.items],
        customer_email=data.customer_email or user.email,
        success_url=str(data.success_url) if data.success_url else None,
        cancel_url=str(data.cancel_url) if data.cancel_url else None,
    )
    return CheckoutResponse(
        order=OrderResponse(**result.order),
        checkout_url=result.redirect_url,
        payment_reference=result.payment_reference,
    )


@router.post(
    "/verify",
    response_model=PaymentConfirmationResponse,
    summary="Verify payment",
    description="Checks the payment with the gateway and completes the order if it succeeded.",
)
async def verify_payment(
    data: VerifyPaymentRequest,
    user: CurrentUser,
    service: Fulfillment,
) -> PaymentConfirmationResponse:
    """Client-initiated payment verification.

    Safe to call repeatedly; a second call for a paid order reports
    ``already_processed``. Only the order's owner may verify it.
    """
    result = await service.confirm_payment(data.reference, user_id=user.user_id)
    logger.info(
        "Payment %s verified by user %s: %s",
        data.reference,
        user.user_id,
        result.payment_status.value,
    )
    return PaymentConfirmationResponse(
        order=OrderResponse(**result.order),
        payment_status=result.payment_status.value,
        already_processed=result.already_processed,
        units_confirmed=result.units_confirmed,
    )


# Orders router - mounted separately at /orders
orders_router = APIRouter(prefix="/orders", tags=["orders"])


@orders_router.get(
    "",
    response_model=OrderListResponse,
    summary="List my orders",
    description="Returns all orders for the authenticated user.",
)
async def list_orders(user: CurrentUser, service: Fulfillment) -> OrderListResponse:
    """List all orders for the current user."""
    orders = await service.list_orders(user.user_id)
    return OrderListResponse(items=[OrderResponse(**order) for order in orders])


@orders_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order by ID",
    description="Returns a single order by ID. Only accessible by the order owner.",
)
async def get_order(order_id: UUID, user: CurrentUser, service: Fulfillment) -> OrderResponse:
    """Get a single order by ID.

    Raises:
        NotFoundError: 404 if order not found.
        AuthorizationError: 403 if not the owner.
    """
    order = await service.get_order(order_id, user_id=user.user_id)
    return OrderResponse(**order)


@orders_router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel order",
    description="Cancels a pending or awaiting-payment order and returns its units to the pool.",
)
async def cancel_order(order_id: UUID, user: CurrentUser, service: Fulfillment) -> OrderResponse:
    """Cancel one of the current user's open orders.

    Raises:
        NotCancellableError: 409 if the order is paid, failed or cancelled.
    """
    order = await service.cancel(order_id, user_id=user.user_id)
    return OrderResponse(**order)


@orders_router.get(
    "/{order_id}/units",
    response_model=FulfilledUnitsResponse,
    summary="Get purchased units",
    description="Returns the serial numbers and PINs sold to a paid order.",
)
async def get_order_units(
    order_id: UUID,
    user: CurrentUser,
    service: Fulfillment,
) -> FulfilledUnitsResponse:
    """Receipt export for a paid order."""
    units = await service.get_fulfilled_units(order_id, user_id=user.user_id)
    return FulfilledUnitsResponse(
        order_id=order_id,
        units=[FulfilledUnit(**unit) for unit in units],
    )
