"""Webhook API routes for external service integrations."""

import logging

from fastapi import APIRouter, HTTPException, Request, status

from src.api.deps import Fulfillment
from src.api.middleware.error_handler import (
    ClaimExpiredError,
    NotAwaitingPaymentError,
    NotFoundError,
    PaymentVerificationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Checkout Session events that can change the outcome of a payment
HANDLED_EVENTS = frozenset(
    {
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
        "checkout.session.async_payment_failed",
        "checkout.session.expired",
    }
)


@router.post(
    "/stripe",
    status_code=status.HTTP_200_OK,
    summary="Handle Stripe webhooks",
    description="Receives and processes Stripe webhook events. Requires valid signature.",
)
async def stripe_webhook(request: Request, service: Fulfillment) -> dict[str, str]:
    """Handle Stripe webhook events.

    The event body is only used to find the Checkout Session; the payment
    outcome is always re-read from Stripe by ``confirm_payment``, so
    duplicate or out-of-order deliveries are harmless.

    Orders that cannot be completed automatically are flagged for
    reconciliation and acknowledged, so Stripe does not keep retrying them.
    Gateway outages propagate as 502 and are retried by Stripe.

    Args:
        request: FastAPI request object for reading raw body and headers.
        service: Fulfillment coordinator.

    Returns:
        dict: Acknowledgment message.

    Raises:
        HTTPException: 400 if the signature is missing or invalid.
    """
    payload = await request.body()

    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.error("Missing Stripe-Signature header in webhook request")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe-Signature header",
        )

    try:
        event = service.gateway.construct_webhook_event(payload, sig_header)
    except ValueError as e:
        logger.warning("Rejected webhook: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e

    event_type = event.get("type", "")
    if event_type not in HANDLED_EVENTS:
        logger.debug("Unhandled webhook event type: %s", event_type)
        return {"status": "received"}

    session_id = event["data"]["object"]["id"]
    logger.info("Processing Stripe webhook event %s for session %s", event_type, session_id)

    try:
        result = await service.confirm_payment(session_id)
    except NotFoundError:
        logger.warning("Webhook %s for unknown session %s ignored", event_type, session_id)
    except (ClaimExpiredError, NotAwaitingPaymentError, PaymentVerificationError) as e:
        logger.error("Session %s needs reconciliation: %s", session_id, e.message)
    else:
        logger.info(
            "Processed %s for order %s: %s%s",
            event_type,
            result.order["id"],
            result.payment_status.value,
            " (duplicate)" if result.already_processed else "",
        )

    return {"status": "received"}
