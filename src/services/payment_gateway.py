"""Payment gateway contract and its Stripe Checkout implementation.

The fulfillment flow needs three calls from a gateway: ``initialize`` to
obtain a redirect for a given amount, ``verify`` to read the gateway's own
record of a payment, and ``expire`` to stop a payment whose stock was given
back. Webhook bodies are never trusted on their own.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

import stripe

from src.api.middleware.error_handler import NotFoundError, PaymentGatewayError
from src.core.config import get_settings
from src.core.retry import TRANSIENT_GATEWAY_ERRORS, call_gateway_with_retry
from src.core.stripe import get_stripe

logger = logging.getLogger(__name__)

# Stripe rejects a Checkout Session expires_at less than 30 minutes out
STRIPE_MIN_SESSION_SECONDS = 1800
SESSION_EXPIRY_MARGIN_SECONDS = 60


class PaymentStatus(str, Enum):
    """Canonical payment outcome as reported by the gateway."""

    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


@dataclass
class PaymentInitialization:
    """Result of starting a payment."""

    redirect_url: str
    reference: str


@dataclass
class PaymentVerification:
    """The gateway's record of a payment."""

    status: PaymentStatus
    reference: str
    amount_cents: int | None
    currency: str | None
    order_id: str | None = None
    evidence: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """What the fulfillment coordinator needs from a payment provider."""

    async def initialize(
        self,
        reference: str,
        amount_cents: int,
        currency: str,
        order_id: UUID | str,
        customer_email: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
        expires_at: int | None = None,
    ) -> PaymentInitialization: ...

    async def verify(self, reference: str) -> PaymentVerification: ...

    async def expire(self, reference: str) -> bool: ...


class StripePaymentGateway:
    """Stripe Checkout Sessions behind the payment gateway contract.

    The session ID is the payment reference: it is returned by
    ``initialize`` and is what ``verify`` and webhooks correlate on.
    """

    def __init__(self, stripe_client: Any | None = None) -> None:
        """Initialize the gateway.

        Args:
            stripe_client: Optional Stripe module/mock for testing.
        """
        self.stripe = stripe_client or get_stripe()
        self.settings = get_settings()

    def _ensure_configured(self) -> None:
        if not self.settings.stripe_secret_key:
            raise PaymentGatewayError(
                "Stripe is not configured. Please set STRIPE_SECRET_KEY environment variable."
            )

    async def initialize(
        self,
        reference: str,
        amount_cents: int,
        currency: str,
        order_id: UUID | str,
        customer_email: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
        expires_at: int | None = None,
    ) -> PaymentInitialization:
        """Create a Stripe Checkout Session for an order total.

        The session is created with an idempotency key derived from the
        order ID, so a retry after a lost response returns the same session.

        Args:
            reference: Human-presentable order number.
            amount_cents: Amount to charge in minor units.
            currency: ISO currency code.
            order_id: The order's UUID (stored in session metadata).
            customer_email: Optional pre-fill email.
            success_url: Redirect after payment.
            cancel_url: Redirect if the customer abandons payment.
            expires_at: Unix time after which the session can no longer be
                paid. Raised to Stripe's 30 minute minimum if earlier.

        Returns:
            PaymentInitialization: Redirect URL and session ID.

        Raises:
            PaymentGatewayError: On a definitive Stripe failure or when
                network retries are exhausted.
        """
        self._ensure_configured()

        success = success_url or self.settings.checkout_success_url
        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": amount_cents,
                        "product_data": {"name": f"Order {reference}"},
                    },
                    "quantity": 1,
                }
            ],
            "client_reference_id": reference,
            "success_url": f"{success}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": cancel_url or self.settings.checkout_cancel_url,
            "metadata": {"order_id": str(order_id), "order_number": reference},
            "idempotency_key": f"checkout-init-{order_id}",
        }
        if customer_email:
            params["customer_email"] = customer_email
        if expires_at is not None:
            earliest = int(time.time()) + STRIPE_MIN_SESSION_SECONDS + SESSION_EXPIRY_MARGIN_SECONDS
            if expires_at < earliest:
                logger.warning("Session expiry for order %s raised to the Stripe minimum", order_id)
            params["expires_at"] = max(expires_at, earliest)

        try:
            session = await call_gateway_with_retry(
                lambda: self.stripe.checkout.Session.create(**params)
            )
        except TRANSIENT_GATEWAY_ERRORS as e:
            logger.error("Stripe unreachable while initializing order %s: %s", order_id, e)
            raise PaymentGatewayError("Payment gateway is unavailable, please try again") from e
        except stripe.StripeError as e:
            logger.error("Stripe error creating checkout session for order %s: %s", order_id, e)
            raise PaymentGatewayError(f"Payment initialization failed: {e.user_message or e}") from e

        logger.info("Created Stripe checkout session %s for order %s", session.id, order_id)
        return PaymentInitialization(redirect_url=session.url, reference=session.id)

    async def _retrieve_session(self, reference: str) -> Any:
        try:
            return await call_gateway_with_retry(
                lambda: self.stripe.checkout.Session.retrieve(reference)
            )
        except stripe.InvalidRequestError as e:
            logger.warning("Stripe has no checkout session %s: %s", reference, e)
            raise NotFoundError(f"Payment session {reference} not found") from e
        except (stripe.StripeError, asyncio.TimeoutError) as e:
            logger.error("Stripe error retrieving session %s: %s", reference, e)
            raise PaymentGatewayError("Payment verification could not be completed") from e

    async def verify(self, reference: str) -> PaymentVerification:
        """Read the canonical status of a Checkout Session.

        Args:
            reference: Stripe Checkout Session ID.

        Returns:
            PaymentVerification: Normalized status, amount and metadata.

        Raises:
            NotFoundError: If Stripe does not know the session.
            PaymentGatewayError: If the session cannot be retrieved.
        """
        self._ensure_configured()

        session = await self._retrieve_session(reference)

        if session.payment_status in ("paid", "no_payment_required"):
            status = PaymentStatus.SUCCESS
        elif session.status == "expired":
            status = PaymentStatus.FAILED
        else:
            status = PaymentStatus.PENDING

        metadata = session.metadata or {}
        return PaymentVerification(
            status=status,
            reference=session.id,
            amount_cents=session.amount_total,
            currency=session.currency,
            order_id=metadata.get("order_id"),
            evidence={
                "gateway": "stripe",
                "session_id": session.id,
                "payment_intent": session.payment_intent,
                "payment_status": session.payment_status,
                "amount_total": session.amount_total,
                "currency": session.currency,
            },
        )

    async def expire(self, reference: str) -> bool:
        """Expire an open Checkout Session so it can no longer be paid.

        Stripe only expires open sessions. When the call is refused the
        session is re-read to find out whether it already expired or was
        completed.

        Args:
            reference: Stripe Checkout Session ID.

        Returns:
            bool: True if the session is expired, False if it was already
                completed and cannot be expired.

        Raises:
            NotFoundError: If Stripe does not know the session.
            PaymentGatewayError: If Stripe cannot be reached or the session
                is in an unexpected state.
        """
        self._ensure_configured()

        try:
            session = await call_gateway_with_retry(
                lambda: self.stripe.checkout.Session.expire(reference)
            )
        except stripe.InvalidRequestError:
            session = await self._retrieve_session(reference)
        except (stripe.StripeError, asyncio.TimeoutError) as e:
            logger.error("Stripe error expiring session %s: %s", reference, e)
            raise PaymentGatewayError("Payment session could not be expired") from e

        if session.status == "expired":
            logger.info("Expired Stripe checkout session %s", reference)
            return True
        if session.status == "complete":
            logger.info("Stripe checkout session %s already completed, not expired", reference)
            return False
        raise PaymentGatewayError(f"Payment session {reference} is still {session.status}")

    def construct_webhook_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify Stripe webhook signature and return event.

        Args:
            payload: Raw webhook payload bytes.
            sig_header: Stripe-Signature header value.

        Returns:
            dict: Verified Stripe event.

        Raises:
            ValueError: If signature is invalid or Stripe not configured.
        """
        if not self.settings.stripe_webhook_secret:
            raise ValueError("Stripe webhook secret is not configured. Please set STRIPE_WEBHOOK_SECRET environment variable.")

        try:
            return self.stripe.Webhook.construct_event(
                payload, sig_header, self.settings.stripe_webhook_secret
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Invalid webhook signature: %s", str(e))
            raise ValueError("Invalid webhook signature") from e
