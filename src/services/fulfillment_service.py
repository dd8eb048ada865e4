"""Fulfillment coordinator: checkout, payment confirmation and cancellation.

The coordinator is the only place that decides between a compensating
release and a terminal failure. Stock taken during a checkout is held in a
scope that releases it on every exit that does not reach a payment handle.
"""

import logging
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator
from uuid import UUID, uuid4

from src.api.middleware.error_handler import (
    AlreadyPaidError,
    AuthorizationError,
    ClaimExpiredError,
    InsufficientStockError,
    NotAwaitingPaymentError,
    NotCancellableError,
    NotFoundError,
    PaymentGatewayError,
    PaymentVerificationError,
    ValidationError,
)
from src.core.config import get_settings
from src.models.order import OPEN_STATUSES, Order, OrderStatus
from src.models.product import StockMode
from src.models.unit import UnitState
from src.services.allocator import Allocator, utcnow
from src.services.catalog_service import CatalogService
from src.services.order_ledger import OrderLedger
from src.services.payment_gateway import (
    PaymentGateway,
    PaymentStatus,
    StripePaymentGateway,
)
from src.services.unit_pool_service import UnitPoolService

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    """Outcome of a successful checkout."""

    order: Order
    redirect_url: str
    payment_reference: str


@dataclass
class ConfirmationResult:
    """Outcome of processing a payment confirmation."""

    order: Order
    payment_status: PaymentStatus
    already_processed: bool = False
    units_confirmed: int = 0


@dataclass
class SweepResult:
    """Outcome of one expiry sweep."""

    released_units: int = 0
    failed_orders: list[str] = field(default_factory=list)


@dataclass
class _HeldStock:
    """Stock taken so far by one checkout attempt."""

    order_id: str
    units_claimed: int = 0
    counters: list[tuple[str, int]] = field(default_factory=list)
    order_created: bool = False


class FulfillmentService:
    """Orchestrates claim -> order -> payment -> confirm/cancel."""

    def __init__(
        self,
        allocator: Allocator | None = None,
        ledger: OrderLedger | None = None,
        unit_pool: UnitPoolService | None = None,
        catalog: CatalogService | None = None,
        gateway: PaymentGateway | None = None,
    ):
        """Initialize fulfillment service.

        Args:
            allocator: Optional allocator for testing.
            ledger: Optional order ledger for testing.
            unit_pool: Optional unit pool service for testing.
            catalog: Optional catalog adapter for testing.
            gateway: Optional payment gateway for testing.
        """
        self.settings = get_settings()
        self.allocator = allocator or Allocator()
        self.ledger = ledger or OrderLedger()
        self.unit_pool = unit_pool or UnitPoolService()
        self.catalog = catalog or CatalogService()
        self._gateway = gateway

    @property
    def gateway(self) -> PaymentGateway:
        """Get payment gateway."""
        if self._gateway is None:
            self._gateway = StripePaymentGateway()
        return self._gateway

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def checkout(
        self,
        user_id: UUID | str,
        items: list[dict[str, Any]],
        customer_email: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutResult:
        """Claim stock, create the order and start payment.

        Args:
            user_id: The purchasing user.
            items: Candidate lines with ``product_id`` and ``quantity``;
                any client-supplied price is ignored.
            customer_email: Optional receipt email.
            success_url: Optional redirect after payment.
            cancel_url: Optional redirect on abandonment.

        Returns:
            CheckoutResult: The awaiting-payment order and redirect.

        Raises:
            ValidationError: On empty, non-positive or inactive lines.
            InsufficientStockError: With every short line.
            PaymentGatewayError: If payment could not be started.
        """
        lines = await self._validate_items(items)
        order_id = str(uuid4())
        # Claims taken below expire no earlier than this, so the session never outlives them
        payment_deadline = utcnow() + timedelta(seconds=self.settings.claim_ttl_seconds)

        async with self._hold_stock(order_id) as held:
            await self._claim_lines(lines, held)

            order = await self.ledger.create(
                user_id=user_id,
                items=lines,
                order_id=order_id,
                customer_email=customer_email,
            )
            held.order_created = True

            payment = await self.gateway.initialize(
                reference=order["order_number"],
                amount_cents=order["total_cents"],
                currency=order["currency"],
                order_id=order_id,
                customer_email=customer_email,
                success_url=success_url,
                cancel_url=cancel_url,
                expires_at=int(payment_deadline.timestamp()),
            )
            order = await self.ledger.mark_awaiting_payment(order_id, payment.reference)

        return CheckoutResult(
            order=order,
            redirect_url=payment.redirect_url,
            payment_reference=payment.reference,
        )

    async def _validate_items(self, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Merge duplicate lines and price them from the catalog."""
        if not items:
            raise ValidationError("Order items are required")

        quantities: dict[str, int] = {}
        for item in items:
            quantity = int(item.get("quantity", 0))
            if quantity <= 0:
                raise ValidationError(
                    "Quantity must be greater than zero",
                    details=[{"loc": ["items", str(item.get("product_id"))], "msg": "quantity must be > 0", "type": "value_error"}],
                )
            product_id = str(item["product_id"])
            quantities[product_id] = quantities.get(product_id, 0) + quantity

        lines = []
        for product_id, quantity in quantities.items():
            product = await self.catalog.get_active_product(product_id)
            if not product:
                raise ValidationError(
                    f"Product {product_id} not found or inactive",
                    details=[{"loc": ["items", product_id], "msg": "product not found or inactive", "type": "inactive_product"}],
                )
            lines.append(
                {
                    "product_id": product_id,
                    "product_name": product.get("name", ""),
                    "stock_mode": product.get("stock_mode") or StockMode.UNIT_POOL.value,
                    "quantity": quantity,
                    "unit_price_cents": int(product["price_cents"]),
                }
            )
        return lines

    async def _claim_lines(self, lines: list[dict[str, Any]], held: _HeldStock) -> None:
        """Take stock for every line, or raise with every shortfall.

        After the first shortfall the remaining lines are only counted, not
        claimed, so a doomed checkout does not hold more stock.
        """
        shortfalls: list[dict[str, Any]] = []
        for line in lines:
            product_id = line["product_id"]
            quantity = line["quantity"]

            if shortfalls:
                if line["stock_mode"] == StockMode.UNIT_POOL.value:
                    available = await self.unit_pool.count_available(product_id)
                else:
                    product = await self.catalog.get_product(product_id)
                    available = (product or {}).get("stock_quantity") or 0
                if available < quantity:
                    shortfalls.append(
                        {
                            "product_id": product_id,
                            "requested": quantity,
                            "available": available,
                            "shortfall": quantity - available,
                        }
                    )
                continue

            try:
                if line["stock_mode"] == StockMode.UNIT_POOL.value:
                    units = await self.allocator.claim(
                        product_id,
                        quantity,
                        held.order_id,
                        ttl_seconds=self.settings.claim_ttl_seconds,
                    )
                    held.units_claimed += len(units)
                else:
                    await self.allocator.decrement_counter(product_id, quantity)
                    held.counters.append((product_id, quantity))
            except InsufficientStockError as e:
                shortfalls.extend(e.shortfalls)

        if shortfalls:
            raise InsufficientStockError(shortfalls)

    @asynccontextmanager
    async def _hold_stock(self, order_id: str) -> AsyncIterator[_HeldStock]:
        """Scope for stock taken by a checkout; releases it on any failure."""
        held = _HeldStock(order_id=order_id)
        try:
            yield held
        except BaseException as exc:
            logger.warning(
                "Checkout for order %s aborted (%s), releasing held stock",
                order_id,
                type(exc).__name__,
            )
            await self._release_held(held, reason=f"checkout aborted: {exc}")
            raise

    async def _release_held(self, held: _HeldStock, reason: str) -> None:
        """Undo everything a failed checkout took. Errors are logged, not raised."""
        try:
            await self.allocator.release(held.order_id)
        except Exception:
            logger.exception("Failed to release claimed units for order %s", held.order_id)

        for product_id, quantity in held.counters:
            try:
                await self.allocator.increment_counter(product_id, quantity)
            except Exception:
                logger.exception(
                    "Failed to restore %d counter stock for product %s (order %s)",
                    quantity,
                    product_id,
                    held.order_id,
                )

        if held.order_created:
            try:
                await self.ledger.mark_failed(held.order_id, reason)
            except Exception:
                logger.exception("Failed to mark order %s as failed", held.order_id)

    # ------------------------------------------------------------------
    # Payment confirmation
    # ------------------------------------------------------------------

    async def confirm_payment(self, reference: str, user_id: UUID | str | None = None) -> ConfirmationResult:
        """Process a payment confirmation for a gateway reference.

        Used for both webhooks and client-initiated verification. The
        gateway is always asked for its own record first; repeated
        deliveries of the same success are no-ops.

        Args:
            reference: Payment reference issued at initialization.
            user_id: If given, the order must belong to this user. Checked
                before anything is read from the gateway or changed.

        Returns:
            ConfirmationResult: The order and what this call did.

        Raises:
            NotFoundError: If no order matches the reference.
            AuthorizationError: If the order belongs to someone else.
            PaymentVerificationError: If the gateway amount does not match.
            NotAwaitingPaymentError: If a closed order was paid.
            ClaimExpiredError: If the order was paid but its units are gone.
        """
        order = await self.ledger.get_by_payment_reference(reference)
        if order:
            self._check_owner(order, user_id)

        verification = await self.gateway.verify(reference)

        if not order and verification.order_id:
            order = await self.ledger.get(verification.order_id)
            if order:
                self._check_owner(order, user_id)
        if not order:
            logger.warning("No order found for payment reference %s", reference)
            raise NotFoundError("Order not found for payment reference")

        order_id = order["id"]

        if verification.status == PaymentStatus.PENDING:
            logger.info("Payment %s for order %s still pending", reference, order_id)
            return ConfirmationResult(order=order, payment_status=PaymentStatus.PENDING)

        if verification.status == PaymentStatus.FAILED:
            failed = await self.fail_order(order_id, "payment failed at gateway", expire_payment=False)
            return ConfirmationResult(
                order=failed or order,
                payment_status=PaymentStatus.FAILED,
                already_processed=failed is None,
            )

        if verification.amount_cents != order["total_cents"] or (
            verification.currency and verification.currency.lower() != order["currency"].lower()
        ):
            reason = (
                f"gateway amount {verification.amount_cents} {verification.currency} "
                f"does not match order total {order['total_cents']} {order['currency']}"
            )
            await self.ledger.flag_for_reconciliation(order_id, reason)
            raise PaymentVerificationError("Payment amount does not match order total")

        try:
            order = await self.ledger.mark_paid(order_id, verification.evidence)
        except AlreadyPaidError:
            logger.info("Duplicate confirmation for order %s ignored", order_id)
            current = await self.ledger.get(order_id)
            return ConfirmationResult(
                order=current or order,
                payment_status=PaymentStatus.SUCCESS,
                already_processed=True,
            )
        except NotAwaitingPaymentError as e:
            await self.ledger.flag_for_reconciliation(
                order_id, f"payment succeeded for order in status {e.current_status}"
            )
            raise

        units_confirmed = await self._confirm_units(order)
        return ConfirmationResult(
            order=order,
            payment_status=PaymentStatus.SUCCESS,
            units_confirmed=units_confirmed,
        )

    async def _confirm_units(self, order: Order) -> int:
        """Turn a paid order's claims into sales and check the counts."""
        order_id = order["id"]
        required = Counter()
        for line in order["items"]:
            if line["stock_mode"] == StockMode.UNIT_POOL.value:
                required[str(line["product_id"])] += line["quantity"]
        if not required:
            return 0

        try:
            confirmed = await self.allocator.confirm(order_id)
        except ClaimExpiredError:
            await self.ledger.flag_for_reconciliation(
                order_id, "payment confirmed but claimed units had been released"
            )
            raise

        sold = await self.unit_pool.get_units_by_order(order_id, state=UnitState.SOLD)
        bound = Counter(str(unit["product_id"]) for unit in sold)
        short = {pid: qty - bound[pid] for pid, qty in required.items() if bound[pid] < qty}
        if short:
            reason = "payment confirmed but units are missing: " + ", ".join(
                f"{pid} short {n}" for pid, n in sorted(short.items())
            )
            await self.ledger.flag_for_reconciliation(order_id, reason)
            raise ClaimExpiredError(order_id, "Some claimed units expired before payment was confirmed")

        return confirmed

    # ------------------------------------------------------------------
    # Cancellation and failure
    # ------------------------------------------------------------------

    async def _get_owned_order(self, order_id: UUID | str, user_id: UUID | str | None) -> Order:
        order = await self.ledger.get(order_id)
        if not order:
            raise NotFoundError("Order not found")
        self._check_owner(order, user_id)
        return order

    @staticmethod
    def _check_owner(order: Order, user_id: UUID | str | None) -> None:
        if user_id is not None and str(order["user_id"]) != str(user_id):
            logger.warning("User %s denied access to order %s", user_id, order["id"])
            raise AuthorizationError("Not authorized to access this order")

    async def _restore_counters(self, order: Order) -> None:
        for line in order["items"]:
            if line["stock_mode"] == StockMode.COUNTER.value:
                await self.allocator.increment_counter(line["product_id"], line["quantity"])

    async def _expire_payment(self, order: Order) -> bool:
        """Stop the order's payment session. False if it was already paid."""
        reference = order.get("payment_reference")
        if not reference:
            return True
        try:
            return await self.gateway.expire(reference)
        except NotFoundError:
            logger.warning("Payment session %s for order %s no longer exists", reference, order["id"])
            return True

    async def cancel(self, order_id: UUID | str, user_id: UUID | str | None = None) -> Order:
        """Cancel an open order and return its stock.

        The payment session is expired first, so a cancelled order can no
        longer be paid.

        Args:
            order_id: The order's UUID.
            user_id: If given, the order must belong to this user.

        Returns:
            Order: The cancelled order.

        Raises:
            NotFoundError: If the order does not exist.
            AuthorizationError: If the order belongs to someone else.
            NotCancellableError: If the order is no longer open or was
                already paid at the gateway.
            PaymentGatewayError: If the payment session could not be expired.
        """
        order = await self._get_owned_order(order_id, user_id)
        if order["status"] not in OPEN_STATUSES:
            raise NotCancellableError(order_id, order["status"])

        if not await self._expire_payment(order):
            raise NotCancellableError(order_id, "paid at gateway")

        await self.allocator.release(order_id)
        cancelled = await self.ledger.mark_cancelled(order_id)
        await self._restore_counters(cancelled)
        return cancelled

    async def fail_order(
        self,
        order_id: UUID | str,
        reason: str,
        expire_payment: bool = True,
    ) -> Order | None:
        """Release an order's stock and mark it failed if still open.

        The payment session is expired on a best-effort basis; an order
        whose session already completed is left for its confirmation.

        Returns:
            Order | None: The failed order, or None if it had already closed.
        """
        if expire_payment:
            order = await self.ledger.get(order_id)
            if order and order["status"] in OPEN_STATUSES:
                try:
                    if not await self._expire_payment(order):
                        logger.warning("Order %s was paid at the gateway, not failing it (%s)", order_id, reason)
                        return None
                except PaymentGatewayError:
                    logger.exception("Could not expire payment session for order %s", order_id)

        await self.allocator.release(order_id)
        failed = await self.ledger.mark_failed(order_id, reason)
        if failed:
            await self._restore_counters(failed)
        return failed

    async def _expire_released_payment(self, order_id: UUID | str) -> None:
        """Expire the session of an order whose units were already released."""
        order = await self.ledger.get(order_id)
        if not order or order["status"] not in OPEN_STATUSES:
            return
        try:
            if not await self._expire_payment(order):
                # Confirmation will find the claims gone and flag the order
                logger.warning("Order %s was paid at the gateway after its claims expired", order_id)
        except PaymentGatewayError:
            logger.exception("Could not expire payment session for order %s", order_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: UUID | str, user_id: UUID | str | None = None) -> Order:
        """Get an order, optionally enforcing ownership."""
        return await self._get_owned_order(order_id, user_id)

    async def list_orders(self, user_id: UUID | str) -> list[Order]:
        """List a user's orders, newest first."""
        return await self.ledger.list_for_user(user_id)

    async def get_fulfilled_units(
        self,
        order_id: UUID | str,
        user_id: UUID | str | None = None,
    ) -> list[dict[str, Any]]:
        """Export the serial/secret pairs sold to a paid order.

        Raises:
            ValidationError: If the order is not paid.
        """
        order = await self._get_owned_order(order_id, user_id)
        if order["status"] != OrderStatus.PAID.value:
            raise ValidationError("Units are only available for paid orders")

        sold = await self.unit_pool.get_units_by_order(order_id, state=UnitState.SOLD)
        return [
            {
                "product_id": str(unit["product_id"]),
                "serial_number": unit["serial_number"],
                "secret": unit.get("secret"),
            }
            for unit in sold
        ]

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def sweep_expired(self, now: datetime | None = None) -> SweepResult:
        """Release lapsed claims and fail the orders that held them.

        Also fails open orders older than the claim TTL that hold no
        expirable units (counter-only orders).

        Args:
            now: Reference time; defaults to the current UTC time.

        Returns:
            SweepResult: Units released and orders failed.
        """
        now = now or utcnow()
        result = SweepResult()

        released = await self.allocator.release_expired(now)
        result.released_units = sum(released.values())
        for order_id in released:
            await self._expire_released_payment(order_id)
            failed = await self.ledger.mark_failed(order_id, "claim expired")
            if failed:
                await self._restore_counters(failed)
                result.failed_orders.append(str(order_id))

        cutoff = now - timedelta(seconds=self.settings.claim_ttl_seconds)
        for order in await self.ledger.list_stale(cutoff):
            failed = await self.fail_order(order["id"], "checkout expired")
            if failed:
                result.failed_orders.append(str(order["id"]))

        if result.released_units or result.failed_orders:
            logger.info(
                "Expiry sweep: released %d units, failed %d orders",
                result.released_units,
                len(result.failed_orders),
            )
        return result
