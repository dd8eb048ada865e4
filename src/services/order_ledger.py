"""Order ledger: durable orders and their status transitions.

Every status change is a conditional update filtered on the statuses it may
start from, so two concurrent writers cannot both move the same order.
"""

import logging
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from supabase import Client

from src.api.middleware.error_handler import (
    AlreadyPaidError,
    NotAwaitingPaymentError,
    NotCancellableError,
    NotFoundError,
    ValidationError,
)
from src.core.config import get_settings
from src.core.retry import execute_with_retry
from src.core.supabase import get_supabase_client
from src.models.order import OPEN_STATUSES, Order, OrderLineItem, OrderStatus

logger = logging.getLogger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    """Generate a human-presentable order number, e.g. ``ORD-1718000000000-K3J9X0QPL``."""
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def build_line_items(items: list[dict[str, Any]]) -> tuple[list[OrderLineItem], int]:
    """Compute line totals and the order total from priced items.

    Args:
        items: Dicts with product_id, product_name, stock_mode, quantity
            and unit_price_cents.

    Returns:
        tuple: (line items, total in cents)
    """
    lines: list[OrderLineItem] = []
    for item in items:
        quantity = int(item["quantity"])
        unit_price = int(item["unit_price_cents"])
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than zero")
        if unit_price < 0:
            raise ValidationError("Unit price must not be negative")
        lines.append(
            {
                "product_id": str(item["product_id"]),
                "product_name": item.get("product_name", ""),
                "stock_mode": item["stock_mode"],
                "quantity": quantity,
                "unit_price_cents": unit_price,
                "line_total_cents": quantity * unit_price,
            }
        )
    return lines, sum(line["line_total_cents"] for line in lines)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderLedger:
    """Service for order records and conditional status transitions."""

    def __init__(self, supabase_client: Client | None = None):
        """Initialize order ledger.

        Args:
            supabase_client: Optional Supabase client for testing.
        """
        self._supabase_client = supabase_client
        self.settings = get_settings()

    @property
    def supabase(self) -> Client:
        """Get Supabase client."""
        if self._supabase_client is None:
            self._supabase_client = get_supabase_client()
        return self._supabase_client

    def _orders(self) -> Any:
        return self.supabase.table("orders")

    async def create(
        self,
        user_id: UUID | str,
        items: list[dict[str, Any]],
        order_id: UUID | str | None = None,
        customer_email: str | None = None,
    ) -> Order:
        """Create a pending order.

        The total is computed here from the line items; callers never
        supply it.

        Args:
            user_id: Owner of the order.
            items: Priced line items (see ``build_line_items``).
            order_id: Pre-generated order ID, if units were claimed against it.
            customer_email: Optional receipt email.

        Returns:
            Order: The created order.
        """
        if not items:
            raise ValidationError("Order must contain at least one item")

        lines, total_cents = build_line_items(items)
        order_data = {
            "id": str(order_id or uuid4()),
            "order_number": generate_order_number(),
            "user_id": str(user_id),
            "customer_email": customer_email,
            "items": lines,
            "total_cents": total_cents,
            "currency": self.settings.currency,
            "status": OrderStatus.PENDING.value,
            "needs_reconciliation": False,
            "created_at": _now_iso(),
        }

        response = execute_with_retry(self._orders().insert(order_data))
        order = response.data[0]
        logger.info(
            "Created order %s (%s) for user %s, total %d %s",
            order["id"],
            order["order_number"],
            user_id,
            total_cents,
            self.settings.currency,
        )
        return order

    async def get(self, order_id: UUID | str) -> Order | None:
        """Get an order by ID.

        Args:
            order_id: The order's UUID.

        Returns:
            Order | None: The order or None if not found.
        """
        response = execute_with_retry(
            self._orders().select("*").eq("id", str(order_id)).limit(1)
        )
        return response.data[0] if response.data else None

    async def get_by_payment_reference(self, reference: str) -> Order | None:
        """Get the order carrying a payment reference."""
        response = execute_with_retry(
            self._orders().select("*").eq("payment_reference", reference).limit(1)
        )
        return response.data[0] if response.data else None

    async def list_for_user(self, user_id: UUID | str) -> list[Order]:
        """Get all orders for a user, newest first."""
        response = execute_with_retry(
            self._orders()
            .select("*")
            .eq("user_id", str(user_id))
            .order("created_at", desc=True)
        )
        return response.data or []

    async def list_stale(self, cutoff: datetime, limit: int | None = None) -> list[Order]:
        """Get open orders created before ``cutoff``."""
        response = execute_with_retry(
            self._orders()
            .select("*")
            .in_("status", list(OPEN_STATUSES))
            .lt("created_at", cutoff.isoformat())
            .limit(limit or self.settings.expiry_sweep_batch_size)
        )
        return response.data or []

    async def list_needing_reconciliation(self) -> list[Order]:
        """Get orders flagged for manual reconciliation."""
        response = execute_with_retry(
            self._orders()
            .select("*")
            .eq("needs_reconciliation", True)
            .order("created_at", desc=True)
        )
        return response.data or []

    def _transition(
        self,
        order_id: UUID | str,
        from_statuses: tuple[str, ...],
        updates: dict[str, Any],
    ) -> Order | None:
        """Apply ``updates`` only if the order is in one of ``from_statuses``."""
        response = execute_with_retry(
            self._orders()
            .update(updates)
            .eq("id", str(order_id))
            .in_("status", list(from_statuses))
        )
        return response.data[0] if response.data else None

    async def _require(self, order_id: UUID | str) -> Order:
        order = await self.get(order_id)
        if not order:
            raise NotFoundError("Order not found")
        return order

    async def mark_awaiting_payment(self, order_id: UUID | str, payment_reference: str) -> Order:
        """Record the payment handle and move pending -> awaiting_payment.

        Raises:
            NotAwaitingPaymentError: If the order is no longer pending.
        """
        order = self._transition(
            order_id,
            (OrderStatus.PENDING.value,),
            {
                "status": OrderStatus.AWAITING_PAYMENT.value,
                "payment_reference": payment_reference,
            },
        )
        if order:
            logger.info("Order %s awaiting payment (reference %s)", order_id, payment_reference)
            return order

        current = await self._require(order_id)
        raise NotAwaitingPaymentError(order_id, current.get("status"))

    async def mark_paid(self, order_id: UUID | str, payment_evidence: dict[str, Any]) -> Order:
        """Move an open order to paid exactly once.

        Args:
            order_id: The order's UUID.
            payment_evidence: The gateway's verified record.

        Returns:
            Order: The paid order.

        Raises:
            AlreadyPaidError: If a previous confirmation already won.
            NotAwaitingPaymentError: If the order was cancelled or failed.
        """
        order = self._transition(
            order_id,
            OPEN_STATUSES,
            {
                "status": OrderStatus.PAID.value,
                "paid_at": _now_iso(),
                "payment_evidence": payment_evidence,
            },
        )
        if order:
            logger.info("Order %s marked as paid", order_id)
            return order

        current = await self._require(order_id)
        if current.get("status") == OrderStatus.PAID.value:
            raise AlreadyPaidError(order_id)
        raise NotAwaitingPaymentError(order_id, current.get("status"))

    async def mark_cancelled(self, order_id: UUID | str) -> Order:
        """Move an open order to cancelled.

        Raises:
            NotCancellableError: If the order is paid, failed or already cancelled.
        """
        order = self._transition(
            order_id,
            OPEN_STATUSES,
            {"status": OrderStatus.CANCELLED.value, "cancelled_at": _now_iso()},
        )
        if order:
            logger.info("Order %s cancelled", order_id)
            return order

        current = await self._require(order_id)
        raise NotCancellableError(order_id, current.get("status"))

    async def mark_failed(self, order_id: UUID | str, reason: str) -> Order | None:
        """Move an open order to failed.

        Returns:
            Order | None: The failed order, or None if it had already left
            the open states (nothing changed).
        """
        order = self._transition(
            order_id,
            OPEN_STATUSES,
            {
                "status": OrderStatus.FAILED.value,
                "failed_at": _now_iso(),
                "failure_reason": reason,
            },
        )
        if order:
            logger.info("Order %s failed: %s", order_id, reason)
        return order

    async def flag_for_reconciliation(self, order_id: UUID | str, reason: str) -> Order | None:
        """Flag an order whose payment and allocation disagree."""
        response = execute_with_retry(
            self._orders()
            .update({"needs_reconciliation": True, "failure_reason": reason})
            .eq("id", str(order_id))
        )
        logger.error("Order %s needs manual reconciliation: %s", order_id, reason)
        return response.data[0] if response.data else None
