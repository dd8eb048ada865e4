"""Allocator: the only component that mutates unit state.

Every transition is a single conditional update against the units table:
the row's current state is part of the filter, so a write only lands if the
unit is still in the expected state. Two claimers racing for the same unit
can never both win, and confirm/release/expiry all predicate on
``state=claimed`` so whichever lands first makes the others no-ops.
"""

import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

from supabase import Client

from src.api.middleware.error_handler import (
    ClaimExpiredError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from src.core.config import get_settings
from src.core.retry import execute_with_retry
from src.core.supabase import get_supabase_client
from src.models.unit import RELEASED_FIELDS, Unit, UnitState

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


class Allocator:
    """Atomic claim, confirm and release operations over the unit pool."""

    def __init__(self, supabase_client: Client | None = None):
        """Initialize allocator.

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

    def _units(self) -> Any:
        return self.supabase.table("units")

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim(
        self,
        product_id: UUID | str,
        quantity: int,
        order_id: UUID | str,
        ttl_seconds: int | None = None,
        claim_token: str | None = None,
    ) -> list[Unit]:
        """Claim ``quantity`` available units of a product for an order.

        Units are taken one at a time with a conditional transition
        available -> claimed. If fewer than ``quantity`` units can be taken,
        every unit claimed under this attempt's claim token is returned to
        the pool before the error is raised; the same rollback runs if the
        attempt fails for any other reason.

        Args:
            product_id: Product to claim from.
            quantity: Number of units required.
            order_id: Order the units are held for.
            ttl_seconds: Claim lifetime; defaults to ``claim_ttl_seconds``.
            claim_token: Idempotency key for this attempt. A fresh one is
                generated when omitted; retries must not reuse a token.

        Returns:
            list[Unit]: Exactly ``quantity`` claimed units.

        Raises:
            ValidationError: If quantity or TTL is not positive.
            InsufficientStockError: If the pool ran out first.
            ConflictError: If other claimers kept winning the candidates.
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than zero")

        token = claim_token or str(uuid4())
        ttl = self.settings.claim_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValidationError("Claim TTL must be positive")

        try:
            self._claim_units(product_id, quantity, order_id, ttl, token)
            claimed = self._units_for_token(token)
        except ConflictError:
            self.release_claim_token(token)
            raise
        except Exception:
            logger.exception("Claim attempt %s for product %s failed, rolling back", token, product_id)
            self.release_claim_token(token)
            raise

        if len(claimed) < quantity:
            released = self.release_claim_token(token)
            logger.info(
                "Insufficient stock for product %s: requested %d, claimed %d (rolled back %d)",
                product_id,
                quantity,
                len(claimed),
                released,
            )
            raise InsufficientStockError(
                [
                    {
                        "product_id": str(product_id),
                        "requested": quantity,
                        "available": len(claimed),
                        "shortfall": quantity - len(claimed),
                    }
                ]
            )

        if len(claimed) > quantity:
            # A write that landed despite a transport error can leave extras
            for surplus in claimed[quantity:]:
                self._release_unit(surplus["id"], token)
            claimed = claimed[:quantity]

        logger.info("Claimed %d units of product %s for order %s", quantity, product_id, order_id)
        return claimed

    def _claim_units(
        self,
        product_id: UUID | str,
        quantity: int,
        order_id: UUID | str,
        ttl_seconds: int,
        token: str,
    ) -> int:
        """Run conditional single-unit transitions until done or out of candidates.

        Raises:
            ConflictError: If candidates were still being lost to other
                claimers after ``claim_max_rounds`` rounds.
        """
        claimed = 0
        for _ in range(self.settings.claim_max_rounds):
            needed = quantity - claimed
            if needed <= 0:
                break

            candidates = execute_with_retry(
                self._units()
                .select("id")
                .eq("product_id", str(product_id))
                .eq("state", UnitState.AVAILABLE.value)
                .limit(needed + self.settings.claim_candidate_batch)
            ).data or []
            if not candidates:
                break

            # Concurrent claimers see the same candidate list; spread them out
            random.shuffle(candidates)
            for candidate in candidates:
                if claimed >= quantity:
                    break
                if self._claim_one(candidate["id"], order_id, ttl_seconds, token):
                    claimed += 1
        else:
            if claimed < quantity:
                logger.warning(
                    "Claim for product %s stopped after %d rounds with %d/%d units",
                    product_id,
                    self.settings.claim_max_rounds,
                    claimed,
                    quantity,
                )
                raise ConflictError(
                    "Units are under heavy contention, try again",
                    error_type="stock_contention",
                )
        return claimed

    def _claim_one(
        self,
        unit_id: UUID | str,
        order_id: UUID | str,
        ttl_seconds: int,
        token: str,
    ) -> bool:
        """Transition one unit available -> claimed. Returns False if it was taken."""
        now = utcnow()
        response = execute_with_retry(
            self._units()
            .update(
                {
                    "state": UnitState.CLAIMED.value,
                    "order_id": str(order_id),
                    "claim_token": token,
                    "claimed_at": now.isoformat(),
                    "expires_at": (now + timedelta(seconds=ttl_seconds)).isoformat(),
                }
            )
            .eq("id", str(unit_id))
            .eq("state", UnitState.AVAILABLE.value)
        )
        return bool(response.data)

    def _units_for_token(self, token: str) -> list[Unit]:
        response = execute_with_retry(
            self._units()
            .select("*")
            .eq("claim_token", token)
            .eq("state", UnitState.CLAIMED.value)
            .order("serial_number")
        )
        return response.data or []

    def _release_unit(self, unit_id: UUID | str, token: str) -> bool:
        response = execute_with_retry(
            self._units()
            .update(RELEASED_FIELDS)
            .eq("id", str(unit_id))
            .eq("claim_token", token)
            .eq("state", UnitState.CLAIMED.value)
        )
        return bool(response.data)

    def release_claim_token(self, claim_token: str) -> int:
        """Return every unit still claimed under a claim token to the pool.

        Args:
            claim_token: The claim attempt's idempotency key.

        Returns:
            int: Number of units released.
        """
        response = execute_with_retry(
            self._units()
            .update(RELEASED_FIELDS)
            .eq("claim_token", claim_token)
            .eq("state", UnitState.CLAIMED.value)
        )
        return len(response.data or [])

    # ------------------------------------------------------------------
    # Confirm / release
    # ------------------------------------------------------------------

    async def confirm(self, order_id: UUID | str) -> int:
        """Transition all of an order's claimed units to sold.

        Idempotent: once the units are sold a repeated call finds nothing
        claimed and returns 0. This never assigns fresh units.

        Args:
            order_id: The order's UUID.

        Returns:
            int: Number of units transitioned by this call.

        Raises:
            ClaimExpiredError: If the order has neither claimed nor sold units.
        """
        response = execute_with_retry(
            self._units()
            .update(
                {
                    "state": UnitState.SOLD.value,
                    "sold_at": utcnow().isoformat(),
                    "expires_at": None,
                }
            )
            .eq("order_id", str(order_id))
            .eq("state", UnitState.CLAIMED.value)
        )
        confirmed = len(response.data or [])
        if confirmed:
            logger.info("Confirmed %d units as sold for order %s", confirmed, order_id)
            return confirmed

        sold = execute_with_retry(
            self._units()
            .select("id", count="exact")
            .eq("order_id", str(order_id))
            .eq("state", UnitState.SOLD.value)
        )
        if sold.count:
            logger.info("Order %s already confirmed (%d units sold)", order_id, sold.count)
            return 0

        raise ClaimExpiredError(order_id)

    async def release(self, order_id: UUID | str) -> int:
        """Return all of an order's claimed units to the pool.

        Sold units are untouched. Idempotent.

        Args:
            order_id: The order's UUID.

        Returns:
            int: Number of units released.
        """
        response = execute_with_retry(
            self._units()
            .update(RELEASED_FIELDS)
            .eq("order_id", str(order_id))
            .eq("state", UnitState.CLAIMED.value)
        )
        released = len(response.data or [])
        if released:
            logger.info("Released %d claimed units for order %s", released, order_id)
        return released

    async def release_expired(self, now: datetime | None = None) -> dict[str, int]:
        """Release claimed units whose TTL has passed.

        Each order's expired units are released with one conditional update
        that also requires ``expires_at < now``, so a confirmation landing
        first leaves nothing to release.

        Args:
            now: Reference time; defaults to the current UTC time.

        Returns:
            dict: Released unit count keyed by order ID.
        """
        cutoff = (now or utcnow()).isoformat()
        expired = execute_with_retry(
            self._units()
            .select("id, order_id")
            .eq("state", UnitState.CLAIMED.value)
            .lt("expires_at", cutoff)
            .limit(self.settings.expiry_sweep_batch_size)
        ).data or []

        order_ids = sorted({row["order_id"] for row in expired if row.get("order_id")})
        released: dict[str, int] = {}
        for order_id in order_ids:
            response = execute_with_retry(
                self._units()
                .update(RELEASED_FIELDS)
                .eq("order_id", order_id)
                .eq("state", UnitState.CLAIMED.value)
                .lt("expires_at", cutoff)
            )
            count = len(response.data or [])
            if count:
                released[order_id] = count

        if released:
            logger.info(
                "Expiry sweep released %d units across %d orders",
                sum(released.values()),
                len(released),
            )
        return released

    async def reverse_sale(self, unit_id: UUID | str) -> Unit:
        """Administrative reversal of a sold unit back to available.

        Args:
            unit_id: The unit's UUID.

        Returns:
            Unit: The unit after reversal.

        Raises:
            NotFoundError: If no sold unit has this ID.
        """
        response = execute_with_retry(
            self._units()
            .update({**RELEASED_FIELDS, "sold_at": None})
            .eq("id", str(unit_id))
            .eq("state", UnitState.SOLD.value)
        )
        if not response.data:
            raise NotFoundError("Sold unit not found")

        logger.warning("Sale of unit %s reversed by administrator", unit_id)
        return response.data[0]

    # ------------------------------------------------------------------
    # Counter-backed products
    # ------------------------------------------------------------------

    def _adjust_counter(self, product_id: UUID | str, delta: int) -> int:
        """Compare-and-swap the product's stock_quantity by ``delta``."""
        products = self.supabase.table("products")
        for _ in range(self.settings.claim_max_rounds):
            current = execute_with_retry(
                products.select("stock_quantity").eq("id", str(product_id)).limit(1)
            ).data
            if not current:
                raise NotFoundError("Product not found")

            quantity = current[0].get("stock_quantity") or 0
            if quantity + delta < 0:
                raise InsufficientStockError(
                    [
                        {
                            "product_id": str(product_id),
                            "requested": -delta,
                            "available": quantity,
                            "shortfall": -delta - quantity,
                        }
                    ]
                )

            response = execute_with_retry(
                products.update({"stock_quantity": quantity + delta})
                .eq("id", str(product_id))
                .eq("stock_quantity", quantity)
            )
            if response.data:
                return quantity + delta

        raise ConflictError("Stock counter is under heavy contention, try again", error_type="stock_contention")

    async def decrement_counter(self, product_id: UUID | str, quantity: int) -> int:
        """Take ``quantity`` from a counter-backed product.

        Returns:
            int: Remaining stock.

        Raises:
            InsufficientStockError: If the counter is below ``quantity``.
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than zero")
        remaining = self._adjust_counter(product_id, -quantity)
        logger.info("Decremented stock of product %s by %d (now %d)", product_id, quantity, remaining)
        return remaining

    async def increment_counter(self, product_id: UUID | str, quantity: int) -> int:
        """Return ``quantity`` to a counter-backed product.

        Returns:
            int: Stock after the increment.
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than zero")
        remaining = self._adjust_counter(product_id, quantity)
        logger.info("Incremented stock of product %s by %d (now %d)", product_id, quantity, remaining)
        return remaining
