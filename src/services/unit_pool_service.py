"""Unit pool reads and restocking.

Counts are always derived from the units table on demand; nothing here is
authoritative for allocation decisions (see ``Allocator``).
"""

import logging
from collections import Counter
from typing import Any
from uuid import UUID

from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

from src.api.middleware.error_handler import ValidationError
from src.core.config import get_settings
from src.core.retry import execute_with_retry
from src.core.supabase import get_supabase_client
from src.models.unit import Unit, UnitState

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


def low_stock_threshold_for(product: dict[str, Any] | None, default: int) -> int:
    """Threshold for a product row, falling back to ``default`` when unset."""
    if product and product.get("low_stock_threshold") is not None:
        return int(product["low_stock_threshold"])
    return default


class UnitPoolService:
    """Read access to the unit pool, plus restocking."""

    def __init__(self, supabase_client: Client | None = None):
        """Initialize unit pool service.

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

    def _count(self, product_id: UUID | str, state: UnitState | None = None) -> int:
        query = (
            self.supabase.table("units")
            .select("id", count="exact")
            .eq("product_id", str(product_id))
        )
        if state is not None:
            query = query.eq("state", state.value)
        response = execute_with_retry(query)
        return response.count or 0

    async def count_available(self, product_id: UUID | str) -> int:
        """Count available units for a product.

        Non-authoritative: a concurrent claim may take these units before
        the caller acts on the number.

        Args:
            product_id: The product's UUID.

        Returns:
            int: Number of units currently available.
        """
        return self._count(product_id, UnitState.AVAILABLE)

    async def count_by_state(self, product_id: UUID | str) -> dict[str, int]:
        """Count a product's units in each state.

        Returns:
            dict: ``available``, ``claimed``, ``sold`` and ``total`` counts.
        """
        counts = {state.value: self._count(product_id, state) for state in UnitState}
        counts["total"] = self._count(product_id)
        return counts

    async def stock_summary(self, product_id: UUID | str) -> dict[str, Any]:
        """Build a stock summary with low/out-of-stock flags.

        The product's own ``low_stock_threshold`` applies when set,
        otherwise the configured default.

        Args:
            product_id: The product's UUID.

        Returns:
            dict: State counts plus ``is_low_stock`` and ``is_out_of_stock``.
        """
        product = execute_with_retry(
            self.supabase.table("products").select("low_stock_threshold").eq("id", str(product_id)).limit(1)
        ).data
        threshold = low_stock_threshold_for(product[0] if product else None, self.settings.low_stock_threshold)

        counts = await self.count_by_state(product_id)
        available = counts[UnitState.AVAILABLE.value]
        return {
            "product_id": str(product_id),
            **counts,
            "low_stock_threshold": threshold,
            "is_low_stock": available <= threshold,
            "is_out_of_stock": available == 0,
        }

    async def get_units_by_order(
        self,
        order_id: UUID | str,
        state: UnitState | None = None,
    ) -> list[Unit]:
        """Get the units bound to an order.

        Args:
            order_id: The order's UUID.
            state: Optional state filter.

        Returns:
            list[Unit]: Units ordered by serial number.
        """
        query = self.supabase.table("units").select("*").eq("order_id", str(order_id))
        if state is not None:
            query = query.eq("state", state.value)
        response = execute_with_retry(query.order("serial_number"))
        return response.data or []

    async def get_unit(self, unit_id: UUID | str) -> Unit | None:
        """Get a unit by ID."""
        response = execute_with_retry(
            self.supabase.table("units").select("*").eq("id", str(unit_id)).limit(1)
        )
        return response.data[0] if response.data else None

    async def add_units(
        self,
        product_id: UUID | str,
        units: list[dict[str, Any]],
    ) -> list[Unit]:
        """Add new available units to a product's pool.

        Serial numbers are unique across all time, so a batch is rejected
        if it repeats a serial number or collides with any existing unit.

        Args:
            product_id: The product's UUID.
            units: Dicts with ``serial_number`` and optional ``secret``.

        Returns:
            list[Unit]: The created units.

        Raises:
            ValidationError: On empty input or duplicate serial numbers.
        """
        if not units:
            raise ValidationError("At least one unit is required")

        serials = [str(u["serial_number"]).strip() for u in units]
        if any(not s for s in serials):
            raise ValidationError("Serial numbers must not be empty")

        repeated = sorted(s for s, n in Counter(serials).items() if n > 1)
        if repeated:
            raise ValidationError(
                "Duplicate serial numbers in batch",
                details=[{"loc": ["units"], "msg": s, "type": "duplicate_serial"} for s in repeated],
            )

        existing = execute_with_retry(
            self.supabase.table("units").select("serial_number").in_("serial_number", serials)
        )
        if existing.data:
            taken = sorted(row["serial_number"] for row in existing.data)
            raise ValidationError(
                "Serial numbers already exist",
                details=[{"loc": ["units"], "msg": s, "type": "duplicate_serial"} for s in taken],
            )

        rows = [
            {
                "product_id": str(product_id),
                "serial_number": serial,
                "secret": unit.get("secret"),
                "state": UnitState.AVAILABLE.value,
            }
            for serial, unit in zip(serials, units)
        ]

        try:
            response = execute_with_retry(self.supabase.table("units").insert(rows))
        except PostgrestAPIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise ValidationError("Serial numbers already exist") from e
            raise

        created = response.data or []
        logger.info("Restocked product %s with %d units", product_id, len(created))
        return created
