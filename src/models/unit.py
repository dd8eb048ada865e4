"""Unit model type definitions for database operations.

A unit is one individually identified, sellable asset (serial number plus
secret PIN). Rows live in the ``units`` table and are never deleted; a
released unit returns to ``available`` under the same identity.

Expected table constraints:
    - ``serial_number`` UNIQUE
    - ``state`` CHECK IN ('available', 'claimed', 'sold')
    - index on (product_id, state) and on (order_id), (claim_token), (state, expires_at)
"""

from datetime import datetime
from enum import Enum
from typing import TypedDict
from uuid import UUID


class UnitState(str, Enum):
    """Allocation state of a unit."""

    AVAILABLE = "available"
    CLAIMED = "claimed"
    SOLD = "sold"


class Unit(TypedDict):
    """Units table row representation.

    ``order_id`` and ``claim_token`` are set if and only if the state is
    claimed or sold.
    """

    id: UUID
    product_id: UUID
    serial_number: str
    secret: str | None
    state: str
    order_id: UUID | None
    claim_token: str | None
    claimed_at: datetime | None
    sold_at: datetime | None
    expires_at: datetime | None
    created_at: datetime


class UnitCreate(TypedDict, total=False):
    """Data required to add a unit to the pool."""

    product_id: str
    serial_number: str
    secret: str | None
    state: str


# Column values that return a unit to the pool
RELEASED_FIELDS: dict[str, None | str] = {
    "state": UnitState.AVAILABLE.value,
    "order_id": None,
    "claim_token": None,
    "claimed_at": None,
    "expires_at": None,
}
