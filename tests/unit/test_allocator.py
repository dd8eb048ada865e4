"""Unit tests for the Allocator."""

import asyncio
import threading
from datetime import timedelta
from uuid import uuid4

import httpx
import pytest

from src.api.middleware.error_handler import (
    ClaimExpiredError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from src.services.allocator import Allocator, utcnow
from tests.fakes import FakeSupabase


@pytest.fixture
def allocator(fake_db: FakeSupabase) -> Allocator:
    """Create an Allocator on the in-memory store."""
    return Allocator(supabase_client=fake_db)


@pytest.fixture
def product(fake_db: FakeSupabase) -> dict:
    """A unit-pool product with five available units."""
    product = fake_db.add_product()
    fake_db.add_units(product["id"], 5)
    return product


class TestClaim:
    """Tests for Allocator.claim."""

    async def test_claims_requested_quantity(self, allocator: Allocator, fake_db: FakeSupabase, product: dict) -> None:
        """Claimed units are bound to the order with an expiry."""
        order_id = str(uuid4())

        units = await allocator.claim(product["id"], 3, order_id, ttl_seconds=300)

        assert len(units) == 3
        assert len({u["id"] for u in units}) == 3
        for unit in units:
            assert unit["state"] == "claimed"
            assert unit["order_id"] == order_id
            assert unit["claim_token"]
            assert unit["expires_at"] is not None
        assert fake_db.state_counts(product["id"]) == {"available": 2, "claimed": 3, "sold": 0}

    async def test_units_from_one_claim_share_a_token(self, allocator: Allocator, product: dict) -> None:
        """Every unit taken by one attempt carries the same claim token."""
        units = await allocator.claim(product["id"], 2, str(uuid4()))

        assert len({u["claim_token"] for u in units}) == 1

    async def test_insufficient_stock_rolls_back(
        self, allocator: Allocator, fake_db: FakeSupabase, product: dict
    ) -> None:
        """A short claim leaves nothing claimed and reports the shortfall."""
        order_id = str(uuid4())

        with pytest.raises(InsufficientStockError) as exc_info:
            await allocator.claim(product["id"], 7, order_id)

        assert exc_info.value.shortfalls == [
            {"product_id": product["id"], "requested": 7, "available": 5, "shortfall": 2}
        ]
        assert exc_info.value.status_code == 409
        assert fake_db.units(order_id=order_id) == []
        assert fake_db.state_counts(product["id"]) == {"available": 5, "claimed": 0, "sold": 0}

    async def test_rejects_non_positive_quantity(self, allocator: Allocator, product: dict) -> None:
        """Quantity must be positive."""
        with pytest.raises(ValidationError):
            await allocator.claim(product["id"], 0, str(uuid4()))

    async def test_zero_ttl_is_rejected(self, allocator: Allocator, fake_db: FakeSupabase, product: dict) -> None:
        """An explicit TTL of zero is an error, not a request for the default."""
        order_id = str(uuid4())

        with pytest.raises(ValidationError):
            await allocator.claim(product["id"], 1, order_id, ttl_seconds=0)

        assert fake_db.units(order_id=order_id) == []

    async def test_empty_pool_raises_with_zero_available(self, allocator: Allocator, fake_db: FakeSupabase) -> None:
        """A product with no units reports everything as shortfall."""
        empty = fake_db.add_product()

        with pytest.raises(InsufficientStockError) as exc_info:
            await allocator.claim(empty["id"], 1, str(uuid4()))

        assert exc_info.value.total_shortfall == 1

    async def test_storage_error_rolls_back_partial_claim(
        self, allocator: Allocator, fake_db: FakeSupabase, product: dict
    ) -> None:
        """A non-transient failure mid-claim releases what was taken."""
        order_id = str(uuid4())
        original_claim_one = allocator._claim_one
        calls = {"n": 0}

        def flaky_claim_one(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("connection reset by peer")
            return original_claim_one(*args, **kwargs)

        allocator._claim_one = flaky_claim_one

        with pytest.raises(RuntimeError):
            await allocator.claim(product["id"], 3, order_id)

        assert fake_db.units(order_id=order_id) == []
        assert fake_db.state_counts(product["id"])["available"] == 5

    async def test_write_landed_despite_transport_error_is_not_double_counted(
        self, allocator: Allocator, fake_db: FakeSupabase, product: dict
    ) -> None:
        """A claim whose response was lost is found by token and any surplus released."""
        order_id = str(uuid4())
        fake_db.fail_next("units", "update", httpx.ConnectError("response lost"), apply=True)

        units = await allocator.claim(product["id"], 2, order_id)

        assert len(units) == 2
        assert len(fake_db.units(order_id=order_id, state="claimed")) == 2
        assert fake_db.state_counts(product["id"]) == {"available": 3, "claimed": 2, "sold": 0}

    async def test_transient_select_error_is_retried(
        self, allocator: Allocator, fake_db: FakeSupabase, product: dict
    ) -> None:
        """Candidate selection survives one transport error."""
        fake_db.fail_next("units", "select", httpx.ReadTimeout("timed out"))

        units = await allocator.claim(product["id"], 1, str(uuid4()))

        assert len(units) == 1

    async def test_losing_every_round_is_contention_not_shortfall(
        self, allocator: Allocator, fake_db: FakeSupabase, product: dict
    ) -> None:
        """Running out of rounds while units are still available raises a retryable conflict."""
        order_id = str(uuid4())
        allocator.settings = allocator.settings.model_copy(update={"claim_max_rounds": 2})
        original_claim_one = allocator._claim_one
        attempts = {"n": 0}

        def contended_claim_one(unit_id, *args, **kwargs):
            attempts["n"] += 1
            if attempts["n"] == 1:
                return original_claim_one(unit_id, *args, **kwargs)
            return False

        allocator._claim_one = contended_claim_one

        with pytest.raises(ConflictError) as exc_info:
            await allocator.claim(product["id"], 3, order_id)

        assert exc_info.value.error_type == "stock_contention"
        assert exc_info.value.status_code == 409
        assert fake_db.units(order_id=order_id) == []
        assert fake_db.state_counts(product["id"])["available"] == 5


class TestConcurrentClaims:
    """Claims racing from several threads."""

    def test_concurrent_claims_never_share_units(self, fake_db: FakeSupabase) -> None:
        """Disjoint results and conservation under thread concurrency."""
        product = fake_db.add_product()
        fake_db.add_units(product["id"], 20)
        results: dict[str, list[dict]] = {}
        failures: list[str] = []
        lock = threading.Lock()

        def worker() -> None:
            order_id = str(uuid4())
            allocator = Allocator(supabase_client=fake_db)
            try:
                units = asyncio.run(allocator.claim(product["id"], 3, order_id))
            except InsufficientStockError:
                with lock:
                    failures.append(order_id)
                return
            with lock:
                results[order_id] = units

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        claimed_ids = [u["id"] for units in results.values() for u in units]
        assert len(claimed_ids) == len(set(claimed_ids))
        assert all(len(units) == 3 for units in results.values())

        counts = fake_db.state_counts(product["id"])
        assert counts["claimed"] == 3 * len(results)
        assert sum(counts.values()) == 20
        for order_id in failures:
            assert fake_db.units(order_id=order_id) == []
        for order_id, units in results.items():
            assert {u["id"] for u in fake_db.units(order_id=order_id)} == {u["id"] for u in units}

    def test_two_claims_for_two_of_three_units(self, fake_db: FakeSupabase) -> None:
        """With 3 units and two requests for 2 racing on threads, exactly one wins."""
        product = fake_db.add_product()
        fake_db.add_units(product["id"], 3)
        barrier = threading.Barrier(2)
        outcomes: list = []
        lock = threading.Lock()

        def worker() -> None:
            allocator = Allocator(supabase_client=fake_db)
            barrier.wait()
            try:
                outcome = asyncio.run(allocator.claim(product["id"], 2, str(uuid4())))
            except InsufficientStockError as exc:
                outcome = exc
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [o for o in outcomes if isinstance(o, list)]
        losers = [o for o in outcomes if isinstance(o, InsufficientStockError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].shortfalls[0]["shortfall"] == 1
        assert fake_db.state_counts(product["id"]) == {"available": 1, "claimed": 2, "sold": 0}


class TestConfirm:
    """Tests for Allocator.confirm."""

    async def test_confirms_claimed_units(self, allocator: Allocator, fake_db: FakeSupabase, product: dict) -> None:
        """Claimed units become sold."""
        order_id = str(uuid4())
        await allocator.claim(product["id"], 2, order_id)

        confirmed = await allocator.confirm(order_id)

        assert confirmed == 2
        sold = fake_db.units(order_id=order_id, state="sold")
        assert len(sold) == 2
        assert all(u["sold_at"] and u["expires_at"] is None for u in sold)

    async def test_second_confirm_is_a_no_op(self, allocator: Allocator, fake_db: FakeSupabase, product: dict) -> None:
        """Confirming twice leaves the same sold set."""
        order_id = str(uuid4())
        await allocator.claim(product["id"], 2, order_id)
        await allocator.confirm(order_id)
        sold_before = {u["id"] for u in fake_db.units(order_id=order_id, state="sold")}

        confirmed = await allocator.confirm(order_id)

        assert confirmed == 0
        assert {u["id"] for u in fake_db.units(order_id=order_id, state="sold")} == sold_before
        assert fake_db.state_counts(product["id"]) == {"available": 3, "claimed": 0, "sold": 2}

    async def test_released_claim_raises_claim_expired(
        self, allocator: Allocator, fake_db: FakeSupabase, product: dict
    ) -> None:
        """Nothing claimed and nothing sold means the claim lapsed; no new units are taken."""
        order_id = str(uuid4())
        await allocator.claim(product["id"], 1, order_id)
        await allocator.release(order_id)

        with pytest.raises(ClaimExpiredError):
            await allocator.confirm(order_id)

        assert fake_db.state_counts(product["id"]) == {"available": 5, "claimed": 0, "sold": 0}


class TestRelease:
    """Tests for release and expiry."""

    async def test_release_returns_units(self, allocator: Allocator, fake_db: FakeSupabase, product: dict) -> None:
        """Released units are available with their claim fields cleared."""
        order_id = str(uuid4())
        await allocator.claim(product["id"], 2, order_id)

        released = await allocator.release(order_id)

        assert released == 2
        assert fake_db.state_counts(product["id"])["available"] == 5
        for unit in fake_db.units(product_id=product["id"]):
            assert unit["order_id"] is None
            assert unit["claim_token"] is None
            assert unit["expires_at"] is None

    async def test_release_is_idempotent_and_spares_sold(
        self, allocator: Allocator, fake_db: FakeSupabase, product: dict
    ) -> None:
        """Release after confirm does nothing."""
        order_id = str(uuid4())
        await allocator.claim(product["id"], 1, order_id)
        await allocator.confirm(order_id)

        assert await allocator.release(order_id) == 0
        assert fake_db.state_counts(product["id"])["sold"] == 1

    async def test_release_expired_only_touches_lapsed_claims(
        self, allocator: Allocator, fake_db: FakeSupabase, product: dict
    ) -> None:
        """Claims past their TTL are released, fresh ones are kept."""
        stale_order = str(uuid4())
        fresh_order = str(uuid4())
        await allocator.claim(product["id"], 1, stale_order, ttl_seconds=300)
        await allocator.claim(product["id"], 1, fresh_order, ttl_seconds=3600)

        released = await allocator.release_expired(utcnow() + timedelta(minutes=6))

        assert released == {stale_order: 1}
        assert fake_db.units(order_id=stale_order) == []
        assert len(fake_db.units(order_id=fresh_order, state="claimed")) == 1

    async def test_release_expired_loses_to_confirm(
        self, allocator: Allocator, fake_db: FakeSupabase, product: dict
    ) -> None:
        """A confirmation landing first leaves the sweep nothing to release."""
        order_id = str(uuid4())
        await allocator.claim(product["id"], 1, order_id, ttl_seconds=300)
        await allocator.confirm(order_id)

        released = await allocator.release_expired(utcnow() + timedelta(minutes=6))

        assert released == {}
        assert len(fake_db.units(order_id=order_id, state="sold")) == 1


class TestReverseSale:
    """Tests for administrative reversal."""

    async def test_reverses_sold_unit(self, allocator: Allocator, fake_db: FakeSupabase, product: dict) -> None:
        """A sold unit goes back to available."""
        order_id = str(uuid4())
        units = await allocator.claim(product["id"], 1, order_id)
        await allocator.confirm(order_id)

        unit = await allocator.reverse_sale(units[0]["id"])

        assert unit["state"] == "available"
        assert unit["order_id"] is None
        assert unit["sold_at"] is None

    async def test_claimed_unit_cannot_be_reversed(self, allocator: Allocator, product: dict) -> None:
        """Only sold units can be reversed."""
        units = await allocator.claim(product["id"], 1, str(uuid4()))

        with pytest.raises(NotFoundError):
            await allocator.reverse_sale(units[0]["id"])


class TestCounter:
    """Tests for counter-backed stock."""

    async def test_decrement_and_increment(self, allocator: Allocator, fake_db: FakeSupabase) -> None:
        """Counter moves by the requested amount."""
        product = fake_db.add_product(stock_mode="counter", stock_quantity=5)

        assert await allocator.decrement_counter(product["id"], 3) == 2
        assert await allocator.increment_counter(product["id"], 1) == 3

    async def test_decrement_below_zero_raises(self, allocator: Allocator, fake_db: FakeSupabase) -> None:
        """Counter never goes negative."""
        product = fake_db.add_product(stock_mode="counter", stock_quantity=1)

        with pytest.raises(InsufficientStockError) as exc_info:
            await allocator.decrement_counter(product["id"], 2)

        assert exc_info.value.shortfalls[0]["shortfall"] == 1
        assert fake_db.tables["products"][0]["stock_quantity"] == 1

    async def test_unknown_product_raises_not_found(self, allocator: Allocator) -> None:
        """Counter operations need an existing product."""
        with pytest.raises(NotFoundError):
            await allocator.decrement_counter(str(uuid4()), 1)
