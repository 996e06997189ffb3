import asyncio
import sqlite3
import time
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from fulfillment_hub.db_models import InventoryAuditEntry, MovementReason, Order, OrderStatus
from fulfillment_hub.errors import (
    Contention, FulfillmentTimeout, InsufficientStock, NotFound, ValidationError,
)
from fulfillment_hub.services.audit import AuditLog
from fulfillment_hub.services.fulfillment import (
    FulfillmentConfig, FulfillmentOrchestrator, FulfillmentState,
)
from fulfillment_hub.services.inventory import InventoryStore
from fulfillment_hub.services.orders import LineItem

PRICE = Decimal("20.00")


def make_orchestrator(sf, **kwargs):
    config = FulfillmentConfig(max_attempts=3, retry_backoff=0)
    return FulfillmentOrchestrator.from_session_factory(sf, config, **kwargs)


async def seed(orchestrator, *products, reorder_threshold=0):
    for product_id, stock in products:
        await orchestrator.add_product(
            product_id, f"Product {product_id}", PRICE, stock, reorder_threshold=reorder_threshold,
        )


async def snapshot(sf, product_id):
    """(stock, order count, audit entry count) for one product."""
    async with sf() as db:
        stock = await InventoryStore(db).get_stock(product_id)
        orders = (await db.execute(select(func.count(Order.id)))).scalar_one()
        entries = (await db.execute(
            select(func.count(InventoryAuditEntry.id)).where(InventoryAuditEntry.product_id == product_id)
        )).scalar_one()
    return stock, orders, entries


def test_fulfill_then_insufficient_stock(run_db):
    async def scenario(sf):
        orchestrator = make_orchestrator(sf)
        await seed(orchestrator, ("P", 10))

        result = await orchestrator.fulfill_order("cust1", [LineItem("P", 5, PRICE, Decimal("0"))])
        after_first = await snapshot(sf, "P")

        with pytest.raises(InsufficientStock) as exc:
            await orchestrator.fulfill_order("cust2", [LineItem("P", 8, PRICE, Decimal("0"))])
        after_second = await snapshot(sf, "P")

        order = await orchestrator.get_order(result.order_id)
        async with sf() as db:
            entries = await AuditLog(db).entries_for("P")
        return result, after_first, exc.value, after_second, order, entries

    result, after_first, error, after_second, order, entries = run_db(scenario)
    assert after_first == (5, 1, 1)
    assert (error.available, error.requested, error.line) == (5, 8, 1)
    assert error.aborted_in == "reserving"
    assert after_second == (5, 1, 1)

    assert result.attempts == 1
    assert result.states == [
        FulfillmentState.received,
        FulfillmentState.validating,
        FulfillmentState.reserving,
        FulfillmentState.persisting,
        FulfillmentState.committed,
    ]
    assert order.status == OrderStatus.fulfilled
    assert order.fulfilled_at is not None
    assert [(e.delta, e.reason, e.order_id) for e in entries] == [
        (-5, MovementReason.fulfillment, result.order_id)
    ]


def test_failing_second_line_rolls_back_first(run_db):
    async def scenario(sf):
        orchestrator = make_orchestrator(sf)
        await seed(orchestrator, ("A", 10), ("B", 1))
        with pytest.raises(InsufficientStock) as exc:
            await orchestrator.fulfill_order("cust1", [LineItem("A", 5, PRICE), LineItem("B", 2, PRICE)])
        return exc.value, await snapshot(sf, "A"), await snapshot(sf, "B")

    error, a, b = run_db(scenario)
    assert error.product_id == "B"
    assert error.line == 2
    assert a == (10, 0, 0)
    assert b == (1, 0, 0)


def test_validation_failure_changes_nothing(run_db):
    async def scenario(sf):
        orchestrator = make_orchestrator(sf)
        await seed(orchestrator, ("A", 10))
        lines = [LineItem("A", 1, PRICE), LineItem("A", 1, PRICE, Decimal("1")), LineItem("X", 1, PRICE)]
        errors = []
        for _ in range(3):
            with pytest.raises(ValidationError) as exc:
                await orchestrator.fulfill_order("cust1", lines)
            errors.append(exc.value)
        return errors, await snapshot(sf, "A")

    errors, a = run_db(scenario)
    assert {e.line for e in errors} == {2}
    assert all(e.aborted_in == "validating" for e in errors)
    assert a == (10, 0, 0)


def test_missing_customer_is_a_validation_error(run_db):
    async def scenario(sf):
        orchestrator = make_orchestrator(sf)
        await seed(orchestrator, ("A", 10))
        with pytest.raises(ValidationError):
            await orchestrator.fulfill_order("", [LineItem("A", 1, PRICE)])

    run_db(scenario)


def test_non_finite_discount_is_a_validation_error(run_db):
    async def scenario(sf):
        orchestrator = make_orchestrator(sf)
        await seed(orchestrator, ("A", 10))
        with pytest.raises(ValidationError) as exc:
            await orchestrator.fulfill_order("cust1", [LineItem("A", 1, PRICE, Decimal("NaN"))])
        return exc.value, await snapshot(sf, "A")

    error, a = run_db(scenario)
    assert error.line == 1
    assert error.aborted_in == "validating"
    assert a == (10, 0, 0)


async def _race_for_stock(sf, lock_rows=True, stock=7, quantity=2, callers=10):
    orchestrator = FulfillmentOrchestrator.from_session_factory(
        sf, FulfillmentConfig(max_attempts=3, retry_backoff=0, lock_rows=lock_rows),
    )
    await seed(orchestrator, ("P", stock))
    results = await asyncio.gather(
        *(orchestrator.fulfill_order(f"cust{i}", [LineItem("P", quantity, PRICE)]) for i in range(callers)),
        return_exceptions=True,
    )
    report = await orchestrator.reconcile("P")
    return results, await snapshot(sf, "P"), report


def _assert_serial_outcome(outcome, succeeded_expected=3, stock_expected=1):
    results, (stock, orders, entries), report = outcome
    succeeded = [r for r in results if not isinstance(r, BaseException)]
    failed = [r for r in results if isinstance(r, BaseException)]
    assert len(succeeded) == succeeded_expected
    assert all(isinstance(e, InsufficientStock) for e in failed)
    assert stock == stock_expected
    assert orders == succeeded_expected
    assert entries == succeeded_expected
    assert report.consistent


def test_concurrent_orders_never_overdraw(run_db):
    # SQLite: BEGIN IMMEDIATE serializes whole transactions, so this checks the
    # end-to-end outcome (floor(7/2) winners), not row-level interleaving.
    _assert_serial_outcome(run_db(lambda sf: _race_for_stock(sf)))


@pytest.mark.parametrize("lock_rows", [True, False], ids=["for-update", "conditional-update-only"])
def test_concurrent_orders_never_overdraw_with_row_locks(pg_run_db, lock_rows):
    # PostgreSQL under READ COMMITTED: transactions interleave and only the
    # product row serializes them. Without FOR UPDATE the floor check in the
    # conditional UPDATE is the only guard.
    _assert_serial_outcome(pg_run_db(lambda sf: _race_for_stock(sf, lock_rows=lock_rows)))


def test_contention_is_retried(run_db):
    calls = {"reserve": 0}

    class FlakyInventory(InventoryStore):
        async def reserve_stock(self, product_id, quantity):
            calls["reserve"] += 1
            if calls["reserve"] == 1:
                raise OperationalError("UPDATE products", {}, sqlite3.OperationalError("database is locked"))
            return await super().reserve_stock(product_id, quantity)

    async def scenario(sf):
        orchestrator = make_orchestrator(sf, inventory_factory=FlakyInventory)
        await seed(orchestrator, ("P", 10))
        result = await orchestrator.fulfill_order("cust1", [LineItem("P", 3, PRICE)])
        return result, await snapshot(sf, "P")

    result, after = run_db(scenario)
    assert result.attempts == 2
    assert result.states.count(FulfillmentState.received) == 2
    assert result.states[-1] == FulfillmentState.committed
    assert after == (7, 1, 1)


def test_contention_gives_up_after_max_attempts(run_db):
    class LockedInventory(InventoryStore):
        async def reserve_stock(self, product_id, quantity):
            raise OperationalError("UPDATE products", {}, sqlite3.OperationalError("database is locked"))

    async def scenario(sf):
        orchestrator = make_orchestrator(sf, inventory_factory=LockedInventory)
        await seed(orchestrator, ("P", 10))
        with pytest.raises(Contention) as exc:
            await orchestrator.fulfill_order("cust1", [LineItem("P", 3, PRICE)])
        return exc.value, await snapshot(sf, "P")

    error, after = run_db(scenario)
    assert error.attempts == 3
    assert error.aborted_in == "reserving"
    assert after == (10, 0, 0)


def test_timeout_rolls_back(run_db):
    class SlowInventory(InventoryStore):
        async def reserve_stock(self, product_id, quantity):
            remaining = await super().reserve_stock(product_id, quantity)
            await asyncio.sleep(5)
            return remaining

    async def scenario(sf):
        orchestrator = make_orchestrator(sf, inventory_factory=SlowInventory)
        await seed(orchestrator, ("P", 10))
        with pytest.raises(FulfillmentTimeout) as exc:
            await orchestrator.fulfill_order("cust1", [LineItem("P", 3, PRICE)], timeout=0.2)
        return exc.value, await snapshot(sf, "P")

    error, after = run_db(scenario)
    assert error.status_code == 504
    assert error.aborted_in == "reserving"
    assert after == (10, 0, 0)


def test_timeout_bounds_the_wait_for_a_held_lock(run_db):
    async def scenario(sf):
        orchestrator = make_orchestrator(sf)
        await seed(orchestrator, ("P", 10))
        async with sf() as holder:
            # the holder's BEGIN IMMEDIATE keeps the write lock until rollback
            await holder.connection()
            started = time.monotonic()
            with pytest.raises(FulfillmentTimeout) as exc:
                await orchestrator.fulfill_order("cust1", [LineItem("P", 3, PRICE)], timeout=0.3)
            elapsed = time.monotonic() - started
            await holder.rollback()
        return exc.value, elapsed, await snapshot(sf, "P")

    error, elapsed, after = run_db(scenario)
    assert error.timeout == 0.3
    # far below the engine's 30s busy timeout
    assert elapsed < 2.0
    assert after == (10, 0, 0)


def test_idempotency_key_replays_order(run_db):
    async def scenario(sf):
        orchestrator = make_orchestrator(sf)
        await seed(orchestrator, ("P", 10))
        first = await orchestrator.fulfill_order("cust1", [LineItem("P", 3, PRICE)], idempotency_key="req-42")
        second = await orchestrator.fulfill_order("cust1", [LineItem("P", 3, PRICE)], idempotency_key="req-42")
        return first, second, await snapshot(sf, "P")

    first, second, after = run_db(scenario)
    assert second.order_id == first.order_id
    assert not first.replayed
    assert second.replayed
    assert after == (7, 1, 1)


def test_low_stock_is_reported(run_db):
    async def scenario(sf):
        orchestrator = make_orchestrator(sf)
        await seed(orchestrator, ("P", 10), reorder_threshold=5)
        high = await orchestrator.fulfill_order("cust1", [LineItem("P", 2, PRICE)])
        low = await orchestrator.fulfill_order("cust1", [LineItem("P", 3, PRICE)])
        return high.low_stock, low.low_stock

    assert run_db(scenario) == ([], ["P"])


def test_restock_and_ship(run_db):
    async def scenario(sf):
        orchestrator = make_orchestrator(sf)
        await seed(orchestrator, ("P", 2))
        result = await orchestrator.fulfill_order("cust1", [LineItem("P", 2, PRICE)])
        new_stock = await orchestrator.restock("P", 5, notes="supplier delivery")
        with pytest.raises(ValidationError):
            await orchestrator.restock("P", 0)
        with pytest.raises(NotFound):
            await orchestrator.restock("missing", 1)
        shipped = await orchestrator.ship_order(result.order_id)
        report = await orchestrator.reconcile("P")
        return new_stock, shipped, report

    new_stock, shipped, report = run_db(scenario)
    assert new_stock == 5
    assert shipped.status == OrderStatus.shipped
    assert report.consistent
    assert report.expected_stock == 5
