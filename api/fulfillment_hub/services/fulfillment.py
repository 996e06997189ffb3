# fulfillment_hub/services/fulfillment.py
"""
Fulfillment Orchestrator.

Turns an order request into persisted state plus an inventory decrement:

    received -> validating -> reserving -> persisting -> committed
                     \\            \\            \\
                      +------------+------------+--> aborted

Validation is a pure pass over the typed lines (`validate_lines`). Everything
from validation onwards runs inside one transaction owned by the
TransactionCoordinator, so an abort leaves no stock, order or audit rows
behind. Contention aborts are retried from scratch by the coordinator.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence
import enum
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_hub.db_models import MovementReason, Order
from fulfillment_hub.errors import FulfillmentError, InsufficientStock, ValidationError
from fulfillment_hub.services.audit import AuditLog, AuditRecord
from fulfillment_hub.services.inventory import InventoryStore
from fulfillment_hub.services.orders import LineItem, OrderRepository, ShippingInfo, check_line
from fulfillment_hub.services.transactions import TransactionCoordinator

logger = logging.getLogger(__name__)


class FulfillmentState(str, enum.Enum):
    received = "received"
    validating = "validating"
    reserving = "reserving"
    persisting = "persisting"
    committed = "committed"
    aborted = "aborted"


@dataclass(frozen=True)
class FulfillmentConfig:
    """Behaviour knobs, passed explicitly to the orchestrator."""
    max_attempts: int = 3
    retry_backoff: float = 0.05
    default_timeout: Optional[float] = None
    lock_rows: bool = True

    @classmethod
    def from_settings(cls, settings) -> "FulfillmentConfig":
        return cls(
            max_attempts=settings.FULFILLMENT_MAX_ATTEMPTS,
            retry_backoff=settings.FULFILLMENT_RETRY_BACKOFF,
            default_timeout=settings.FULFILLMENT_TIMEOUT,
            lock_rows=settings.FULFILLMENT_LOCK_ROWS,
        )


@dataclass
class FulfillmentResult:
    order_id: str
    attempts: int = 1
    replayed: bool = False
    low_stock: List[str] = field(default_factory=list)
    states: List[FulfillmentState] = field(default_factory=list)


@dataclass
class _Run:
    """Per-call state machine trace; the orchestrator itself holds no call state."""
    attempts: int = 0
    states: List[FulfillmentState] = field(default_factory=lambda: [FulfillmentState.received])

    @property
    def state(self) -> FulfillmentState:
        return self.states[-1]

    def enter(self, state: FulfillmentState) -> None:
        self.states.append(state)

    def new_attempt(self, attempt: int) -> None:
        self.attempts = attempt
        if attempt > 1:
            # each retry restarts from a fresh request
            self.states.append(FulfillmentState.received)


def validate_lines(lines: Sequence[LineItem], known_product_ids) -> None:
    """
    Check every line in caller order; the first bad line raises ValidationError.

    Pure: needs only the set of product ids that exist.
    """
    if not lines:
        raise ValidationError(None, "order must contain at least one line")
    for line_number, line in enumerate(lines, start=1):
        check_line(line_number, line, known_product_ids)


class FulfillmentOrchestrator:

    def __init__(
        self,
        coordinator: TransactionCoordinator,
        config: Optional[FulfillmentConfig] = None,
        inventory_factory: Callable[[AsyncSession], InventoryStore] = InventoryStore,
        orders_factory: Callable[[AsyncSession], OrderRepository] = OrderRepository,
        audit_factory: Callable[[AsyncSession], AuditLog] = AuditLog,
    ):
        self.coordinator = coordinator
        self.config = config or FulfillmentConfig(
            max_attempts=coordinator.max_attempts,
            retry_backoff=coordinator.retry_backoff,
        )
        self.inventory_factory = inventory_factory
        self.orders_factory = orders_factory
        self.audit_factory = audit_factory

    @classmethod
    def from_session_factory(cls, session_factory, config: Optional[FulfillmentConfig] = None, **factories):
        config = config or FulfillmentConfig()
        coordinator = TransactionCoordinator(
            session_factory,
            max_attempts=config.max_attempts,
            retry_backoff=config.retry_backoff,
        )
        return cls(coordinator, config, **factories)

    # =========================================================================
    # fulfill_order
    # =========================================================================

    async def fulfill_order(
        self,
        customer_id: str,
        lines: Sequence[LineItem],
        shipping: Optional[ShippingInfo] = None,
        timeout: Optional[float] = None,
        idempotency_key: Optional[str] = None,
    ) -> FulfillmentResult:
        """
        Validate, reserve, persist and commit one order atomically.

        Raises a FulfillmentError describing the first obstruction; never
        returns an order id for a failed call.
        """
        lines = list(lines)
        run = _Run()
        if timeout is None:
            timeout = self.config.default_timeout

        async def unit_of_work(db: AsyncSession) -> FulfillmentResult:
            return await self._attempt(db, run, customer_id, lines, shipping, idempotency_key)

        try:
            result = await self.coordinator.run(unit_of_work, timeout=timeout, on_attempt=run.new_attempt)
        except FulfillmentError as e:
            e.aborted_in = run.state.value
            run.enter(FulfillmentState.aborted)
            logger.info(
                "Order for customer %s aborted in %s after %d attempt(s): %s",
                customer_id, e.aborted_in, run.attempts, e.message,
            )
            raise

        run.enter(FulfillmentState.committed)
        result.attempts = run.attempts
        result.states = list(run.states)
        if not result.replayed:
            logger.info(
                "Order %s fulfilled for customer %s (%d line(s), %d attempt(s))",
                result.order_id, customer_id, len(lines), run.attempts,
            )
        for product_id in result.low_stock:
            logger.warning("Low stock: product %s at or below reorder threshold", product_id)
        return result

    async def _attempt(
        self,
        db: AsyncSession,
        run: _Run,
        customer_id: str,
        lines: List[LineItem],
        shipping: Optional[ShippingInfo],
        idempotency_key: Optional[str],
    ) -> FulfillmentResult:
        inventory = self.inventory_factory(db)
        orders = self.orders_factory(db)
        audit = self.audit_factory(db)

        if idempotency_key:
            existing = await orders.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info("Idempotency key %s already used by order %s", idempotency_key, existing.id)
                return FulfillmentResult(order_id=existing.id, replayed=True)

        # -- validating ------------------------------------------------------
        run.enter(FulfillmentState.validating)
        if not customer_id:
            raise ValidationError(None, "customer_id is required")
        products = await inventory.find_products(line.product_id for line in lines)
        validate_lines(lines, products.keys())

        # -- reserving -------------------------------------------------------
        run.enter(FulfillmentState.reserving)
        if self.config.lock_rows:
            await inventory.lock_products(products.keys())
        remaining: Dict[str, int] = {}
        for line_number, line in enumerate(lines, start=1):
            try:
                remaining[line.product_id] = await inventory.reserve_stock(line.product_id, line.quantity)
            except InsufficientStock as e:
                e.line = line_number
                raise

        # -- persisting ------------------------------------------------------
        run.enter(FulfillmentState.persisting)
        now = datetime.now(timezone.utc)
        order_id = await orders.create_order(
            customer_id,
            lines,
            shipping=shipping,
            idempotency_key=idempotency_key,
            created_at=now,
        )
        await audit.record_many([
            AuditRecord(
                product_id=line.product_id,
                delta=-line.quantity,
                reason=MovementReason.fulfillment,
                order_id=order_id,
            )
            for line in lines
        ])
        await orders.mark_fulfilled(order_id, now)

        low_stock = [
            product_id
            for product_id, stock in remaining.items()
            if stock <= products[product_id].reorder_threshold
        ]
        return FulfillmentResult(order_id=order_id, low_stock=low_stock)

    # =========================================================================
    # Other operations
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        async def unit_of_work(db: AsyncSession) -> Order:
            return await self.orders_factory(db).get_order(order_id)
        return await self.coordinator.run(unit_of_work)

    async def ship_order(
        self,
        order_id: str,
        shipping: Optional[ShippingInfo] = None,
        timeout: Optional[float] = None,
    ) -> Order:
        async def unit_of_work(db: AsyncSession) -> Order:
            orders = self.orders_factory(db)
            await orders.mark_shipped(order_id, shipping)
            return await orders.get_order(order_id)
        order = await self.coordinator.run(unit_of_work, timeout=timeout or self.config.default_timeout)
        logger.info("Order %s shipped", order_id)
        return order

    async def restock(
        self,
        product_id: str,
        quantity: int,
        reason: MovementReason = MovementReason.restock,
        order_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> int:
        """Compensating increment plus its audit entry, atomically. Returns new stock."""
        if quantity <= 0:
            raise ValidationError(None, f"restock quantity must be positive, got {quantity!r}", product_id)

        async def unit_of_work(db: AsyncSession) -> int:
            new_stock = await self.inventory_factory(db).restore_stock(product_id, quantity)
            await self.audit_factory(db).record(product_id, quantity, reason, order_id, notes)
            return new_stock

        new_stock = await self.coordinator.run(unit_of_work, timeout=self.config.default_timeout)
        logger.info("Restocked %s by %d (%s), stock now %d", product_id, quantity, MovementReason(reason).value, new_stock)
        return new_stock

    async def add_product(
        self,
        product_id: str,
        name: str,
        unit_price: Decimal = Decimal("0"),
        stock_quantity: int = 0,
        reorder_threshold: int = 0,
    ):
        async def unit_of_work(db: AsyncSession):
            return await self.inventory_factory(db).add_product(
                product_id, name, unit_price, stock_quantity, reorder_threshold,
            )
        return await self.coordinator.run(unit_of_work)

    async def get_stock(self, product_id: str) -> int:
        async def unit_of_work(db: AsyncSession) -> int:
            return await self.inventory_factory(db).get_stock(product_id)
        return await self.coordinator.run(unit_of_work)

    async def audit_entries(
        self,
        product_id: Optional[str] = None,
        order_id: Optional[str] = None,
        limit: Optional[int] = None,
    ):
        """Ledger entries, oldest first."""
        async def unit_of_work(db: AsyncSession):
            return await self.audit_factory(db).entries_for(product_id=product_id, order_id=order_id, limit=limit)
        return await self.coordinator.run(unit_of_work)

    async def reconcile(self, product_id: str):
        async def unit_of_work(db: AsyncSession):
            return await self.audit_factory(db).verify(product_id)
        return await self.coordinator.run(unit_of_work)
