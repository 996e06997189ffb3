# fulfillment_hub/services/orders.py
"""
Order Repository - order headers, their lines, and status transitions.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Sequence
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from fulfillment_hub.db_models import Order, OrderLine, OrderStatus, Product
from fulfillment_hub.errors import (
    AlreadyFulfilled, InvalidStatusTransition, NotFound, ValidationError,
)


@dataclass(frozen=True)
class LineItem:
    """One requested order line, already parsed into typed values."""
    product_id: str
    quantity: int
    unit_price: Decimal
    discount: Decimal = Decimal("0")


@dataclass(frozen=True)
class ShippingInfo:
    freight: Optional[Decimal] = None
    ship_via: Optional[str] = None
    ship_name: Optional[str] = None
    ship_address: Optional[str] = None


def _finite_decimal(value) -> Optional[Decimal]:
    """`value` as a finite Decimal, or None if it is not a usable number."""
    try:
        number = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return None
    return number if number.is_finite() else None


def check_line(line_number: int, line: LineItem, known_product_ids) -> None:
    """Raise ValidationError if `line` is malformed or references an unknown product."""
    if not line.product_id:
        raise ValidationError(line_number, "product_id is required")
    if line.product_id not in known_product_ids:
        raise ValidationError(line_number, f"unknown product {line.product_id}", line.product_id)
    if not isinstance(line.quantity, int) or isinstance(line.quantity, bool) or line.quantity <= 0:
        raise ValidationError(line_number, f"quantity must be a positive integer, got {line.quantity!r}", line.product_id)
    price = _finite_decimal(line.unit_price)
    if price is None or price < 0:
        raise ValidationError(line_number, f"unit_price must be a number >= 0, got {line.unit_price!r}", line.product_id)
    discount = _finite_decimal(line.discount)
    if discount is None or not (Decimal("0") <= discount < Decimal("1")):
        raise ValidationError(line_number, f"discount must be in [0, 1), got {line.discount!r}", line.product_id)


class OrderRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _known_product_ids(self, product_ids) -> set:
        ids = sorted(set(product_ids))
        if not ids:
            return set()
        result = await self.db.execute(select(Product.id).where(Product.id.in_(ids)))
        return set(result.scalars().all())

    async def create_order(
        self,
        customer_id: str,
        lines: Sequence[LineItem],
        shipping: Optional[ShippingInfo] = None,
        idempotency_key: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        """Insert the header and all lines as one unit. Returns the new order id."""
        if not customer_id:
            raise ValidationError(None, "customer_id is required")
        if not lines:
            raise ValidationError(None, "order must contain at least one line")

        known = await self._known_product_ids(line.product_id for line in lines)
        for line_number, line in enumerate(lines, start=1):
            check_line(line_number, line, known)

        shipping = shipping or ShippingInfo()
        order = Order(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            status=OrderStatus.pending,
            created_at=created_at or datetime.now(timezone.utc),
            freight=shipping.freight,
            ship_via=shipping.ship_via,
            ship_name=shipping.ship_name,
            ship_address=shipping.ship_address,
            idempotency_key=idempotency_key,
        )
        self.db.add(order)
        await self.db.flush()

        self.db.add_all([
            OrderLine(
                order_id=order.id,
                line_number=line_number,
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=Decimal(line.unit_price),
                discount=Decimal(line.discount),
            )
            for line_number, line in enumerate(lines, start=1)
        ])
        await self.db.flush()
        return order.id

    async def _get_header(self, order_id: str, for_update: bool = False) -> Order:
        stmt = select(Order).where(Order.id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFound("Order", order_id)
        return order

    async def get_order(self, order_id: str) -> Order:
        stmt = (
            select(Order)
            .options(selectinload(Order.lines))
            .where(Order.id == order_id)
        )
        result = await self.db.execute(stmt)
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFound("Order", order_id)
        return order

    async def find_by_idempotency_key(self, key: str) -> Optional[Order]:
        result = await self.db.execute(select(Order).where(Order.idempotency_key == key))
        return result.scalar_one_or_none()

    async def mark_fulfilled(self, order_id: str, timestamp: Optional[datetime] = None) -> Order:
        order = await self._get_header(order_id, for_update=True)
        if order.status != OrderStatus.pending:
            raise AlreadyFulfilled(order_id)
        order.status = OrderStatus.fulfilled
        order.fulfilled_at = timestamp or datetime.now(timezone.utc)
        await self.db.flush()
        return order

    async def mark_shipped(
        self,
        order_id: str,
        shipping: Optional[ShippingInfo] = None,
        timestamp: Optional[datetime] = None,
    ) -> Order:
        order = await self._get_header(order_id, for_update=True)
        if order.status != OrderStatus.fulfilled:
            raise InvalidStatusTransition(order_id, order.status.value, OrderStatus.shipped.value)
        if shipping is not None:
            for field in ("freight", "ship_via", "ship_name", "ship_address"):
                value = getattr(shipping, field)
                if value is not None:
                    setattr(order, field, value)
        order.status = OrderStatus.shipped
        order.shipped_at = timestamp or datetime.now(timezone.utc)
        await self.db.flush()
        return order
