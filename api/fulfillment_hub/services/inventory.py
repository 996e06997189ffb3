# fulfillment_hub/services/inventory.py
"""
Inventory Store - authoritative per-product stock.

Handles:
- Stock reads
- Atomic check-and-decrement (reservation) that can never overdraw
- Compensating increments (restock / manual correction)
- Row locking in a stable order for multi-product transactions
- Product seeding for external collaborators
"""
from __future__ import annotations
from decimal import Decimal
from typing import Dict, Iterable, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_hub.db_models import Product
from fulfillment_hub.errors import InsufficientStock, NotFound, ValidationError


class InventoryStore:
    """Stock operations bound to one session (one transaction)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_product(self, product_id: str) -> Product:
        product = await self.db.get(Product, product_id)
        if product is None:
            raise NotFound("Product", product_id)
        return product

    async def get_stock(self, product_id: str) -> int:
        stmt = select(Product.stock_quantity).where(Product.id == product_id)
        result = await self.db.execute(stmt)
        quantity = result.scalar_one_or_none()
        if quantity is None:
            raise NotFound("Product", product_id)
        return quantity

    async def find_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        """Batch lookup; unknown ids are simply absent from the result."""
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        result = await self.db.execute(select(Product).where(Product.id.in_(ids)))
        return {p.id: p for p in result.scalars().all()}

    async def lock_products(self, product_ids: Iterable[str]) -> List[str]:
        """
        Take row locks on the given products in id order.

        Two orders touching overlapping product sets then acquire locks in the
        same order and cannot deadlock. SQLite ignores FOR UPDATE; its
        transactions already hold the database write lock.
        """
        ids = sorted(set(product_ids))
        if not ids:
            return []
        stmt = (
            select(Product.id)
            .where(Product.id.in_(ids))
            .order_by(Product.id)
            .with_for_update()
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # =========================================================================
    # Mutations
    # =========================================================================

    async def reserve_stock(self, product_id: str, quantity: int) -> int:
        """
        Decrement stock by `quantity` iff at least `quantity` is on hand.

        The floor check and the decrement are one UPDATE statement, so the
        database evaluates them against the latest committed row under its
        row lock. Returns the remaining stock.
        """
        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.stock_quantity >= quantity)
            .values(stock_quantity=Product.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 1:
            return await self.get_stock(product_id)

        # Either the product is unknown (NotFound) or the floor check failed
        available = await self.get_stock(product_id)
        raise InsufficientStock(product_id, available=available, requested=quantity)

    async def restore_stock(self, product_id: str, quantity: int) -> int:
        """Compensating increment. Returns the new stock level."""
        if quantity <= 0:
            raise ValueError("restore quantity must be positive")
        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(stock_quantity=Product.stock_quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            raise NotFound("Product", product_id)
        return await self.get_stock(product_id)

    async def add_product(
        self,
        product_id: str,
        name: str,
        unit_price: Decimal = Decimal("0"),
        stock_quantity: int = 0,
        reorder_threshold: int = 0,
    ) -> Product:
        """Seed a product. Its starting stock becomes the reconciliation base."""
        if await self.db.get(Product, product_id) is not None:
            raise ValidationError(None, f"product {product_id} already exists", product_id)
        product = Product(
            id=product_id,
            name=name,
            unit_price=unit_price,
            stock_quantity=stock_quantity,
            initial_stock=stock_quantity,
            reorder_threshold=reorder_threshold,
        )
        self.db.add(product)
        await self.db.flush()
        return product
