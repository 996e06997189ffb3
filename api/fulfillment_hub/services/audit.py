# fulfillment_hub/services/audit.py
"""
Audit Log - append-only ledger of inventory mutations.

Every stock change writes exactly one entry. Entries are never updated or
deleted; reconciliation replays them on top of the product's initial stock.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_hub.db_models import InventoryAuditEntry, MovementReason, Product
from fulfillment_hub.errors import NotFound


@dataclass(frozen=True)
class AuditRecord:
    product_id: str
    delta: int
    reason: MovementReason
    order_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class ReconciliationReport:
    product_id: str
    expected_stock: int
    actual_stock: int

    @property
    def consistent(self) -> bool:
        return self.expected_stock == self.actual_stock


class AuditLog:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        product_id: str,
        delta: int,
        reason: MovementReason,
        causing_order_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> InventoryAuditEntry:
        entries = await self.record_many([AuditRecord(product_id, delta, reason, causing_order_id, notes)])
        return entries[0]

    async def record_many(self, records: Iterable[AuditRecord]) -> List[InventoryAuditEntry]:
        """Insert all records in one flush."""
        entries = []
        for rec in records:
            if rec.delta == 0:
                raise ValueError(f"audit delta for {rec.product_id} must be non-zero")
            entries.append(InventoryAuditEntry(
                product_id=rec.product_id,
                delta=rec.delta,
                reason=MovementReason(rec.reason),
                order_id=rec.order_id,
                notes=rec.notes,
            ))
        self.db.add_all(entries)
        # driver failures propagate; the transaction coordinator maps them to StorageError
        await self.db.flush()
        return entries

    async def entries_for(
        self,
        product_id: Optional[str] = None,
        order_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[InventoryAuditEntry]:
        stmt = select(InventoryAuditEntry).order_by(InventoryAuditEntry.id)
        if product_id is not None:
            stmt = stmt.where(InventoryAuditEntry.product_id == product_id)
        if order_id is not None:
            stmt = stmt.where(InventoryAuditEntry.order_id == order_id)
        if limit:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def _initial_and_actual(self, product_id: str) -> Tuple[int, int]:
        stmt = select(Product.initial_stock, Product.stock_quantity).where(Product.id == product_id)
        row = (await self.db.execute(stmt)).one_or_none()
        if row is None:
            raise NotFound("Product", product_id)
        return row.initial_stock, row.stock_quantity

    async def _sum_deltas(self, product_id: str) -> int:
        stmt = select(func.coalesce(func.sum(InventoryAuditEntry.delta), 0)).where(
            InventoryAuditEntry.product_id == product_id
        )
        return int((await self.db.execute(stmt)).scalar_one())

    async def reconcile(self, product_id: str) -> int:
        """Expected stock: initial stock plus every recorded delta."""
        initial, _ = await self._initial_and_actual(product_id)
        return initial + await self._sum_deltas(product_id)

    async def verify(self, product_id: str) -> ReconciliationReport:
        initial, actual = await self._initial_and_actual(product_id)
        expected = initial + await self._sum_deltas(product_id)
        return ReconciliationReport(product_id=product_id, expected_stock=expected, actual_stock=actual)
