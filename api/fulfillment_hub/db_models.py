# fulfillment_hub/db_models.py
"""
SQLAlchemy ORM Models for Fulfillment Hub.

Four tables: products, orders, order_lines and the append-only
inventory_audit_log ledger.
"""
from __future__ import annotations
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List
import enum

from sqlalchemy import (
    String, Integer, BigInteger, Text, DateTime,
    Numeric, ForeignKey, Index, CheckConstraint,
    Enum as SQLEnum, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment_hub.database import Base

# SQLite only auto-increments INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# ENUMS
# ============================================================================

class OrderStatus(str, enum.Enum):
    pending = "pending"
    fulfilled = "fulfilled"
    shipped = "shipped"


class MovementReason(str, enum.Enum):
    fulfillment = "fulfillment"
    restock = "restock"
    adjustment = "adjustment"


# ============================================================================
# MIXIN for updated_at
# ============================================================================

class TimestampMixin:
    """Mixin for created_at and updated_at columns."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================================================
# 1. PRODUCTS
# ============================================================================

class Product(TimestampMixin, Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=0, nullable=False)
    stock_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Stock at seeding time; base of the reconciliation invariant
    initial_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reorder_threshold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Relationships
    audit_entries: Mapped[List["InventoryAuditEntry"]] = relationship(back_populates="product")

    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="chk_products_stock_non_negative"),
        CheckConstraint("initial_stock >= 0", name="chk_products_initial_stock_non_negative"),
        CheckConstraint("unit_price >= 0", name="chk_products_price_non_negative"),
    )

    @property
    def needs_reorder(self) -> bool:
        return self.stock_quantity <= self.reorder_threshold


# ============================================================================
# 2. ORDERS
# ============================================================================

class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name="order_status"),
        default=OrderStatus.pending,
        nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)
    fulfilled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # Freight / shipping metadata
    freight: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    ship_via: Mapped[Optional[str]] = mapped_column(String(100))
    ship_name: Mapped[Optional[str]] = mapped_column(String(255))
    ship_address: Mapped[Optional[str]] = mapped_column(Text)
    # Caller-supplied deduplication token (at-most-once creation)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True)

    # Relationships
    lines: Mapped[List["OrderLine"]] = relationship(
        back_populates="order",
        order_by="OrderLine.line_number",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_orders_customer", "customer_id"),
        Index("idx_orders_status", "status"),
    )

    @property
    def subtotal(self) -> Decimal:
        return sum((line.line_total for line in self.lines), Decimal("0"))


# ============================================================================
# 3. ORDER LINES
# ============================================================================

class OrderLine(Base):
    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    # Snapshotted at order time; later product price changes do not touch these
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    discount: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=0, nullable=False)

    # Relationships
    order: Mapped["Order"] = relationship(back_populates="lines")
    product: Mapped["Product"] = relationship()

    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_order_line_qty_positive"),
        CheckConstraint("unit_price >= 0", name="chk_order_line_price_non_negative"),
        CheckConstraint("discount >= 0 AND discount < 1", name="chk_order_line_discount_range"),
        Index("idx_order_lines_order", "order_id"),
        Index("idx_order_lines_product", "product_id"),
    )

    @property
    def line_total(self) -> Decimal:
        return Decimal(self.quantity) * Decimal(self.unit_price) * (Decimal("1") - Decimal(self.discount))


# ============================================================================
# 4. INVENTORY AUDIT LOG (IMMUTABLE LEDGER)
# ============================================================================

class InventoryAuditEntry(Base):
    __tablename__ = "inventory_audit_log"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(String(64), ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[MovementReason] = mapped_column(
        SQLEnum(MovementReason, name="movement_reason"),
        nullable=False
    )
    order_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("orders.id", ondelete="RESTRICT"))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    # set client-side so a freshly flushed entry is readable without a refresh
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    # Relationships
    product: Mapped["Product"] = relationship(back_populates="audit_entries")

    __table_args__ = (
        CheckConstraint("delta != 0", name="chk_audit_delta_not_zero"),
        Index("idx_audit_product", "product_id"),
        Index("idx_audit_order", "order_id"),
        Index("idx_audit_created", "created_at"),
    )
