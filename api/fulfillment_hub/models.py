from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict

from fulfillment_hub.db_models import MovementReason, OrderStatus

# Request bodies are parsed into these typed models before they reach the
# orchestrator. Range checks (quantity > 0, 0 <= discount < 1) are left to the
# orchestrator so the API and library callers get the same line-numbered error.

class OrderLineIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    quantity: int
    unit_price: Decimal
    discount: Decimal = Decimal("0")

class ShippingIn(BaseModel):
    freight: Optional[Decimal] = None
    ship_via: Optional[str] = None
    ship_name: Optional[str] = None
    ship_address: Optional[str] = None

class FulfillOrderIn(BaseModel):
    customer_id: str = Field(min_length=1, max_length=100)
    lines: List[OrderLineIn] = Field(min_length=1)
    shipping: Optional[ShippingIn] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    timeout: Optional[float] = Field(default=None, gt=0)

class FulfillOrderOut(BaseModel):
    order_id: str
    attempts: int
    replayed: bool = False
    low_stock: List[str] = Field(default_factory=list)

class OrderLineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    line_number: int
    product_id: str
    quantity: int
    unit_price: Decimal
    discount: Decimal
    line_total: Decimal

class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    status: OrderStatus
    created_at: datetime
    fulfilled_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    freight: Optional[Decimal] = None
    ship_via: Optional[str] = None
    ship_name: Optional[str] = None
    ship_address: Optional[str] = None
    subtotal: Decimal
    lines: List[OrderLineOut]

class ShipOrderIn(ShippingIn):
    pass

class ProductIn(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    stock_quantity: int = Field(default=0, ge=0)
    reorder_threshold: int = Field(default=0, ge=0)

class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    unit_price: Decimal
    stock_quantity: int
    initial_stock: int
    reorder_threshold: int

class StockOut(BaseModel):
    product_id: str
    stock_quantity: int

class RestockIn(BaseModel):
    quantity: int = Field(gt=0)
    reason: MovementReason = MovementReason.restock
    notes: Optional[str] = None

class ReconcileOut(BaseModel):
    product_id: str
    expected_stock: int
    actual_stock: int
    consistent: bool

class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: str
    delta: int
    reason: MovementReason
    order_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
