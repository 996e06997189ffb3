# fulfillment_hub/routers/products.py
"""
Products Router - seeding, stock reads, restocking and reconciliation.
"""
from __future__ import annotations
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from fulfillment_hub.dependencies import get_orchestrator, raise_http
from fulfillment_hub.errors import FulfillmentError
from fulfillment_hub.models import (
    AuditEntryOut, ProductIn, ProductOut, ReconcileOut, RestockIn, StockOut,
)
from fulfillment_hub.services.fulfillment import FulfillmentOrchestrator

router = APIRouter(prefix="/products", tags=["Products"])


@router.post("", response_model=ProductOut, status_code=201)
async def create_product(
    request: ProductIn,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Seed a product; its starting stock is the reconciliation base."""
    try:
        product = await orchestrator.add_product(
            request.id,
            request.name,
            unit_price=request.unit_price,
            stock_quantity=request.stock_quantity,
            reorder_threshold=request.reorder_threshold,
        )
    except FulfillmentError as e:
        raise_http(e)
    return ProductOut.model_validate(product)


@router.get("/{product_id}/stock", response_model=StockOut)
async def get_stock(
    product_id: str,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    try:
        quantity = await orchestrator.get_stock(product_id)
    except FulfillmentError as e:
        raise_http(e)
    return StockOut(product_id=product_id, stock_quantity=quantity)


@router.post("/{product_id}/restock", response_model=StockOut)
async def restock_product(
    product_id: str,
    request: RestockIn,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Increase stock and append the matching audit entry."""
    try:
        quantity = await orchestrator.restock(
            product_id, request.quantity, reason=request.reason, notes=request.notes,
        )
    except FulfillmentError as e:
        raise_http(e)
    return StockOut(product_id=product_id, stock_quantity=quantity)


@router.get("/{product_id}/reconcile", response_model=ReconcileOut)
async def reconcile_product(
    product_id: str,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Compare initial stock plus audit deltas with the current stock."""
    try:
        report = await orchestrator.reconcile(product_id)
    except FulfillmentError as e:
        raise_http(e)
    return ReconcileOut(
        product_id=report.product_id,
        expected_stock=report.expected_stock,
        actual_stock=report.actual_stock,
        consistent=report.consistent,
    )


@router.get("/{product_id}/audit", response_model=List[AuditEntryOut])
async def list_audit_entries(
    product_id: str,
    order_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Ledger entries for a product, oldest first."""
    try:
        entries = await orchestrator.audit_entries(product_id=product_id, order_id=order_id, limit=limit)
    except FulfillmentError as e:
        raise_http(e)
    return [AuditEntryOut.model_validate(e) for e in entries]
