# fulfillment_hub/routers/orders.py
"""
Orders Router - fulfillment entry point and order read accessor.
"""
from __future__ import annotations
from fastapi import APIRouter, Depends

from fulfillment_hub.dependencies import get_orchestrator, raise_http
from fulfillment_hub.errors import FulfillmentError
from fulfillment_hub.models import FulfillOrderIn, FulfillOrderOut, OrderOut, ShipOrderIn
from fulfillment_hub.services.fulfillment import FulfillmentOrchestrator
from fulfillment_hub.services.orders import LineItem, ShippingInfo

router = APIRouter(prefix="/orders", tags=["Orders"])


def _shipping(payload) -> ShippingInfo | None:
    if payload is None:
        return None
    return ShippingInfo(
        freight=payload.freight,
        ship_via=payload.ship_via,
        ship_name=payload.ship_name,
        ship_address=payload.ship_address,
    )


@router.post("", response_model=FulfillOrderOut, status_code=201)
async def fulfill_order(
    request: FulfillOrderIn,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """
    Fulfill an order atomically.

    Either every line is reserved and the order is persisted, or nothing
    changes and the first failing line is reported.
    """
    lines = [
        LineItem(
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            discount=line.discount,
        )
        for line in request.lines
    ]
    try:
        result = await orchestrator.fulfill_order(
            request.customer_id,
            lines,
            shipping=_shipping(request.shipping),
            timeout=request.timeout,
            idempotency_key=request.idempotency_key,
        )
    except FulfillmentError as e:
        raise_http(e)

    return FulfillOrderOut(
        order_id=result.order_id,
        attempts=result.attempts,
        replayed=result.replayed,
        low_stock=result.low_stock,
    )


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(
    order_id: str,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Get order header with all lines."""
    try:
        order = await orchestrator.get_order(order_id)
    except FulfillmentError as e:
        raise_http(e)
    return OrderOut.model_validate(order)


@router.post("/{order_id}/ship", response_model=OrderOut)
async def ship_order(
    order_id: str,
    request: ShipOrderIn | None = None,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Move a fulfilled order to shipped, optionally updating freight data."""
    try:
        order = await orchestrator.ship_order(order_id, _shipping(request))
    except FulfillmentError as e:
        raise_http(e)
    return OrderOut.model_validate(order)
