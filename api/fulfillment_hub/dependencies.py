# fulfillment_hub/dependencies.py
"""
FastAPI dependencies shared by the routers.
"""
from __future__ import annotations
from typing import NoReturn

from fastapi import HTTPException, Request

from fulfillment_hub.errors import FulfillmentError
from fulfillment_hub.services.fulfillment import FulfillmentOrchestrator


def get_orchestrator(request: Request) -> FulfillmentOrchestrator:
    """The orchestrator built at startup (see main.lifespan)."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(503, detail="Fulfillment engine not initialized")
    return orchestrator


def raise_http(e: FulfillmentError) -> NoReturn:
    raise HTTPException(status_code=e.status_code, detail=e.to_dict()) from e
