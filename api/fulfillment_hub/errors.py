# fulfillment_hub/errors.py
"""
Error taxonomy for order fulfillment.

Every failure the engine reports is a FulfillmentError subclass carrying a
stable `kind`, the HTTP status the API answers with, and a JSON-ready payload.
"""
from __future__ import annotations
from typing import Any, Dict, Optional


class FulfillmentError(Exception):
    """Base class for all fulfillment failures."""

    kind = "fulfillment_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        # state name of the fulfillment run when it aborted (set by the orchestrator)
        self.aborted_in: Optional[str] = None

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.kind, "message": self.message}
        out.update(self.details())
        if self.aborted_in:
            out["aborted_in"] = self.aborted_in
        return out


class ValidationError(FulfillmentError):
    """Malformed request line. Raised before any mutation; never retried."""

    kind = "validation_error"
    status_code = 422

    def __init__(self, line: Optional[int], reason: str, product_id: Optional[str] = None):
        where = f"line {line}: " if line is not None else ""
        super().__init__(f"{where}{reason}")
        self.line = line
        self.reason = reason
        self.product_id = product_id

    def details(self) -> Dict[str, Any]:
        return {"line": self.line, "reason": self.reason, "product_id": self.product_id}


class NotFound(FulfillmentError):
    kind = "not_found"
    status_code = 404

    def __init__(self, entity: str, key: Any):
        super().__init__(f"{entity} not found: {key}")
        self.entity = entity
        self.key = key

    def details(self) -> Dict[str, Any]:
        return {"entity": self.entity, "key": str(self.key)}


class AlreadyFulfilled(FulfillmentError):
    kind = "already_fulfilled"
    status_code = 409

    def __init__(self, order_id: str):
        super().__init__(f"Order already fulfilled: {order_id}")
        self.order_id = order_id

    def details(self) -> Dict[str, Any]:
        return {"order_id": self.order_id}


class InvalidStatusTransition(FulfillmentError):
    kind = "invalid_status_transition"
    status_code = 409

    def __init__(self, order_id: str, current: str, target: str):
        super().__init__(f"Order {order_id} cannot move from {current} to {target}")
        self.order_id = order_id
        self.current = current
        self.target = target

    def details(self) -> Dict[str, Any]:
        return {"order_id": self.order_id, "current": self.current, "target": self.target}


class InsufficientStock(FulfillmentError):
    """Business-rule failure; the caller decides how to react."""

    kind = "insufficient_stock"
    status_code = 409

    def __init__(self, product_id: str, available: int, requested: int, line: Optional[int] = None):
        super().__init__(
            f"Insufficient stock for {product_id}: {available} available, {requested} requested"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested
        self.line = line

    def details(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "available": self.available,
            "requested": self.requested,
            "line": self.line,
        }


class Contention(FulfillmentError):
    """Concurrency conflict reported by the storage layer."""

    kind = "contention"
    status_code = 409

    def __init__(self, message: str = "Concurrent update conflict", attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts

    def details(self) -> Dict[str, Any]:
        return {"attempts": self.attempts}


class FulfillmentTimeout(FulfillmentError):
    kind = "timeout"
    status_code = 504

    def __init__(self, timeout: float):
        super().__init__(f"Fulfillment did not complete within {timeout:g}s")
        self.timeout = timeout

    def details(self) -> Dict[str, Any]:
        return {"timeout": self.timeout}


class StorageError(FulfillmentError):
    """Underlying durability failure (disk, connectivity, constraint)."""

    kind = "storage_error"
    status_code = 503
