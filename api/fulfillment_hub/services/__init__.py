# fulfillment_hub/services/__init__.py
"""
Business logic services for Fulfillment Hub.
"""
from fulfillment_hub.services.inventory import InventoryStore
from fulfillment_hub.services.orders import OrderRepository, LineItem, ShippingInfo
from fulfillment_hub.services.audit import AuditLog, AuditRecord, ReconciliationReport
from fulfillment_hub.services.transactions import TransactionCoordinator
from fulfillment_hub.services.fulfillment import (
    FulfillmentConfig, FulfillmentOrchestrator, FulfillmentResult, FulfillmentState, validate_lines,
)

__all__ = [
    "InventoryStore",
    "OrderRepository",
    "LineItem",
    "ShippingInfo",
    "AuditLog",
    "AuditRecord",
    "ReconciliationReport",
    "TransactionCoordinator",
    "FulfillmentConfig",
    "FulfillmentOrchestrator",
    "FulfillmentResult",
    "FulfillmentState",
    "validate_lines",
]
