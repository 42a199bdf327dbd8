# Services Package
from . import integration_service
from . import webhook_service
from . import sync_service
from .identity_map import IdentityMap
from .order_reconciler import OrderReconciler
from .return_reconciler import ReturnReconciler
from .return_lifecycle import ReturnLifecycle
from .shipping_cost_service import ShippingCostService
from .shipment_tracking_service import ShipmentTrackingService

__all__ = [
    "IdentityMap",
    "OrderReconciler",
    "ReturnReconciler",
    "ReturnLifecycle",
    "ShippingCostService",
    "ShipmentTrackingService",
    "integration_service",
    "webhook_service",
    "sync_service",
]
