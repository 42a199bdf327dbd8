from .base import TimestampMixin, UUIDMixin, JSONType
from .integration import Integration, IntegrationType, Provider, WebhookLog, WebhookResult
from .mapping import PlatformMapping, EntityKind
from .customer import Customer
from .product import Product, ProductVariant
from .currency import Currency, ExchangeRate
from .order import (
    Order, OrderItem, OrderStatus, PaymentStatus, FulfillmentStatus, ReturnState, PaymentMethod
)
from .returns import OrderReturn, ReturnItem, ReturnRefund, RefundEvent, ReturnStatus, RefundStatus
from .shipping import ShippingCarrier, ShippingRateTable, ShippingRate
from .audit import AuditLog

__all__ = [
    # Base
    "TimestampMixin", "UUIDMixin", "JSONType",
    # Integration
    "Integration", "IntegrationType", "Provider", "WebhookLog", "WebhookResult",
    # Identity map
    "PlatformMapping", "EntityKind",
    # Customer
    "Customer",
    # Product
    "Product", "ProductVariant",
    # Currency
    "Currency", "ExchangeRate",
    # Order
    "Order", "OrderItem", "OrderStatus", "PaymentStatus", "FulfillmentStatus", "ReturnState", "PaymentMethod",
    # Returns
    "OrderReturn", "ReturnItem", "ReturnRefund", "RefundEvent", "ReturnStatus", "RefundStatus",
    # Shipping
    "ShippingCarrier", "ShippingRateTable", "ShippingRate",
    # Audit
    "AuditLog",
]
