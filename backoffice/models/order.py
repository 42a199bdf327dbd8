"""
Order Models
"""
import enum
from sqlalchemy import Column, String, Integer, BigInteger, Numeric, DateTime, ForeignKey, Text, Uuid, Index
from sqlalchemy.orm import relationship
from backoffice.core.database import Base
from .base import UUIDMixin, TimestampMixin


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    FAILED = "failed"
    VOIDED = "voided"


class FulfillmentStatus(str, enum.Enum):
    UNFULFILLED = "unfulfilled"
    AWAITING_SHIPMENT = "awaiting_shipment"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    AWAITING_PICKUP_AT_DISTRIBUTION_CENTER = "awaiting_pickup_at_distribution_center"
    DELIVERED = "delivered"
    FULFILLED = "fulfilled"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    RETURNED = "returned"
    CANCELLED = "cancelled"


class ReturnState(str, enum.Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


class PaymentMethod(str, enum.Enum):
    ONLINE = "online"
    COD = "cod"
    BANK_TRANSFER = "bank_transfer"


class Order(Base, UUIDMixin, TimestampMixin):
    """Canonical order. Money fields are integer minor units."""
    __tablename__ = "sales_order"

    channel = Column(String(30), nullable=False, index=True)
    integration_id = Column(Uuid(as_uuid=True), ForeignKey("integration.id"))
    customer_id = Column(Uuid(as_uuid=True), ForeignKey("customer.id"))
    order_number = Column(String(100), index=True)

    # Status axes
    order_status = Column(String(30), default=OrderStatus.PENDING.value, index=True)
    payment_status = Column(String(30), default=PaymentStatus.PENDING.value)
    fulfillment_status = Column(String(50), default=FulfillmentStatus.UNFULFILLED.value)
    return_status = Column(String(20), default=ReturnState.NONE.value)

    # Payment
    payment_method = Column(String(30))  # online, cod, bank_transfer
    payment_gateway = Column(String(100))
    payment_transaction_id = Column(String(100))

    # Amounts (minor units)
    subtotal = Column(BigInteger, default=0)
    tax_amount = Column(BigInteger, default=0)
    shipping_amount = Column(BigInteger, default=0)
    discount_amount = Column(BigInteger, default=0)
    total_amount = Column(BigInteger, default=0)
    total_commission = Column(BigInteger, default=0)
    total_product_cost = Column(BigInteger, default=0)

    # Currency snapshot
    currency = Column(String(3))
    currency_id = Column(Uuid(as_uuid=True), ForeignKey("currency.id"))
    exchange_rate = Column(Numeric(18, 8), default=1)

    # Shipping
    shipping_carrier = Column(String(50))
    shipping_desi = Column(Numeric(8, 2))
    shipping_tracking_number = Column(String(100), index=True)
    shipping_tracking_url = Column(String(500))
    shipping_cost_excluding_vat = Column(BigInteger)
    shipping_vat_rate = Column(Numeric(5, 2))
    shipping_vat_amount = Column(BigInteger)
    shipping_rate_id = Column(Uuid(as_uuid=True))
    shipping_cost_source = Column(String(20))  # aggregator, rate_table
    shipping_aggregator_shipment_id = Column(String(100), index=True)
    shipping_aggregator_integration_id = Column(Uuid(as_uuid=True))

    # Dates
    order_date = Column(DateTime)
    shipped_at = Column(DateTime)
    delivered_at = Column(DateTime)
    estimated_delivery_start = Column(DateTime)
    estimated_delivery_end = Column(DateTime)

    invoice_url = Column(String(500))
    notes = Column(Text)

    # Relationships
    customer = relationship("Customer", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    returns = relationship("OrderReturn", back_populates="order")

    __table_args__ = (
        Index("ix_order_channel_number", "channel", "order_number"),
    )

    @property
    def is_cod(self) -> bool:
        return self.payment_method == PaymentMethod.COD.value

    def __repr__(self):
        return f"<Order {self.channel}:{self.order_number} {self.order_status}>"


class OrderItem(Base, UUIDMixin, TimestampMixin):
    """Order line. Money fields are integer minor units."""
    __tablename__ = "order_item"

    order_id = Column(Uuid(as_uuid=True), ForeignKey("sales_order.id"), nullable=False)
    product_variant_id = Column(Uuid(as_uuid=True), ForeignKey("product_variant.id"), nullable=False)

    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(BigInteger, default=0)
    unit_cost = Column(BigInteger, default=0)
    total_price = Column(BigInteger, default=0)
    discount_amount = Column(BigInteger, default=0)
    tax_rate = Column(Numeric(6, 2), default=0)
    tax_amount = Column(BigInteger, default=0)
    commission_rate = Column(Numeric(6, 2), default=0)
    commission_amount = Column(BigInteger, default=0)

    # Relationships
    order = relationship("Order", back_populates="items")
    variant = relationship("ProductVariant")

    def __repr__(self):
        return f"<OrderItem {self.product_variant_id} x{self.quantity}>"
