"""
Return Models - Returns, return lines and refund transactions
"""
import enum
import uuid
from sqlalchemy import Column, String, Integer, BigInteger, Numeric, DateTime, ForeignKey, Text, Uuid, UniqueConstraint
from sqlalchemy.orm import relationship
from backoffice.core.database import Base
from .base import UUIDMixin, TimestampMixin, JSONType


class ReturnStatus(str, enum.Enum):
    REQUESTED = "requested"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    LABEL_GENERATED = "label_generated"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    INSPECTING = "inspecting"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def _return_number() -> str:
    return f"RET-{uuid.uuid4().hex[:10].upper()}"


def _refund_number() -> str:
    return f"REF-{uuid.uuid4().hex[:10].upper()}"


class OrderReturn(Base, UUIDMixin, TimestampMixin):
    """
    Canonical return/refund record. Never deleted by sync; every lifecycle
    timestamp is written once through stamp().
    """
    __tablename__ = "order_return"

    return_number = Column(String(30), unique=True, default=_return_number)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("sales_order.id"), nullable=False, index=True)
    channel = Column(String(30), nullable=False)
    external_return_id = Column(String(100), index=True)
    status = Column(String(30), nullable=False, default=ReturnStatus.REQUESTED.value, index=True)

    # Lifecycle timestamps
    requested_at = Column(DateTime)
    approved_at = Column(DateTime)
    label_generated_at = Column(DateTime)
    shipped_at = Column(DateTime)
    received_at = Column(DateTime)
    inspected_at = Column(DateTime)
    completed_at = Column(DateTime)
    rejected_at = Column(DateTime)
    cancelled_at = Column(DateTime)

    # Reason & notes
    reason_code = Column(String(50))
    reason_name = Column(String(200))
    customer_note = Column(Text)
    internal_note = Column(Text)
    rejection_reason = Column(Text)

    # Return shipping (minor units)
    return_shipping_carrier = Column(String(50))
    return_tracking_number = Column(String(100), index=True)
    return_tracking_url = Column(String(500))
    return_shipping_desi = Column(Numeric(8, 2))
    return_shipping_cost_excluding_vat = Column(BigInteger)
    return_shipping_vat_rate = Column(Numeric(5, 2))
    return_shipping_vat_amount = Column(BigInteger)
    return_shipping_rate_id = Column(Uuid(as_uuid=True))
    return_aggregator_shipment_id = Column(String(100), index=True)
    return_label_path = Column(String(500))
    original_shipping_cost = Column(BigInteger)

    # Money (minor units)
    total_refund_amount = Column(BigInteger, default=0)
    restocking_fee = Column(BigInteger, default=0)
    currency = Column(String(3))

    platform_data = Column(JSONType)

    # Actors
    approved_by = Column(String(100))
    rejected_by = Column(String(100))
    completed_by = Column(String(100))

    # Relationships
    order = relationship("Order", back_populates="returns")
    items = relationship("ReturnItem", back_populates="order_return", cascade="all, delete-orphan")
    refunds = relationship("ReturnRefund", back_populates="order_return", cascade="all, delete-orphan")
    refund_events = relationship("RefundEvent", back_populates="order_return", cascade="all, delete-orphan")

    def stamp(self, field: str, moment) -> bool:
        """Set a lifecycle timestamp unless it is already set"""
        if moment is None or getattr(self, field) is not None:
            return False
        setattr(self, field, moment)
        return True

    def __repr__(self):
        return f"<OrderReturn {self.return_number} {self.status}>"


class ReturnItem(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "return_item"

    return_id = Column(Uuid(as_uuid=True), ForeignKey("order_return.id"), nullable=False)
    order_item_id = Column(Uuid(as_uuid=True), ForeignKey("order_item.id"), nullable=False)

    quantity = Column(Integer, nullable=False, default=1)
    reason_code = Column(String(50))
    reason_name = Column(String(200))
    customer_note = Column(Text)
    received_condition = Column(String(30))  # good, damaged
    inspection_note = Column(Text)
    refund_amount = Column(BigInteger, default=0)
    external_item_id = Column(String(100))
    platform_data = Column(JSONType)

    order_return = relationship("OrderReturn", back_populates="items")
    order_item = relationship("OrderItem")

    __table_args__ = (
        UniqueConstraint("return_id", "order_item_id", name="uq_return_item_order_item"),
    )


class ReturnRefund(Base, UUIDMixin, TimestampMixin):
    """One money movement belonging to a return"""
    __tablename__ = "return_refund"

    refund_number = Column(String(30), unique=True, default=_refund_number)
    return_id = Column(Uuid(as_uuid=True), ForeignKey("order_return.id"), nullable=False)
    external_refund_id = Column(String(100), unique=True)

    amount = Column(BigInteger, default=0)
    currency = Column(String(3))
    method = Column(String(30))
    status = Column(String(20), default=RefundStatus.PENDING.value)
    payment_gateway = Column(String(100))

    initiated_at = Column(DateTime)
    processed_at = Column(DateTime)
    completed_at = Column(DateTime)

    platform_data = Column(JSONType)

    order_return = relationship("OrderReturn", back_populates="refunds")

    def __repr__(self):
        return f"<ReturnRefund {self.external_refund_id} {self.amount} {self.status}>"


class RefundEvent(Base, UUIDMixin, TimestampMixin):
    """One channel refund attached to a return; target of the refund identity mapping"""
    __tablename__ = "refund_event"

    return_id = Column(Uuid(as_uuid=True), ForeignKey("order_return.id"), nullable=False, index=True)
    channel = Column(String(30), nullable=False)
    external_refund_id = Column(String(100), nullable=False)
    processed_at = Column(DateTime)
    platform_data = Column(JSONType)

    order_return = relationship("OrderReturn", back_populates="refund_events")

    __table_args__ = (
        UniqueConstraint("channel", "external_refund_id", name="uq_refund_event_external_id"),
    )

    def __repr__(self):
        return f"<RefundEvent {self.channel} {self.external_refund_id}>"
