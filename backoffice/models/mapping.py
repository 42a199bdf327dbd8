"""
Platform Mapping - Identity map between canonical entities and channel ids
"""
import enum
from sqlalchemy import Column, String, DateTime, Uuid, UniqueConstraint
from backoffice.core.database import Base
from .base import UUIDMixin, TimestampMixin, JSONType


class EntityKind(str, enum.Enum):
    """Closed set of canonical entity kinds the identity map may point at"""
    CUSTOMER = "customer"
    ORDER = "order"
    ORDER_ITEM = "order_item"
    PRODUCT = "product"
    PRODUCT_VARIANT = "product_variant"
    RETURN = "return"  # return request / claim id -> OrderReturn
    REFUND = "refund"  # refund id -> RefundEvent


class PlatformMapping(Base, UUIDMixin, TimestampMixin):
    """
    (platform, entity_type, platform_id) <-> (platform, entity_type, entity_id),
    both sides unique, plus the last-seen payload snapshot.
    """
    __tablename__ = "platform_mapping"

    platform = Column(String(30), nullable=False)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(Uuid(as_uuid=True), nullable=False)
    platform_id = Column(String(100), nullable=False)

    platform_data = Column(JSONType)
    last_synced_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("platform", "entity_type", "platform_id", name="uq_mapping_platform_id"),
        UniqueConstraint("platform", "entity_type", "entity_id", name="uq_mapping_entity_id"),
    )

    def __repr__(self):
        return f"<PlatformMapping {self.platform}/{self.entity_type} {self.platform_id} -> {self.entity_id}>"
