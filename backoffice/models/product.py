"""
Product Models
"""
from sqlalchemy import Column, String, Integer, BigInteger, Text, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from backoffice.core.database import Base
from .base import UUIDMixin, TimestampMixin, JSONType


class Product(Base, UUIDMixin, TimestampMixin):
    """Product (parent of sellable variants)"""
    __tablename__ = "product"

    title = Column(String(300), nullable=False)
    model_code = Column(String(100), index=True)
    description = Column(Text)
    vendor = Column(String(200))
    product_type = Column(String(100))
    status = Column(String(20), default="active")

    variants = relationship("ProductVariant", back_populates="product", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Product {self.title}>"


class ProductVariant(Base, UUIDMixin, TimestampMixin):
    """Sellable unit. Money in minor units."""
    __tablename__ = "product_variant"

    product_id = Column(Uuid(as_uuid=True), ForeignKey("product.id"), nullable=False)
    sku = Column(String(100), index=True)
    barcode = Column(String(100), index=True)
    title = Column(String(300))

    price = Column(BigInteger, default=0)
    cost_price = Column(BigInteger, default=0)
    inventory_quantity = Column(Integer, default=0)

    # {"shopify": {"enabled": true, ...}, "trendyol": {...}}
    channel_settings = Column(JSONType, default=dict)

    product = relationship("Product", back_populates="variants")

    def enable_channel(self, channel: str, **extra):
        current = dict(self.channel_settings or {})
        entry = dict(current.get(channel) or {})
        entry.update({"enabled": True, **extra})
        current[channel] = entry
        self.channel_settings = current

    def __repr__(self):
        return f"<ProductVariant {self.sku or self.barcode}>"
