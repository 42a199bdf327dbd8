"""
Integration Models - Channel connections and webhook logs
"""
import enum
import uuid
from sqlalchemy import Column, String, Text, Boolean, Integer, DateTime, Uuid, UniqueConstraint, Index
from backoffice.core.clock import utcnow
from backoffice.core.database import Base
from .base import UUIDMixin, TimestampMixin, JSONType


class IntegrationType(str, enum.Enum):
    SALES_CHANNEL = "sales_channel"
    SHIPPING_PROVIDER = "shipping_provider"


class Provider(str, enum.Enum):
    SHOPIFY = "shopify"
    TRENDYOL = "trendyol"
    BASIT_KARGO = "basit_kargo"


class WebhookResult(str, enum.Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    SKIPPED = "SKIPPED"
    RETRYING = "RETRYING"
    FAILED = "FAILED"


class Integration(Base, UUIDMixin, TimestampMixin):
    """
    A configured connection to one external system. Several integrations of
    the same provider may coexist (multi-shop), told apart by their settings:
    shop_domain (shopify), supplier_id (trendyol), api_token (basit_kargo).
    """
    __tablename__ = "integration"

    type = Column(String(30), nullable=False)  # sales_channel, shipping_provider
    provider = Column(String(30), nullable=False, index=True)  # shopify, trendyol, basit_kargo
    name = Column(String(200))
    is_active = Column(Boolean, default=True)

    # Credentials, shop identifiers and toggles (sync_inventory, vat_included, ...)
    settings = Column(JSONType, default=dict)

    last_sync_at = Column(DateTime)

    def setting(self, key: str, default=None):
        return (self.settings or {}).get(key, default)

    def __repr__(self):
        return f"<Integration {self.provider}:{self.name}>"


class WebhookLog(Base):
    """
    Inbound webhook deliveries, kept for dedupe, retry and replay
    """
    __tablename__ = "webhook_log"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform = Column(String(30), nullable=False)  # shopify, trendyol, basit_kargo
    integration_id = Column(Uuid(as_uuid=True))
    event_type = Column(String(100))  # orders/updated, refunds/create, ...
    delivery_key = Column(String(128), nullable=False)

    # Request data
    payload = Column(JSONType)
    headers = Column(JSONType)
    signature = Column(String(500))

    # Processing status
    processed = Column(Boolean, default=False)
    processed_at = Column(DateTime)
    process_result = Column(String(50))  # CREATED, UPDATED, SKIPPED, RETRYING, FAILED
    process_error = Column(Text)
    attempts = Column(Integer, default=0)
    next_attempt_at = Column(DateTime)

    # Metadata
    received_at = Column(DateTime, default=utcnow)
    ip_address = Column(String(50))

    __table_args__ = (
        UniqueConstraint("platform", "delivery_key", name="uq_webhook_delivery"),
        Index("ix_webhook_pending", "processed", "next_attempt_at"),
    )

    def __repr__(self):
        return f"<WebhookLog {self.platform} {self.event_type} {self.received_at}>"

    def mark_processed(self, result: str, error: str = None):
        self.processed = True
        self.processed_at = utcnow()
        self.process_result = result
        self.process_error = error

    def mark_retry(self, error: str, next_attempt_at):
        self.processed = False
        self.process_result = WebhookResult.RETRYING.value
        self.process_error = error
        self.next_attempt_at = next_attempt_at
