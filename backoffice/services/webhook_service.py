"""
Webhook Service - Receive, dedupe and route inbound webhooks
"""
import hashlib
import logging
from typing import Optional, Dict, Any, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.core.audit import AuditSink, DatabaseAuditSink
from backoffice.core.clock import Clock, SystemClock
from backoffice.integrations import ShopifyClient, TrendyolClient
from backoffice.models import Integration, Provider, WebhookLog, WebhookResult
from backoffice.services import integration_service
from backoffice.services.order_reconciler import OrderReconciler
from backoffice.services.product_reconciler import ProductReconciler
from backoffice.services.results import Skipped
from backoffice.services.return_reconciler import ReturnReconciler
from backoffice.services.shipment_tracking_service import ShipmentTrackingService
from backoffice.services.shipping_cost_service import ShippingCostService

logger = logging.getLogger(__name__)

SHOPIFY_DELIVERY_HEADER = "x-shopify-webhook-id"


def delivery_key_for(platform: str, headers: Dict[str, str], body: bytes) -> str:
    """Channel delivery id when there is one, otherwise a hash of the raw body"""
    lowered = {k.lower(): v for k, v in (headers or {}).items()}
    if platform == Provider.SHOPIFY.value and lowered.get(SHOPIFY_DELIVERY_HEADER):
        return lowered[SHOPIFY_DELIVERY_HEADER]
    return hashlib.sha256(body or b"").hexdigest()


def receive_webhook(
    db: Session,
    platform: str,
    event_type: str,
    payload: dict,
    body: bytes,
    headers: Dict[str, str],
    integration: Optional[Integration] = None,
    signature: str = None,
    ip_address: str = None,
) -> Tuple[WebhookLog, bool]:
    """
    Store a delivery once per (platform, delivery key).
    Returns (log, queued); duplicates of pending or processed deliveries are
    acknowledged without queueing, permanently failed ones are re-queued.
    """
    delivery_key = delivery_key_for(platform, headers, body)

    existing = integration_service.find_webhook_log(db, platform, delivery_key)
    if existing is not None:
        return _redeliver(db, existing, payload)

    try:
        log = integration_service.log_webhook(
            db,
            platform=platform,
            event_type=event_type,
            payload=payload,
            delivery_key=delivery_key,
            integration_id=integration.id if integration else None,
            headers=headers,
            signature=signature,
            ip_address=ip_address,
        )
    except IntegrityError:
        # Concurrent delivery of the same key won the insert
        db.rollback()
        existing = integration_service.find_webhook_log(db, platform, delivery_key)
        return existing, False

    logger.info(f"Webhook received: {platform} {event_type} ({delivery_key[:16]})")
    return log, True


def _redeliver(db: Session, log: WebhookLog, payload: dict) -> Tuple[WebhookLog, bool]:
    if log.processed and log.process_result == WebhookResult.FAILED.value:
        logger.info(f"Re-queueing failed webhook {log.id} on redelivery")
        log.payload = payload
        log.processed = False
        log.processed_at = None
        log.process_result = None
        log.process_error = None
        log.attempts = 0
        log.next_attempt_at = None
        db.commit()
        return log, True

    logger.info(f"Duplicate webhook {log.id} ({log.process_result or 'pending'}), acknowledging")
    return log, False


class WebhookDispatcher:
    """
    Routes one stored delivery to its reconciler. Runs inside the caller's
    transaction; the processor commits or rolls back.
    """

    def __init__(self, db: Session, clock: Clock = None, audit: AuditSink = None, shipping: ShippingCostService = None):
        self.db = db
        self.clock = clock or SystemClock()
        self.audit = audit or DatabaseAuditSink(db, self.clock)
        self.shipping = shipping or ShippingCostService(db)

    def dispatch(self, log: WebhookLog):
        integration = integration_service.get_integration(self.db, log.integration_id) if log.integration_id else None
        payload = log.payload or {}

        if log.platform == Provider.SHOPIFY.value:
            return self._dispatch_shopify(log.event_type or "", payload, integration)
        if log.platform == Provider.TRENDYOL.value:
            return self._dispatch_trendyol(payload, integration)
        if log.platform == Provider.BASIT_KARGO.value:
            if integration is None:
                return Skipped("integration_not_found", {"platform": log.platform})
            return self._tracking().handle_webhook(payload, integration)
        return Skipped("unsupported_platform", {"platform": log.platform})

    # ========== Routing ==========

    def _dispatch_shopify(self, topic: str, payload: Dict[str, Any], integration: Optional[Integration]):
        client = ShopifyClient(integration.settings if integration else {})
        resource, _, action = topic.partition("/")

        if resource == "orders":
            if action == "delete":
                return Skipped("unsupported_topic", {"topic": topic})
            return self._orders().map_order(client.parse_order(payload), integration)
        if resource == "refunds":
            return self._returns().map_refund(client.parse_refund(payload))
        if resource == "returns":
            return self._returns().map_return_request(client.parse_return_request(payload))
        if resource == "products":
            if action == "delete":
                return Skipped("unsupported_topic", {"topic": topic})
            products = ProductReconciler(self.db, self._orders().identity, self.clock, self.audit)
            return products.map_shopify_product(payload, integration)
        return Skipped("unsupported_topic", {"topic": topic})

    def _dispatch_trendyol(self, payload: Dict[str, Any], integration: Optional[Integration]):
        client = TrendyolClient(integration.settings if integration else {})
        if client.is_claim_payload(payload):
            return self._returns().map_claim(client.parse_claim(payload))
        return self._orders().map_order(client.parse_order(payload), integration)

    # ========== Collaborators ==========

    def _orders(self) -> OrderReconciler:
        return OrderReconciler(self.db, self.clock, self.audit, self.shipping)

    def _returns(self) -> ReturnReconciler:
        return ReturnReconciler(self.db, self.clock, self.audit, self.shipping)

    def _tracking(self) -> ShipmentTrackingService:
        return ShipmentTrackingService(self.db, self.clock, self.audit, self.shipping)
