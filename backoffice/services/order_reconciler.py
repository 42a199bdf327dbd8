"""
Order Reconciler - Normalized channel orders -> canonical Order + OrderItems
"""
import logging
from decimal import Decimal
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from backoffice.core.audit import AuditSink, LoggingAuditSink
from backoffice.core.clock import Clock, SystemClock
from backoffice.integrations.base import NormalizedOrder, NormalizedOrderLine
from backoffice.models import (
    EntityKind, Integration, Order, OrderItem, ReturnItem, ShippingCarrier,
)
from backoffice.services.customer_reconciler import CustomerReconciler
from backoffice.services.identity_map import IdentityMap
from backoffice.services.money import to_minor_units, round_half_up, resolve_currency_fields
from backoffice.services.product_reconciler import ProductReconciler
from backoffice.services.results import Created, Updated
from backoffice.services.shipping_cost_service import ShippingCostService

logger = logging.getLogger(__name__)

# Owned by the return flow once an order has returns
RETURN_OWNED_FIELDS = ("order_status", "payment_status")
STATUS_FIELDS = ("order_status", "payment_status", "fulfillment_status")


class OrderReconciler:
    """
    map_order() runs inside the caller's transaction and only flushes;
    the unit of work (webhook processor, sync loop) commits.
    """

    def __init__(
        self,
        db: Session,
        clock: Clock = None,
        audit: AuditSink = None,
        shipping: ShippingCostService = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.audit = audit or LoggingAuditSink()
        self.identity = IdentityMap(db, self.clock, self.audit)
        self.customers = CustomerReconciler(db, self.identity, self.clock, self.audit)
        self.products = ProductReconciler(db, self.identity, self.clock, self.audit)
        self.shipping = shipping or ShippingCostService(db)

    def map_order(self, normalized: NormalizedOrder, integration: Optional[Integration] = None):
        channel = normalized.channel
        order = self._resolve_order(channel, normalized.external_id)

        known = order.customer if order is not None else None
        customer = self.customers.reconcile(channel, normalized.customer, known=known)

        if order is None:
            order = self._create(normalized, integration)
            created = True
        else:
            self._update(order, normalized)
            created = False

        order.customer_id = customer.id
        if integration is not None:
            order.integration_id = integration.id

        self._apply_common_fields(order, normalized)
        self.db.flush()

        self._reconcile_items(order, normalized)
        self._recompute_aggregates(order)
        self.shipping.apply_outbound(order)

        self.identity.bind(channel, EntityKind.ORDER, normalized.external_id, order, normalized.raw)
        self.db.flush()

        logger.info(f"{'Created' if created else 'Updated'} {channel} order {order.order_number} ({len(order.items)} items)")
        return Created(order) if created else Updated(order)

    # ========== Order Resolution ==========

    def _resolve_order(self, channel: str, external_id: str) -> Optional[Order]:
        mapping = self.identity.find(channel, EntityKind.ORDER, external_id)
        if mapping is None:
            return None
        order = self.db.get(Order, mapping.entity_id)
        if order is None:
            logger.warning(f"Orphaned {channel} order mapping {external_id}, recreating order")
            self.identity.unbind(channel, EntityKind.ORDER, mapping.entity_id)
        return order

    def _create(self, normalized: NormalizedOrder, integration: Optional[Integration]) -> Order:
        order = Order(
            channel=normalized.channel,
            order_number=normalized.order_number,
            order_status=normalized.order_status,
            payment_status=normalized.payment_status,
            fulfillment_status=normalized.fulfillment_status,
            currency=normalized.currency,
        )
        at = normalized.order_date or self.clock.now()
        currency_fields = resolve_currency_fields(self.db, normalized.currency, at)
        order.currency_id = currency_fields["currency_id"]
        order.exchange_rate = currency_fields["exchange_rate"]
        self.db.add(order)
        self.db.flush()
        return order

    def _update(self, order: Order, normalized: NormalizedOrder) -> None:
        has_returns = bool(order.returns)
        changes: Dict[str, Any] = {}
        suppressed: Dict[str, Any] = {}

        for field in STATUS_FIELDS:
            current = getattr(order, field)
            incoming = getattr(normalized, field)
            if current == incoming:
                continue
            if has_returns and field in RETURN_OWNED_FIELDS:
                suppressed[field] = {"from": current, "to": incoming}
                continue
            setattr(order, field, incoming)
            changes[field] = {"from": current, "to": incoming}

        if normalized.currency and normalized.currency != order.currency:
            at = normalized.order_date or order.order_date or self.clock.now()
            currency_fields = resolve_currency_fields(self.db, normalized.currency, at)
            order.currency = normalized.currency
            order.currency_id = currency_fields["currency_id"]
            order.exchange_rate = currency_fields["exchange_rate"]

        if changes or suppressed:
            properties = {"status_changes": changes, "raw_status": normalized.raw_status}
            if suppressed:
                properties["status_changes_suppressed"] = suppressed
            self.audit.record("order", order.id, "order_status_updated", properties)

    def _apply_common_fields(self, order: Order, normalized: NormalizedOrder) -> None:
        currency = normalized.currency
        order.order_number = normalized.order_number or order.order_number

        order.payment_method = normalized.payment_method or order.payment_method
        order.payment_gateway = normalized.payment_gateway or order.payment_gateway
        order.payment_transaction_id = normalized.payment_transaction_id or order.payment_transaction_id

        order.subtotal = to_minor_units(normalized.subtotal, currency, self.db)
        order.tax_amount = to_minor_units(normalized.tax_amount, currency, self.db)
        order.shipping_amount = to_minor_units(normalized.shipping_amount, currency, self.db)
        order.discount_amount = to_minor_units(normalized.discount_amount, currency, self.db)
        order.total_amount = to_minor_units(normalized.total_amount, currency, self.db)

        self._apply_carrier(order, normalized.carrier_name)
        if normalized.desi is not None:
            order.shipping_desi = normalized.desi
        order.shipping_tracking_number = normalized.tracking_number or order.shipping_tracking_number
        order.shipping_tracking_url = normalized.tracking_url or order.shipping_tracking_url

        order.order_date = normalized.order_date or order.order_date
        order.shipped_at = normalized.shipped_at or order.shipped_at
        order.delivered_at = normalized.delivered_at or order.delivered_at
        order.estimated_delivery_start = normalized.estimated_delivery_start or order.estimated_delivery_start
        order.estimated_delivery_end = normalized.estimated_delivery_end or order.estimated_delivery_end

        order.invoice_url = normalized.invoice_url or order.invoice_url
        order.notes = normalized.notes if normalized.notes is not None else order.notes

    def _apply_carrier(self, order: Order, carrier_name: Optional[str]) -> None:
        if not carrier_name:
            return
        carrier = ShippingCarrier.from_string(carrier_name)
        if carrier is not None:
            order.shipping_carrier = carrier.value
            return

        if order.shipping_carrier != carrier_name:
            logger.info(f"Unrecognized carrier {carrier_name!r} on order {order.order_number}")
            self.audit.record("order", order.id, "carrier_not_recognized", {"carrier": carrier_name})
        order.shipping_carrier = carrier_name

    # ========== Items ==========

    def _reconcile_items(self, order: Order, normalized: NormalizedOrder) -> None:
        channel = normalized.channel
        kept = set()
        payload_line_ids = {line.external_line_id for line in normalized.lines}

        for line in normalized.lines:
            variant = self.products.match_or_create_variant(channel, line, normalized.currency)
            item = self._find_item(order, channel, line, variant.id, kept, payload_line_ids)
            if item is None:
                item = OrderItem(product_variant_id=variant.id)
                order.items.append(item)

            self._fill_item(item, line, variant, normalized.currency)
            self.db.flush()
            kept.add(item.id)
            self._bind_item(channel, line.external_line_id, item)

        for item in list(order.items):
            if item.id in kept:
                continue
            returned = self.db.query(ReturnItem).filter(ReturnItem.order_item_id == item.id).first()
            if returned is not None:
                logger.warning(f"Order item {item.id} left {channel} order {order.order_number} but has returns; keeping")
                continue
            self.identity.unbind(channel, EntityKind.ORDER_ITEM, item.id)
            order.items.remove(item)
            logger.info(f"Pruned order item {item.id} from {channel} order {order.order_number}")
        self.db.flush()

    def _find_item(
        self,
        order: Order,
        channel: str,
        line: NormalizedOrderLine,
        variant_id,
        kept: set,
        payload_line_ids: set,
    ) -> Optional[OrderItem]:
        mapping = self.identity.find(channel, EntityKind.ORDER_ITEM, line.external_line_id)
        if mapping is not None:
            for item in order.items:
                if item.id == mapping.entity_id:
                    return item
            # Line id mapped to an item outside this order (or a deleted one)
            self.identity.unbind(channel, EntityKind.ORDER_ITEM, mapping.entity_id)

        for item in order.items:
            if item.id in kept or item.product_variant_id != variant_id:
                continue
            owned = self.identity.find_for_entity(channel, EntityKind.ORDER_ITEM, item.id)
            # Items still claimed by another line of this payload are not reusable
            if owned is None or owned.platform_id not in payload_line_ids:
                return item
        return None

    def _bind_item(self, channel: str, external_line_id: str, item: OrderItem) -> None:
        owned = self.identity.find_for_entity(channel, EntityKind.ORDER_ITEM, item.id)
        if owned is not None and owned.platform_id != external_line_id:
            self.identity.repoint(owned, external_id=external_line_id, reason="line_id_changed")
            return
        self.identity.bind(channel, EntityKind.ORDER_ITEM, external_line_id, item, line_snapshot(item))

    def _fill_item(self, item: OrderItem, line: NormalizedOrderLine, variant, currency: str) -> None:
        quantity = int(line.quantity or 1)
        unit_price = to_minor_units(line.unit_price, currency, self.db)
        discount = to_minor_units(line.discount, currency, self.db)
        gross = unit_price * quantity
        net = gross - discount

        item.product_variant_id = variant.id
        item.quantity = quantity
        item.unit_price = unit_price
        item.unit_cost = variant.cost_price or 0
        item.discount_amount = discount
        item.total_price = net
        item.tax_rate = line.tax_rate
        item.tax_amount = round_half_up(Decimal(net) * Decimal(line.tax_rate or 0) / 100)
        item.commission_rate = line.commission_rate
        item.commission_amount = round_half_up(Decimal(gross) * Decimal(line.commission_rate or 0) / 100)

    def _recompute_aggregates(self, order: Order) -> None:
        order.total_product_cost = sum((item.unit_cost or 0) * (item.quantity or 0) for item in order.items)
        order.total_commission = sum(item.commission_amount or 0 for item in order.items)


def line_snapshot(item: OrderItem) -> Dict[str, Any]:
    return {"quantity": item.quantity, "unit_price": item.unit_price, "variant_id": str(item.product_variant_id)}
