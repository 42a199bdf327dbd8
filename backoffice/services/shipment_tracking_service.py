"""
Shipment Tracking Service - Aggregator shipment events -> orders and returns
"""
import logging
from typing import Optional, Dict, Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from backoffice.core.audit import AuditSink, LoggingAuditSink
from backoffice.core.clock import Clock, SystemClock
from backoffice.integrations.basit_kargo import BasitKargoClient, ShipmentEvent, ShipmentStatus, parse_webhook
from backoffice.models import (
    FulfillmentStatus, Integration, Order, OrderReturn, OrderStatus, PaymentStatus,
    ReturnItem, ReturnStatus, ShippingCarrier,
)
from backoffice.services.results import Created, Updated, Skipped
from backoffice.services.return_lifecycle import ReturnLifecycle
from backoffice.services.return_reconciler import ReturnReconciler
from backoffice.services.shipping_cost_service import ShippingCostService

logger = logging.getLogger(__name__)

# lastState fragments meaning "waiting at a branch for the customer"
DISTRIBUTION_CENTER_INDICATORS = (
    "kargo devir",
    "dağıtım merkezinde",
    "şubede bekliyor",
    "teslim alınmayı bekliyor",
    "müşteri şubeye davet",
)

RETURNED_BY_CARRIER = "returned_by_carrier"


def is_at_distribution_center(status_message: Optional[str]) -> bool:
    if not status_message:
        return False
    message = status_message.lower()
    return any(indicator in message for indicator in DISTRIBUTION_CENTER_INDICATORS)


class ShipmentTrackingService:
    """
    Return shipments are matched first (by return tracking number or shipment
    id), then outbound order shipments.
    """

    def __init__(
        self,
        db: Session,
        clock: Clock = None,
        audit: AuditSink = None,
        shipping: ShippingCostService = None,
        lifecycle: ReturnLifecycle = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.audit = audit or LoggingAuditSink()
        self.shipping = shipping or ShippingCostService(db)
        self.lifecycle = lifecycle or ReturnLifecycle(db, self.clock, self.audit)

    def handle_webhook(self, payload: Dict[str, Any], integration: Integration):
        event = parse_webhook(payload)
        if event.status is None:
            logger.info(f"Unknown Basit Kargo status {event.status_code} for {event.tracking_number}")
            self.audit.record("integration", integration.id, "basitkargo_webhook_unknown_status", {
                "tracking_number": event.tracking_number, "status": event.status_code,
            })
            return Skipped("unknown_shipment_status", {"status": event.status_code})

        order_return = self._find_return(event)
        if order_return is not None:
            return self._apply_to_return(order_return, event, integration)

        order = self._find_order(event)
        if order is not None:
            return self._apply_to_order(order, event, integration)

        logger.info(f"No order or return for Basit Kargo shipment {event.tracking_number}")
        self.audit.record("integration", integration.id, "basitkargo_webhook_no_shipment", {
            "tracking_number": event.tracking_number,
            "shipment_id": event.shipment_id,
            "status": event.status_code,
        })
        return Skipped("shipment_not_found", {"tracking_number": event.tracking_number})

    # ========== Lookup ==========

    def _find_return(self, event: ShipmentEvent) -> Optional[OrderReturn]:
        conditions = [OrderReturn.return_tracking_number == event.tracking_number]
        if event.shipment_id:
            conditions.append(OrderReturn.return_aggregator_shipment_id == event.shipment_id)
        return self.db.query(OrderReturn).filter(or_(*conditions)).order_by(OrderReturn.created_at.desc()).first()

    def _find_order(self, event: ShipmentEvent) -> Optional[Order]:
        order = self.db.query(Order).filter(Order.shipping_tracking_number == event.tracking_number).first()
        if order is None and event.shipment_id:
            order = self.db.query(Order).filter(Order.shipping_aggregator_shipment_id == event.shipment_id).first()
        return order

    # ========== Returns ==========

    def _apply_to_return(self, order_return: OrderReturn, event: ShipmentEvent, integration: Integration):
        previous = order_return.status
        status = event.status

        if status in (ShipmentStatus.SHIPPED, ShipmentStatus.OUT_FOR_DELIVERY):
            if previous in (ReturnStatus.APPROVED.value, ReturnStatus.LABEL_GENERATED.value):
                self.lifecycle.apply_channel_status(order_return, ReturnStatus.IN_TRANSIT.value, source="basit_kargo")
        elif status == ShipmentStatus.COMPLETED:
            if previous not in (ReturnStatus.INSPECTING.value, ReturnStatus.COMPLETED.value, ReturnStatus.REJECTED.value):
                self.lifecycle.apply_channel_status(order_return, ReturnStatus.RECEIVED.value, source="basit_kargo")
        elif status in (ShipmentStatus.RETURNING, ShipmentStatus.RETURNED):
            self.audit.record("order_return", order_return.id, "return_shipment_returned_to_sender", {
                "tracking_number": event.tracking_number,
                "status": status.value,
                "message": event.status_message,
            })

        if event.shipment_id and not order_return.return_aggregator_shipment_id:
            order_return.return_aggregator_shipment_id = event.shipment_id

        changed = order_return.status != previous
        self.audit.record(
            "order_return", order_return.id,
            "basitkargo_return_webhook_processed" if changed else "basitkargo_return_webhook_skipped",
            {
                "integration_id": integration.id,
                "tracking_number": event.tracking_number,
                "old_status": previous,
                "new_status": order_return.status,
                "basitkargo_status": status.value,
            },
        )
        self.db.flush()
        return Updated(order_return) if changed else Skipped("no_return_status_change", {"status": previous})

    # ========== Orders ==========

    def _apply_to_order(self, order: Order, event: ShipmentEvent, integration: Integration):
        if event.shipment_id and not order.shipping_aggregator_shipment_id:
            order.shipping_aggregator_shipment_id = event.shipment_id
        if not order.shipping_aggregator_integration_id:
            order.shipping_aggregator_integration_id = integration.id

        if event.cost is not None:
            vat_included = BasitKargoClient(integration.settings or {}).vat_included
            self.shipping.record_aggregator_cost(order, event.cost, vat_included)

        if is_at_distribution_center(event.status_message) and \
                order.fulfillment_status != FulfillmentStatus.AWAITING_PICKUP_AT_DISTRIBUTION_CENTER.value:
            order.fulfillment_status = FulfillmentStatus.AWAITING_PICKUP_AT_DISTRIBUTION_CENTER.value
            self.audit.record("order", order.id, "order_at_distribution_center_detected", {
                "status_message": event.status_message,
            })

        result = Updated(order)
        if event.status == ShipmentStatus.RETURNED:
            result = self._handle_returned_shipment(order, event, integration) or result

        self.audit.record("order", order.id, "basitkargo_order_webhook_processed", {
            "integration_id": integration.id,
            "tracking_number": event.tracking_number,
            "shipment_id": event.shipment_id,
            "basitkargo_status": event.status.value,
            "status_message": event.status_message,
            "webhook_type": "detailed" if event.detailed else "simple",
        })
        self.db.flush()
        return result

    def _handle_returned_shipment(self, order: Order, event: ShipmentEvent, integration: Integration):
        """Outbound parcel came back: COD refusal cancels, otherwise a received return"""
        closed = (ReturnStatus.REJECTED.value, ReturnStatus.CANCELLED.value)
        open_return = next((r for r in order.returns if r.status not in closed), None)
        if open_return is not None:
            self.audit.record("order", order.id, "shipment_return_already_exists", {
                "tracking_number": event.tracking_number, "existing_return": open_return.return_number,
            })
            return None

        if order.is_cod:
            order.order_status = OrderStatus.REJECTED.value
            order.fulfillment_status = FulfillmentStatus.RETURNED.value
            order.payment_status = PaymentStatus.VOIDED.value
            logger.info(f"COD order {order.order_number} refused at the door")
            self.audit.record("order", order.id, "order_auto_cancelled_cod_rejection", {
                "integration_id": integration.id, "tracking_number": event.tracking_number, "reason": "cod_rejected",
            })
            return None

        carrier = ShippingCarrier.from_string(event.handler_code)
        now = self.clock.now()
        order_return = OrderReturn(
            order_id=order.id,
            channel=order.channel,
            external_return_id=event.shipment_id,
            status=ReturnStatus.RECEIVED.value,
            reason_code=RETURNED_BY_CARRIER,
            reason_name="Shipment returned by carrier",
            requested_at=now,
            received_at=now,
            customer_note="Shipment could not be delivered and was returned",
            return_shipping_carrier=carrier.value if carrier else order.shipping_carrier,
            return_tracking_number=order.shipping_tracking_number,
            return_aggregator_shipment_id=event.shipment_id,
            original_shipping_cost=order.shipping_cost_excluding_vat,
            currency=order.currency,
            platform_data={"auto_created": True, "source": "basit_kargo_webhook"},
        )
        for order_item in order.items:
            order_return.items.append(ReturnItem(
                order_item_id=order_item.id,
                quantity=order_item.quantity,
                refund_amount=order_item.total_price,
                reason_name="Shipment returned by carrier",
            ))
        order.returns.append(order_return)
        self.db.flush()
        ReturnReconciler(self.db, self.clock, self.audit, self.shipping, self.lifecycle).refresh_order_return_status(order)
        order.fulfillment_status = FulfillmentStatus.RETURNED.value

        self.audit.record("order_return", order_return.id, "shipment_return_auto_created", {
            "integration_id": integration.id,
            "order_number": order.order_number,
            "tracking_number": order.shipping_tracking_number,
        })
        return Created(order_return)
