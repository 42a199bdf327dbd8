"""
Return Reconciler - Refunds, return requests and claims -> OrderReturn
"""
import logging
from typing import Optional, List, Dict, Any

from sqlalchemy.orm import Session

from backoffice.core.audit import AuditSink, LoggingAuditSink
from backoffice.core.clock import Clock, SystemClock
from backoffice.integrations.base import (
    NormalizedRefund, NormalizedReturnRequest, NormalizedClaim, NormalizedReturnLine, NormalizedTransaction,
)
from backoffice.integrations.shopify import ShopifyClient
from backoffice.models import (
    EntityKind, Order, OrderItem, OrderReturn, ReturnItem, ReturnRefund, RefundEvent,
    OrderStatus, PaymentStatus, ReturnState, ReturnStatus, RefundStatus,
)
from backoffice.services.identity_map import IdentityMap
from backoffice.services.money import to_minor_units
from backoffice.services.results import Created, Updated, Skipped
from backoffice.services.return_lifecycle import ReturnLifecycle, RANK
from backoffice.services.shipping_cost_service import ShippingCostService

logger = logging.getLogger(__name__)

REFUND_TRANSACTION_STATUS = {
    "success": RefundStatus.COMPLETED.value,
    "pending": RefundStatus.PENDING.value,
    "failure": RefundStatus.FAILED.value,
    "error": RefundStatus.FAILED.value,
}

COD_REJECTED_REASON = "cod_rejected"

# Return statuses whose items count against the order's quantity
COUNTED_STATUSES = {
    status for status, rank in RANK.items() if RANK[ReturnStatus.APPROVED.value] <= rank
}


class AmbiguousReturn(Exception):
    """More than one open return could own the incoming event"""

    def __init__(self, candidates: List[OrderReturn]):
        self.candidates = candidates
        super().__init__(f"{len(candidates)} candidate returns")


class ReturnReconciler:
    """
    Every entry point returns Created | Updated | Skipped and only flushes.
    Return items and refunds are additive: later payloads never delete them.
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
        self.identity = IdentityMap(db, self.clock, self.audit)
        self.shipping = shipping or ShippingCostService(db)
        self.lifecycle = lifecycle or ReturnLifecycle(db, self.clock, self.audit)

    # ========== Refunds ==========

    def map_refund(self, refund: NormalizedRefund):
        channel = refund.channel
        order = self.identity.resolve(channel, EntityKind.ORDER, refund.order_external_id)

        skip = self._refund_gate(refund, order)
        if skip is not None:
            return skip

        try:
            order_return = self._resolve_return(
                order, channel, EntityKind.REFUND, refund.external_id, back_reference=refund.return_external_id,
            )
        except AmbiguousReturn as e:
            return self._ambiguous(order, channel, refund.external_id, e)

        created = order_return is None
        if created:
            order_return = self._create_return(order, channel, refund.external_id, refund.created_at, refund.raw)

        if refund.note and not order_return.customer_note:
            order_return.customer_note = refund.note

        for line in refund.lines:
            self._upsert_item(order_return, order, channel, line, f"refund:{refund.external_id}",
                              refund_amount=to_minor_units(line.subtotal, order.currency, self.db))
        for transaction in refund.refund_transactions:
            self._upsert_refund(order_return, order, transaction)
        self.db.flush()

        self._recompute_refund_money(order_return)

        status = self._refund_status(refund, order)
        cod_rejected = order.is_cod and not refund.refund_transactions and refund.restock
        if cod_rejected:
            self._apply_cod_rejection(order_return, order)
        self.lifecycle.apply_channel_status(order_return, status, refund.processed_at, source="refund")

        self._record_refund_event(order_return, refund)
        self._finish(order_return, order)
        if cod_rejected:
            order.order_status = OrderStatus.REJECTED.value

        logger.info(f"{'Created' if created else 'Updated'} return {order_return.return_number} from {channel} refund {refund.external_id}")
        return Created(order_return) if created else Updated(order_return)

    def _refund_gate(self, refund: NormalizedRefund, order: Optional[Order]) -> Optional[Skipped]:
        details = {"channel": refund.channel, "refund_id": refund.external_id, "order_id": refund.order_external_id}
        if order is None:
            return self._skip("order_not_found", details)
        if order.order_status == OrderStatus.CANCELLED.value:
            return self._skip("order_cancelled", details)
        if refund.is_void:
            return self._skip("void_transaction", details)
        if not order.is_cod and order.payment_status in (PaymentStatus.FAILED.value, PaymentStatus.VOIDED.value):
            return self._skip("payment_not_completed", details)
        if not refund.lines:
            return self._skip("no_refund_line_items", details)
        if refund.is_order_edit:
            return self._skip("order_edit_not_return", details)
        if not order.is_cod and not any(t.succeeded for t in refund.refund_transactions):
            return self._skip("no_refund_transactions", details)
        return None

    @staticmethod
    def _refund_status(refund: NormalizedRefund, order: Order) -> str:
        transactions = refund.refund_transactions
        if not transactions:
            if order.is_cod and refund.restock:
                return ReturnStatus.COMPLETED.value
            return ReturnStatus.REQUESTED.value
        if all(t.succeeded for t in transactions):
            return ReturnStatus.COMPLETED.value
        return ReturnStatus.APPROVED.value

    def _apply_cod_rejection(self, order_return: OrderReturn, order: Order) -> None:
        """Rejected at the door: goods came back, no money ever moved"""
        order_return.reason_code = COD_REJECTED_REASON
        order_return.reason_name = order_return.reason_name or "Cash on delivery rejected"
        order_return.return_shipping_carrier = order_return.return_shipping_carrier or order.shipping_carrier
        order_return.return_tracking_number = order_return.return_tracking_number or order.shipping_tracking_number
        order_return.return_tracking_url = order_return.return_tracking_url or order.shipping_tracking_url
        order_return.stamp("received_at", self.clock.now())
        order_return.restocking_fee = 0

    def _upsert_refund(self, order_return: OrderReturn, order: Order, transaction: NormalizedTransaction) -> ReturnRefund:
        row = self.db.query(ReturnRefund).filter(ReturnRefund.external_refund_id == transaction.external_id).first()
        if row is None:
            row = ReturnRefund(external_refund_id=transaction.external_id)
            order_return.refunds.append(row)
        elif row.order_return is not order_return:
            logger.warning(
                f"Refund {transaction.external_id} already belongs to return {row.order_return.return_number}, "
                f"not moved to {order_return.return_number}"
            )

        row.amount = to_minor_units(transaction.amount, order.currency, self.db)
        row.currency = order.currency
        row.status = REFUND_TRANSACTION_STATUS.get(transaction.status, RefundStatus.PENDING.value)
        row.payment_gateway = transaction.gateway
        row.method = ShopifyClient.map_payment_method(transaction.gateway)
        row.initiated_at = row.initiated_at or transaction.created_at
        row.processed_at = transaction.processed_at or row.processed_at
        if row.status == RefundStatus.COMPLETED.value:
            row.completed_at = row.completed_at or transaction.processed_at or self.clock.now()
        row.platform_data = transaction.raw
        return row

    def _recompute_refund_money(self, order_return: OrderReturn) -> None:
        refunded = sum(r.amount or 0 for r in order_return.refunds if r.status == RefundStatus.COMPLETED.value)
        line_total = sum(item.refund_amount or 0 for item in order_return.items)
        order_return.total_refund_amount = refunded
        order_return.restocking_fee = max(line_total - refunded, 0)

    # ========== Return Requests ==========

    def map_return_request(self, request: NormalizedReturnRequest):
        channel = request.channel
        order = self.identity.resolve(channel, EntityKind.ORDER, request.order_external_id)
        if order is None:
            return self._skip("order_not_found", {
                "channel": channel, "return_id": request.external_id, "order_id": request.order_external_id,
            })

        try:
            order_return = self._resolve_return(order, channel, EntityKind.RETURN, request.external_id)
        except AmbiguousReturn as e:
            return self._ambiguous(order, channel, request.external_id, e)

        created = order_return is None
        if created:
            order_return = self._create_return(order, channel, request.external_id, request.requested_at, request.raw)
        else:
            order_return.external_return_id = request.external_id
            order_return.stamp("requested_at", request.requested_at)

        order_return.reason_code = order_return.reason_code or request.reason_code
        order_return.reason_name = order_return.reason_name or request.reason_name
        order_return.customer_note = order_return.customer_note or request.customer_note

        for line in request.lines:
            self._upsert_item(order_return, order, channel, line, f"return:{request.external_id}")
        self.db.flush()

        at = request.closed_at if request.status in (ReturnStatus.COMPLETED.value, ReturnStatus.CANCELLED.value) else None
        if request.status == ReturnStatus.APPROVED.value:
            at = request.approved_at
        self.lifecycle.apply_channel_status(order_return, request.status, at, source="return_request")
        if request.approved_at:
            order_return.stamp("approved_at", request.approved_at)

        self._bind(channel, EntityKind.RETURN, request.external_id, order_return, request.raw)
        self._finish(order_return, order)
        return Created(order_return) if created else Updated(order_return)

    # ========== Claims ==========

    def map_claim(self, claim: NormalizedClaim):
        channel = claim.channel
        order = self.db.query(Order).filter(
            Order.channel == channel,
            Order.order_number == claim.order_number,
        ).order_by(Order.created_at).first()
        if order is None:
            return self._skip("order_not_found", {
                "channel": channel, "claim_id": claim.external_id, "order_number": claim.order_number,
            })

        try:
            order_return = self._resolve_return(order, channel, EntityKind.RETURN, claim.external_id)
        except AmbiguousReturn as e:
            return self._ambiguous(order, channel, claim.external_id, e)

        created = order_return is None
        if created:
            order_return = self._create_return(order, channel, claim.external_id, claim.claim_date, claim.raw)

        order_return.reason_code = claim.reason_code or order_return.reason_code
        order_return.reason_name = claim.reason_name or order_return.reason_name
        order_return.customer_note = claim.customer_note or order_return.customer_note
        order_return.internal_note = claim.note or order_return.internal_note
        order_return.return_shipping_carrier = claim.carrier_name or order_return.return_shipping_carrier
        order_return.return_tracking_number = claim.tracking_number or order_return.return_tracking_number
        order_return.return_tracking_url = claim.tracking_url or order_return.return_tracking_url
        if claim.desi is not None:
            order_return.return_shipping_desi = claim.desi

        for line in claim.lines:
            order_item = self._locate_order_item(order, channel, line)
            refund_amount = (order_item.unit_price or 0) * line.quantity if order_item is not None else 0
            self._upsert_item(order_return, order, channel, line, f"claim:{claim.external_id}",
                              refund_amount=refund_amount, order_item=order_item)
        self.db.flush()

        order_return.total_refund_amount = sum(item.refund_amount or 0 for item in order_return.items)
        order_return.restocking_fee = 0

        at = claim.last_modified if claim.status != ReturnStatus.PENDING_REVIEW.value else None
        self.lifecycle.apply_channel_status(order_return, claim.status, at, source="claim")

        self._bind(channel, EntityKind.RETURN, claim.external_id, order_return, claim.raw)
        self._finish(order_return, order)
        return Created(order_return) if created else Updated(order_return)

    # ========== Resolution ==========

    def _resolve_return(
        self,
        order: Order,
        channel: str,
        kind: EntityKind,
        external_id: str,
        back_reference: Optional[str] = None,
    ) -> Optional[OrderReturn]:
        """
        mapping of the incoming kind -> back-referenced return request ->
        return carrying this external id -> sole unclaimed return on the order
        """
        mapped = self._resolve_mapped(channel, kind, external_id)

        referenced = None
        if back_reference:
            referenced = self._resolve_mapped(channel, EntityKind.RETURN, back_reference)
            if referenced is not None and referenced.order_id != order.id:
                referenced = None
        if mapped is not None:
            if referenced is not None and referenced.id != mapped.id:
                logger.warning(
                    f"{channel} {kind.value} {external_id} stays on return {mapped.return_number}, "
                    f"back-reference {back_reference} points at {referenced.return_number}"
                )
            return mapped
        if referenced is not None:
            return referenced

        same_id = [r for r in order.returns if r.channel == channel and r.external_return_id == external_id]
        if same_id:
            return same_id[0]

        candidates = [r for r in order.returns if r.channel == channel and not self._claimed(channel, kind, r)]
        if len(candidates) > 1:
            raise AmbiguousReturn(candidates)
        return candidates[0] if candidates else None

    def _resolve_mapped(self, channel: str, kind: EntityKind, external_id) -> Optional[OrderReturn]:
        mapping = self.identity.find(channel, kind, external_id)
        if mapping is None:
            return None
        target = self.db.get(IdentityMap.MODELS[kind], mapping.entity_id)
        if target is None:
            logger.warning(f"Orphaned {channel} {kind.value} mapping {external_id}, removing")
            self.identity.unbind(channel, kind, mapping.entity_id)
            return None
        return target.order_return if kind == EntityKind.REFUND else target

    def _claimed(self, channel: str, kind: EntityKind, order_return: OrderReturn) -> bool:
        """Whether an event of this kind already owns the return"""
        if kind == EntityKind.REFUND:
            return any(event.channel == channel for event in order_return.refund_events)
        return self.identity.find_for_entity(channel, kind, order_return.id) is not None

    def _bind(self, channel: str, kind: EntityKind, external_id: str, order_return: OrderReturn, payload) -> None:
        """A return keeps one request/claim mapping: the latest external id"""
        owned = self.identity.find_for_entity(channel, kind, order_return.id)
        if owned is not None and owned.platform_id != str(external_id):
            logger.info(f"Return {order_return.return_number} {kind.value} mapping {owned.platform_id} superseded")
            self.identity.unbind(channel, kind, order_return.id)
        self.identity.bind(channel, kind, external_id, order_return, payload)

    def _record_refund_event(self, order_return: OrderReturn, refund: NormalizedRefund) -> RefundEvent:
        """Every refund id keeps its own mapping for the life of the return"""
        event = self.identity.resolve(refund.channel, EntityKind.REFUND, refund.external_id)
        if event is None:
            event = RefundEvent(channel=refund.channel, external_refund_id=str(refund.external_id))
            order_return.refund_events.append(event)
            self.db.flush()
        event.processed_at = refund.processed_at or event.processed_at
        event.platform_data = refund.raw
        self.identity.bind(refund.channel, EntityKind.REFUND, refund.external_id, event, refund.raw)
        return event

    def _ambiguous(self, order: Order, channel: str, external_id: str, error: AmbiguousReturn) -> Skipped:
        candidates = [r.return_number for r in error.candidates]
        self.audit.record("order", order.id, "ambiguous_return_match", {
            "channel": channel, "external_id": external_id, "candidates": candidates,
        })
        return self._skip("ambiguous_return_match", {"external_id": external_id, "candidates": candidates})

    # ========== Items ==========

    def _create_return(self, order: Order, channel: str, external_id: str, requested_at, payload) -> OrderReturn:
        order_return = OrderReturn(
            order_id=order.id,
            channel=channel,
            external_return_id=external_id,
            status=ReturnStatus.REQUESTED.value,
            requested_at=requested_at or self.clock.now(),
            currency=order.currency,
            original_shipping_cost=order.shipping_cost_excluding_vat,
            platform_data=payload,
        )
        order.returns.append(order_return)
        self.db.flush()
        self.audit.record("order_return", order_return.id, "return_created", {
            "channel": channel, "external_id": external_id, "order_number": order.order_number,
        })
        return order_return

    def _locate_order_item(self, order: Order, channel: str, line: NormalizedReturnLine) -> Optional[OrderItem]:
        if line.external_line_id:
            mapping = self.identity.find(channel, EntityKind.ORDER_ITEM, line.external_line_id)
            if mapping is not None:
                for item in order.items:
                    if item.id == mapping.entity_id:
                        return item

        variant_id = None
        if line.platform_variant_id:
            mapping = self.identity.find(channel, EntityKind.PRODUCT_VARIANT, line.platform_variant_id)
            variant_id = mapping.entity_id if mapping is not None else None
        for item in order.items:
            variant = item.variant
            if variant_id is not None and item.product_variant_id == variant_id:
                return item
            if variant is None:
                continue
            if line.barcode and variant.barcode == line.barcode:
                return item
            if line.sku and variant.sku == line.sku:
                return item
        return None

    def _upsert_item(
        self,
        order_return: OrderReturn,
        order: Order,
        channel: str,
        line: NormalizedReturnLine,
        source: str,
        refund_amount: Optional[int] = None,
        order_item: Optional[OrderItem] = None,
    ) -> Optional[ReturnItem]:
        """
        One ReturnItem per order item. Each payload line contributes under its
        own key, so redelivery is idempotent and partial events accumulate.
        A refund and the return request it settles describe the same units:
        contributions add up within a source kind, the largest kind wins.
        """
        order_item = order_item or self._locate_order_item(order, channel, line)
        if order_item is None:
            logger.warning(f"Return line {line.external_line_id or line.sku} not found on order {order.order_number}")
            return None

        item = None
        for existing in order_return.items:
            if existing.order_item_id == order_item.id:
                item = existing
                break
        if item is None:
            item = ReturnItem(order_item_id=order_item.id, quantity=0, refund_amount=0)
            order_return.items.append(item)

        key = f"{source}:{line.external_item_id or line.external_line_id or order_item.id}"
        data = dict(item.platform_data or {})
        contributions = dict(data.get("contributions") or {})
        previous = contributions.get(key) or {}
        contributions[key] = {
            "quantity": line.quantity,
            "refund_amount": refund_amount if refund_amount is not None else previous.get("refund_amount", 0),
        }
        data["contributions"] = contributions
        data["last_line"] = line.raw
        item.platform_data = data

        item.quantity = min(_largest_kind_total(contributions, "quantity"), order_item.quantity)
        item.refund_amount = _largest_kind_total(contributions, "refund_amount")
        item.external_item_id = item.external_item_id or line.external_item_id
        item.reason_code = line.reason_code or item.reason_code
        item.reason_name = line.reason_name or item.reason_name
        item.customer_note = line.customer_note or item.customer_note
        item.received_condition = line.condition or item.received_condition
        return item

    # ========== Order Roll-up ==========

    def _finish(self, order_return: OrderReturn, order: Order) -> None:
        self.refresh_order_return_status(order)
        self.shipping.apply_return(order_return, order)
        self.db.flush()

    def refresh_order_return_status(self, order: Order) -> str:
        ordered = sum(item.quantity or 0 for item in order.items)
        returned = sum(
            item.quantity or 0
            for order_return in order.returns
            if order_return.status in COUNTED_STATUSES
            for item in order_return.items
        )

        if returned <= 0:
            state = ReturnState.NONE.value
        elif ordered and returned >= ordered:
            state = ReturnState.FULL.value
            order.order_status = OrderStatus.REFUNDED.value
        else:
            state = ReturnState.PARTIAL.value
            order.order_status = OrderStatus.PARTIALLY_REFUNDED.value

        if order.return_status != state:
            logger.info(f"Order {order.order_number} return status {order.return_status} -> {state}")
        order.return_status = state
        return state

    # ========== Helpers ==========

    @staticmethod
    def _skip(reason: str, details: Dict[str, Any]) -> Skipped:
        logger.info(f"Skipped return event: {reason} {details}")
        return Skipped(reason, details)


def _largest_kind_total(contributions: Dict[str, Dict[str, Any]], field: str) -> int:
    """contributions keyed "<kind>:<event id>:<line>" -> max over kinds of the per-kind sum"""
    totals: Dict[str, int] = {}
    for key, contribution in contributions.items():
        kind = key.split(":", 1)[0]
        totals[kind] = totals.get(kind, 0) + (contribution.get(field) or 0)
    return max(totals.values()) if totals else 0
