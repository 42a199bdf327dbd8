"""
Shopify Admin API Client
API Documentation: https://shopify.dev/docs/api/admin-rest
"""
import base64
import hashlib
import hmac
import re
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List
import httpx
import logging

from backoffice.core.exceptions import ChannelParseError, TransientError
from .base import (
    BaseChannelClient, CustomerFragment, NormalizedOrder, NormalizedOrderLine,
    NormalizedRefund, NormalizedReturnLine, NormalizedTransaction, NormalizedReturnRequest,
    to_decimal, parse_datetime, gid_to_id, str_or_none,
)

logger = logging.getLogger(__name__)


class ShopifyClient(BaseChannelClient):
    """
    Shopify Admin API Client and payload parser
    """
    PLATFORM_NAME = "shopify"
    API_VERSION = "2025-10"

    # Financial status -> payment_status
    PAYMENT_STATUS_MAP = {
        "paid": "paid",
        "partially_paid": "partially_paid",
        "refunded": "refunded",
        "partially_refunded": "partially_refunded",
        "voided": "failed",
    }

    # Fulfillment shipment_status -> fulfillment_status
    SHIPMENT_STATUS_MAP = {
        "delivered": "delivered",
        "out_for_delivery": "out_for_delivery",
        "in_transit": "in_transit",
    }

    FULFILLMENT_STATUS_MAP = {
        "fulfilled": "fulfilled",
        "partial": "partially_fulfilled",
        "restocked": "returned",
    }

    # GraphQL ReturnStatus -> return status
    RETURN_STATUS_MAP = {
        "REQUESTED": "requested",
        "OPEN": "pending_review",
        "APPROVED": "approved",
        "DECLINED": "rejected",
        "CLOSED": "completed",
        "CANCELED": "cancelled",
        "CANCELLED": "cancelled",
    }

    # ========== Status Mapping ==========

    def map_order_status(self, raw: Dict[str, Any]) -> str:
        if raw.get("cancelled_at"):
            return "cancelled"
        if (raw.get("fulfillment_status") or "").lower() == "fulfilled":
            return "completed"
        if (raw.get("financial_status") or "").lower() in ("paid", "partially_paid"):
            return "processing"
        return "pending"

    def map_payment_status(self, raw: Dict[str, Any]) -> str:
        return self.PAYMENT_STATUS_MAP.get((raw.get("financial_status") or "").lower(), "pending")

    def map_fulfillment_status(self, raw: Dict[str, Any]) -> str:
        if raw.get("cancelled_at"):
            return "cancelled"

        fulfillments = raw.get("fulfillments") or []
        if fulfillments:
            shipment_status = (fulfillments[0].get("shipment_status") or "").lower()
            if shipment_status in self.SHIPMENT_STATUS_MAP:
                return self.SHIPMENT_STATUS_MAP[shipment_status]

        return self.FULFILLMENT_STATUS_MAP.get((raw.get("fulfillment_status") or "").lower(), "unfulfilled")

    @staticmethod
    def map_payment_method(gateway: Optional[str]) -> str:
        name = (gateway or "").lower()
        if "cash" in name or "cod" in name:
            return "cod"
        if any(word in name for word in ("bank", "wire", "transfer", "eft", "havale")):
            return "bank_transfer"
        return "online"

    # ========== Parse: Orders ==========

    def parse_order(self, raw_order: Dict[str, Any]) -> NormalizedOrder:
        """Convert a Shopify order (REST shape) to the normalized format"""
        if not raw_order.get("id"):
            raise ChannelParseError("Shopify order payload has no id")

        customer = raw_order.get("customer") or {}
        shipping_address = raw_order.get("shipping_address") or {}
        billing_address = raw_order.get("billing_address") or {}

        fragment = CustomerFragment(
            external_id=str_or_none(customer.get("id")),
            first_name=customer.get("first_name") or shipping_address.get("first_name"),
            last_name=customer.get("last_name") or shipping_address.get("last_name"),
            email=customer.get("email") or raw_order.get("email"),
            phone=customer.get("phone") or shipping_address.get("phone"),
            address_line=shipping_address.get("address1"),
            note=raw_order.get("note"),
            channel_label="Shopify",
            address_snapshot={
                "shipping_address": shipping_address,
                "billing_address": billing_address,
            },
        )

        gateway_names = raw_order.get("payment_gateway_names") or []
        gateway = gateway_names[0] if gateway_names else None

        shipping_lines = raw_order.get("shipping_lines") or []
        shipping_amount = (
            ((raw_order.get("total_shipping_price_set") or {}).get("shop_money") or {}).get("amount")
            or (shipping_lines[0].get("price") if shipping_lines else None)
        )

        fulfillment = (raw_order.get("fulfillments") or [{}])[0]
        fulfillment_status = self.map_fulfillment_status(raw_order)

        carrier_name = fulfillment.get("tracking_company")
        if not carrier_name and shipping_lines:
            carrier_name = shipping_lines[0].get("code") or shipping_lines[0].get("title")

        normalized = NormalizedOrder(
            channel=self.PLATFORM_NAME,
            external_id=str(raw_order["id"]),
            order_number=str(raw_order.get("name") or raw_order.get("order_number") or raw_order["id"]),
            customer=fragment,
            order_status=self.map_order_status(raw_order),
            payment_status=self.map_payment_status(raw_order),
            fulfillment_status=fulfillment_status,
            raw_status=raw_order.get("financial_status"),
            payment_method=self.map_payment_method(gateway),
            payment_gateway=gateway,
            payment_transaction_id=self._payment_transaction_id(raw_order),
            currency=raw_order.get("currency") or "USD",
            subtotal=to_decimal(raw_order.get("current_subtotal_price") or raw_order.get("subtotal_price")),
            tax_amount=to_decimal(raw_order.get("current_total_tax") or raw_order.get("total_tax")),
            shipping_amount=to_decimal(shipping_amount),
            discount_amount=to_decimal(raw_order.get("current_total_discounts") or raw_order.get("total_discounts")),
            total_amount=to_decimal(raw_order.get("current_total_price") or raw_order.get("total_price")),
            carrier_name=carrier_name,
            tracking_number=fulfillment.get("tracking_number"),
            tracking_url=fulfillment.get("tracking_url"),
            order_date=parse_datetime(raw_order.get("created_at")),
            shipped_at=parse_datetime(fulfillment.get("created_at")),
            delivered_at=parse_datetime(fulfillment.get("updated_at")) if fulfillment_status == "delivered" else None,
            notes=raw_order.get("note"),
            raw=raw_order,
        )

        # Lines removed through an order edit arrive as refunds with restock_type "cancel"
        cancelled_line_ids = self._cancelled_line_ids(raw_order.get("refunds") or [])
        for line in raw_order.get("line_items") or []:
            if str(line.get("id")) in cancelled_line_ids:
                continue
            normalized.lines.append(self._parse_line(line))

        return normalized

    def _parse_line(self, line: Dict[str, Any]) -> NormalizedOrderLine:
        tax_lines = line.get("tax_lines") or []
        tax_rate = to_decimal(tax_lines[0].get("rate")) * 100 if tax_lines else Decimal("0")

        return NormalizedOrderLine(
            external_line_id=str(line.get("id")),
            quantity=int(line.get("quantity") or 1),
            unit_price=to_decimal(line.get("price")),
            platform_variant_id=str_or_none(line.get("variant_id")),
            barcode=None,
            sku=str_or_none(line.get("sku")),
            title=line.get("title") or line.get("name") or "",
            vendor=line.get("vendor"),
            discount=to_decimal(line.get("total_discount")),
            tax_rate=tax_rate,
            raw=line,
        )

    @staticmethod
    def _cancelled_line_ids(refunds: List[Dict[str, Any]]) -> set:
        ids = set()
        for refund in refunds:
            for refund_line in refund.get("refund_line_items") or []:
                if refund_line.get("restock_type") == "cancel":
                    ids.add(str(refund_line.get("line_item_id")))
        return ids

    @staticmethod
    def _payment_transaction_id(raw_order: Dict[str, Any]) -> Optional[str]:
        for transaction in raw_order.get("transactions") or []:
            if transaction.get("status") == "success":
                receipt = transaction.get("receipt") or {}
                return str_or_none(
                    transaction.get("authorization") or receipt.get("payment_id") or transaction.get("id")
                )
        return None

    # ========== Parse: Refunds ==========

    def parse_refund(self, raw_refund: Dict[str, Any]) -> NormalizedRefund:
        if not raw_refund.get("id") or not raw_refund.get("order_id"):
            raise ChannelParseError("Shopify refund payload needs id and order_id")

        linked_return = raw_refund.get("return") or {}

        refund = NormalizedRefund(
            channel=self.PLATFORM_NAME,
            external_id=str(raw_refund["id"]),
            order_external_id=str(raw_refund["order_id"]),
            return_external_id=gid_to_id(linked_return.get("id")) if linked_return.get("id") else None,
            note=raw_refund.get("note"),
            restock=bool(raw_refund.get("restock")),
            created_at=parse_datetime(raw_refund.get("created_at")),
            processed_at=parse_datetime(raw_refund.get("processed_at")),
            raw=raw_refund,
        )

        for refund_line in raw_refund.get("refund_line_items") or []:
            line_item = refund_line.get("line_item") or {}
            refund.lines.append(NormalizedReturnLine(
                quantity=int(refund_line.get("quantity") or 1),
                external_item_id=str_or_none(refund_line.get("id")),
                external_line_id=str_or_none(refund_line.get("line_item_id")),
                platform_variant_id=str_or_none(line_item.get("variant_id")),
                sku=str_or_none(line_item.get("sku")),
                subtotal=to_decimal(refund_line.get("subtotal")),
                restock_type=refund_line.get("restock_type"),
                raw=refund_line,
            ))

        for transaction in raw_refund.get("transactions") or []:
            refund.transactions.append(NormalizedTransaction(
                external_id=str(transaction.get("id")),
                kind=transaction.get("kind") or "",
                status=transaction.get("status") or "",
                amount=to_decimal(transaction.get("amount")),
                gateway=transaction.get("gateway"),
                created_at=parse_datetime(transaction.get("created_at")),
                processed_at=parse_datetime(transaction.get("processed_at")),
                raw=transaction,
            ))

        return refund

    # ========== Parse: Return Requests ==========

    def parse_return_request(self, raw_return: Dict[str, Any]) -> NormalizedReturnRequest:
        """Parse a GraphQL Return node (also the returns/* webhook shape)"""
        return_id = gid_to_id(raw_return.get("admin_graphql_api_id") or raw_return.get("id"))
        order = raw_return.get("order") or {}
        order_id = order.get("legacyResourceId") or gid_to_id(order.get("id")) or raw_return.get("order_id")
        if not return_id or not order_id:
            raise ChannelParseError("Shopify return payload needs id and order")

        status = (raw_return.get("status") or "").upper()
        request = NormalizedReturnRequest(
            channel=self.PLATFORM_NAME,
            external_id=str(return_id),
            order_external_id=str(order_id),
            status=self.RETURN_STATUS_MAP.get(status, "requested"),
            requested_at=parse_datetime(raw_return.get("createdAt") or raw_return.get("created_at")),
            approved_at=parse_datetime(raw_return.get("requestApprovedAt")),
            closed_at=parse_datetime(raw_return.get("closedAt")),
            raw=raw_return,
        )

        for edge in ((raw_return.get("returnLineItems") or {}).get("edges") or []):
            node = edge.get("node") or {}
            line_item = (node.get("fulfillmentLineItem") or {}).get("lineItem") or {}
            variant = line_item.get("variant") or {}
            request.lines.append(NormalizedReturnLine(
                quantity=int(node.get("quantity") or 1),
                external_item_id=gid_to_id(node.get("id")),
                external_line_id=gid_to_id(line_item.get("id")),
                platform_variant_id=str_or_none(variant.get("legacyResourceId")) or gid_to_id(variant.get("id")),
                sku=str_or_none(variant.get("sku")),
                barcode=str_or_none(variant.get("barcode")),
                reason_code=node.get("returnReason"),
                reason_name=node.get("returnReasonNote") or node.get("returnReason"),
                customer_note=node.get("customerNote"),
                raw=node,
            ))

        if request.lines:
            first = request.lines[0]
            request.reason_code = first.reason_code
            request.reason_name = first.reason_name
            request.customer_note = first.customer_note

        return request

    # ========== Orders API ==========

    def _base_url(self) -> str:
        shop_domain = self.settings.get("shop_domain", "")
        if not shop_domain.endswith(".myshopify.com"):
            shop_domain = f"{shop_domain}.myshopify.com"
        api_version = self.settings.get("api_version", self.API_VERSION)
        return f"https://{shop_domain}/admin/api/{api_version}"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": self.settings.get("access_token", ""),
        }

    async def get_orders(
        self,
        time_from: Optional[datetime] = None,
        cursor: Optional[str] = None,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        """
        Get orders page
        API: GET /orders.json, cursor pagination via Link header page_info
        """
        path = "/orders.json"
        params: Dict[str, Any] = {"limit": min(page_size, 250)}
        if cursor:
            # page_info requests only accept limit
            params["page_info"] = cursor
        else:
            params["status"] = "any"
            if time_from:
                params["updated_at_min"] = time_from.isoformat()

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.get(f"{self._base_url()}{path}", params=params, headers=self._headers())
            except httpx.TransportError as e:
                raise TransientError(f"Shopify request failed: {e}") from e
            self._log_api_call("GET", path, response.status_code)

            if response.status_code == 429 or response.status_code >= 500:
                raise TransientError(f"Shopify API returned {response.status_code}")
            if response.status_code >= 400:
                raise Exception(f"Shopify API Error: {response.status_code} {response.text[:200]}")

            orders = response.json().get("orders", [])
            next_cursor = self.parse_next_page_info(response.headers.get("Link"))
            return {
                "orders": orders,
                "next_cursor": next_cursor,
                "has_more": next_cursor is not None,
            }

    @staticmethod
    def parse_next_page_info(link_header: Optional[str]) -> Optional[str]:
        """<https://...page_info=abc>; rel="next" -> abc"""
        if not link_header:
            return None
        for part in link_header.split(","):
            if 'rel="next"' in part:
                match = re.search(r"page_info=([^&>]+)", part)
                if match:
                    return match.group(1)
        return None

    # ========== Webhooks ==========

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """
        Verify Shopify webhook signature
        Signature = base64(HMAC-SHA256(body, webhook_secret))
        """
        secret = self.settings.get("webhook_secret") or self.settings.get("api_secret")
        if not secret or not signature:
            return False
        digest = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode()
        return hmac.compare_digest(expected, signature)
