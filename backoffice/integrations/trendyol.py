"""
Trendyol Seller API Client
API Documentation: https://developers.trendyol.com
"""
import hmac
from datetime import datetime
from typing import Optional, Dict, Any
import httpx
import logging

from backoffice.core.exceptions import ChannelParseError, TransientError
from .base import (
    BaseChannelClient, CustomerFragment, NormalizedOrder, NormalizedOrderLine,
    NormalizedClaim, NormalizedReturnLine, to_decimal, from_epoch_ms, str_or_none,
)

logger = logging.getLogger(__name__)

MASKED_VALUE = "***"

CANCELLED_STATUSES = ("CANCELLED", "CANCEL_PENDING", "UNSUPPLIED", "RETURNED", "UNPACKED", "UNDELIVERED")


class TrendyolClient(BaseChannelClient):
    """
    Trendyol Seller API Client and package parser
    """
    PLATFORM_NAME = "trendyol"

    # API Endpoints
    BASE_URL = "https://api.trendyol.com/sapigw/suppliers"
    GATEWAY_URL = "https://apigw.trendyol.com/integration/order/sellers"

    # Package status -> order_status
    ORDER_STATUS_MAP = {
        "CREATED": "pending",
        "AWAITING": "pending",
        "VERIFIED": "pending",
        "PICKING": "processing",
        "PICKED": "processing",
        "INVOICED": "completed",
        "SHIPPED": "completed",
        "AT_COLLECTION_POINT": "completed",
        "DELIVERED": "completed",
        **{status: "cancelled" for status in CANCELLED_STATUSES},
    }

    # Package status -> payment_status (when no invoice link)
    PAYMENT_STATUS_MAP = {
        "INVOICED": "paid",
        "SHIPPED": "paid",
        "DELIVERED": "paid",
        "AT_COLLECTION_POINT": "paid",
        "CANCELLED": "refunded",
        "RETURNED": "refunded",
        "UNSUPPLIED": "refunded",
        "UNDELIVERED": "refunded",
    }

    # Shipment package status -> fulfillment_status
    FULFILLMENT_STATUS_MAP = {
        "CREATED": "unfulfilled",
        "AWAITING": "unfulfilled",
        "VERIFIED": "unfulfilled",
        "PICKING": "awaiting_shipment",
        "PICKED": "awaiting_shipment",
        "INVOICED": "awaiting_shipment",
        "READYTOSHIP": "awaiting_shipment",
        "SHIPPED": "in_transit",
        "AT_COLLECTION_POINT": "in_transit",
        "DELIVERED": "delivered",
        **{status: "cancelled" for status in CANCELLED_STATUSES},
    }

    # ========== Status Mapping ==========

    def map_order_status(self, status: Optional[str]) -> str:
        return self.ORDER_STATUS_MAP.get((status or "").upper(), "pending")

    def map_payment_status(self, raw: Dict[str, Any]) -> str:
        if raw.get("invoiceLink"):
            return "paid"
        return self.PAYMENT_STATUS_MAP.get((raw.get("status") or "").upper(), "pending")

    def map_fulfillment_status(self, raw: Dict[str, Any]) -> str:
        status = raw.get("shipmentPackageStatus") or raw.get("status")
        return self.FULFILLMENT_STATUS_MAP.get((status or "").upper(), "unfulfilled")

    @staticmethod
    def map_claim_status(raw_claim: Dict[str, Any]) -> str:
        items = raw_claim.get("items") or [{}]
        claim_items = items[0].get("claimItems") or []
        if not claim_items:
            return "requested"

        first = claim_items[0]
        status_name = (first.get("claimItemStatus") or {}).get("name")
        if status_name == "Cancelled":
            return "cancelled"
        if status_name == "Accepted" and first.get("resolved"):
            return "completed"
        if first.get("acceptedBySeller") is True:
            return "approved"
        return "pending_review"

    # ========== Parse: Shipment Packages ==========

    def parse_order(self, raw_order: Dict[str, Any]) -> NormalizedOrder:
        """Convert a Trendyol shipment package to the normalized format"""
        if not raw_order.get("id"):
            raise ChannelParseError("Trendyol package payload has no id")

        shipment_address = raw_order.get("shipmentAddress") or {}
        invoice_address = raw_order.get("invoiceAddress") or {}

        fragment = CustomerFragment(
            external_id=str_or_none(raw_order.get("customerId")),
            first_name=raw_order.get("customerFirstName") or shipment_address.get("firstName"),
            last_name=raw_order.get("customerLastName") or shipment_address.get("lastName"),
            email=raw_order.get("customerEmail"),
            phone=shipment_address.get("phone"),
            address_line=shipment_address.get("address1") or shipment_address.get("fullAddress"),
            masked_sentinel=MASKED_VALUE,
            channel_label="Trendyol",
            address_snapshot={
                "invoice_address": invoice_address,
                "shipment_address": shipment_address,
            },
        )

        status = raw_order.get("status")
        order_status = self.map_order_status(status)
        shipped_at = from_epoch_ms(raw_order.get("originShipmentDate"))
        desi = raw_order.get("cargoDeci")

        normalized = NormalizedOrder(
            channel=self.PLATFORM_NAME,
            external_id=str(raw_order["id"]),
            order_number=str(raw_order.get("orderNumber") or raw_order["id"]),
            customer=fragment,
            order_status=order_status,
            payment_status=self.map_payment_status(raw_order),
            fulfillment_status=self.map_fulfillment_status(raw_order),
            raw_status=status,
            payment_method="online",
            payment_gateway=self.PLATFORM_NAME,
            currency=raw_order.get("currencyCode") or "TRY",
            subtotal=to_decimal(raw_order.get("grossAmount")),
            discount_amount=to_decimal(raw_order.get("totalDiscount")),
            total_amount=to_decimal(raw_order.get("totalPrice")),
            carrier_name=raw_order.get("cargoProviderName"),
            desi=to_decimal(desi) if desi not in (None, "") else None,
            tracking_number=str_or_none(raw_order.get("cargoTrackingNumber")),
            tracking_url=raw_order.get("cargoTrackingLink"),
            order_date=from_epoch_ms(raw_order.get("orderDate")),
            shipped_at=shipped_at,
            delivered_at=shipped_at if (status or "").upper() == "DELIVERED" else None,
            estimated_delivery_start=from_epoch_ms(raw_order.get("estimatedDeliveryStartDate")),
            estimated_delivery_end=from_epoch_ms(raw_order.get("estimatedDeliveryEndDate")),
            invoice_url=raw_order.get("invoiceLink"),
            raw=raw_order,
        )

        for line in raw_order.get("lines") or []:
            normalized.lines.append(NormalizedOrderLine(
                external_line_id=str(line.get("id")),
                quantity=int(line.get("quantity") or 1),
                unit_price=to_decimal(line.get("price")),
                platform_variant_id=str_or_none(line.get("productCode")),
                barcode=str_or_none(line.get("barcode")),
                sku=str_or_none(line.get("merchantSku")),
                alternate_barcode=str_or_none(line.get("sku")),
                title=line.get("productName") or "",
                color=line.get("productColor"),
                size=line.get("productSize"),
                discount=to_decimal(line.get("discount")),
                tax_rate=to_decimal(line.get("vatBaseAmount")),
                commission_rate=to_decimal(line.get("commission")),
                raw=line,
            ))

        return normalized

    # ========== Parse: Claims ==========

    def parse_claim(self, raw_claim: Dict[str, Any]) -> NormalizedClaim:
        if not raw_claim.get("id") or not raw_claim.get("orderNumber"):
            raise ChannelParseError("Trendyol claim payload needs id and orderNumber")

        items = raw_claim.get("items") or []
        first_claim_item = ((items[0].get("claimItems") or [{}])[0]) if items else {}
        reason = first_claim_item.get("customerClaimItemReason") or {}
        desi = raw_claim.get("cargoDeci")

        claim = NormalizedClaim(
            channel=self.PLATFORM_NAME,
            external_id=str(raw_claim["id"]),
            order_number=str(raw_claim["orderNumber"]),
            status=self.map_claim_status(raw_claim),
            claim_date=from_epoch_ms(raw_claim.get("claimDate")),
            last_modified=from_epoch_ms(raw_claim.get("lastModifiedDate")),
            reason_code=str_or_none(reason.get("code")),
            reason_name=reason.get("name"),
            customer_note=first_claim_item.get("customerNote"),
            note=first_claim_item.get("note"),
            carrier_name=raw_claim.get("cargoProviderName"),
            tracking_number=str_or_none(raw_claim.get("cargoTrackingNumber")),
            tracking_url=raw_claim.get("cargoTrackingLink"),
            desi=to_decimal(desi) if desi not in (None, "") else None,
            raw=raw_claim,
        )

        # One return line per order line; each claim item is one unit
        for item in items:
            order_line = item.get("orderLine") or {}
            claim_items = item.get("claimItems") or []
            if not claim_items:
                continue
            first = claim_items[0]
            item_reason = first.get("customerClaimItemReason") or {}
            status_name = (first.get("claimItemStatus") or {}).get("name")
            claim.lines.append(NormalizedReturnLine(
                quantity=len(claim_items),
                external_item_id=str_or_none(first.get("id")),
                external_line_id=str_or_none(order_line.get("id")),
                barcode=str_or_none(order_line.get("barcode")),
                sku=str_or_none(order_line.get("merchantSku")),
                reason_code=str_or_none(item_reason.get("code")),
                reason_name=item_reason.get("name"),
                customer_note=first.get("customerNote"),
                condition="good" if status_name == "Accepted" else None,
                raw=item,
            ))

        return claim

    @staticmethod
    def is_claim_payload(payload: Dict[str, Any]) -> bool:
        items = payload.get("items") or []
        return bool(items) and any("claimItems" in item for item in items)

    # ========== Orders API ==========

    def _auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.settings.get("api_key", ""), self.settings.get("api_secret", ""))

    async def _get(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, auth=self._auth()) as client:
            try:
                response = await client.get(url, params=params)
            except httpx.TransportError as e:
                raise TransientError(f"Trendyol request failed: {e}") from e
            self._log_api_call("GET", url, response.status_code)

            if response.status_code == 429 or response.status_code >= 500:
                raise TransientError(f"Trendyol API returned {response.status_code}")
            if response.status_code >= 400:
                raise Exception(f"Trendyol API Error: {response.status_code} {response.text[:200]}")
            return response.json()

    async def get_orders(
        self,
        time_from: Optional[datetime] = None,
        cursor: Optional[str] = None,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        """
        Get shipment packages page
        API: GET /suppliers/{supplierId}/orders (page/size, dates in epoch ms)
        """
        page = int(cursor or 0)
        params: Dict[str, Any] = {"page": page, "size": min(page_size, 200)}
        if time_from:
            params["startDate"] = int(time_from.timestamp() * 1000)
            params["orderByField"] = "PackageLastModifiedDate"

        data = await self._get(f"{self.BASE_URL}/{self.settings.get('supplier_id')}/orders", params)
        total_pages = data.get("totalPages", 0)
        has_more = page + 1 < total_pages
        return {
            "orders": data.get("content", []),
            "next_cursor": str(page + 1) if has_more else None,
            "has_more": has_more,
        }

    async def get_claims(self, cursor: Optional[str] = None, page_size: int = 50) -> Dict[str, Any]:
        """
        Get claims page
        API: GET /integration/order/sellers/{sellerId}/claims
        """
        page = int(cursor or 0)
        data = await self._get(
            f"{self.GATEWAY_URL}/{self.settings.get('supplier_id')}/claims",
            {"page": page, "size": page_size},
        )
        total_pages = data.get("totalPages", 1)
        has_more = page + 1 < total_pages
        return {
            "claims": data.get("content", []),
            "next_cursor": str(page + 1) if has_more else None,
            "has_more": has_more,
        }

    # ========== Webhooks ==========

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Trendyol webhooks carry the seller's api key as-is"""
        api_key = self.settings.get("api_key")
        if not api_key or not signature:
            return False
        return hmac.compare_digest(api_key, signature)
