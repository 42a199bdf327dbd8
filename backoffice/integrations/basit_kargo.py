"""
Basit Kargo Shipping Aggregator Client
"""
import hmac
import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, Any
import httpx
import logging
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from backoffice.core.exceptions import ChannelParseError, TransientError
from .base import to_decimal, str_or_none

logger = logging.getLogger(__name__)


class ShipmentStatus(str, enum.Enum):
    NEW = "NEW"
    READY_TO_SHIP = "READY_TO_SHIP"
    SHIPPED = "SHIPPED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    COMPLETED = "COMPLETED"
    NEEDS_SUPPORT = "NEEDS_SUPPORT"
    DELAYED = "DELAYED"
    RETURNING = "RETURNING"
    RETURNED = "RETURNED"
    LOST = "LOST"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["ShipmentStatus"]:
        try:
            return cls((value or "").upper())
        except ValueError:
            return None


@dataclass
class ShipmentCost:
    """Aggregator-reported price for one shipment (major units)"""
    total_cost: Decimal
    shipment_fee: Decimal
    desi: Optional[Decimal] = None
    carrier_code: Optional[str] = None

    @property
    def return_leg_cost(self) -> Decimal:
        """
        totalCost covers outbound + return when a return leg exists;
        without an itemized breakdown the return leg costs the same as outbound.
        """
        difference = self.total_cost - self.shipment_fee
        return difference if difference > 0 else self.shipment_fee


@dataclass
class ShipmentEvent:
    """Normalized aggregator webhook"""
    tracking_number: Optional[str]
    shipment_id: Optional[str]
    status_code: Optional[str]
    status: Optional[ShipmentStatus]
    handler_code: Optional[str] = None
    status_message: Optional[str] = None
    detailed: bool = False
    cost: Optional[ShipmentCost] = None


def parse_shipment_cost(data: Dict[str, Any]) -> Optional[ShipmentCost]:
    price_info = data.get("priceInfo")
    if not price_info:
        return None
    shipment_info = data.get("shipmentInfo") or {}
    desi = shipment_info.get("handlerDesi")
    return ShipmentCost(
        total_cost=to_decimal(price_info.get("totalCost")),
        shipment_fee=to_decimal(price_info.get("shipmentFee")),
        desi=to_decimal(desi) if desi not in (None, "") else None,
        carrier_code=(shipment_info.get("handler") or {}).get("code"),
    )


def parse_webhook(payload: Dict[str, Any]) -> ShipmentEvent:
    """Simple payloads carry handler at the top level, detailed ones under shipmentInfo"""
    detailed = "shipmentInfo" in payload
    if detailed:
        handler = (payload.get("shipmentInfo") or {}).get("handler") or {}
        message = (payload.get("shipmentInfo") or {}).get("lastState")
    else:
        handler = payload.get("handler") or {}
        message = payload.get("statusMessage")

    tracking_number = str_or_none(payload.get("barcode") or payload.get("trackingNumber"))
    shipment_id = str_or_none(payload.get("id") or payload.get("shipmentId"))
    status_code = payload.get("status")
    if not tracking_number or not status_code:
        raise ChannelParseError("Basit Kargo webhook needs barcode and status")

    return ShipmentEvent(
        tracking_number=tracking_number,
        shipment_id=shipment_id,
        status_code=status_code,
        status=ShipmentStatus.parse(status_code),
        handler_code=handler.get("code"),
        status_message=message,
        detailed=detailed,
        cost=parse_shipment_cost(payload),
    )


class BasitKargoClient:
    """
    Basit Kargo REST client (sync; called from inside reconciliation units)
    """
    PLATFORM_NAME = "basit_kargo"
    BASE_URL = "https://basitkargo.com/api"

    def __init__(self, settings: Dict[str, Any], timeout: float = 30.0, transport: httpx.BaseTransport = None):
        self.settings = settings or {}
        self.timeout = timeout
        self.transport = transport

    @property
    def vat_included(self) -> bool:
        return bool(self.settings.get("vat_included", True))

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.BASE_URL,
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Authorization": f"Bearer {self.settings.get('api_token', '')}",
                "Accept": "application/json",
            },
        )

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(TransientError),
    )
    def _get(self, path: str) -> Optional[Dict[str, Any]]:
        with self._client() as client:
            try:
                response = client.get(path)
            except httpx.TransportError as e:
                raise TransientError(f"Basit Kargo request failed: {e}") from e

        logger.info(f"[{self.PLATFORM_NAME}] GET {path} -> {response.status_code}")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"Basit Kargo returned {response.status_code}")
        if response.status_code >= 400:
            return None
        return response.json()

    # ========== Shipments ==========

    def get_shipment_by_tracking_number(self, tracking_number: str) -> Optional[Dict[str, Any]]:
        return self._get(f"/v2/order/handler-shipment-code/{tracking_number}")

    def get_shipment_by_barcode(self, barcode: str) -> Optional[Dict[str, Any]]:
        return self._get(f"/v2/order/barcode/{barcode}")

    def get_shipment_by_id(self, shipment_id: str) -> Optional[Dict[str, Any]]:
        return self._get(f"/v2/order/{shipment_id}")

    def get_shipment_cost(self, tracking_number: str) -> Optional[ShipmentCost]:
        """Raises TransientError once retries are exhausted"""
        shipment = self.get_shipment_by_tracking_number(tracking_number)
        if not shipment:
            return None
        return parse_shipment_cost(shipment)

    # ========== Webhooks ==========

    def verify_bearer_token(self, authorization: Optional[str]) -> bool:
        token = self.settings.get("api_token")
        if not token or not authorization:
            return False
        provided = authorization[7:] if authorization.lower().startswith("bearer ") else authorization
        return hmac.compare_digest(token, provided)
