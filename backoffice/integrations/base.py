"""
Base Channel Client - Abstract base class and normalized structures for channel integrations
"""
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from dataclasses import dataclass, field
import logging

logger = logging.getLogger(__name__)


# ========== Normalized Structures ==========

@dataclass
class CustomerFragment:
    """
    Customer data as seen on one channel payload
    """
    external_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address_line: Optional[str] = None
    note: Optional[str] = None

    # Channel's redaction marker (e.g. "***"); None when the channel never masks
    masked_sentinel: Optional[str] = None
    # Shown as first name on placeholder customers
    channel_label: str = "Channel"

    address_snapshot: Dict[str, Any] = None

    def __post_init__(self):
        if self.address_snapshot is None:
            self.address_snapshot = {}

    def is_masked(self) -> bool:
        if not self.masked_sentinel:
            return False
        critical = (self.first_name, self.last_name, self.email, self.phone, self.address_line)
        return any(value == self.masked_sentinel for value in critical)


@dataclass
class NormalizedOrderLine:
    """
    One order line. Amounts are major-unit Decimals, rates are percentages.
    """
    external_line_id: str
    quantity: int
    unit_price: Decimal

    # Variant matching keys
    platform_variant_id: Optional[str] = None
    barcode: Optional[str] = None
    sku: Optional[str] = None
    # Channel-side code that sometimes holds the barcode
    alternate_barcode: Optional[str] = None

    # Descriptive fields for shell products
    title: str = ""
    vendor: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None

    discount: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    commission_rate: Decimal = Decimal("0")

    raw: Dict[str, Any] = None

    def __post_init__(self):
        if self.raw is None:
            self.raw = {}


@dataclass
class NormalizedOrder:
    """
    Normalized order structure that every channel parse step produces
    """
    # Identifiers
    channel: str
    external_id: str
    order_number: str
    customer: CustomerFragment

    # Canonical statuses (already mapped from channel vocabulary)
    order_status: str = "pending"
    payment_status: str = "pending"
    fulfillment_status: str = "unfulfilled"
    raw_status: Optional[str] = None

    # Payment
    payment_method: Optional[str] = None
    payment_gateway: Optional[str] = None
    payment_transaction_id: Optional[str] = None

    # Amounts (major units)
    currency: str = "TRY"
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    shipping_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")

    # Shipping
    carrier_name: Optional[str] = None
    desi: Optional[Decimal] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None

    # Timestamps
    order_date: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery_start: Optional[datetime] = None
    estimated_delivery_end: Optional[datetime] = None

    invoice_url: Optional[str] = None
    notes: Optional[str] = None

    lines: List[NormalizedOrderLine] = None
    raw: Dict[str, Any] = None

    def __post_init__(self):
        if self.lines is None:
            self.lines = []
        if self.raw is None:
            self.raw = {}


@dataclass
class NormalizedReturnLine:
    """A returned/refunded line, pointing back at the order line it came from"""
    quantity: int
    external_item_id: Optional[str] = None
    external_line_id: Optional[str] = None
    platform_variant_id: Optional[str] = None
    barcode: Optional[str] = None
    sku: Optional[str] = None
    subtotal: Optional[Decimal] = None
    restock_type: Optional[str] = None
    reason_code: Optional[str] = None
    reason_name: Optional[str] = None
    customer_note: Optional[str] = None
    condition: Optional[str] = None
    raw: Dict[str, Any] = None

    def __post_init__(self):
        if self.raw is None:
            self.raw = {}

    @property
    def is_order_edit(self) -> bool:
        return self.restock_type == "cancel"


@dataclass
class NormalizedTransaction:
    external_id: str
    kind: str  # refund, void, capture, sale, authorization
    status: str  # success, pending, failure, error
    amount: Decimal = Decimal("0")
    gateway: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    raw: Dict[str, Any] = None

    def __post_init__(self):
        if self.raw is None:
            self.raw = {}

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass
class NormalizedRefund:
    """
    Refund event on a storefront order
    """
    channel: str
    external_id: str
    order_external_id: str
    return_external_id: Optional[str] = None  # back-reference to a return request
    note: Optional[str] = None
    restock: bool = False
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    lines: List[NormalizedReturnLine] = None
    transactions: List[NormalizedTransaction] = None
    raw: Dict[str, Any] = None

    def __post_init__(self):
        if self.lines is None:
            self.lines = []
        if self.transactions is None:
            self.transactions = []
        if self.raw is None:
            self.raw = {}

    @property
    def refund_transactions(self) -> List[NormalizedTransaction]:
        return [t for t in self.transactions if t.kind == "refund"]

    @property
    def is_void(self) -> bool:
        return any(t.kind == "void" for t in self.transactions)

    @property
    def is_order_edit(self) -> bool:
        return bool(self.lines) and all(line.is_order_edit for line in self.lines)


@dataclass
class NormalizedReturnRequest:
    """Customer-initiated return request on a storefront"""
    channel: str
    external_id: str
    order_external_id: str
    status: str
    requested_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    reason_code: Optional[str] = None
    reason_name: Optional[str] = None
    customer_note: Optional[str] = None
    lines: List[NormalizedReturnLine] = None
    raw: Dict[str, Any] = None

    def __post_init__(self):
        if self.lines is None:
            self.lines = []
        if self.raw is None:
            self.raw = {}


@dataclass
class NormalizedClaim:
    """Marketplace claim (return) keyed by the marketplace order number"""
    channel: str
    external_id: str
    order_number: str
    status: str
    claim_date: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    reason_code: Optional[str] = None
    reason_name: Optional[str] = None
    customer_note: Optional[str] = None
    note: Optional[str] = None
    carrier_name: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    desi: Optional[Decimal] = None
    lines: List[NormalizedReturnLine] = None
    raw: Dict[str, Any] = None

    def __post_init__(self):
        if self.lines is None:
            self.lines = []
        if self.raw is None:
            self.raw = {}


# ========== Parsing Helpers ==========

def to_decimal(value, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning(f"Unparseable amount {value!r}, using {default}")
        return Decimal(default)


def parse_datetime(value) -> Optional[datetime]:
    """ISO-8601 string -> naive UTC datetime"""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning(f"Unparseable timestamp {value!r}")
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def from_epoch_ms(value) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        logger.warning(f"Unparseable epoch {value!r}")
        return None


def gid_to_id(value) -> Optional[str]:
    """gid://shopify/Order/123 -> 123"""
    if value is None:
        return None
    text = str(value)
    return text.rsplit("/", 1)[-1] if text.startswith("gid://") else text


def str_or_none(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


# ========== Client Base ==========

class BaseChannelClient(ABC):
    """
    Abstract base class for channel API clients and parse steps
    """
    PLATFORM_NAME: str = "base"

    def __init__(self, settings: Dict[str, Any], timeout: float = 30.0):
        self.settings = settings or {}
        self.timeout = timeout

    # ========== Orders ==========

    @abstractmethod
    async def get_orders(
        self,
        time_from: Optional[datetime] = None,
        cursor: Optional[str] = None,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        """
        Get one page of orders from the channel
        Returns: {orders: List[Dict], next_cursor: Optional[str], has_more: bool}
        """
        pass

    @abstractmethod
    def parse_order(self, raw_order: Dict[str, Any]) -> NormalizedOrder:
        """
        Convert channel order payload to the normalized structure
        """
        pass

    # ========== Webhooks ==========

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        pass

    # ========== Utilities ==========

    def _log_api_call(self, method: str, endpoint: str, status_code: int):
        """Log API call for debugging"""
        logger.info(f"[{self.PLATFORM_NAME}] {method} {endpoint} -> {status_code}")
