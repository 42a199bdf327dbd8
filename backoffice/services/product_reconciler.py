"""
Product Reconciler - Variant matching, shell products and storefront product sync
"""
import logging
import re
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from backoffice.core.audit import AuditSink
from backoffice.core.clock import Clock
from backoffice.core.exceptions import ChannelParseError
from backoffice.integrations.base import NormalizedOrderLine, str_or_none
from backoffice.models import EntityKind, Integration, Product, ProductVariant
from backoffice.services.identity_map import IdentityMap
from backoffice.services.money import to_minor_units
from backoffice.services.results import Created, Updated

logger = logging.getLogger(__name__)

SKU_PATTERN = re.compile(r"\b([A-Z]{2,}-[\dA-Z-]+)\b", re.IGNORECASE)
CODE_WITH_SIZE_PATTERN = re.compile(r"(\d{13}),?\s*\d+")
LONG_NUMBER_PATTERN = re.compile(r"(\d{10,})")


def extract_model_code(title: str) -> Optional[str]:
    """"Sandalet REV-0011 Siyah" -> "REV-0011"; "8983156785379, 37" -> "8983156785379" """
    for pattern in (SKU_PATTERN, CODE_WITH_SIZE_PATTERN, LONG_NUMBER_PATTERN):
        match = pattern.search(title or "")
        if match:
            return match.group(1)
    return None


def clean_product_title(title: str, color: Optional[str] = None, size: Optional[str] = None) -> str:
    """Strip variant-specific fragments so variants share one product title"""
    cleaned = SKU_PATTERN.sub("", title or "")
    cleaned = re.sub(r"\d{10,},?\s*\d+", "", cleaned)
    for fragment in (color, size):
        if fragment:
            cleaned = re.sub(rf"\b{re.escape(str(fragment))}\b", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s+", " ", cleaned)
    cleaned = re.sub(r",\s*,", ",", cleaned)
    cleaned = cleaned.strip(" ,\t\n\r")
    return cleaned or title


class ProductReconciler:
    """
    Matching priority: mapped channel variant id -> barcode -> SKU -> SKU as
    barcode -> shell product. Inventory is only written when the integration
    has sync_inventory on.
    """

    def __init__(self, db: Session, identity_map: IdentityMap, clock: Clock, audit: AuditSink):
        self.db = db
        self.identity = identity_map
        self.clock = clock
        self.audit = audit

    # ========== Order Lines ==========

    def match_variant(self, channel: str, line: NormalizedOrderLine) -> Optional[ProductVariant]:
        if line.platform_variant_id:
            variant = self.identity.resolve(channel, EntityKind.PRODUCT_VARIANT, line.platform_variant_id)
            if variant is not None:
                return variant

        if line.barcode:
            variant = self.db.query(ProductVariant).filter(ProductVariant.barcode == line.barcode).first()
            if variant is not None:
                return variant

        if line.sku:
            variant = self.db.query(ProductVariant).filter(ProductVariant.sku == line.sku).first()
            if variant is not None:
                return variant

        for code in (line.alternate_barcode, line.sku):
            if code:
                variant = self.db.query(ProductVariant).filter(ProductVariant.barcode == code).first()
                if variant is not None:
                    return variant
        return None

    def match_or_create_variant(self, channel: str, line: NormalizedOrderLine, currency: str) -> ProductVariant:
        variant = self.match_variant(channel, line)
        if variant is None:
            variant = self.create_shell_variant(channel, line, currency)

        if line.platform_variant_id:
            self._bind_variant_if_free(channel, line.platform_variant_id, variant)
        return variant

    def create_shell_variant(self, channel: str, line: NormalizedOrderLine, currency: str) -> ProductVariant:
        """Last resort: a product + variant built from the line's descriptive fields"""
        label = channel.replace("_", " ").title()
        model_code = extract_model_code(line.title)
        title = clean_product_title(line.title, line.color, line.size) or f"{label} product {line.external_line_id}"

        product = None
        if model_code:
            product = self.db.query(Product).filter(Product.model_code == model_code).first()
        if product is None:
            product = Product(
                title=title,
                model_code=model_code,
                description=f"Imported from {label}",
                vendor=line.vendor or label,
                product_type="Imported",
                status="active",
            )
            self.db.add(product)
            self.db.flush()

        variant_title = " / ".join(str(v) for v in (line.color, line.size) if v) or line.title
        variant = ProductVariant(
            product_id=product.id,
            sku=line.sku or line.barcode or f"SKU-{line.external_line_id}",
            barcode=line.barcode,
            title=variant_title,
            price=to_minor_units(line.unit_price, currency),
            cost_price=0,
            inventory_quantity=0,
        )
        variant.enable_channel(channel)
        self.db.add(variant)
        self.db.flush()

        logger.info(f"Created shell product {product.id} / variant {variant.sku} from {channel} line {line.external_line_id}")
        self.audit.record(
            "product_variant", variant.id, "product_created_from_external_order",
            {"channel": channel, "product_id": product.id, "model_code": model_code, "line": line.external_line_id},
        )
        return variant

    def _bind_variant_if_free(self, channel: str, external_id: str, variant: ProductVariant) -> None:
        mapping = self.identity.find(channel, EntityKind.PRODUCT_VARIANT, external_id)
        owned = self.identity.find_for_entity(channel, EntityKind.PRODUCT_VARIANT, variant.id)
        if mapping is not None:
            if mapping.entity_id == variant.id:
                self.identity.touch(mapping)
            return
        if owned is not None:
            # Variant already known under another channel id (e.g. a bundle listing)
            return
        self.identity.bind(channel, EntityKind.PRODUCT_VARIANT, external_id, variant)

    # ========== Storefront Products ==========

    def map_shopify_product(self, raw_product: Dict[str, Any], integration: Optional[Integration] = None):
        """products/create, products/update"""
        if not raw_product.get("id"):
            raise ChannelParseError("Shopify product payload has no id")

        channel = "shopify"
        sync_inventory = bool(integration and integration.setting("sync_inventory"))
        product_external_id = str(raw_product["id"])

        product = self.identity.resolve(channel, EntityKind.PRODUCT, product_external_id)
        created = product is None
        if created:
            product = Product(title=raw_product.get("title") or f"Shopify product {product_external_id}")
            self.db.add(product)

        product.title = raw_product.get("title") or product.title
        product.description = raw_product.get("body_html")
        product.vendor = raw_product.get("vendor")
        product.product_type = raw_product.get("product_type")
        product.status = raw_product.get("status") or product.status or "active"
        self.db.flush()
        self.identity.bind(channel, EntityKind.PRODUCT, product_external_id, product, {"title": product.title})

        currency = (integration.setting("currency") if integration else None) or None
        for raw_variant in raw_product.get("variants") or []:
            self._upsert_shopify_variant(product, raw_variant, sync_inventory, currency)

        return Created(product) if created else Updated(product)

    def _upsert_shopify_variant(self, product: Product, raw_variant: Dict[str, Any], sync_inventory: bool, currency) -> ProductVariant:
        channel = "shopify"
        external_id = str_or_none(raw_variant.get("id"))
        line = NormalizedOrderLine(
            external_line_id=external_id or "",
            quantity=1,
            unit_price=raw_variant.get("price") or 0,
            platform_variant_id=external_id,
            barcode=str_or_none(raw_variant.get("barcode")),
            sku=str_or_none(raw_variant.get("sku")),
        )

        variant = self.match_variant(channel, line)
        is_new = variant is None
        if is_new:
            variant = ProductVariant(product_id=product.id, inventory_quantity=0, cost_price=0)
            self.db.add(variant)

        variant.sku = line.sku or variant.sku
        variant.barcode = line.barcode or variant.barcode
        variant.title = raw_variant.get("title") or variant.title
        variant.price = to_minor_units(raw_variant.get("price") or 0, currency)
        variant.enable_channel(channel, inventory_item_id=raw_variant.get("inventory_item_id"))

        if sync_inventory and raw_variant.get("inventory_quantity") is not None:
            variant.inventory_quantity = int(raw_variant["inventory_quantity"])
        self.db.flush()

        if external_id:
            self._bind_variant_if_free(channel, external_id, variant)
        return variant
