"""
Tests for order reconciliation: idempotent upserts, status ownership and item pruning
"""
from backoffice.integrations import ShopifyClient, TrendyolClient
from backoffice.models import (
    Customer, EntityKind, Order, OrderItem, OrderReturn, PlatformMapping, Product, ProductVariant, ReturnItem,
)
from backoffice.services.results import Created, Updated

from factories import TRENDYOL_BARCODE, shopify_order, trendyol_package


def _mapping_count(db, kind: EntityKind) -> int:
    return db.query(PlatformMapping).filter(PlatformMapping.entity_type == kind.value).count()


def test_masked_then_unmasked_trendyol_package_yields_single_records(db, orders, trendyol_integration):
    client = TrendyolClient(trendyol_integration.settings)

    first = orders.map_order(client.parse_order(trendyol_package("Created", masked=True)), trendyol_integration)
    db.commit()
    placeholder_id = first.entity.customer_id

    second = orders.map_order(client.parse_order(trendyol_package("Shipped")), trendyol_integration)
    db.commit()

    assert isinstance(first, Created)
    assert isinstance(second, Updated)
    assert db.query(Order).count() == 1
    assert db.query(Customer).count() == 1
    assert db.query(OrderItem).count() == 1
    for kind in (EntityKind.ORDER, EntityKind.CUSTOMER, EntityKind.ORDER_ITEM, EntityKind.PRODUCT_VARIANT):
        assert _mapping_count(db, kind) == 1

    order = db.query(Order).one()
    customer = db.query(Customer).one()
    assert customer.id == placeholder_id
    assert customer.first_name == "Deniz"
    assert customer.last_name == "Ahmet"
    assert order.total_amount == 135000
    assert order.subtotal == 135000
    assert order.order_status == "completed"
    assert order.fulfillment_status == "in_transit"
    assert order.shipping_carrier == "aras"
    assert order.items[0].variant.barcode == TRENDYOL_BARCODE


def test_same_payload_twice_is_idempotent(db, orders, shopify_integration, audit):
    client = ShopifyClient(shopify_integration.settings)
    payload = shopify_order()

    orders.map_order(client.parse_order(payload), shopify_integration)
    db.commit()
    orders.map_order(client.parse_order(payload), shopify_integration)
    db.commit()

    assert db.query(Order).count() == 1
    assert db.query(OrderItem).count() == 1
    assert db.query(ProductVariant).count() == 1
    assert db.query(PlatformMapping).count() == 4
    assert "order_status_updated" not in audit.actions()


def test_phone_only_guest_order_keeps_one_customer(db, orders, shopify_integration):
    client = ShopifyClient(shopify_integration.settings)
    payload = shopify_order(
        customer=None,
        email=None,
        shipping_address={"first_name": "Ayşe", "last_name": "Yılmaz", "address1": "Bağdat Cd. 12",
                          "phone": "+905551112233"},
    )

    first = orders.map_order(client.parse_order(payload), shopify_integration)
    db.commit()
    second = orders.map_order(client.parse_order(payload), shopify_integration)
    db.commit()

    assert isinstance(second, Updated)
    customer = db.query(Customer).one()
    assert customer.phone == "+905551112233"
    assert second.entity.customer_id == first.entity.customer_id == customer.id


def test_item_amounts_are_minor_units(db, orders, shopify_integration):
    client = ShopifyClient(shopify_integration.settings)

    result = orders.map_order(client.parse_order(shopify_order(line_quantity=3)), shopify_integration)

    item = result.entity.items[0]
    assert item.quantity == 3
    assert item.unit_price == 50000
    assert item.total_price == 150000
    assert result.entity.total_amount == 150000
    assert result.entity.payment_method == "online"


def test_status_changes_are_audited(db, orders, shopify_integration, audit):
    client = ShopifyClient(shopify_integration.settings)
    orders.map_order(client.parse_order(shopify_order(financial_status="pending")), shopify_integration)
    db.commit()

    result = orders.map_order(client.parse_order(shopify_order(financial_status="paid")), shopify_integration)

    assert result.entity.payment_status == "paid"
    (entry,) = audit.find("order_status_updated")
    assert entry[3]["status_changes"]["payment_status"] == {"from": "pending", "to": "paid"}


def test_returns_own_order_and_payment_status(db, orders, shopify_integration, audit):
    client = ShopifyClient(shopify_integration.settings)
    order = orders.map_order(client.parse_order(shopify_order()), shopify_integration).entity
    order.order_status = "partially_refunded"
    order.payment_status = "partially_refunded"
    db.add(OrderReturn(order_id=order.id, channel="shopify", status="completed"))
    db.commit()

    payload = shopify_order(fulfillment_status="fulfilled", fulfillments=[{"shipment_status": "delivered"}])
    orders.map_order(client.parse_order(payload), shopify_integration)

    assert order.order_status == "partially_refunded"
    assert order.payment_status == "partially_refunded"
    assert order.fulfillment_status == "delivered"
    (entry,) = audit.find("order_status_updated")
    assert "order_status" in entry[3]["status_changes_suppressed"]


def test_lines_missing_from_payload_are_pruned(db, orders, shopify_integration):
    client = ShopifyClient(shopify_integration.settings)
    payload = shopify_order()
    payload["line_items"].append({
        "id": 7002, "variant_id": 8002, "sku": "REV-0012-38", "title": "Terlik REV-0012", "price": "300.00", "quantity": 1,
    })
    orders.map_order(client.parse_order(payload), shopify_integration)
    db.commit()
    assert db.query(OrderItem).count() == 2

    orders.map_order(client.parse_order(shopify_order()), shopify_integration)
    db.commit()

    assert db.query(OrderItem).count() == 1
    assert _mapping_count(db, EntityKind.ORDER_ITEM) == 1


def test_lines_with_returns_are_not_pruned(db, orders, shopify_integration):
    client = ShopifyClient(shopify_integration.settings)
    payload = shopify_order()
    payload["line_items"].append({
        "id": 7002, "variant_id": 8002, "sku": "REV-0012-38", "title": "Terlik REV-0012", "price": "300.00", "quantity": 1,
    })
    order = orders.map_order(client.parse_order(payload), shopify_integration).entity
    returned = next(item for item in order.items if item.unit_price == 30000)
    order_return = OrderReturn(order_id=order.id, channel="shopify", status="requested")
    order_return.items.append(ReturnItem(order_item_id=returned.id, quantity=1))
    db.add(order_return)
    db.commit()

    orders.map_order(client.parse_order(shopify_order()), shopify_integration)
    db.commit()

    assert db.query(OrderItem).count() == 2


def test_edited_out_lines_are_dropped_from_parse(shopify_integration):
    refunds = [{"id": 1, "refund_line_items": [{"line_item_id": 7001, "restock_type": "cancel"}]}]

    normalized = ShopifyClient(shopify_integration.settings).parse_order(shopify_order(refunds=refunds))

    assert normalized.lines == []


def test_variant_matching_prefers_mapped_id_then_barcode(db, orders, trendyol_integration):
    product = Product(title="Sandalet")
    db.add(product)
    db.flush()
    by_barcode = ProductVariant(product_id=product.id, sku="OTHER-SKU", barcode=TRENDYOL_BARCODE)
    db.add(by_barcode)
    db.commit()
    client = TrendyolClient(trendyol_integration.settings)

    result = orders.map_order(client.parse_order(trendyol_package("Created")), trendyol_integration)

    assert result.entity.items[0].product_variant_id == by_barcode.id
    assert db.query(Product).count() == 1
    mapping = db.query(PlatformMapping).filter(
        PlatformMapping.entity_type == EntityKind.PRODUCT_VARIANT.value
    ).one()
    assert mapping.entity_id == by_barcode.id


def test_unknown_line_creates_shell_product(db, orders, trendyol_integration, audit):
    client = TrendyolClient(trendyol_integration.settings)

    result = orders.map_order(client.parse_order(trendyol_package("Created")), trendyol_integration)

    variant = result.entity.items[0].variant
    assert variant.product.model_code == "REV-0011"
    assert variant.title == "Siyah / 38"
    assert variant.channel_settings["trendyol"]["enabled"] is True
    assert "product_created_from_external_order" in audit.actions()


def test_unrecognized_carrier_is_kept_and_audited(db, orders, trendyol_integration, audit):
    client = TrendyolClient(trendyol_integration.settings)

    result = orders.map_order(
        client.parse_order(trendyol_package("Created", cargoProviderName="Mystery Cargo")), trendyol_integration,
    )

    assert result.entity.shipping_carrier == "Mystery Cargo"
    assert "carrier_not_recognized" in audit.actions()
