"""
Tests for aggregator shipment webhooks applied to orders and returns
"""
import pytest

from backoffice.core.exceptions import ChannelParseError
from backoffice.models import Order, OrderItem, OrderReturn, Product, ProductVariant
from backoffice.services.results import Created, Skipped, Updated
from backoffice.services.shipment_tracking_service import ShipmentTrackingService, is_at_distribution_center

from factories import basit_kargo_detailed, basit_kargo_simple

TRACKING = "7330021234567"


@pytest.fixture
def tracking(db, clock, audit, shipping):
    return ShipmentTrackingService(db, clock, audit, shipping)


@pytest.fixture
def order(db):
    product = Product(title="Sandalet")
    db.add(product)
    db.flush()
    variant = ProductVariant(product_id=product.id, sku="REV-0011-37")
    db.add(variant)
    db.flush()
    order = Order(channel="shopify", order_number="#5001", payment_method="online", currency="TRY",
                  shipping_carrier="aras", shipping_tracking_number=TRACKING, order_status="completed")
    order.items.append(OrderItem(product_variant_id=variant.id, quantity=2, unit_price=50000, total_price=100000))
    db.add(order)
    db.commit()
    return order


def test_distribution_center_phrases():
    assert is_at_distribution_center("Kargonuz dağıtım merkezinde bekliyor")
    assert is_at_distribution_center("Müşteri şubeye davet edildi")
    assert not is_at_distribution_center("Teslim edildi")
    assert not is_at_distribution_center(None)


def test_webhook_without_barcode_cannot_be_parsed(tracking, basit_kargo_integration):
    with pytest.raises(ChannelParseError):
        tracking.handle_webhook({"status": "SHIPPED"}, basit_kargo_integration)


def test_unknown_status_is_skipped_and_audited(tracking, basit_kargo_integration, audit):
    result = tracking.handle_webhook(basit_kargo_simple(TRACKING, "TELEPORTED"), basit_kargo_integration)

    assert isinstance(result, Skipped)
    assert "basitkargo_webhook_unknown_status" in audit.actions()


def test_unmatched_shipment_is_skipped(tracking, basit_kargo_integration, audit):
    result = tracking.handle_webhook(basit_kargo_simple("0000", "SHIPPED"), basit_kargo_integration)

    assert result.reason == "shipment_not_found"
    assert "basitkargo_webhook_no_shipment" in audit.actions()


def test_detailed_webhook_records_actual_cost(db, tracking, order, basit_kargo_integration):
    result = tracking.handle_webhook(basit_kargo_detailed(TRACKING, "SHIPPED"), basit_kargo_integration)

    assert isinstance(result, Updated)
    assert order.shipping_aggregator_shipment_id == "bk-shipment-1"
    assert order.shipping_aggregator_integration_id == basit_kargo_integration.id
    assert order.shipping_cost_excluding_vat == 10000
    assert order.shipping_vat_amount == 2000
    assert order.shipping_cost_source == "aggregator"


def test_branch_pickup_message_moves_fulfillment(db, tracking, order, basit_kargo_integration, audit):
    payload = basit_kargo_simple(TRACKING, "OUT_FOR_DELIVERY", message="Alıcı şubede bekliyor")

    tracking.handle_webhook(payload, basit_kargo_integration)

    assert order.fulfillment_status == "awaiting_pickup_at_distribution_center"
    assert "order_at_distribution_center_detected" in audit.actions()


def test_returned_prepaid_parcel_creates_received_return(db, tracking, order, basit_kargo_integration):
    result = tracking.handle_webhook(basit_kargo_simple(TRACKING, "RETURNED"), basit_kargo_integration)

    assert isinstance(result, Created)
    order_return = result.entity
    assert order_return.status == "received"
    assert order_return.reason_code == "returned_by_carrier"
    assert [item.quantity for item in order_return.items] == [2]
    assert order.return_status == "full"
    assert order.fulfillment_status == "returned"


def test_returned_cod_parcel_rejects_order(db, tracking, order, basit_kargo_integration, audit):
    order.payment_method = "cod"
    db.commit()

    tracking.handle_webhook(basit_kargo_simple(TRACKING, "RETURNED"), basit_kargo_integration)

    assert order.order_status == "rejected"
    assert order.payment_status == "voided"
    assert db.query(OrderReturn).count() == 0
    assert "order_auto_cancelled_cod_rejection" in audit.actions()


def test_returned_parcel_with_open_return_creates_nothing(db, tracking, order, basit_kargo_integration, audit):
    db.add(OrderReturn(order_id=order.id, channel="shopify", status="approved"))
    db.commit()

    tracking.handle_webhook(basit_kargo_simple(TRACKING, "RETURNED"), basit_kargo_integration)

    assert db.query(OrderReturn).count() == 1
    assert "shipment_return_already_exists" in audit.actions()


def test_return_shipment_is_matched_before_order(db, tracking, order, basit_kargo_integration):
    order_return = OrderReturn(order_id=order.id, channel="shopify", status="approved",
                               return_tracking_number="RT-1")
    db.add(order_return)
    db.commit()

    shipped = tracking.handle_webhook(basit_kargo_simple("RT-1", "SHIPPED"), basit_kargo_integration)
    assert isinstance(shipped, Updated)
    assert order_return.status == "in_transit"

    tracking.handle_webhook(basit_kargo_simple("RT-1", "COMPLETED"), basit_kargo_integration)
    assert order_return.status == "received"
    assert order_return.return_aggregator_shipment_id == "bk-shipment-1"


def test_return_webhook_never_moves_inspected_return_back(db, tracking, order, basit_kargo_integration):
    order_return = OrderReturn(order_id=order.id, channel="shopify", status="inspecting",
                               return_tracking_number="RT-1")
    db.add(order_return)
    db.commit()

    result = tracking.handle_webhook(basit_kargo_simple("RT-1", "COMPLETED"), basit_kargo_integration)

    assert isinstance(result, Skipped)
    assert order_return.status == "inspecting"
