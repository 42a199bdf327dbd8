"""
Tests for the three-tier shipping cost fallback
"""
from decimal import Decimal

import httpx
import pytest
from tenacity import wait_none

from backoffice.core.exceptions import TransientError
from backoffice.integrations.basit_kargo import BasitKargoClient, ShipmentCost
from backoffice.models import Order, OrderReturn, ShippingRate, ShippingRateTable
from backoffice.services.shipping_cost_service import (
    SOURCE_AGGREGATOR, SOURCE_PRIOR, SOURCE_RATE_TABLE, ShippingCostService, split_vat,
)


class _FakeAggregator:
    def __init__(self, cost=None, error=None, vat_included=True):
        self.cost = cost
        self.error = error
        self.vat_included = vat_included
        self.calls = []

    def get_shipment_cost(self, tracking_number):
        self.calls.append(tracking_number)
        if self.error:
            raise self.error
        return self.cost


@pytest.fixture
def rate_table(db):
    table = ShippingRateTable(name="2025 rates", is_active=True)
    table.rates = [
        ShippingRate(carrier="aras", desi_from=0, desi_to=Decimal("5"), price_excluding_vat=8000,
                     vat_rate=Decimal("20"), vat_amount=1600, total_price=9600),
        ShippingRate(carrier="aras", desi_from=Decimal("5.01"), desi_to=None, price_excluding_vat=15000,
                     vat_rate=Decimal("20"), vat_amount=3000, total_price=18000),
    ]
    db.add(table)
    db.commit()
    return table


def _order(db, **fields):
    order = Order(channel="trendyol", order_number="T-1", shipping_carrier="aras", shipping_desi=Decimal("2"), **fields)
    db.add(order)
    db.flush()
    return order


def test_split_vat_included_and_excluded():
    assert split_vat(12000, True, Decimal("20")) == (10000, 2000, 12000)
    assert split_vat(10000, False, Decimal("20")) == (10000, 2000, 12000)


def test_rate_table_band_lookup(db, rate_table):
    service = ShippingCostService(db)

    small = service.calculate_from_rate_table("Aras Kargo", Decimal("2"))
    large = service.calculate_from_rate_table("ARAS", Decimal("30"))

    assert (small.cost_excluding_vat, small.vat_amount, small.source) == (8000, 1600, SOURCE_RATE_TABLE)
    assert large.cost_excluding_vat == 15000
    assert service.calculate_from_rate_table("Unknown Cargo", Decimal("2")) is None


def test_aggregator_cost_wins_over_rate_table(db, rate_table, basit_kargo_integration):
    fake = _FakeAggregator(ShipmentCost(total_cost=Decimal("96"), shipment_fee=Decimal("96")))
    service = ShippingCostService(db, aggregator_factory=lambda integration: fake)
    order = _order(db, shipping_tracking_number="7330021234567",
                   shipping_aggregator_integration_id=basit_kargo_integration.id)

    breakdown = service.apply_outbound(order)

    assert breakdown.source == SOURCE_AGGREGATOR
    assert order.shipping_cost_excluding_vat == 8000
    assert order.shipping_vat_amount == 1600
    assert order.shipping_cost_source == SOURCE_AGGREGATOR
    assert fake.calls == ["7330021234567"]


def test_recorded_aggregator_cost_is_not_refetched(db, basit_kargo_integration):
    fake = _FakeAggregator(ShipmentCost(total_cost=Decimal("200"), shipment_fee=Decimal("200")))
    service = ShippingCostService(db, aggregator_factory=lambda integration: fake)
    order = _order(db, shipping_tracking_number="7330021234567",
                   shipping_aggregator_integration_id=basit_kargo_integration.id)
    service.record_aggregator_cost(order, ShipmentCost(total_cost=Decimal("120"), shipment_fee=Decimal("120")), True)

    breakdown = service.apply_outbound(order)

    assert breakdown.cost_excluding_vat == 10000
    assert fake.calls == []


def test_transient_aggregator_failure_falls_back_to_rate_table(db, rate_table, basit_kargo_integration):
    fake = _FakeAggregator(error=TransientError("timeout"))
    service = ShippingCostService(db, aggregator_factory=lambda integration: fake)
    order = _order(db, shipping_tracking_number="7330021234567",
                   shipping_aggregator_integration_id=basit_kargo_integration.id)

    breakdown = service.apply_outbound(order)

    assert breakdown.source == SOURCE_RATE_TABLE
    assert order.shipping_cost_excluding_vat == 8000
    assert order.shipping_rate_id is not None


def test_prior_value_is_kept_when_no_tier_answers(db):
    service = ShippingCostService(db)
    order = _order(db, shipping_cost_excluding_vat=7000, shipping_vat_rate=Decimal("20"), shipping_vat_amount=1400,
                   shipping_cost_source=SOURCE_RATE_TABLE)

    breakdown = service.apply_outbound(order)

    assert breakdown.source == SOURCE_PRIOR
    assert order.shipping_cost_excluding_vat == 7000
    assert order.shipping_cost_source == SOURCE_RATE_TABLE


def test_no_tier_leaves_cost_unset_rather_than_zero(db):
    order = _order(db)

    assert ShippingCostService(db).apply_outbound(order) is None
    assert order.shipping_cost_excluding_vat is None


def test_return_leg_uses_cost_difference(db, basit_kargo_integration):
    fake = _FakeAggregator(ShipmentCost(total_cost=Decimal("216"), shipment_fee=Decimal("96")))
    service = ShippingCostService(db, aggregator_factory=lambda integration: fake)
    order = _order(db, shipping_tracking_number="7330021234567",
                   shipping_aggregator_integration_id=basit_kargo_integration.id)
    order_return = OrderReturn(order_id=order.id, channel="trendyol")

    service.apply_return(order_return, order)

    assert order_return.return_shipping_cost_excluding_vat == 10000
    assert order_return.return_shipping_carrier == "aras"


def test_return_leg_keeps_its_own_cost_when_lookup_fails(db, basit_kargo_integration):
    fake = _FakeAggregator(ShipmentCost(total_cost=Decimal("216"), shipment_fee=Decimal("96")))
    service = ShippingCostService(db, aggregator_factory=lambda integration: fake)
    order = _order(db, shipping_tracking_number="7330021234567",
                   shipping_aggregator_integration_id=basit_kargo_integration.id,
                   shipping_cost_excluding_vat=8000, shipping_vat_rate=Decimal("20"), shipping_vat_amount=1600)
    order_return = OrderReturn(order_id=order.id, channel="trendyol")
    service.apply_return(order_return, order)

    fake.error = TransientError("timeout")
    breakdown = service.apply_return(order_return, order)

    assert breakdown.source == SOURCE_PRIOR
    assert order_return.return_shipping_cost_excluding_vat == 10000
    assert order_return.return_shipping_vat_amount == 2000


def test_client_retries_transient_errors_then_raises(monkeypatch):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(503)

    client = BasitKargoClient({"api_token": "t"}, transport=httpx.MockTransport(handler))
    monkeypatch.setattr(BasitKargoClient._get.retry, "wait", wait_none())

    with pytest.raises(TransientError):
        client.get_shipment_cost("7330021234567")
    assert len(calls) == 3


def test_client_parses_price_info():
    def handler(request):
        assert request.headers["Authorization"] == "Bearer t"
        return httpx.Response(200, json={
            "priceInfo": {"totalCost": 150.5, "shipmentFee": 150.5},
            "shipmentInfo": {"handlerDesi": 3, "handler": {"code": "ARAS"}},
        })

    client = BasitKargoClient({"api_token": "t"}, transport=httpx.MockTransport(handler))

    cost = client.get_shipment_cost("7330021234567")

    assert cost.shipment_fee == Decimal("150.5")
    assert cost.desi == Decimal("3")
    assert cost.carrier_code == "ARAS"
