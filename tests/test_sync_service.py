"""
Tests for paginated channel pulls and per-item isolation
"""
import asyncio
import threading

import pytest

from backoffice.core.exceptions import IdentityConflict
from backoffice.integrations import ShopifyClient, TrendyolClient
from backoffice.models import EntityKind, Order, OrderReturn, PlatformMapping, ReturnRefund
from backoffice.services.order_reconciler import OrderReconciler
from backoffice.services.return_reconciler import ReturnReconciler
from backoffice.services.sync_service import OrderSyncService

from factories import shopify_order, shopify_refund, trendyol_claim, trendyol_package


class _PagedTrendyolClient(TrendyolClient):
    """Serves canned pages instead of calling the API"""

    def __init__(self, settings, order_pages=None, claim_pages=None):
        super().__init__(settings)
        self.order_pages = order_pages or [[]]
        self.claim_pages = claim_pages or [[]]
        self.cursors = []

    async def get_orders(self, time_from=None, cursor=None, page_size=50):
        self.cursors.append(cursor)
        return self._page(self.order_pages, cursor, "orders")

    async def get_claims(self, cursor=None, page_size=50):
        return self._page(self.claim_pages, cursor, "claims")

    @staticmethod
    def _page(pages, cursor, key):
        index = int(cursor or 0)
        has_more = index + 1 < len(pages)
        return {key: pages[index], "next_cursor": str(index + 1) if has_more else None, "has_more": has_more}


class _PagedShopifyClient(ShopifyClient):
    def __init__(self, settings, orders):
        super().__init__(settings)
        self.orders = orders

    async def get_orders(self, time_from=None, cursor=None, page_size=50):
        return {"orders": self.orders, "next_cursor": None, "has_more": False}


def _second_package():
    package = trendyol_package(id=3468002, orderNumber="10474185202")
    package["lines"][0]["id"] = 5550002
    return package


def _run(coroutine):
    return asyncio.run(coroutine)


def test_pages_are_followed_until_exhausted(db, clock, trendyol_integration):
    second = _second_package()
    client = _PagedTrendyolClient(trendyol_integration.settings, order_pages=[[trendyol_package()], [second]])

    stats = _run(OrderSyncService(db, clock).sync_integration_orders(trendyol_integration, client=client))

    assert client.cursors == [None, "1"]
    assert stats == {"fetched": 2, "created": 2, "updated": 0, "skipped": 0, "failed": 0}
    assert db.query(Order).count() == 2
    assert trendyol_integration.last_sync_at == clock.now()


def test_bad_item_is_counted_and_the_rest_carry_on(db, clock, trendyol_integration):
    broken = trendyol_package(id=None)
    second = _second_package()
    client = _PagedTrendyolClient(trendyol_integration.settings, order_pages=[[trendyol_package(), broken, second]])

    stats = _run(OrderSyncService(db, clock).sync_integration_orders(trendyol_integration, client=client))

    assert stats["fetched"] == 3
    assert stats["created"] == 2
    assert stats["failed"] == 1
    assert db.query(Order).count() == 2


def test_resync_reports_updates(db, clock, trendyol_integration):
    client = _PagedTrendyolClient(trendyol_integration.settings, order_pages=[[trendyol_package()]])
    service = OrderSyncService(db, clock)

    _run(service.sync_integration_orders(trendyol_integration, client=client))
    stats = _run(service.sync_integration_orders(trendyol_integration, client=client))

    assert stats["updated"] == 1
    assert db.query(Order).count() == 1


def test_identity_conflict_stops_the_batch(db, clock, trendyol_integration, monkeypatch):
    def conflict(self, normalized, integration=None):
        raise IdentityConflict("trendyol", "order", "already bound")

    monkeypatch.setattr(OrderReconciler, "map_order", conflict)
    client = _PagedTrendyolClient(trendyol_integration.settings, order_pages=[[trendyol_package()]])

    with pytest.raises(IdentityConflict):
        _run(OrderSyncService(db, clock).sync_integration_orders(trendyol_integration, client=client))

    assert trendyol_integration.last_sync_at is None


def test_claims_are_reconciled_against_synced_orders(db, clock, trendyol_integration):
    client = _PagedTrendyolClient(
        trendyol_integration.settings,
        order_pages=[[trendyol_package("Delivered")]],
        claim_pages=[[trendyol_claim(), trendyol_claim(claim_id="claim-404", order_number="nope")]],
    )
    service = OrderSyncService(db, clock)

    _run(service.sync_integration_orders(trendyol_integration, client=client))
    stats = _run(service.sync_integration_claims(trendyol_integration, client=client))

    assert stats["created"] == 1
    assert stats["skipped"] == 1
    assert db.query(OrderReturn).count() == 1


def test_storefront_sync_maps_embedded_refunds(db, clock, shopify_integration):
    raw_order = shopify_order(financial_status="partially_refunded", refunds=[shopify_refund()])
    client = _PagedShopifyClient(shopify_integration.settings, [raw_order])

    stats = _run(OrderSyncService(db, clock).sync_integration_orders(shopify_integration, client=client))

    assert stats["created"] == 1
    order_return = db.query(OrderReturn).one()
    assert order_return.status == "completed"
    assert order_return.total_refund_amount == 50000


def test_failing_embedded_refund_leaves_order_and_siblings(db, clock, shopify_integration, monkeypatch):
    original = ReturnReconciler.map_refund

    def map_then_fail(self, refund):
        result = original(self, refund)
        if refund.external_id == "6002":
            raise RuntimeError("refund write failed")
        return result

    monkeypatch.setattr(ReturnReconciler, "map_refund", map_then_fail)
    raw_order = shopify_order(
        financial_status="partially_refunded",
        refunds=[shopify_refund(refund_id=6001), shopify_refund(refund_id=6002)],
    )
    client = _PagedShopifyClient(shopify_integration.settings, [raw_order])

    stats = _run(OrderSyncService(db, clock).sync_integration_orders(shopify_integration, client=client))

    assert stats["created"] == 1
    assert stats["failed"] == 0
    assert db.query(Order).count() == 1
    order_return = db.query(OrderReturn).one()
    assert [r.external_refund_id for r in db.query(ReturnRefund)] == ["6201"]
    assert order_return.refunds[0].external_refund_id == "6201"
    assert db.query(PlatformMapping).filter(
        PlatformMapping.entity_type == EntityKind.REFUND.value,
    ).one().platform_id == "6001"


def test_items_are_reconciled_off_the_event_loop_thread(db, clock, trendyol_integration, monkeypatch):
    original = OrderReconciler.map_order
    threads = []

    def record_thread(self, normalized, integration=None):
        threads.append(threading.get_ident())
        return original(self, normalized, integration)

    monkeypatch.setattr(OrderReconciler, "map_order", record_thread)
    client = _PagedTrendyolClient(trendyol_integration.settings, order_pages=[[trendyol_package()]])

    stats = _run(OrderSyncService(db, clock).sync_integration_orders(trendyol_integration, client=client))

    assert stats["created"] == 1
    assert len(threads) == 1
    assert threads[0] != threading.get_ident()
