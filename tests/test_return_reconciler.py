"""
Tests for refund, return-request and claim reconciliation
"""
import pytest

from backoffice.integrations import ShopifyClient, TrendyolClient
from backoffice.models import EntityKind, OrderReturn, PlatformMapping, ReturnItem, ReturnRefund
from backoffice.services.results import Created, Skipped, Updated

from factories import (
    shopify_order, shopify_refund, shopify_return_request, shopify_transaction, trendyol_claim, trendyol_package,
)


@pytest.fixture
def shopify(shopify_integration):
    return ShopifyClient(shopify_integration.settings)


@pytest.fixture
def trendyol(trendyol_integration):
    return TrendyolClient(trendyol_integration.settings)


@pytest.fixture
def shopify_order_row(db, orders, shopify, shopify_integration):
    order = orders.map_order(shopify.parse_order(shopify_order()), shopify_integration).entity
    db.commit()
    return order


@pytest.fixture
def cod_order_row(db, orders, shopify, shopify_integration):
    payload = shopify_order(order_id=5002, gateway="Cash on Delivery (COD)", financial_status="pending", line_quantity=1)
    payload["line_items"][0]["id"] = 7001
    order = orders.map_order(shopify.parse_order(payload), shopify_integration).entity
    db.commit()
    return order


# ========== Refund Gates ==========

def test_refund_for_unknown_order_is_skipped(db, returns, shopify):
    result = returns.map_refund(shopify.parse_refund(shopify_refund(order_id=404)))

    assert isinstance(result, Skipped)
    assert result.reason == "order_not_found"


def test_order_edit_refund_creates_no_return(db, returns, shopify, shopify_order_row):
    result = returns.map_refund(shopify.parse_refund(shopify_refund(restock_type="cancel")))

    assert isinstance(result, Skipped)
    assert result.reason == "order_edit_not_return"
    assert db.query(OrderReturn).count() == 0


def test_void_refund_is_skipped(db, returns, shopify, shopify_order_row):
    payload = shopify_refund(transactions=[shopify_transaction(1, kind="void")])

    result = returns.map_refund(shopify.parse_refund(payload))

    assert result.reason == "void_transaction"


def test_refund_without_successful_transaction_is_skipped(db, returns, shopify, shopify_order_row):
    payload = shopify_refund(transactions=[shopify_transaction(1, status="failure")])

    result = returns.map_refund(shopify.parse_refund(payload))

    assert result.reason == "no_refund_transactions"
    assert db.query(OrderReturn).count() == 0


def test_refund_without_lines_is_skipped(db, returns, shopify, shopify_order_row):
    payload = shopify_refund()
    payload["refund_line_items"] = []

    result = returns.map_refund(shopify.parse_refund(payload))

    assert result.reason == "no_refund_line_items"


def test_refund_on_cancelled_order_is_skipped(db, returns, shopify, shopify_order_row):
    shopify_order_row.order_status = "cancelled"
    db.commit()

    result = returns.map_refund(shopify.parse_refund(shopify_refund()))

    assert result.reason == "order_cancelled"


# ========== Refunds ==========

def test_refund_creates_completed_partial_return(db, returns, shopify, shopify_order_row, audit):
    result = returns.map_refund(shopify.parse_refund(shopify_refund()))
    db.commit()

    assert isinstance(result, Created)
    order_return = result.entity
    assert order_return.status == "completed"
    assert order_return.completed_at is not None
    assert order_return.total_refund_amount == 50000
    assert order_return.restocking_fee == 0
    assert [item.quantity for item in order_return.items] == [1]
    refund = db.query(ReturnRefund).one()
    assert (refund.external_refund_id, refund.status, refund.method) == ("6201", "completed", "online")
    assert shopify_order_row.return_status == "partial"
    assert shopify_order_row.order_status == "partially_refunded"
    assert "return_created" in audit.actions()


def test_refund_redelivery_is_idempotent(db, returns, shopify, shopify_order_row):
    payload = shopify_refund()
    returns.map_refund(shopify.parse_refund(payload))
    db.commit()

    result = returns.map_refund(shopify.parse_refund(payload))
    db.commit()

    assert isinstance(result, Updated)
    assert db.query(OrderReturn).count() == 1
    assert db.query(ReturnItem).one().quantity == 1
    assert db.query(ReturnRefund).count() == 1


def test_second_refund_gets_its_own_return(db, returns, shopify, shopify_order_row):
    first = returns.map_refund(shopify.parse_refund(shopify_refund(refund_id=6001)))
    db.commit()

    second = returns.map_refund(shopify.parse_refund(shopify_refund(refund_id=6002)))
    db.commit()

    assert isinstance(second, Created)
    assert second.entity.id != first.entity.id
    assert db.query(OrderReturn).count() == 2
    assert shopify_order_row.return_status == "full"
    assert shopify_order_row.order_status == "refunded"


def test_cod_rejected_at_door_is_tracked_without_transactions(db, returns, shopify, cod_order_row):
    payload = shopify_refund(order_id=5002, transactions=[])

    result = returns.map_refund(shopify.parse_refund(payload))
    db.commit()

    assert isinstance(result, Created)
    order_return = result.entity
    assert order_return.status == "completed"
    assert order_return.reason_code == "cod_rejected"
    assert order_return.received_at is not None
    assert order_return.total_refund_amount == 0
    assert order_return.restocking_fee == 0
    assert cod_order_row.order_status == "rejected"
    assert cod_order_row.return_status == "full"


def test_same_event_on_prepaid_order_is_skipped(db, returns, shopify, shopify_order_row):
    result = returns.map_refund(shopify.parse_refund(shopify_refund(transactions=[])))

    assert result.reason == "no_refund_transactions"


def test_ambiguous_open_returns_are_not_guessed(db, returns, shopify, shopify_order_row, audit):
    for _ in range(2):
        db.add(OrderReturn(order_id=shopify_order_row.id, channel="shopify", status="requested"))
    db.commit()

    result = returns.map_refund(shopify.parse_refund(shopify_refund()))

    assert isinstance(result, Skipped)
    assert result.reason == "ambiguous_return_match"
    assert len(audit.find("ambiguous_return_match")) == 1
    assert db.query(ReturnRefund).count() == 0


def test_sole_unmapped_return_absorbs_refund(db, returns, shopify, shopify_order_row):
    manual = OrderReturn(order_id=shopify_order_row.id, channel="shopify", status="approved")
    db.add(manual)
    db.commit()

    result = returns.map_refund(shopify.parse_refund(shopify_refund()))

    assert isinstance(result, Updated)
    assert result.entity.id == manual.id


# ========== Return Requests ==========

def test_return_request_then_refund_share_one_return(db, returns, shopify, shopify_order_row):
    requested = returns.map_return_request(shopify.parse_return_request(shopify_return_request()))
    db.commit()
    assert isinstance(requested, Created)
    assert requested.entity.status == "pending_review"
    assert requested.entity.reason_code == "SIZE_TOO_SMALL"

    refunded = returns.map_refund(shopify.parse_refund(shopify_refund(return_gid="gid://shopify/Return/3001")))
    db.commit()

    assert isinstance(refunded, Updated)
    assert refunded.entity.id == requested.entity.id
    assert refunded.entity.status == "completed"
    assert db.query(OrderReturn).count() == 1
    assert db.query(ReturnItem).one().quantity == 1
    kinds = {m.entity_type for m in db.query(PlatformMapping).filter(PlatformMapping.entity_id == refunded.entity.id)}
    assert kinds == {EntityKind.RETURN.value}
    assert returns.identity.resolve("shopify", EntityKind.REFUND, "6001").order_return is refunded.entity


def test_earlier_refund_redelivered_after_later_refund_joined_the_return(db, returns, shopify, shopify_order_row):
    first = returns.map_refund(shopify.parse_refund(shopify_refund(refund_id=6001)))
    db.commit()
    returns.map_return_request(shopify.parse_return_request(shopify_return_request()))
    db.commit()
    returns.map_refund(shopify.parse_refund(shopify_refund(refund_id=6002, return_gid="gid://shopify/Return/3001")))
    db.commit()

    again = returns.map_refund(shopify.parse_refund(shopify_refund(refund_id=6001)))
    db.commit()

    assert isinstance(again, Updated)
    order_return = db.query(OrderReturn).one()
    assert order_return.id == first.entity.id
    assert sorted(r.external_refund_id for r in order_return.refunds) == ["6201", "6202"]
    assert db.query(ReturnItem).one().quantity == 2
    for refund_id in ("6001", "6002"):
        assert returns.identity.resolve("shopify", EntityKind.REFUND, refund_id).order_return is order_return
    assert shopify_order_row.return_status == "full"


def test_staged_refunds_for_one_return_request_share_it(db, returns, shopify, shopify_order_row):
    requested = returns.map_return_request(shopify.parse_return_request(shopify_return_request()))
    db.commit()
    for refund_id in (6001, 6002, 6001, 6002):
        payload = shopify_refund(refund_id=refund_id, return_gid="gid://shopify/Return/3001")
        assert isinstance(returns.map_refund(shopify.parse_refund(payload)), Updated)
        db.commit()

    order_return = db.query(OrderReturn).one()
    assert order_return.id == requested.entity.id
    assert sorted(r.external_refund_id for r in order_return.refunds) == ["6201", "6202"]
    assert order_return.total_refund_amount == 100000
    assert db.query(ReturnItem).one().quantity == 2
    for refund_id in ("6001", "6002"):
        assert returns.identity.resolve("shopify", EntityKind.REFUND, refund_id).order_return is order_return


def test_requested_return_does_not_count_towards_return_status(db, returns, shopify, shopify_order_row):
    returns.map_return_request(shopify.parse_return_request(shopify_return_request(status="REQUESTED")))

    assert shopify_order_row.return_status == "none"


def test_declined_return_request_is_rejected(db, returns, shopify, shopify_order_row):
    returns.map_return_request(shopify.parse_return_request(shopify_return_request()))
    db.commit()

    result = returns.map_return_request(shopify.parse_return_request(shopify_return_request(status="DECLINED")))

    assert result.entity.status == "rejected"
    assert result.entity.rejected_at is not None


# ========== Claims ==========

@pytest.fixture
def trendyol_order_row(db, orders, trendyol, trendyol_integration):
    order = orders.map_order(trendyol.parse_order(trendyol_package("Delivered")), trendyol_integration).entity
    db.commit()
    return order


def test_claim_for_unknown_order_number_is_skipped(db, returns, trendyol):
    result = returns.map_claim(trendyol.parse_claim(trendyol_claim(order_number="nope")))

    assert result.reason == "order_not_found"


def test_claim_progression_never_moves_backwards(db, returns, trendyol, trendyol_order_row):
    created = returns.map_claim(trendyol.parse_claim(trendyol_claim()))
    db.commit()
    order_return = created.entity
    assert order_return.status == "pending_review"
    assert order_return.return_tracking_number == "7330029999999"
    assert order_return.total_refund_amount == 135000
    assert trendyol_order_row.return_status == "none"

    returns.map_claim(trendyol.parse_claim(trendyol_claim(status_name="Accepted", resolved=True)))
    db.commit()
    assert order_return.status == "completed"
    assert order_return.items[0].received_condition == "good"
    assert trendyol_order_row.return_status == "full"

    returns.map_claim(trendyol.parse_claim(trendyol_claim()))
    assert order_return.status == "completed"
    assert db.query(OrderReturn).count() == 1


def test_cancelled_claim_is_a_side_exit(db, returns, trendyol, trendyol_order_row):
    returns.map_claim(trendyol.parse_claim(trendyol_claim(accepted_by_seller=True)))
    db.commit()

    result = returns.map_claim(trendyol.parse_claim(trendyol_claim(status_name="Cancelled")))

    assert result.entity.status == "cancelled"
    assert result.entity.cancelled_at is not None
