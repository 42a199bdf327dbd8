"""
Tests for the webhook and return HTTP endpoints
"""
import base64
import hashlib
import hmac
import json
import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backoffice.api import api_router
from backoffice.api.webhooks import get_webhook_processor
from backoffice.core.config import Settings
from backoffice.core.database import get_db
from backoffice.models import AuditLog, Order, OrderReturn, WebhookLog
from backoffice.schemas import ReturnResponse
from backoffice.services.webhook_processor import WebhookProcessor

from factories import basit_kargo_simple, shopify_order, trendyol_package


@pytest.fixture
def processor(session_factory, clock):
    return WebhookProcessor(clock=clock, session_factory=session_factory)


@pytest.fixture
def client(session_factory, processor):
    app = FastAPI()
    app.include_router(api_router, prefix="/api")

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_webhook_processor] = lambda: processor
    with TestClient(app) as test_client:
        yield test_client


def _sign(body: bytes, secret: str = "shopify-secret") -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def _shopify_headers(body: bytes, **extra) -> dict:
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Topic": "orders/create",
        "X-Shopify-Shop-Domain": "demo-store.myshopify.com",
        "X-Shopify-Hmac-Sha256": _sign(body),
        "X-Shopify-Webhook-Id": "delivery-1",
    }
    headers.update(extra)
    return headers


# ========== Webhooks ==========

def test_signed_shopify_webhook_is_accepted_and_processed(db, client, shopify_integration):
    body = json.dumps(shopify_order()).encode()

    response = client.post("/api/webhooks/shopify", content=body, headers=_shopify_headers(body))

    assert response.status_code == 200
    assert response.json()["duplicate"] is False
    db.expire_all()
    assert db.query(Order).count() == 1
    assert db.query(WebhookLog).one().process_result == "CREATED"


def test_bad_shopify_signature_is_rejected(db, client, shopify_integration):
    body = json.dumps(shopify_order()).encode()
    headers = _shopify_headers(body, **{"X-Shopify-Hmac-Sha256": _sign(body, "wrong")})

    response = client.post("/api/webhooks/shopify", content=body, headers=headers)

    assert response.status_code == 401
    assert db.query(WebhookLog).count() == 0


def test_unknown_shop_is_not_found(client, shopify_integration):
    body = json.dumps(shopify_order()).encode()
    headers = _shopify_headers(body, **{"X-Shopify-Shop-Domain": "other-store.myshopify.com"})

    response = client.post("/api/webhooks/shopify", content=body, headers=headers)

    assert response.status_code == 404


def test_redelivered_shopify_webhook_is_flagged_duplicate(db, client, shopify_integration):
    body = json.dumps(shopify_order()).encode()

    client.post("/api/webhooks/shopify", content=body, headers=_shopify_headers(body))
    response = client.post("/api/webhooks/shopify", content=body, headers=_shopify_headers(body))

    assert response.status_code == 200
    assert response.json()["duplicate"] is True
    db.expire_all()
    assert db.query(WebhookLog).count() == 1


def test_malformed_body_is_rejected(client, shopify_integration):
    response = client.post("/api/webhooks/shopify", content=b"[1, 2", headers={"Content-Type": "application/json"})

    assert response.status_code == 400


def test_trendyol_webhook_is_routed_to_single_integration(db, client, trendyol_integration):
    response = client.post("/api/webhooks/trendyol", json=trendyol_package())

    assert response.status_code == 200
    db.expire_all()
    log = db.query(WebhookLog).one()
    assert log.event_type == "package/Created"
    assert log.process_result == "CREATED"


def test_basit_kargo_requires_known_token(db, client, basit_kargo_integration):
    payload = basit_kargo_simple("7330021234567", "SHIPPED")

    rejected = client.post("/api/webhooks/basit-kargo", json=payload, headers={"Authorization": "Bearer nope"})
    accepted = client.post("/api/webhooks/basit-kargo", json=payload, headers={"Authorization": "Bearer bk-token"})

    assert rejected.status_code == 401
    assert accepted.status_code == 200
    db.expire_all()
    assert db.query(WebhookLog).one().process_error == "shipment_not_found"


def test_webhook_status_reports_processor_and_logs(client, trendyol_integration):
    client.post("/api/webhooks/trendyol", json=trendyol_package())

    response = client.get("/api/webhooks/status")

    assert response.status_code == 200
    data = response.json()
    assert data["processor"]["total_processed"] == 1
    assert data["logs"] == {"trendyol": {"CREATED": 1}}


# ========== Returns ==========

@pytest.fixture
def order_return(db):
    order = Order(channel="shopify", order_number="#5001")
    db.add(order)
    db.flush()
    order_return = OrderReturn(order_id=order.id, channel="shopify", status="requested")
    db.add(order_return)
    db.commit()
    return order_return


def test_approve_return(db, client, order_return):
    response = client.post(f"/api/returns/{order_return.id}/approve", json={"actor": "staff@example.com"})

    assert response.status_code == 200
    assert response.json()["status"] == "approved"
    db.expire_all()
    assert db.query(AuditLog).filter(AuditLog.action == "return_approve").count() == 1


def test_invalid_transition_is_conflict(db, client, order_return):
    response = client.post(f"/api/returns/{order_return.id}/complete", json={"actor": "staff@example.com"})

    assert response.status_code == 409
    db.expire_all()
    assert db.get(OrderReturn, order_return.id).status == "requested"


def test_actor_is_required(client, order_return):
    response = client.post(f"/api/returns/{order_return.id}/approve", json={"actor": ""})

    assert response.status_code == 422


def test_unknown_action_and_return_are_not_found(client, order_return):
    assert client.post(f"/api/returns/{order_return.id}/teleport", json={"actor": "a"}).status_code == 404
    assert client.post(f"/api/returns/{uuid.uuid4()}/approve", json={"actor": "a"}).status_code == 404


def test_get_return(client, order_return):
    response = client.get(f"/api/returns/{order_return.id}")

    assert response.status_code == 200
    assert response.json()["return_number"] == order_return.return_number


def test_return_response_reads_orm_rows(order_return):
    response = ReturnResponse.model_validate(order_return)

    assert response.id == order_return.id
    assert response.status == "requested"
    assert response.total_refund_amount == 0


def test_settings_ignore_unknown_keys():
    configured = Settings(_env_file=None, APP_PORT=9300, NOT_A_SETTING="x")

    assert configured.APP_PORT == 9300
    assert not hasattr(configured, "NOT_A_SETTING")
    assert Settings.model_config["extra"] == "ignore"
