"""
Webhook API Endpoints - Receive notifications from channels and the shipping aggregator
"""
import json
from typing import Optional

from fastapi import APIRouter, Request, Depends, HTTPException, BackgroundTasks
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
import logging

from backoffice.core.config import settings
from backoffice.core.database import get_db
from backoffice.integrations import ShopifyClient, TrendyolClient
from backoffice.models import Integration, Provider
from backoffice.services import integration_service, webhook_service
from backoffice.services.webhook_processor import WebhookProcessor, get_processor

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_webhook_processor() -> WebhookProcessor:
    return get_processor()


def _parse_body(body: bytes) -> dict:
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return payload


async def _accept(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: WebhookProcessor,
    db: Session,
    platform: str,
    event_type: str,
    payload: dict,
    body: bytes,
    integration: Optional[Integration],
    signature: Optional[str],
) -> dict:
    """Log the delivery and hand it to the processor after the response"""
    webhook_log, queued = await run_in_threadpool(
        webhook_service.receive_webhook,
        db,
        platform=platform,
        event_type=event_type,
        payload=payload,
        body=body,
        headers=dict(request.headers),
        integration=integration,
        signature=signature,
        ip_address=request.client.host if request.client else None,
    )

    if queued:
        background_tasks.add_task(processor.process_one, webhook_log.id)

    return {"status": "accepted", "webhook_id": str(webhook_log.id), "duplicate": not queued}


# ========== Shopify Webhook ==========

@webhook_router.post("/shopify")
async def shopify_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """
    Receive webhook notifications from Shopify
    Topics: orders/*, refunds/*, returns/*, products/*
    """
    body = await request.body()
    payload = _parse_body(body)

    topic = request.headers.get("X-Shopify-Topic", "")
    shop_domain = request.headers.get("X-Shopify-Shop-Domain")
    signature = request.headers.get("X-Shopify-Hmac-Sha256")

    integration = await run_in_threadpool(integration_service.find_shopify_integration, db, shop_domain)
    if integration is None:
        logger.warning(f"Shopify webhook for unknown shop {shop_domain}")
        raise HTTPException(status_code=404, detail="Unknown shop")

    if settings.WEBHOOK_VERIFY_SIGNATURES and integration.setting("webhook_secret"):
        if not ShopifyClient(integration.settings).verify_webhook_signature(body, signature):
            logger.warning(f"Invalid Shopify webhook signature from {shop_domain}")
            raise HTTPException(status_code=401, detail="Invalid signature")

    return await _accept(
        request, background_tasks, processor, db,
        Provider.SHOPIFY.value, topic, payload, body, integration, signature,
    )


# ========== Trendyol Webhook ==========

@webhook_router.post("/trendyol")
async def trendyol_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """
    Receive shipment package and claim notifications from Trendyol
    """
    body = await request.body()
    payload = _parse_body(body)

    supplier_id = payload.get("supplierId") or request.headers.get("X-Supplier-Id")
    integration = await run_in_threadpool(integration_service.find_trendyol_integration, db, supplier_id)
    if integration is None:
        logger.warning(f"Trendyol webhook for unknown supplier {supplier_id}")
        raise HTTPException(status_code=404, detail="Unknown supplier")

    signature = request.headers.get("X-Api-Key")
    if settings.WEBHOOK_VERIFY_SIGNATURES and integration.setting("verify_webhooks"):
        if not TrendyolClient(integration.settings).verify_webhook_signature(body, signature):
            logger.warning(f"Invalid Trendyol webhook key for supplier {supplier_id}")
            raise HTTPException(status_code=401, detail="Invalid signature")

    event_type = "claim" if TrendyolClient.is_claim_payload(payload) else f"package/{payload.get('status', '')}"
    return await _accept(
        request, background_tasks, processor, db,
        Provider.TRENDYOL.value, event_type, payload, body, integration, signature,
    )


# ========== Basit Kargo Webhook ==========

@webhook_router.post("/basit-kargo")
async def basit_kargo_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """
    Receive shipment status notifications from Basit Kargo
    """
    body = await request.body()
    payload = _parse_body(body)

    authorization = request.headers.get("Authorization")
    integration = await run_in_threadpool(integration_service.find_basit_kargo_integration, db, authorization)
    if integration is None:
        logger.warning("Basit Kargo webhook with unknown bearer token")
        raise HTTPException(status_code=401, detail="Invalid token")

    event_type = f"shipment/{payload.get('status', '')}"
    return await _accept(
        request, background_tasks, processor, db,
        Provider.BASIT_KARGO.value, event_type, payload, body, integration, None,
    )


# ========== Webhook Status ==========

@webhook_router.get("/status")
def webhook_status(
    db: Session = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """Check webhook endpoints and processor status"""
    return {
        "status": "active",
        "endpoints": {
            "shopify": "/api/webhooks/shopify",
            "trendyol": "/api/webhooks/trendyol",
            "basit_kargo": "/api/webhooks/basit-kargo",
        },
        "processor": processor.get_status(),
        "logs": integration_service.get_webhook_stats(db),
    }
