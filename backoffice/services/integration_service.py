"""
Integration Service - Integration lookup and webhook log helpers
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
from sqlalchemy.orm import Session
from sqlalchemy import func, or_
import logging

from backoffice.core.config import settings
from backoffice.integrations import BaseChannelClient, BasitKargoClient, get_channel_client
from backoffice.models import Integration, IntegrationType, Provider, WebhookLog

logger = logging.getLogger(__name__)

SHOPIFY_DOMAIN_SUFFIX = ".myshopify.com"


def get_integrations(
    db: Session,
    provider: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> List[Integration]:
    """Get integrations with optional filters"""
    query = db.query(Integration)

    if provider:
        query = query.filter(Integration.provider == provider)
    if is_active is not None:
        query = query.filter(Integration.is_active == is_active)

    return query.order_by(Integration.created_at.asc()).all()


def get_integration(db: Session, integration_id) -> Optional[Integration]:
    return db.get(Integration, integration_id)


def create_integration(
    db: Session,
    provider: str,
    name: str,
    integration_settings: Dict[str, Any],
    is_active: bool = True,
) -> Integration:
    """Create a new integration"""
    integration_type = (
        IntegrationType.SHIPPING_PROVIDER if provider == Provider.BASIT_KARGO.value
        else IntegrationType.SALES_CHANNEL
    )
    integration = Integration(
        type=integration_type.value,
        provider=provider,
        name=name,
        settings=integration_settings,
        is_active=is_active,
    )

    db.add(integration)
    db.commit()
    db.refresh(integration)

    logger.info(f"Created integration: {provider} - {name}")
    return integration


def get_client_for_integration(integration: Integration) -> BaseChannelClient:
    """Sales-channel client for an integration"""
    return get_channel_client(integration.provider, integration.settings or {}, timeout=settings.HTTP_TIMEOUT_SECONDS)


# ========== Webhook Disambiguation ==========

def normalize_shop_domain(shop_domain: Optional[str]) -> str:
    domain = (shop_domain or "").strip().lower()
    if domain.endswith(SHOPIFY_DOMAIN_SUFFIX):
        domain = domain[: -len(SHOPIFY_DOMAIN_SUFFIX)]
    return domain


def find_shopify_integration(db: Session, shop_domain: Optional[str]) -> Optional[Integration]:
    wanted = normalize_shop_domain(shop_domain)
    candidates = get_integrations(db, provider=Provider.SHOPIFY.value, is_active=True)
    for integration in candidates:
        if normalize_shop_domain(integration.setting("shop_domain")) == wanted:
            return integration
    if len(candidates) == 1 and not wanted:
        return candidates[0]
    return None


def find_trendyol_integration(db: Session, supplier_id: Optional[str]) -> Optional[Integration]:
    candidates = get_integrations(db, provider=Provider.TRENDYOL.value, is_active=True)
    if supplier_id:
        for integration in candidates:
            if str(integration.setting("supplier_id")) == str(supplier_id):
                return integration
    if len(candidates) == 1:
        return candidates[0]
    if candidates:
        logger.warning(f"Cannot tell {len(candidates)} Trendyol integrations apart (supplier {supplier_id})")
    return None


def find_basit_kargo_integration(db: Session, authorization: Optional[str]) -> Optional[Integration]:
    for integration in get_integrations(db, provider=Provider.BASIT_KARGO.value, is_active=True):
        if BasitKargoClient(integration.settings or {}).verify_bearer_token(authorization):
            return integration
    return None


# ========== Webhook Logs ==========

def find_webhook_log(db: Session, platform: str, delivery_key: str) -> Optional[WebhookLog]:
    return db.query(WebhookLog).filter(
        WebhookLog.platform == platform,
        WebhookLog.delivery_key == delivery_key,
    ).first()


def log_webhook(
    db: Session,
    platform: str,
    event_type: str,
    payload: dict,
    delivery_key: str,
    integration_id=None,
    headers: dict = None,
    signature: str = None,
    ip_address: str = None,
) -> WebhookLog:
    """Log incoming webhook"""
    log = WebhookLog(
        platform=platform,
        integration_id=integration_id,
        event_type=event_type,
        delivery_key=delivery_key,
        payload=payload,
        headers=headers,
        signature=signature,
        ip_address=ip_address,
        processed=False,
        attempts=0,
    )

    db.add(log)
    db.commit()
    db.refresh(log)

    return log


def mark_webhook_processed(
    db: Session,
    log_id,
    result: str,
    error: str = None,
) -> Optional[WebhookLog]:
    """Mark webhook as processed"""
    log = db.get(WebhookLog, log_id)
    if not log:
        return None

    log.mark_processed(result, error)
    db.commit()
    db.refresh(log)

    return log


def get_due_webhooks(
    db: Session,
    now: datetime,
    platform: Optional[str] = None,
    limit: int = 100,
) -> List[WebhookLog]:
    """Unprocessed webhooks whose next attempt is due"""
    query = db.query(WebhookLog).filter(
        WebhookLog.processed.is_(False),
        or_(WebhookLog.next_attempt_at.is_(None), WebhookLog.next_attempt_at <= now),
    )

    if platform:
        query = query.filter(WebhookLog.platform == platform)

    return query.order_by(WebhookLog.received_at.asc()).limit(limit).all()


def get_webhook_stats(db: Session) -> Dict[str, Any]:
    """Counts per platform and processing result"""
    rows = db.query(
        WebhookLog.platform,
        WebhookLog.process_result,
        func.count(WebhookLog.id),
    ).group_by(WebhookLog.platform, WebhookLog.process_result).all()

    stats: Dict[str, Any] = {}
    for platform, result, count in rows:
        stats.setdefault(platform, {})[result or "PENDING"] = count
    return stats
