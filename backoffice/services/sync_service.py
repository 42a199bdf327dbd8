"""
Sync Service - Paginated pulls from sales channels with per-item isolation
"""
from functools import partial
from typing import Optional, Dict, Any, Callable
from datetime import datetime, timedelta
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
import logging

from backoffice.core.audit import DatabaseAuditSink
from backoffice.core.clock import Clock, SystemClock
from backoffice.core.config import settings
from backoffice.core.exceptions import IdentityConflict
from backoffice.integrations import BaseChannelClient, ShopifyClient, TrendyolClient
from backoffice.models import Integration, IntegrationType, Provider
from backoffice.services import integration_service
from backoffice.services.order_reconciler import OrderReconciler
from backoffice.services.results import Failed, Skipped
from backoffice.services.return_reconciler import ReturnReconciler
from backoffice.services.shipping_cost_service import ShippingCostService

logger = logging.getLogger(__name__)


def empty_stats() -> Dict[str, int]:
    return {"fetched": 0, "created": 0, "updated": 0, "skipped": 0, "failed": 0}


class OrderSyncService:
    """
    Service for pulling orders (and claims) from sales channels.
    Each item is reconciled in a worker thread and committed on its own;
    a failing item is rolled back and counted, the rest of the page carries on.
    """

    def __init__(self, db: Session, clock: Clock = None):
        self.db = db
        self.clock = clock or SystemClock()

    async def sync_integration_orders(
        self,
        integration: Integration,
        time_from: Optional[datetime] = None,
        client: Optional[BaseChannelClient] = None,
    ) -> Dict[str, int]:
        """
        Sync orders from one integration
        Returns: {fetched, created, updated, skipped, failed}
        """
        stats = empty_stats()
        client = client or integration_service.get_client_for_integration(integration)

        if not time_from:
            time_from = self.clock.now() - timedelta(hours=settings.SYNC_LOOKBACK_HOURS)

        cursor = None
        has_more = True
        while has_more:
            page = await client.get_orders(time_from=time_from, cursor=cursor, page_size=settings.SYNC_PAGE_SIZE)
            orders = page.get("orders", [])
            cursor = page.get("next_cursor")
            has_more = page.get("has_more", False) and cursor

            for raw_order in orders:
                stats["fetched"] += 1
                work = partial(self._map_order, client, raw_order, integration)
                result = await run_in_threadpool(self.reconcile_item, work)
                self._tally(stats, result)

        integration.last_sync_at = self.clock.now()
        self.db.commit()

        logger.info(
            f"Sync completed for {integration.provider}/{integration.name}: "
            f"fetched={stats['fetched']}, created={stats['created']}, "
            f"updated={stats['updated']}, skipped={stats['skipped']}, failed={stats['failed']}"
        )
        return stats

    async def sync_integration_claims(
        self,
        integration: Integration,
        client: Optional[TrendyolClient] = None,
    ) -> Dict[str, int]:
        """Sync marketplace claims (returns) from one Trendyol integration"""
        stats = empty_stats()
        client = client or integration_service.get_client_for_integration(integration)

        cursor = None
        has_more = True
        while has_more:
            page = await client.get_claims(cursor=cursor, page_size=settings.SYNC_PAGE_SIZE)
            claims = page.get("claims", [])
            cursor = page.get("next_cursor")
            has_more = page.get("has_more", False) and cursor

            for raw_claim in claims:
                stats["fetched"] += 1
                work = partial(self._map_claim, client, raw_claim)
                result = await run_in_threadpool(self.reconcile_item, work)
                self._tally(stats, result)

        logger.info(
            f"Claim sync completed for {integration.name}: "
            f"fetched={stats['fetched']}, created={stats['created']}, "
            f"updated={stats['updated']}, skipped={stats['skipped']}, failed={stats['failed']}"
        )
        return stats

    def reconcile_item(self, work: Callable[[], Any]):
        """
        Run one unit of work in its own transaction.
        IdentityConflict propagates and stops the batch; anything else
        becomes Failed.
        """
        try:
            result = work()
            self.db.commit()
            return result
        except IdentityConflict:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error processing sync item: {e}")
            return Failed(e)

    # ========== Internals ==========

    def _map_order(self, client: BaseChannelClient, raw_order: Dict[str, Any], integration: Integration):
        normalized = client.parse_order(raw_order)
        result = self._orders().map_order(normalized, integration)

        # Storefront order pages embed their refunds; each one gets a savepoint
        if isinstance(client, ShopifyClient):
            returns = self._returns()
            for raw_refund in raw_order.get("refunds") or []:
                try:
                    with self.db.begin_nested():
                        refund_result = returns.map_refund(client.parse_refund(raw_refund))
                except IdentityConflict:
                    raise
                except Exception as e:
                    logger.error(f"Embedded refund {raw_refund.get('id')} of order {raw_order.get('id')} failed: {e}")
                    continue
                if isinstance(refund_result, Skipped):
                    logger.debug(f"Embedded refund {raw_refund.get('id')} skipped: {refund_result.reason}")
        return result

    def _map_claim(self, client: TrendyolClient, raw_claim: Dict[str, Any]):
        return self._returns().map_claim(client.parse_claim(raw_claim))

    def _orders(self) -> OrderReconciler:
        audit = DatabaseAuditSink(self.db, self.clock)
        return OrderReconciler(self.db, self.clock, audit, ShippingCostService(self.db))

    def _returns(self) -> ReturnReconciler:
        audit = DatabaseAuditSink(self.db, self.clock)
        return ReturnReconciler(self.db, self.clock, audit, ShippingCostService(self.db))

    @staticmethod
    def _tally(stats: Dict[str, int], result) -> None:
        key = {"CREATED": "created", "UPDATED": "updated", "SKIPPED": "skipped"}.get(result.code, "failed")
        stats[key] += 1


async def sync_all_integrations(db: Session) -> Dict[str, Dict]:
    """
    Sync orders from every active sales-channel integration with sync enabled
    """
    service = OrderSyncService(db)
    results = {}

    integrations = integration_service.get_integrations(db, is_active=True)
    integrations = [
        i for i in integrations
        if i.type == IntegrationType.SALES_CHANNEL.value and i.setting("sync_enabled", True)
    ]

    for integration in integrations:
        key = f"{integration.provider}_{integration.id}"
        try:
            stats = await service.sync_integration_orders(integration)
            results[key] = {"status": "success", **stats}
        except IdentityConflict:
            raise
        except Exception as e:
            db.rollback()
            logger.error(f"Sync failed for {integration.provider}/{integration.name}: {e}")
            results[key] = {"status": "error", "error": str(e)}

    return results


async def sync_single_integration(
    db: Session,
    integration_id,
    time_from: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Sync orders (and Trendyol claims) for one integration
    """
    integration = integration_service.get_integration(db, integration_id)
    if not integration:
        raise ValueError(f"Integration not found: {integration_id}")

    service = OrderSyncService(db)
    stats = await service.sync_integration_orders(integration, time_from)

    if integration.provider == Provider.TRENDYOL.value:
        claim_stats = await service.sync_integration_claims(integration)
        stats = {**stats, "claims": claim_stats}
    return stats
