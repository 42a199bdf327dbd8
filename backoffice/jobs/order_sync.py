"""
Order Sync Scheduler - Periodic polling for orders from sales channels
"""
import asyncio
import uuid
from datetime import datetime, timedelta
import logging

from backoffice.core.clock import utcnow
from backoffice.core.config import settings
from backoffice.core.database import SessionLocal
from backoffice.models import Integration, IntegrationType
from backoffice.services import integration_service, sync_service

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 15

# Global scheduler instance
_scheduler = None


class OrderSyncScheduler:
    """
    Manages scheduled order synchronization from sales channels
    """

    def __init__(self):
        from apscheduler.schedulers.asyncio import AsyncIOScheduler
        self.scheduler = AsyncIOScheduler()
        self.is_running = False

    def start(self):
        """Start the scheduler"""
        if not self.is_running:
            self.scheduler.start()
            self.is_running = True
            logger.info("Order sync scheduler started")

            # Run as a job so startup is not blocked on the database
            self.scheduler.add_job(
                func=self._schedule_integration_syncs,
                trigger="date",
                run_date=datetime.now(),
                id="init_integration_syncs",
                name="Initialize Integration Syncs",
                replace_existing=True,
            )

    def stop(self):
        """Stop the scheduler"""
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Order sync scheduler stopped")

    def _schedule_integration_syncs(self):
        """Schedule sync jobs for all active sales-channel integrations"""
        db = SessionLocal()
        try:
            integrations = integration_service.get_integrations(db, is_active=True)
            scheduled = 0
            for integration in integrations:
                if integration.type == IntegrationType.SALES_CHANNEL.value and integration.setting("sync_enabled", True):
                    self._add_sync_job(integration)
                    scheduled += 1

            logger.info(f"Scheduled {scheduled} integration sync jobs")

        finally:
            db.close()

    def _add_sync_job(self, integration: Integration):
        """Add a sync job for one integration"""
        job_id = f"sync_{integration.provider}_{integration.id}"
        interval = int(integration.setting("sync_interval_minutes", DEFAULT_INTERVAL_MINUTES))

        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)

        from apscheduler.triggers.interval import IntervalTrigger
        self.scheduler.add_job(
            func=self._run_sync,
            trigger=IntervalTrigger(minutes=interval),
            id=job_id,
            name=f"Sync {integration.provider}/{integration.name}",
            kwargs={"integration_id": str(integration.id)},
            replace_existing=True,
            max_instances=1,  # Prevent overlapping syncs
        )

        logger.info(f"Scheduled sync job: {integration.provider}/{integration.name} every {interval} minutes")

    async def _run_sync(self, integration_id: str):
        """Execute sync for one integration"""
        db = SessionLocal()
        try:
            integration = integration_service.get_integration(db, _as_uuid(integration_id))
            if not integration:
                logger.warning(f"Integration not found: {integration_id}")
                return

            if not integration.is_active or not integration.setting("sync_enabled", True):
                logger.info(f"Sync disabled for {integration.provider}/{integration.name}")
                return

            logger.info(f"Starting scheduled sync: {integration.provider}/{integration.name}")

            time_from = utcnow() - timedelta(hours=settings.SYNC_LOOKBACK_HOURS)
            stats = await sync_service.sync_single_integration(db, integration.id, time_from)

            logger.info(
                f"Scheduled sync completed: {integration.provider}/{integration.name} - "
                f"fetched={stats.get('fetched', 0)}, "
                f"created={stats.get('created', 0)}, "
                f"updated={stats.get('updated', 0)}, "
                f"failed={stats.get('failed', 0)}"
            )

        except Exception as e:
            logger.error(f"Scheduled sync failed for integration {integration_id}: {e}")

        finally:
            db.close()

    def refresh_schedules(self):
        """Refresh all sync schedules from database"""
        for job in self.scheduler.get_jobs():
            if job.id.startswith("sync_"):
                self.scheduler.remove_job(job.id)

        self._schedule_integration_syncs()

    def trigger_sync_now(self, integration_id: str):
        """Trigger immediate sync for one integration"""
        self.scheduler.add_job(
            func=self._run_sync,
            trigger="date",
            run_date=datetime.now(),
            id=f"sync_immediate_{integration_id}",
            kwargs={"integration_id": integration_id},
            replace_existing=True,
        )

        logger.info(f"Triggered immediate sync for integration: {integration_id}")


def _as_uuid(value):
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


# ========== Global Functions ==========

def get_scheduler() -> "OrderSyncScheduler":
    """Get or create the global scheduler instance"""
    global _scheduler
    if _scheduler is None:
        _scheduler = OrderSyncScheduler()
    return _scheduler


def start_scheduler():
    """Start the global scheduler"""
    scheduler = get_scheduler()
    scheduler.start()


def stop_scheduler():
    """Stop the global scheduler"""
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None


# ========== Sync All Integrations (One-time) ==========

async def sync_all_now():
    """
    Run sync for all active integrations immediately (one-time)
    """
    db = SessionLocal()
    try:
        results = await sync_service.sync_all_integrations(db)

        for key, result in results.items():
            if result.get("status") == "success":
                logger.info(
                    f"[{key}] Sync success: fetched={result.get('fetched', 0)}, "
                    f"created={result.get('created', 0)}, failed={result.get('failed', 0)}"
                )
            else:
                logger.error(f"[{key}] Sync failed: {result.get('error')}")

        return results

    finally:
        db.close()


# ========== CLI Commands ==========

async def _serve():
    start_scheduler()
    try:
        await asyncio.Event().wait()
    finally:
        stop_scheduler()


if __name__ == "__main__":
    """
    python -m backoffice.jobs.order_sync        # run the scheduler
    python -m backoffice.jobs.order_sync sync   # one-time sync of every integration
    """
    import sys

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if len(sys.argv) > 1 and sys.argv[1] == "sync":
        asyncio.run(sync_all_now())
    else:
        logger.info("Starting order sync scheduler, Ctrl+C to stop")
        try:
            asyncio.run(_serve())
        except KeyboardInterrupt:
            logger.info("Scheduler stopped")
