"""
Webhook Processor - Background service to process pending webhooks with retry
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Callable, Optional

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from backoffice.core.clock import Clock, SystemClock
from backoffice.core.config import settings
from backoffice.core.database import SessionLocal
from backoffice.core.exceptions import ChannelParseError, IdentityConflict
from backoffice.models import WebhookLog, WebhookResult
from backoffice.services import integration_service
from backoffice.services.webhook_service import WebhookDispatcher

logger = logging.getLogger(__name__)

# Retrying these cannot change the outcome
PERMANENT_ERRORS = (ChannelParseError, IdentityConflict)


def retry_delay(attempts: int, base_seconds: int = None) -> timedelta:
    """base * 2**(attempts-1): 30s, 60s, 120s, ..."""
    base = settings.WEBHOOK_RETRY_BASE_SECONDS if base_seconds is None else base_seconds
    return timedelta(seconds=base * 2 ** max(attempts - 1, 0))


def process_log(db: Session, log: WebhookLog, clock: Clock = None, max_attempts: int = None) -> str:
    """
    Reconcile one stored delivery in a single transaction.
    Returns the process_result written to the log.
    """
    clock = clock or SystemClock()
    max_attempts = max_attempts or settings.WEBHOOK_MAX_ATTEMPTS
    log_id = log.id
    attempts = (log.attempts or 0) + 1

    try:
        log.attempts = attempts
        result = WebhookDispatcher(db, clock).dispatch(log)
        log.mark_processed(result.code, getattr(result, "reason", None))
        db.commit()
        logger.debug(f"  [OK] {log.platform}/{log.event_type} -> {result.code}")
        return result.code
    except PERMANENT_ERRORS as e:
        db.rollback()
        logger.error(f"  [FAIL] Webhook {log_id} cannot be processed: {e}")
        return _fail(db, log_id, attempts, str(e))
    except Exception as e:
        db.rollback()
        if attempts >= max_attempts:
            logger.error(f"  [FAIL] Webhook {log_id} failed after {attempts} attempts: {e}")
            return _fail(db, log_id, attempts, str(e))

        next_attempt_at = clock.now() + retry_delay(attempts)
        logger.error(f"  [RETRY] Webhook {log_id} attempt {attempts} failed, retrying at {next_attempt_at}: {e}")
        log = db.get(WebhookLog, log_id)
        log.attempts = attempts
        log.mark_retry(str(e), next_attempt_at)
        db.commit()
        return WebhookResult.RETRYING.value


def _fail(db: Session, log_id, attempts: int, error: str) -> str:
    log = db.get(WebhookLog, log_id)
    log.attempts = attempts
    log.next_attempt_at = None
    log.mark_processed(WebhookResult.FAILED.value, error)
    db.commit()
    return WebhookResult.FAILED.value


class WebhookProcessor:
    """Background processor for pending and retrying webhooks"""

    def __init__(
        self,
        poll_interval: int = 30,
        clock: Clock = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.poll_interval = poll_interval
        self.clock = clock or SystemClock()
        self.session_factory = session_factory
        self.is_running = False
        self.last_poll: Optional[datetime] = None
        self.processed_count: int = 0
        self.failed_count: int = 0
        self.last_batch_count: int = 0
        self._task = None

    async def start(self):
        """Start the background processor"""
        if self.is_running:
            logger.warning("Webhook processor already running")
            return

        self.is_running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"[OK] Webhook processor started (polling every {self.poll_interval}s)")

    async def stop(self):
        """Stop the background processor"""
        self.is_running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Webhook processor stopped")

    async def _run_loop(self):
        """Main processing loop"""
        while self.is_running:
            try:
                await run_in_threadpool(self.process_due)
            except Exception as e:
                logger.error(f"Webhook processor error: {e}")

            await asyncio.sleep(self.poll_interval)

    def process_due(self, limit: int = 50) -> int:
        """Process every webhook whose next attempt is due; returns the count handled"""
        db = self.session_factory()
        try:
            webhooks = integration_service.get_due_webhooks(db, self.clock.now(), limit=limit)
            self.last_poll = self.clock.now()
            if not webhooks:
                return 0

            logger.info(f"[PROCESSING] {len(webhooks)} pending webhooks")
            for webhook in webhooks:
                self._count(process_log(db, webhook, self.clock))

            self.last_batch_count = len(webhooks)
            logger.info(f"[DONE] Processed {len(webhooks)} webhooks")
            return len(webhooks)
        finally:
            db.close()

    def process_one(self, log_id) -> Optional[str]:
        """Process a single delivery right after it was received"""
        db = self.session_factory()
        try:
            log = db.get(WebhookLog, log_id)
            if log is None or log.processed:
                return None
            result = process_log(db, log, self.clock)
            self._count(result)
            return result
        finally:
            db.close()

    def _count(self, result: str):
        if result == WebhookResult.FAILED.value:
            self.failed_count += 1
        elif result != WebhookResult.RETRYING.value:
            self.processed_count += 1

    def get_status(self) -> Dict:
        """Get processor status"""
        return {
            "is_running": self.is_running,
            "poll_interval": self.poll_interval,
            "last_poll": self.last_poll.isoformat() if self.last_poll else None,
            "total_processed": self.processed_count,
            "total_failed": self.failed_count,
            "last_batch_count": self.last_batch_count,
        }


# Singleton instance
_processor: WebhookProcessor = None


def get_processor() -> WebhookProcessor:
    """Get or create the webhook processor instance"""
    global _processor
    if _processor is None:
        _processor = WebhookProcessor(poll_interval=settings.WEBHOOK_POLL_INTERVAL_SECONDS)
    return _processor


async def start_webhook_processor():
    """Start the webhook processor"""
    await get_processor().start()


async def stop_webhook_processor():
    """Stop the webhook processor"""
    await get_processor().stop()
