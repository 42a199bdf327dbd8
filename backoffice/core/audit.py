"""
Audit Sink - Structured (subject, action, properties) trail
"""
import logging
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from backoffice.core.clock import Clock, SystemClock
from backoffice.models.audit import AuditLog

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class AuditSink:
    """Receives audit triples; storage is up to the implementation"""

    def record(
        self,
        subject_type: str,
        subject_id,
        action: str,
        properties: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


class LoggingAuditSink(AuditSink):
    def record(self, subject_type, subject_id, action, properties=None, actor=None):
        logger.info(f"[AUDIT] {action} {subject_type}:{subject_id} by {actor or SYSTEM_ACTOR} {properties or {}}")


class DatabaseAuditSink(AuditSink):
    """
    Writes AuditLog rows into the caller's session, so the trail commits
    or rolls back together with the change it describes.
    """

    def __init__(self, db: Session, clock: Clock = None):
        self.db = db
        self.clock = clock or SystemClock()

    def record(self, subject_type, subject_id, action, properties=None, actor=None):
        self.db.add(AuditLog(
            subject_type=subject_type,
            subject_id=str(subject_id) if subject_id is not None else None,
            action=action,
            properties=_jsonable(properties or {}),
            actor=actor or SYSTEM_ACTOR,
            performed_at=self.clock.now(),
        ))


def _jsonable(value):
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
