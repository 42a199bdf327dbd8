"""
Audit Log Model
"""
from sqlalchemy import Column, String, DateTime
from backoffice.core.database import Base
from .base import UUIDMixin, JSONType


class AuditLog(Base, UUIDMixin):
    """Audit Log for reconciliation and lifecycle changes"""
    __tablename__ = "audit_log"

    subject_type = Column(String(50), nullable=False, index=True)  # order, order_return, customer, platform_mapping
    subject_id = Column(String(50), index=True)

    action = Column(String(100), nullable=False)  # order_status_updated, return_approved, ...
    properties = Column(JSONType)

    actor = Column(String(100), nullable=False, default="system")
    performed_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog {self.action} {self.subject_type}:{self.subject_id}>"
