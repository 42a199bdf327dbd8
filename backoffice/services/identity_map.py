"""
Identity Map - (platform, entity kind, external id) <-> canonical entity
"""
import logging
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from backoffice.core.audit import AuditSink, LoggingAuditSink
from backoffice.core.clock import Clock, SystemClock
from backoffice.core.exceptions import IdentityConflict
from backoffice.models import (
    PlatformMapping, EntityKind, Customer, Order, OrderItem, Product, ProductVariant, OrderReturn, RefundEvent,
)

logger = logging.getLogger(__name__)


class IdentityMap:
    """
    Typed access to PlatformMapping rows. Every write happens inside the
    caller's transaction; nothing here commits.
    """

    MODELS = {
        EntityKind.CUSTOMER: Customer,
        EntityKind.ORDER: Order,
        EntityKind.ORDER_ITEM: OrderItem,
        EntityKind.PRODUCT: Product,
        EntityKind.PRODUCT_VARIANT: ProductVariant,
        EntityKind.RETURN: OrderReturn,
        EntityKind.REFUND: RefundEvent,
    }

    def __init__(self, db: Session, clock: Clock = None, audit: AuditSink = None):
        self.db = db
        self.clock = clock or SystemClock()
        self.audit = audit or LoggingAuditSink()

    # ========== Lookups ==========

    def find(self, platform: str, kind: EntityKind, external_id) -> Optional[PlatformMapping]:
        if external_id is None:
            return None
        return self.db.query(PlatformMapping).filter(
            PlatformMapping.platform == platform,
            PlatformMapping.entity_type == kind.value,
            PlatformMapping.platform_id == str(external_id),
        ).first()

    def find_for_entity(self, platform: str, kind: EntityKind, entity_id) -> Optional[PlatformMapping]:
        return self.db.query(PlatformMapping).filter(
            PlatformMapping.platform == platform,
            PlatformMapping.entity_type == kind.value,
            PlatformMapping.entity_id == entity_id,
        ).first()

    def resolve(self, platform: str, kind: EntityKind, external_id):
        """Mapped entity, or None when unmapped or the target row is gone"""
        mapping = self.find(platform, kind, external_id)
        if mapping is None:
            return None
        return self.db.get(self.MODELS[kind], mapping.entity_id)

    # ========== Writes ==========

    def bind(
        self,
        platform: str,
        kind: EntityKind,
        external_id,
        entity,
        payload: Optional[Dict[str, Any]] = None,
    ) -> PlatformMapping:
        """
        Create or refresh the mapping external_id -> entity. A mapping for the
        external id that points at another entity is re-pointed. A different
        external id already bound to this entity must be removed by the caller.
        """
        external_id = str(external_id)
        owned = self.find_for_entity(platform, kind, entity.id)
        if owned is not None and owned.platform_id != external_id:
            raise IdentityConflict(
                platform, kind.value,
                f"entity {entity.id} already bound to {owned.platform_id}, cannot bind {external_id}",
            )

        mapping = self.find(platform, kind, external_id)
        if mapping is None:
            mapping = PlatformMapping(
                platform=platform,
                entity_type=kind.value,
                entity_id=entity.id,
                platform_id=external_id,
            )
            self.db.add(mapping)
        elif mapping.entity_id != entity.id:
            mapping = self.repoint(mapping, entity_id=entity.id, reason="bind")

        if payload is not None:
            mapping.platform_data = payload
        mapping.last_synced_at = self.clock.now()
        self.db.flush()
        return mapping

    def touch(self, mapping: PlatformMapping, payload: Optional[Dict[str, Any]] = None) -> PlatformMapping:
        if payload is not None:
            mapping.platform_data = payload
        mapping.last_synced_at = self.clock.now()
        return mapping

    def unbind(self, platform: str, kind: EntityKind, entity_id) -> int:
        removed = self.db.query(PlatformMapping).filter(
            PlatformMapping.platform == platform,
            PlatformMapping.entity_type == kind.value,
            PlatformMapping.entity_id == entity_id,
        ).delete(synchronize_session="fetch")
        self.db.flush()
        return removed

    def repoint(
        self,
        mapping: PlatformMapping,
        entity_id=None,
        external_id=None,
        reason: str = "",
    ) -> PlatformMapping:
        """
        The only sanctioned way to change a mapping's keys. Two phases inside
        the caller's transaction: evict the old row, then install the new one.
        """
        kind = EntityKind(mapping.entity_type)
        platform = mapping.platform
        new_entity_id = entity_id if entity_id is not None else mapping.entity_id
        new_external_id = str(external_id) if external_id is not None else mapping.platform_id

        if new_entity_id != mapping.entity_id:
            other = self.find_for_entity(mapping.platform, kind, new_entity_id)
            if other is not None and other.id != mapping.id:
                raise IdentityConflict(
                    mapping.platform, kind.value,
                    f"cannot repoint {mapping.platform_id}: entity {new_entity_id} already bound to {other.platform_id}",
                )
        if new_external_id != mapping.platform_id:
            other = self.find(mapping.platform, kind, new_external_id)
            if other is not None and other.id != mapping.id:
                raise IdentityConflict(
                    mapping.platform, kind.value,
                    f"cannot repoint to {new_external_id}: already bound to {other.entity_id}",
                )

        previous = {"entity_id": mapping.entity_id, "platform_id": mapping.platform_id}
        snapshot = mapping.platform_data

        # Phase 1: evict
        self.db.delete(mapping)
        self.db.flush()

        # Phase 2: install
        replacement = PlatformMapping(
            platform=platform,
            entity_type=kind.value,
            entity_id=new_entity_id,
            platform_id=new_external_id,
            platform_data=snapshot,
            last_synced_at=self.clock.now(),
        )
        self.db.add(replacement)
        self.db.flush()

        logger.warning(
            f"Identity mapping repointed {platform}/{kind.value}: "
            f"{previous['platform_id']}->{previous['entity_id']} now {new_external_id}->{new_entity_id} ({reason})"
        )
        self.audit.record(
            "platform_mapping", replacement.id, "identity_mapping_repointed",
            {
                "platform": platform,
                "entity_type": kind.value,
                "from": previous,
                "to": {"entity_id": new_entity_id, "platform_id": new_external_id},
                "reason": reason,
            },
        )
        return replacement
