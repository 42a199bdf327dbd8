"""
Customer Reconciler - Find-or-create canonical customers from channel fragments
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from backoffice.core.audit import AuditSink
from backoffice.core.clock import Clock
from backoffice.integrations.base import CustomerFragment
from backoffice.models import Customer, EntityKind
from backoffice.services.identity_map import IdentityMap

logger = logging.getLogger(__name__)

PLACEHOLDER_LAST_NAME = "Customer"
PENDING_NOTE_PREFIX = "Customer data pending from"


def is_placeholder(customer: Customer) -> bool:
    if customer.notes and customer.notes.startswith(PENDING_NOTE_PREFIX):
        return True
    return not customer.email


class CustomerReconciler:
    """
    Returns exactly one Customer per fragment and creates at most one row.
    Masked data never overwrites real data.
    """

    def __init__(self, db: Session, identity_map: IdentityMap, clock: Clock, audit: AuditSink):
        self.db = db
        self.identity = identity_map
        self.clock = clock
        self.audit = audit

    def reconcile(self, channel: str, fragment: CustomerFragment, known: Optional[Customer] = None) -> Customer:
        """
        known is the customer already attached to the order the fragment came
        with. A fragment carrying neither an external id nor an email cannot be
        matched on its own, so it resolves to that customer.
        """
        if known is not None and not fragment.external_id and (fragment.is_masked() or not fragment.email):
            if not fragment.is_masked() and is_placeholder(known):
                self._promote(known, fragment)
            return known

        if fragment.is_masked():
            return self._reconcile_masked(channel, fragment)

        customer = self._match_by_email(channel, fragment)

        if customer is None and fragment.external_id:
            customer = self._resolve_mapped(channel, fragment.external_id)
            if customer is not None:
                self.identity.bind(channel, EntityKind.CUSTOMER, fragment.external_id, customer, fragment.address_snapshot)

        if customer is None:
            customer = self._create(channel, fragment)
            if fragment.external_id:
                self.identity.bind(channel, EntityKind.CUSTOMER, fragment.external_id, customer, fragment.address_snapshot)
            return customer

        if is_placeholder(customer):
            self._promote(customer, fragment)
        return customer

    # ========== Steps ==========

    def _reconcile_masked(self, channel: str, fragment: CustomerFragment) -> Customer:
        if fragment.external_id:
            existing = self._resolve_mapped(channel, fragment.external_id)
            if existing is not None:
                return existing

        placeholder = Customer(
            first_name=fragment.channel_label,
            last_name=PLACEHOLDER_LAST_NAME,
            email=None,
            phone=None,
            channel=channel,
            notes=f"{PENDING_NOTE_PREFIX} {fragment.channel_label}",
        )
        self.db.add(placeholder)
        self.db.flush()
        logger.info(f"Created placeholder customer {placeholder.id} for masked {channel} customer {fragment.external_id}")

        if fragment.external_id:
            # Masked sightings never store an address snapshot
            self.identity.bind(channel, EntityKind.CUSTOMER, fragment.external_id, placeholder)
        return placeholder

    def _match_by_email(self, channel: str, fragment: CustomerFragment) -> Optional[Customer]:
        if not fragment.email:
            return None

        candidate = (
            self.db.query(Customer)
            .filter(Customer.email == fragment.email)
            .order_by(Customer.created_at)
            .first()
        )
        if candidate is None:
            return None
        if not fragment.external_id:
            return candidate

        owned = self.identity.find_for_entity(channel, EntityKind.CUSTOMER, candidate.id)
        if owned is not None and owned.platform_id != fragment.external_id:
            logger.info(
                f"Customer {candidate.id} shares email with {channel} customer {fragment.external_id} "
                f"but is mapped to {owned.platform_id}; treating as a distinct person"
            )
            return None

        mapping = self.identity.find(channel, EntityKind.CUSTOMER, fragment.external_id)
        if mapping is None:
            self.identity.bind(channel, EntityKind.CUSTOMER, fragment.external_id, candidate, fragment.address_snapshot)
        else:
            if mapping.entity_id != candidate.id:
                mapping = self.identity.repoint(mapping, entity_id=candidate.id, reason="email_match")
                self.audit.record(
                    "customer", candidate.id, "customer_mapping_moved_by_email",
                    {"platform": channel, "platform_id": fragment.external_id},
                )
            self.identity.touch(mapping, fragment.address_snapshot)
        return candidate

    def _resolve_mapped(self, channel: str, external_id: str) -> Optional[Customer]:
        mapping = self.identity.find(channel, EntityKind.CUSTOMER, external_id)
        if mapping is None:
            return None
        customer = self.db.get(Customer, mapping.entity_id)
        if customer is None:
            logger.warning(f"Orphaned {channel} customer mapping {external_id}, removing")
            self.identity.unbind(channel, EntityKind.CUSTOMER, mapping.entity_id)
        return customer

    def _create(self, channel: str, fragment: CustomerFragment) -> Customer:
        customer = Customer(
            first_name=fragment.first_name,
            last_name=fragment.last_name,
            email=fragment.email,
            phone=fragment.phone,
            channel=channel,
            notes=fragment.note,
        )
        self.db.add(customer)
        self.db.flush()
        return customer

    def _promote(self, customer: Customer, fragment: CustomerFragment) -> None:
        """Overwrite placeholder fields in place; the id never changes"""
        before = {"first_name": customer.first_name, "last_name": customer.last_name, "email": customer.email}

        for field in ("first_name", "last_name", "email", "phone"):
            value = getattr(fragment, field)
            if value:
                setattr(customer, field, value)
        if customer.notes and customer.notes.startswith(PENDING_NOTE_PREFIX):
            customer.notes = fragment.note

        after = {"first_name": customer.first_name, "last_name": customer.last_name, "email": customer.email}
        if before != after:
            logger.info(f"Promoted placeholder customer {customer.id}")
            self.audit.record("customer", customer.id, "customer_promoted_from_placeholder", {"from": before, "to": after})
