"""
Return Lifecycle - Guarded status transitions for OrderReturn
"""
import io
import logging
import os
from typing import Optional, Callable, Dict, Any

from pypdf import PdfReader
from pypdf.errors import PdfReadError
from sqlalchemy.orm import Session

from backoffice.core.audit import AuditSink, LoggingAuditSink, SYSTEM_ACTOR
from backoffice.core.clock import Clock, SystemClock
from backoffice.core.config import settings
from backoffice.core.exceptions import BackofficeError, InvalidTransition, MissingActor
from backoffice.models import OrderReturn, ReturnStatus

logger = logging.getLogger(__name__)

S = ReturnStatus

RANK = {
    S.REQUESTED.value: 0,
    S.PENDING_REVIEW.value: 1,
    S.APPROVED.value: 2,
    S.LABEL_GENERATED.value: 3,
    S.IN_TRANSIT.value: 4,
    S.RECEIVED.value: 5,
    S.INSPECTING.value: 6,
    S.COMPLETED.value: 7,
}

FINAL_STATES = {S.COMPLETED.value, S.REJECTED.value, S.CANCELLED.value}
OPEN_STATES = set(RANK) - FINAL_STATES

STATUS_TIMESTAMPS = {
    S.REQUESTED.value: "requested_at",
    S.APPROVED.value: "approved_at",
    S.LABEL_GENERATED.value: "label_generated_at",
    S.IN_TRANSIT.value: "shipped_at",
    S.RECEIVED.value: "received_at",
    S.INSPECTING.value: "inspected_at",
    S.COMPLETED.value: "completed_at",
    S.REJECTED.value: "rejected_at",
    S.CANCELLED.value: "cancelled_at",
}

# action -> (legal source states, target state)
TRANSITIONS = {
    "approve": ({S.REQUESTED.value, S.PENDING_REVIEW.value}, S.APPROVED.value),
    "generate_label": ({S.APPROVED.value}, S.LABEL_GENERATED.value),
    "mark_in_transit": ({S.APPROVED.value, S.LABEL_GENERATED.value}, S.IN_TRANSIT.value),
    "mark_received": ({S.LABEL_GENERATED.value, S.IN_TRANSIT.value}, S.RECEIVED.value),
    "start_inspection": ({S.RECEIVED.value}, S.INSPECTING.value),
    "complete": ({S.RECEIVED.value, S.INSPECTING.value}, S.COMPLETED.value),
    "reject": (OPEN_STATES, S.REJECTED.value),
    "cancel": (OPEN_STATES, S.CANCELLED.value),
}

# Pushes a staff decision back to the channel; False means the channel refused
StatusPusher = Callable[[OrderReturn, str], bool]


# ========== Label Storage ==========

class LabelStorage:
    def store(self, filename: str, content: bytes) -> str:
        """Persist label bytes and return a path/URL for them"""
        raise NotImplementedError


class LocalLabelStorage(LabelStorage):
    """Writes labels under LABEL_STORAGE_PATH; PDFs must parse"""

    def __init__(self, root: str = None):
        self.root = root or settings.LABEL_STORAGE_PATH

    def store(self, filename: str, content: bytes) -> str:
        if not content:
            raise ValueError(f"Empty label {filename}")
        if filename.lower().endswith(".pdf"):
            try:
                pages = len(PdfReader(io.BytesIO(content)).pages)
            except PdfReadError as e:
                raise ValueError(f"Label {filename} is not a readable PDF: {e}") from e
            logger.info(f"Storing {pages}-page label {filename}")

        os.makedirs(self.root, exist_ok=True)
        path = os.path.join(self.root, os.path.basename(filename))
        with open(path, "wb") as f:
            f.write(content)
        return path


# ========== Lifecycle ==========

class ReturnLifecycle:
    """
    Staff and channel-driven transitions. Guards run before any mutation;
    an illegal action raises InvalidTransition and leaves the row untouched.
    """

    def __init__(
        self,
        db: Session,
        clock: Clock = None,
        audit: AuditSink = None,
        label_storage: LabelStorage = None,
        status_pusher: Optional[StatusPusher] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.audit = audit or LoggingAuditSink()
        self.label_storage = label_storage or LocalLabelStorage()
        self.status_pusher = status_pusher

    # ========== Staff Actions ==========

    def approve(self, order_return: OrderReturn, actor: str, note: Optional[str] = None) -> OrderReturn:
        def mutate():
            order_return.approved_by = actor
            if note:
                order_return.internal_note = note

        self._transition(order_return, "approve", actor, mutate)
        self._push(order_return, "approve")
        return order_return

    def generate_label(
        self,
        order_return: OrderReturn,
        actor: str,
        content: bytes,
        filename: str,
        tracking_number: Optional[str] = None,
        carrier: Optional[str] = None,
    ) -> OrderReturn:
        def mutate():
            order_return.return_label_path = self.label_storage.store(filename, content)
            if tracking_number:
                order_return.return_tracking_number = tracking_number
            if carrier:
                order_return.return_shipping_carrier = carrier

        return self._transition(
            order_return, "generate_label", actor, mutate,
            {"tracking_number": tracking_number, "carrier": carrier},
        )

    def mark_in_transit(self, order_return: OrderReturn, actor: str, tracking_number: Optional[str] = None) -> OrderReturn:
        def mutate():
            if tracking_number:
                order_return.return_tracking_number = tracking_number

        return self._transition(order_return, "mark_in_transit", actor, mutate)

    def mark_received(self, order_return: OrderReturn, actor: str) -> OrderReturn:
        return self._transition(order_return, "mark_received", actor)

    def start_inspection(self, order_return: OrderReturn, actor: str) -> OrderReturn:
        return self._transition(order_return, "start_inspection", actor)

    def complete(
        self,
        order_return: OrderReturn,
        actor: str,
        note: Optional[str] = None,
        conditions: Optional[Dict[Any, str]] = None,
    ) -> OrderReturn:
        """conditions: {return_item_id: "good" | "damaged"}"""
        def mutate():
            order_return.stamp("inspected_at", self.clock.now())
            order_return.completed_by = actor
            if note:
                order_return.internal_note = note
            for item in order_return.items:
                condition = (conditions or {}).get(item.id) or (conditions or {}).get(str(item.id))
                if condition:
                    item.received_condition = condition

        return self._transition(order_return, "complete", actor, mutate)

    def reject(self, order_return: OrderReturn, actor: str, reason: Optional[str] = None) -> OrderReturn:
        def mutate():
            order_return.rejected_by = actor
            order_return.rejection_reason = reason

        self._transition(order_return, "reject", actor, mutate, {"reason": reason})
        self._push(order_return, "reject")
        return order_return

    def cancel(self, order_return: OrderReturn, actor: str, reason: Optional[str] = None) -> OrderReturn:
        def mutate():
            if reason:
                order_return.internal_note = reason

        return self._transition(order_return, "cancel", actor, mutate, {"reason": reason})

    # ========== Channel-driven ==========

    def apply_channel_status(
        self,
        order_return: OrderReturn,
        status: str,
        at=None,
        source: Optional[str] = None,
    ) -> bool:
        """
        Move to a channel-reported status when it is ahead of the current one,
        or a side exit from an open state. Returns False when ignored.
        """
        current = order_return.status
        if status == current:
            return False
        if current in FINAL_STATES:
            logger.info(f"Return {order_return.return_number} is {current}; ignoring channel status {status}")
            return False

        side_exit = status in (S.REJECTED.value, S.CANCELLED.value)
        if not side_exit:
            if status not in RANK:
                logger.warning(f"Unknown return status {status!r} for {order_return.return_number}")
                return False
            if current is not None and RANK[status] <= RANK.get(current, -1):
                logger.info(f"Return {order_return.return_number} already at {current}; not moving back to {status}")
                return False

        order_return.status = status
        if status in STATUS_TIMESTAMPS:
            order_return.stamp(STATUS_TIMESTAMPS[status], at or self.clock.now())
        self.audit.record(
            "order_return", order_return.id, "return_status_synced",
            {"previous_status": current, "new_status": status, "source": source},
            SYSTEM_ACTOR,
        )
        return True

    # ========== Internals ==========

    def _transition(
        self,
        order_return: OrderReturn,
        action: str,
        actor: str,
        mutate: Callable[[], None] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> OrderReturn:
        if not actor:
            raise MissingActor(action)

        allowed, target = TRANSITIONS[action]
        previous = order_return.status
        if previous not in allowed:
            logger.info(f"Rejected {action} on return {order_return.return_number} in status {previous}")
            raise InvalidTransition(order_return.id, action, previous)

        try:
            if mutate is not None:
                mutate()
            order_return.status = target
            order_return.stamp(STATUS_TIMESTAMPS[target], self.clock.now())
            self.db.flush()
        except BackofficeError:
            raise
        except Exception as e:
            logger.error(f"{action} failed for return {order_return.return_number}: {e}")
            self.audit.record(
                "order_return", order_return.id, f"{action}_failed",
                {"previous_status": previous, "error": str(e)}, actor,
            )
            raise

        audit_properties = {"previous_status": previous, "new_status": target}
        audit_properties.update({k: v for k, v in (properties or {}).items() if v is not None})
        self.audit.record("order_return", order_return.id, f"return_{action}", audit_properties, actor)
        return order_return

    def _push(self, order_return: OrderReturn, action: str) -> None:
        if self.status_pusher is None:
            return
        try:
            pushed = self.status_pusher(order_return, action)
        except Exception as e:
            logger.error(f"Status push for return {order_return.return_number} raised: {e}")
            pushed = False
            error = str(e)
        else:
            error = None
        if not pushed:
            self.audit.record(
                "order_return", order_return.id, "return_status_push_failed",
                {"action": action, "error": error},
            )
