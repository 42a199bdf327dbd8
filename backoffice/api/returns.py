"""
Return API Endpoints - Staff actions on the return lifecycle
"""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
import logging

from backoffice.core.audit import DatabaseAuditSink
from backoffice.core.database import get_db
from backoffice.core.exceptions import PreconditionError
from backoffice.models import OrderReturn
from backoffice.schemas.returns import ReturnActionRequest, ReturnResponse
from backoffice.services.return_lifecycle import ReturnLifecycle

logger = logging.getLogger(__name__)

returns_router = APIRouter(prefix="/returns", tags=["returns"])

ACTIONS = {
    "approve": lambda lc, r, body: lc.approve(r, body.actor, body.note),
    "reject": lambda lc, r, body: lc.reject(r, body.actor, body.reason),
    "cancel": lambda lc, r, body: lc.cancel(r, body.actor, body.reason),
    "mark-in-transit": lambda lc, r, body: lc.mark_in_transit(r, body.actor, body.tracking_number),
    "mark-received": lambda lc, r, body: lc.mark_received(r, body.actor),
    "start-inspection": lambda lc, r, body: lc.start_inspection(r, body.actor),
    "complete": lambda lc, r, body: lc.complete(r, body.actor, body.note, body.conditions),
}


def get_lifecycle(db: Session = Depends(get_db)) -> ReturnLifecycle:
    return ReturnLifecycle(db, audit=DatabaseAuditSink(db))


def _get_return(db: Session, return_id: UUID) -> OrderReturn:
    order_return = db.get(OrderReturn, return_id)
    if not order_return:
        raise HTTPException(status_code=404, detail="Return not found")
    return order_return


@returns_router.get("/{return_id}", response_model=ReturnResponse)
def get_return(return_id: UUID, db: Session = Depends(get_db)):
    return _get_return(db, return_id)


@returns_router.post("/{return_id}/{action}", response_model=ReturnResponse)
def return_action(
    return_id: UUID,
    action: str,
    body: ReturnActionRequest,
    db: Session = Depends(get_db),
    lifecycle: ReturnLifecycle = Depends(get_lifecycle),
):
    handler = ACTIONS.get(action)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"Unknown action '{action}'")

    order_return = _get_return(db, return_id)
    previous_status = order_return.status
    try:
        handler(lifecycle, order_return, body)
        db.commit()
    except PreconditionError as e:
        db.rollback()
        logger.info(f"Return {return_id} {action} refused: {e}")
        raise HTTPException(status_code=409, detail="This action is not currently valid for this record")
    except Exception as e:
        db.rollback()
        logger.exception(f"Return {return_id} {action} failed")
        DatabaseAuditSink(db).record(
            "order_return", return_id, f"{action.replace('-', '_')}_failed",
            {"previous_status": previous_status, "error": str(e)}, body.actor,
        )
        db.commit()
        raise HTTPException(status_code=500, detail="An unexpected error occurred, it has been logged")

    db.refresh(order_return)
    return order_return
