"""
Return Schemas
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict
from datetime import datetime
from uuid import UUID


class ReturnActionRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    reason: Optional[str] = None
    note: Optional[str] = None
    tracking_number: Optional[str] = None
    # complete: {return_item_id: "good" | "damaged"}
    conditions: Optional[Dict[str, str]] = None


class ReturnResponse(BaseModel):
    id: UUID
    return_number: str
    order_id: UUID
    channel: str
    status: str
    total_refund_amount: Optional[int] = 0
    restocking_fee: Optional[int] = 0
    currency: Optional[str] = None
    return_tracking_number: Optional[str] = None
    approved_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
