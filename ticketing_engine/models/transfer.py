# ticketing_engine/models/transfer.py
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class TransferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Transfer(BaseModel):
    id: str
    ticket_id: str
    from_user_id: str
    to_user_id: Optional[str] = None
    recipient_email: Optional[str] = None
    code: str
    status: TransferStatus = TransferStatus.PENDING
    created_at: datetime
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int = 0


class TransferInitiateRequest(BaseModel):
    ticket_id: str
    recipient_email: Optional[str] = None


class TransferAcceptRequest(BaseModel):
    code: str


class TransferCancelRequest(BaseModel):
    transfer_id: str
