# ticketing_engine/models/ticket.py
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class TicketStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    CANCELLED = "cancelled"


class CustodyChange(BaseModel):
    from_user_id: str
    to_user_id: str
    via: str  # "share_claim", "share_reclaim" or "transfer"
    at: datetime


class Ticket(BaseModel):
    """A single issued admission. Ownership moves through sharing or transfer."""

    id: str
    order_id: str
    event_id: str
    tier_id: str
    owner_id: str
    original_owner_id: str
    status: TicketStatus = TicketStatus.ACTIVE
    bundle_id: Optional[str] = None
    pending_transfer_id: Optional[str] = None
    qr_payload: str
    history: List[CustodyChange] = []
    issued_at: datetime
    scanned_at: Optional[datetime] = None
    scanned_by: Optional[str] = None
    version: int = 0

    @property
    def is_free_to_move(self) -> bool:
        return (
            self.status == TicketStatus.ACTIVE
            and self.bundle_id is None
            and self.pending_transfer_id is None
        )


class TicketScanRequest(BaseModel):
    qr_payload: str  # "{ticket_id}:{signature}" as printed on the ticket

