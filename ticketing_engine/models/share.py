# ticketing_engine/models/share.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ShareSlot(BaseModel):
    index: int
    ticket_id: str
    claim_token: str
    claimed_by_user_id: Optional[str] = None
    claimed_at: Optional[datetime] = None
    reclaimed: bool = False


class ShareBundle(BaseModel):
    id: str
    order_id: str
    event_id: str
    tier_id: str
    owner_id: str
    total_slots: int
    slots: List[ShareSlot]
    created_at: datetime
    expires_at: datetime
    version: int = 0

    @property
    def remaining_slots(self) -> int:
        return sum(1 for s in self.slots if s.claimed_by_user_id is None and not s.reclaimed)


class ClaimToken(BaseModel):
    id: str  # the token itself
    bundle_id: str
    slot_index: int
    version: int = 0


class ShareRequest(BaseModel):
    order_id: str
    tier_id: str
    quantity: int = Field(gt=0)


class ClaimRequest(BaseModel):
    token: str


class ReclaimRequest(BaseModel):
    bundle_id: str
    slot_index: int


class SlotPreview(BaseModel):
    index: int
    claimed: bool
    reclaimed: bool


class BundlePreview(BaseModel):
    bundle_id: str
    event_id: str
    tier_id: str
    slot_index: int
    slot_claimed: bool
    slot_reclaimed: bool
    remaining_slots: int
    total_slots: int
    expires_at: datetime
    expired: bool


class TicketAssignment(BaseModel):
    bundle_id: str
    slot_index: int
    ticket_id: str
    event_id: str
    redeemer_id: str
    original_purchaser_id: str
    claimed_at: datetime
    already_claimed: bool = False
