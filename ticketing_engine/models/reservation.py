# ticketing_engine/models/reservation.py
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CONSUMED = "consumed"
    CANCELLED = "cancelled"


class ReservationItem(BaseModel):
    tier_id: str
    quantity: int = Field(gt=0)


class ReservationRequest(BaseModel):
    event_id: str
    items: List[ReservationItem]
    device_id: Optional[str] = None
    # Client-generated idempotency key; a retried request returns the same hold
    reservation_id: Optional[str] = None

    @field_validator("items")
    def validate_items(cls, v):
        if not v:
            raise ValueError("at least one item is required")
        tier_ids = [item.tier_id for item in v]
        if len(set(tier_ids)) != len(tier_ids):
            raise ValueError("each tier may appear only once")
        return v


class Reservation(BaseModel):
    id: str
    event_id: str
    customer_id: str
    items: List[ReservationItem]
    status: ReservationStatus = ReservationStatus.ACTIVE
    device_id: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    updated_at: Optional[datetime] = None
    order_id: Optional[str] = None
    # Tiers whose held units have been moved to sold for order_id
    committed_tier_ids: List[str] = []
    version: int = 0


class ReservationResponse(BaseModel):
    reservation_id: str
    event_id: str
    status: ReservationStatus
    items: List[ReservationItem]
    expires_at: datetime
    expires_in_seconds: int
