# ticketing_engine/models/tier.py
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class ScheduledPrice(BaseModel):
    name: str  # e.g. "Early bird"
    price: Decimal = Field(ge=0)
    starts_at: datetime
    ends_at: datetime


class TierBase(BaseModel):
    tier_id: str
    name: str
    price: Decimal = Field(ge=0)
    capacity: int = Field(ge=0)
    min_per_order: int = Field(default=1, ge=1)
    max_per_order: int = Field(default=10, ge=1)
    sales_end: Optional[datetime] = None
    scheduled_prices: List[ScheduledPrice] = []

    @model_validator(mode="after")
    def check_order_limits(self):
        if self.min_per_order > self.max_per_order:
            raise ValueError("min_per_order cannot exceed max_per_order")
        return self


class TierCreate(TierBase):
    pass


class TierCounter(TierBase):
    """Per-event, per-tier inventory counters. held + sold never exceeds capacity."""

    id: str
    event_id: str
    currency: str = "INR"
    held: int = 0
    sold: int = 0
    version: int = 0

    @property
    def available(self) -> int:
        return self.capacity - self.held - self.sold


class TierAvailability(BaseModel):
    tier_id: str
    name: str
    price: Decimal
    capacity: int
    held: int
    sold: int
    available: int


def tier_doc_id(event_id: str, tier_id: str) -> str:
    return f"{event_id}:{tier_id}"
