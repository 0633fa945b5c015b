# ticketing_engine/models/pricing.py
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from ticketing_engine.models.reservation import ReservationItem


class QuoteLine(BaseModel):
    tier_id: str
    name: str
    quantity: int
    unit_price: Decimal
    price_label: Optional[str] = None
    line_total: Decimal


class AppliedDiscount(BaseModel):
    kind: str  # "promo" or "referral"
    code: str
    amount: Decimal
    label: str


class Fees(BaseModel):
    platform: Decimal = Decimal("0.00")
    payment_processing: Decimal = Decimal("0.00")
    tax: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")


class PriceQuote(BaseModel):
    """Server-computed price breakdown. Never trusted when sent back by a client."""

    event_id: str
    currency: str
    items: List[QuoteLine]
    subtotal: Decimal
    discounts: List[AppliedDiscount] = []
    discount_total: Decimal
    fees: Fees
    grand_total: Decimal
    is_free: bool
    promo_error: Optional[str] = None
    referral_error: Optional[str] = None

    @property
    def promo_discount(self) -> Optional[AppliedDiscount]:
        return next((d for d in self.discounts if d.kind == "promo"), None)


class PricingRequest(BaseModel):
    event_id: Optional[str] = None
    items: List[ReservationItem] = []
    promo_code: Optional[str] = None
    referral_code: Optional[str] = None
    # When given, items and event come from the reservation
    reservation_id: Optional[str] = None
