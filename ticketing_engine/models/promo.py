# ticketing_engine/models/promo.py
import re
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


def normalize_code(code: str) -> str:
    return re.sub(r"[^A-Z0-9]", "", code.upper())


class DiscountRule(BaseModel):
    discount_type: str  # "percentage" or "fixed"
    discount_value: Decimal = Field(ge=0)

    @field_validator("discount_type")
    def validate_discount_type(cls, v):
        if v not in ["percentage", "fixed"]:
            raise ValueError("discount_type must be either 'percentage' or 'fixed'")
        return v


class PromoBase(DiscountRule):
    code: str
    starts_at: Optional[datetime] = None
    expiry: Optional[datetime] = None
    max_usage: Optional[int] = None
    max_per_user: Optional[int] = None
    tier_ids: List[str] = []  # empty means every tier
    active: bool = True
    # False means a referral code cannot be applied on top of this promo
    combinable: bool = True

    @field_validator("code")
    def validate_code(cls, v):
        code = normalize_code(v)
        if not code:
            raise ValueError("code must contain letters or digits")
        return code


class PromoCreate(PromoBase):
    event_id: str


class Promo(PromoBase):
    id: str
    event_id: str
    current_usage: int = 0
    created_by: Optional[str] = None
    version: int = 0


class PromoRedemption(BaseModel):
    id: str
    promo_id: str
    order_id: str
    user_id: str
    discount_amount: Decimal
    redeemed_at: datetime


class ReferralBase(DiscountRule):
    code: str
    referrer_id: Optional[str] = None
    active: bool = True

    @field_validator("code")
    def validate_code(cls, v):
        code = normalize_code(v)
        if not code:
            raise ValueError("code must contain letters or digits")
        return code


class ReferralCreate(ReferralBase):
    event_id: str


class Referral(ReferralBase):
    id: str
    event_id: str
    version: int = 0


def code_doc_id(event_id: str, code: str) -> str:
    return f"{event_id}:{normalize_code(code)}"
