# ticketing_engine/models/order.py
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from ticketing_engine.models.pricing import PriceQuote


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BuyerDetails(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None


class CheckoutRequest(BaseModel):
    reservation_id: str
    buyer_details: BuyerDetails
    promo_code: Optional[str] = None
    referral_code: Optional[str] = None
    # Advisory only; the server always recomputes the total
    client_total: Optional[Decimal] = None


class Order(BaseModel):
    id: str
    reservation_id: str
    user_id: str
    event_id: str
    buyer: BuyerDetails
    status: OrderStatus
    quote: PriceQuote
    tickets: List[str] = []
    promo_code: Optional[str] = None
    referral_code: Optional[str] = None
    gateway_order_id: Optional[str] = None
    payment_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    confirmation_source: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    version: int = 0


class PaymentParams(BaseModel):
    key_id: str
    gateway_order_id: str
    amount: int  # smallest currency unit
    currency: str
    receipt: str


class CheckoutResponse(BaseModel):
    order: Order
    requires_payment: bool
    payment_params: Optional[PaymentParams] = None


class GatewaySignaturePayload(BaseModel):
    gateway_order_id: str
    payment_id: str
    signature: str
    mode: Optional[str] = None


class PaymentVerificationRequest(BaseModel):
    order_id: str
    gateway_signature_payload: GatewaySignaturePayload


def order_id_for(reservation_id: str) -> str:
    return f"ORD-{reservation_id}"
