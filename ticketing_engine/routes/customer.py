# ticketing_engine/routes/customer.py
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ticketing_engine.engine import TicketingEngine, get_engine
from ticketing_engine.models.order import (
    CheckoutRequest,
    CheckoutResponse,
    Order,
    PaymentVerificationRequest,
)
from ticketing_engine.models.pricing import PriceQuote, PricingRequest
from ticketing_engine.models.reservation import Reservation, ReservationRequest, ReservationResponse
from ticketing_engine.models.ticket import Ticket
from ticketing_engine.models.tier import TierAvailability
from ticketing_engine.utils.auth_utils import get_current_user
from ticketing_engine.utils.pricing import ensure_utc

router = APIRouter()


def to_response(reservation: Reservation, engine: TicketingEngine) -> ReservationResponse:
    remaining = (ensure_utc(reservation.expires_at) - engine.clock()).total_seconds()
    return ReservationResponse(
        reservation_id=reservation.id,
        event_id=reservation.event_id,
        status=reservation.status,
        items=reservation.items,
        expires_at=reservation.expires_at,
        expires_in_seconds=max(0, int(remaining)),
    )


@router.post("/reservations", response_model=ReservationResponse)
async def create_reservation(request: ReservationRequest, user=Depends(get_current_user),
                             engine: TicketingEngine = Depends(get_engine)):
    """Hold tickets for the checkout window."""
    reservation = await engine.reservations.reserve(
        request.event_id,
        request.items,
        customer_id=user["id"],
        device_id=request.device_id,
        reservation_id=request.reservation_id,
    )
    return to_response(reservation, engine)


@router.get("/reservations/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(reservation_id: str, user=Depends(get_current_user),
                          engine: TicketingEngine = Depends(get_engine)):
    reservation = await engine.reservations.get(reservation_id)
    if reservation.customer_id != user["id"]:
        raise HTTPException(status_code=403, detail="Reservation belongs to another customer")
    return to_response(reservation, engine)


@router.delete("/reservations/{reservation_id}", response_model=ReservationResponse)
async def cancel_reservation(reservation_id: str, user=Depends(get_current_user),
                             engine: TicketingEngine = Depends(get_engine)):
    reservation = await engine.reservations.cancel(reservation_id, user["id"])
    return to_response(reservation, engine)


@router.post("/pricing", response_model=PriceQuote)
async def get_pricing(request: PricingRequest, user=Depends(get_current_user),
                      engine: TicketingEngine = Depends(get_engine)):
    """Price a basket or an existing reservation. Invalid codes come back as promo_error."""
    event_id, items = request.event_id, request.items
    if request.reservation_id:
        reservation = await engine.reservations.get(request.reservation_id)
        if reservation.customer_id != user["id"]:
            raise HTTPException(status_code=403, detail="Reservation belongs to another customer")
        event_id, items = reservation.event_id, reservation.items
    if not event_id or not items:
        raise HTTPException(status_code=400, detail="event_id and items, or reservation_id, are required")

    return await engine.pricing.quote(
        event_id,
        items,
        promo_code=request.promo_code,
        referral_code=request.referral_code,
        user_id=user["id"],
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(request: CheckoutRequest, user=Depends(get_current_user),
                   engine: TicketingEngine = Depends(get_engine)):
    return await engine.checkout.initiate_checkout(
        request.reservation_id,
        caller_id=user["id"],
        buyer=request.buyer_details,
        promo_code=request.promo_code,
        referral_code=request.referral_code,
        client_total=request.client_total,
    )


@router.patch("/payments")
async def verify_payment(request: PaymentVerificationRequest, user=Depends(get_current_user),
                         engine: TicketingEngine = Depends(get_engine)):
    order = await engine.checkout.verify_payment(
        request.order_id, request.gateway_signature_payload, caller_id=user["id"]
    )
    return {"order": order.model_dump(mode="json")}


@router.get("/orders/{order_id}", response_model=Order)
async def get_order(order_id: str, user=Depends(get_current_user),
                    engine: TicketingEngine = Depends(get_engine)):
    return await engine.checkout.get_order(order_id, caller_id=user["id"])


@router.get("/tickets", response_model=List[Ticket])
async def my_tickets(user=Depends(get_current_user), engine: TicketingEngine = Depends(get_engine)):
    return await engine.tickets.list_for_owner(user["id"])


@router.get("/event-tiers/{event_id}", response_model=List[TierAvailability])
async def get_event_tiers(event_id: str, user=Depends(get_current_user),
                          engine: TicketingEngine = Depends(get_engine)):
    return await engine.ledger.list_tiers(event_id)
