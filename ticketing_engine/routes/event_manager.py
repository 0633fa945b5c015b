# ticketing_engine/routes/event_manager.py
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ticketing_engine.engine import TicketingEngine, get_engine
from ticketing_engine.models.promo import Promo, PromoCreate, Referral, ReferralCreate
from ticketing_engine.models.ticket import Ticket, TicketScanRequest
from ticketing_engine.models.tier import TierCounter, TierCreate
from ticketing_engine.services.tickets import parse_ticket_payload
from ticketing_engine.utils.auth_utils import manager_required

router = APIRouter()


@router.post("/events/{event_id}/tiers", response_model=TierCounter)
async def create_tier(event_id: str, tier: TierCreate, user=Depends(manager_required),
                      engine: TicketingEngine = Depends(get_engine)):
    """Seed a ticket tier and its inventory counters."""
    try:
        return await engine.ledger.create_tier(event_id, tier)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/create-promo", response_model=Promo)
async def create_promo(promo: PromoCreate, user=Depends(manager_required),
                       engine: TicketingEngine = Depends(get_engine)):
    """Create a new promo code (only for event managers)."""
    try:
        return await engine.pricing.create_promo(promo, created_by=user["id"])
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/create-promo", response_model=List[Promo])
async def get_promos(user=Depends(manager_required), engine: TicketingEngine = Depends(get_engine)):
    """Retrieve all promo codes created by the logged-in manager."""
    return await engine.pricing.list_promos(created_by=user["id"])


@router.post("/create-referral", response_model=Referral)
async def create_referral(referral: ReferralCreate, user=Depends(manager_required),
                          engine: TicketingEngine = Depends(get_engine)):
    try:
        return await engine.pricing.create_referral(referral)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/events/{event_id}/scan", response_model=Ticket)
async def scan_ticket(event_id: str, request: TicketScanRequest, user=Depends(manager_required),
                      engine: TicketingEngine = Depends(get_engine)):
    """Validate a ticket's QR code at the door and mark it used."""
    ticket_id, signature = parse_ticket_payload(request.qr_payload)
    return await engine.tickets.scan(ticket_id, signature, event_id, scanner_id=user["id"])
