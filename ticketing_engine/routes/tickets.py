# ticketing_engine/routes/tickets.py
from typing import List

from fastapi import APIRouter, Depends, Query

from ticketing_engine.engine import TicketingEngine, get_engine
from ticketing_engine.models.share import (
    BundlePreview,
    ClaimRequest,
    ReclaimRequest,
    ShareBundle,
    ShareRequest,
    TicketAssignment,
)
from ticketing_engine.models.transfer import (
    Transfer,
    TransferAcceptRequest,
    TransferCancelRequest,
    TransferInitiateRequest,
)
from ticketing_engine.utils.auth_utils import get_current_user

router = APIRouter()


# Share bundles

@router.post("/share", response_model=ShareBundle)
async def create_share(request: ShareRequest, user=Depends(get_current_user),
                       engine: TicketingEngine = Depends(get_engine)):
    """Split tickets of one tier on a confirmed order into claimable slots."""
    return await engine.sharing.create_bundle(request.order_id, request.tier_id, request.quantity, user["id"])


@router.get("/share", response_model=List[ShareBundle])
async def list_shares(order_id: str = Query(...), user=Depends(get_current_user),
                      engine: TicketingEngine = Depends(get_engine)):
    return await engine.sharing.list_for_order(order_id, user["id"])


@router.delete("/share", response_model=ShareBundle)
async def reclaim_share(request: ReclaimRequest, user=Depends(get_current_user),
                        engine: TicketingEngine = Depends(get_engine)):
    return await engine.sharing.reclaim(request.bundle_id, request.slot_index, user["id"])


@router.get("/claim", response_model=BundlePreview)
async def preview_claim(token: str = Query(...), user=Depends(get_current_user),
                        engine: TicketingEngine = Depends(get_engine)):
    return await engine.sharing.preview(token)


@router.post("/claim", response_model=TicketAssignment)
async def claim_ticket(request: ClaimRequest, user=Depends(get_current_user),
                       engine: TicketingEngine = Depends(get_engine)):
    return await engine.sharing.claim(request.token, user["id"])


# Transfers

@router.post("/transfer", response_model=Transfer)
async def initiate_transfer(request: TransferInitiateRequest, user=Depends(get_current_user),
                            engine: TicketingEngine = Depends(get_engine)):
    return await engine.transfers.initiate(request.ticket_id, user["id"], request.recipient_email)


@router.patch("/transfer", response_model=Transfer)
async def accept_transfer(request: TransferAcceptRequest, user=Depends(get_current_user),
                          engine: TicketingEngine = Depends(get_engine)):
    return await engine.transfers.accept(request.code, user["id"])


@router.delete("/transfer", response_model=Transfer)
async def cancel_transfer(request: TransferCancelRequest, user=Depends(get_current_user),
                          engine: TicketingEngine = Depends(get_engine)):
    return await engine.transfers.cancel(request.transfer_id, user["id"])


@router.get("/transfer", response_model=List[Transfer])
async def list_transfers(incoming: bool = Query(False), user=Depends(get_current_user),
                         engine: TicketingEngine = Depends(get_engine)):
    """Outgoing transfers, or with ?incoming=true the pending ones sent to the caller's email."""
    if incoming:
        if not user.get("email"):
            return []
        return await engine.transfers.list_incoming(user["email"])
    return await engine.transfers.list_for_user(user["id"])
