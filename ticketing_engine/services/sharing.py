# ticketing_engine/services/sharing.py
"""
Share bundles: a buyer splits part of a confirmed order into single-ticket
slots, each with its own claim link.

A slot is claimed by a conditional write that only succeeds while
``claimed_by_user_id`` is still empty, so concurrent claimers get exactly one
winner. Expiry blocks new claims but never undoes claimed slots.
"""
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ticketing_engine.database import CLAIM_TOKENS, ORDERS, SHARE_BUNDLES, TICKETS
from ticketing_engine.errors import (
    AlreadyClaimed,
    BundleExpired,
    BundleNotFound,
    InvalidClaim,
    NotOwner,
    OrderNotFound,
    OrderNotConfirmed,
    ShareLimitExceeded,
)
from ticketing_engine.models.order import Order, OrderStatus
from ticketing_engine.models.share import (
    BundlePreview,
    ClaimToken,
    ShareBundle,
    ShareSlot,
    TicketAssignment,
)
from ticketing_engine.models.ticket import Ticket
from ticketing_engine.services.inventory import utcnow
from ticketing_engine.services.tickets import TicketBook
from ticketing_engine.store import ConditionalStore
from ticketing_engine.utils.pricing import ensure_utc

logger = logging.getLogger(__name__)


class ShareBundleManager:
    def __init__(self, store: ConditionalStore, tickets: TicketBook, ttl_hours: int = 24 * 7,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.tickets = tickets
        self.ttl = timedelta(hours=ttl_hours)
        self.clock = clock

    async def create_bundle(self, order_id: str, tier_id: str, quantity: int, caller_id: str) -> ShareBundle:
        logger.info("Creating share bundle. order_id=%s tier_id=%s user=%s", order_id, tier_id, caller_id)
        doc = await self.store.read(ORDERS, order_id)
        if doc is None:
            raise OrderNotFound()
        order = Order.model_validate(doc)
        if order.user_id != caller_id:
            logger.warning("Unauthorized share attempt on order %s by %s", order_id, caller_id)
            raise NotOwner("Only the order holder can share its tickets")
        if order.status != OrderStatus.CONFIRMED:
            raise OrderNotConfirmed("Only confirmed orders can be shared")

        candidates = [
            t for t in await self.tickets.list_for_order(order_id)
            if t.tier_id == tier_id and t.owner_id == caller_id and t.is_free_to_move
        ]
        if quantity > len(candidates):
            raise ShareLimitExceeded(
                f"Cannot share {quantity} tickets. Only {len(candidates)} available.",
                available=len(candidates),
            )

        bundle_id = str(uuid.uuid4())
        marked: List[str] = []
        for ticket in candidates:
            if len(marked) == quantity:
                break
            if await self._mark_bundled(ticket.id, caller_id, bundle_id):
                marked.append(ticket.id)
        if len(marked) < quantity:
            for ticket_id in marked:
                await self._unmark_bundled(ticket_id, bundle_id)
            raise ShareLimitExceeded(
                f"Cannot share {quantity} tickets. Only {len(marked)} available.",
                available=len(marked),
            )

        now = self.clock()
        bundle = ShareBundle(
            id=bundle_id,
            order_id=order_id,
            event_id=order.event_id,
            tier_id=tier_id,
            owner_id=caller_id,
            total_slots=quantity,
            slots=[
                ShareSlot(index=index, ticket_id=ticket_id, claim_token=secrets.token_hex(16))
                for index, ticket_id in enumerate(marked)
            ],
            created_at=now,
            expires_at=now + self.ttl,
        )
        stored = await self.store.insert(SHARE_BUNDLES, bundle.model_dump(mode="json"))
        for slot in bundle.slots:
            token = ClaimToken(id=slot.claim_token, bundle_id=bundle_id, slot_index=slot.index)
            await self.store.insert(CLAIM_TOKENS, token.model_dump(mode="json"))
        logger.info("Share bundle %s created with %d slots", bundle_id, quantity)
        return ShareBundle.model_validate(stored)

    async def get_bundle(self, bundle_id: str) -> ShareBundle:
        doc = await self.store.read(SHARE_BUNDLES, bundle_id)
        if doc is None:
            raise BundleNotFound()
        return ShareBundle.model_validate(doc)

    async def list_for_order(self, order_id: str, caller_id: str) -> List[ShareBundle]:
        docs = await self.store.find(SHARE_BUNDLES, {"order_id": order_id})
        bundles = [ShareBundle.model_validate(doc) for doc in docs]
        return [b for b in bundles if b.owner_id == caller_id]

    async def preview(self, token: str) -> BundlePreview:
        claim_token = await self._resolve(token)
        bundle = await self.get_bundle(claim_token.bundle_id)
        slot = bundle.slots[claim_token.slot_index]
        return BundlePreview(
            bundle_id=bundle.id,
            event_id=bundle.event_id,
            tier_id=bundle.tier_id,
            slot_index=slot.index,
            slot_claimed=slot.claimed_by_user_id is not None,
            slot_reclaimed=slot.reclaimed,
            remaining_slots=bundle.remaining_slots,
            total_slots=bundle.total_slots,
            expires_at=bundle.expires_at,
            expired=self._is_expired(bundle),
        )

    async def claim(self, token: str, user_id: str) -> TicketAssignment:
        """Claim the slot behind ``token``. Repeating a won claim returns the same assignment."""
        claim_token = await self._resolve(token)
        index = claim_token.slot_index
        now = self.clock()
        already_mine = False

        def take_slot(doc):
            nonlocal already_mine
            bundle = ShareBundle.model_validate(doc)
            slot = bundle.slots[index]
            already_mine = slot.claimed_by_user_id == user_id
            if already_mine:
                return None
            if slot.reclaimed:
                raise BundleNotFound("This share link was withdrawn by the owner")
            if slot.claimed_by_user_id is not None:
                raise AlreadyClaimed()
            if user_id == bundle.owner_id:
                raise InvalidClaim("You cannot claim your own ticket")
            if self._is_expired(bundle, now):
                raise BundleExpired()
            if any(s.claimed_by_user_id == user_id for s in bundle.slots):
                raise AlreadyClaimed("You already claimed a ticket from this bundle")
            doc["slots"][index].update(claimed_by_user_id=user_id, claimed_at=now.isoformat())
            return doc

        doc = await self.store.mutate(SHARE_BUNDLES, claim_token.bundle_id, take_slot)
        if doc is None:
            raise BundleNotFound()
        bundle = ShareBundle.model_validate(doc)
        slot = bundle.slots[index]

        await self._hand_over(slot.ticket_id, bundle, user_id)
        if not already_mine:
            logger.info("Slot %d of bundle %s claimed by %s", index, bundle.id, user_id)
        return TicketAssignment(
            bundle_id=bundle.id,
            slot_index=index,
            ticket_id=slot.ticket_id,
            event_id=bundle.event_id,
            redeemer_id=user_id,
            original_purchaser_id=bundle.owner_id,
            claimed_at=slot.claimed_at,
            already_claimed=already_mine,
        )

    async def reclaim(self, bundle_id: str, slot_index: int, caller_id: str) -> ShareBundle:
        """Withdraw an unclaimed slot; its ticket goes back to the owner's free tickets."""
        bundle = await self.get_bundle(bundle_id)
        if bundle.owner_id != caller_id:
            raise NotOwner("Only the bundle owner can reclaim slots")
        if not 0 <= slot_index < len(bundle.slots):
            raise BundleNotFound(f"Slot {slot_index} does not exist")

        def withdraw(doc):
            slot = doc["slots"][slot_index]
            if slot["reclaimed"]:
                return None
            if slot["claimed_by_user_id"] is not None:
                raise AlreadyClaimed("Claimed slots cannot be reclaimed")
            slot["reclaimed"] = True
            return doc

        bundle = ShareBundle.model_validate(await self.store.mutate(SHARE_BUNDLES, bundle_id, withdraw))
        await self._unmark_bundled(bundle.slots[slot_index].ticket_id, bundle_id)
        logger.info("Slot %d of bundle %s reclaimed by owner", slot_index, bundle_id)
        return bundle

    async def _resolve(self, token: str) -> ClaimToken:
        doc = await self.store.read(CLAIM_TOKENS, token)
        if doc is None:
            raise BundleNotFound()
        return ClaimToken.model_validate(doc)

    def _is_expired(self, bundle: ShareBundle, now: Optional[datetime] = None) -> bool:
        return ensure_utc(now or self.clock()) > ensure_utc(bundle.expires_at)

    async def _mark_bundled(self, ticket_id: str, owner_id: str, bundle_id: str) -> bool:
        def mark(doc):
            ticket = Ticket.model_validate(doc)
            if ticket.owner_id != owner_id or not ticket.is_free_to_move:
                return None
            doc["bundle_id"] = bundle_id
            return doc

        doc = await self.store.mutate(TICKETS, ticket_id, mark)
        return doc is not None and doc.get("bundle_id") == bundle_id

    async def _unmark_bundled(self, ticket_id: str, bundle_id: str) -> None:
        def unmark(doc):
            if doc.get("bundle_id") != bundle_id:
                return None
            doc["bundle_id"] = None
            return doc

        await self.store.mutate(TICKETS, ticket_id, unmark)

    async def _hand_over(self, ticket_id: str, bundle: ShareBundle, user_id: str) -> None:
        def hand_over(doc):
            if doc.get("bundle_id") != bundle.id or doc["owner_id"] != bundle.owner_id:
                return None
            doc["bundle_id"] = None
            return self.tickets.custody_change(doc, user_id, via="share_claim")

        await self.store.mutate(TICKETS, ticket_id, hand_over)
