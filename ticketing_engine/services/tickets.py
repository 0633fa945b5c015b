# ticketing_engine/services/tickets.py
import hashlib
import hmac
import logging
from datetime import datetime
from typing import Callable, List, Tuple

from ticketing_engine.database import TICKETS
from ticketing_engine.errors import InvalidTicket, NotOwner, TicketAlreadyUsed, TicketNotFound
from ticketing_engine.models.order import Order
from ticketing_engine.models.ticket import CustodyChange, Ticket, TicketStatus
from ticketing_engine.services.inventory import utcnow
from ticketing_engine.store import ConditionalStore, DuplicateDocument

logger = logging.getLogger(__name__)


def ticket_signature(ticket_id: str, secret: str) -> str:
    return hmac.new(secret.encode(), ticket_id.encode(), hashlib.sha256).hexdigest()[:16]


def sign_ticket_payload(ticket_id: str, secret: str) -> str:
    return f"{ticket_id}:{ticket_signature(ticket_id, secret)}"


def parse_ticket_payload(qr_payload: str) -> Tuple[str, str]:
    """Split a scanned "{ticket_id}:{signature}" payload."""
    ticket_id, _, signature = qr_payload.strip().rpartition(":")
    if not ticket_id or not signature:
        raise InvalidTicket("Unreadable ticket code")
    return ticket_id, signature


class TicketBook:
    """Issued tickets and their current owners."""

    def __init__(self, store: ConditionalStore, qr_secret: str,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.qr_secret = qr_secret
        self.clock = clock

    async def issue(self, order: Order) -> List[str]:
        """
        Create one ticket per unit on the order. Ticket ids are derived from
        the order id, so issuing twice for the same order is a no-op.
        """
        now = self.clock()
        ticket_ids = []
        for line in order.quote.items:
            for index in range(line.quantity):
                ticket_id = f"{order.id}-{line.tier_id}-{index}"
                ticket = Ticket(
                    id=ticket_id,
                    order_id=order.id,
                    event_id=order.event_id,
                    tier_id=line.tier_id,
                    owner_id=order.user_id,
                    original_owner_id=order.user_id,
                    qr_payload=sign_ticket_payload(ticket_id, self.qr_secret),
                    issued_at=now,
                )
                try:
                    await self.store.insert(TICKETS, ticket.model_dump(mode="json"))
                except DuplicateDocument:
                    pass
                ticket_ids.append(ticket_id)
        logger.info("Issued %d tickets for order %s", len(ticket_ids), order.id)
        return ticket_ids

    async def get(self, ticket_id: str) -> Ticket:
        doc = await self.store.read(TICKETS, ticket_id)
        if doc is None:
            raise TicketNotFound()
        return Ticket.model_validate(doc)

    async def get_owned(self, ticket_id: str, owner_id: str) -> Ticket:
        ticket = await self.get(ticket_id)
        if ticket.owner_id != owner_id:
            raise NotOwner("You do not own this ticket")
        return ticket

    async def list_for_owner(self, owner_id: str) -> List[Ticket]:
        docs = await self.store.find(TICKETS, {"owner_id": owner_id})
        return sorted((Ticket.model_validate(doc) for doc in docs), key=lambda t: t.id)

    async def list_for_order(self, order_id: str) -> List[Ticket]:
        docs = await self.store.find(TICKETS, {"order_id": order_id})
        return sorted((Ticket.model_validate(doc) for doc in docs), key=lambda t: t.id)

    async def scan(self, ticket_id: str, signature: str, event_id: str, scanner_id: str) -> Ticket:
        """
        Admit a ticket at the door: the signature must match, the ticket must
        belong to ``event_id`` and be settled with its owner. The
        ``active -> used`` write is conditional, so a ticket scans once.
        """
        if not hmac.compare_digest(ticket_signature(ticket_id, self.qr_secret).encode(), signature.encode()):
            logger.warning("Scan rejected for ticket %s at event %s: bad signature", ticket_id, event_id)
            raise InvalidTicket("Ticket signature does not match")

        now = self.clock()

        def mark_used(doc):
            ticket = Ticket.model_validate(doc)
            if ticket.event_id != event_id:
                raise InvalidTicket("Ticket is for another event")
            if ticket.status == TicketStatus.USED:
                raise TicketAlreadyUsed(scanned_at=ticket.scanned_at)
            if ticket.status != TicketStatus.ACTIVE:
                raise InvalidTicket(f"Ticket is {ticket.status.value}")
            if ticket.bundle_id is not None or ticket.pending_transfer_id is not None:
                raise InvalidTicket("Ticket is being shared or transferred")
            doc.update(status=TicketStatus.USED.value, scanned_at=now.isoformat(), scanned_by=scanner_id)
            return doc

        doc = await self.store.mutate(TICKETS, ticket_id, mark_used)
        if doc is None:
            raise TicketNotFound()
        logger.info("Ticket %s scanned at event %s by %s", ticket_id, event_id, scanner_id)
        return Ticket.model_validate(doc)

    def custody_change(self, doc: dict, to_user_id: str, via: str) -> dict:
        """Apply an owner change to a raw ticket document (inside a store mutation)."""
        change = CustodyChange(from_user_id=doc["owner_id"], to_user_id=to_user_id,
                               via=via, at=self.clock())
        doc["history"] = doc.get("history", []) + [change.model_dump(mode="json")]
        doc["owner_id"] = to_user_id
        return doc
