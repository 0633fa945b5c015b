# ticketing_engine/services/transfers.py
"""
Formal ticket-to-ticket ownership transfer.

    pending --accept()--> accepted
    pending --cancel()--> cancelled
    pending --TTL elapsed--> expired   (lazily, on accept or when seen again)

A ticket carries at most one pending transfer; ``pending_transfer_id`` on the
ticket is set and cleared with conditional writes.
"""
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ticketing_engine.database import TICKETS, TRANSFERS
from ticketing_engine.errors import (
    AlreadyAccepted,
    InvalidTransfer,
    NotOwner,
    TransferExpired,
    TransferNotFound,
    TransferNotPending,
)
from ticketing_engine.models.ticket import Ticket, TicketStatus
from ticketing_engine.models.transfer import Transfer, TransferStatus
from ticketing_engine.services.inventory import utcnow
from ticketing_engine.services.tickets import TicketBook
from ticketing_engine.store import ConditionalStore
from ticketing_engine.utils.pricing import ensure_utc

logger = logging.getLogger(__name__)

CODE_BYTES = 6


def generate_transfer_code() -> str:
    return secrets.token_hex(CODE_BYTES).upper()


def normalize_email(email: Optional[str]) -> Optional[str]:
    return email.strip().lower() if email else None


class TransferManager:
    def __init__(self, store: ConditionalStore, tickets: TicketBook, ttl_hours: int = 24,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.tickets = tickets
        self.ttl = timedelta(hours=ttl_hours)
        self.clock = clock

    async def initiate(self, ticket_id: str, from_user_id: str, recipient_email: Optional[str] = None) -> Transfer:
        ticket = await self.tickets.get_owned(ticket_id, from_user_id)
        if ticket.status != TicketStatus.ACTIVE:
            raise InvalidTransfer(f"Ticket is {ticket.status.value}")
        if ticket.pending_transfer_id is not None:
            await self._expire_if_stale(ticket.pending_transfer_id)

        now = self.clock()
        transfer = Transfer(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            from_user_id=from_user_id,
            recipient_email=normalize_email(recipient_email),
            code=generate_transfer_code(),
            created_at=now,
            expires_at=now + self.ttl,
        )

        def reserve_ticket(doc):
            current = Ticket.model_validate(doc)
            if current.owner_id != from_user_id:
                raise NotOwner("You do not own this ticket")
            if current.bundle_id is not None:
                raise InvalidTransfer("Ticket is part of a share bundle")
            if current.pending_transfer_id is not None:
                raise InvalidTransfer("Ticket already has a pending transfer")
            if current.status != TicketStatus.ACTIVE:
                raise InvalidTransfer(f"Ticket is {current.status.value}")
            doc["pending_transfer_id"] = transfer.id
            return doc

        await self.store.mutate(TICKETS, ticket_id, reserve_ticket)
        stored = await self.store.insert(TRANSFERS, transfer.model_dump(mode="json"))
        logger.info("Transfer %s initiated for ticket %s by %s", transfer.id, ticket_id, from_user_id)
        return Transfer.model_validate(stored)

    async def get(self, transfer_id: str) -> Transfer:
        doc = await self.store.read(TRANSFERS, transfer_id)
        if doc is None:
            raise TransferNotFound()
        return Transfer.model_validate(doc)

    async def accept(self, code: str, to_user_id: str) -> Transfer:
        transfer = await self._by_code(code.strip().upper())
        if transfer.from_user_id == to_user_id:
            raise InvalidTransfer("You cannot transfer a ticket to yourself")

        now = self.clock()
        outcome = {}

        def take(doc):
            current = Transfer.model_validate(doc)
            outcome["status"] = current.status
            if current.status == TransferStatus.CANCELLED:
                raise TransferNotFound()
            if current.status == TransferStatus.ACCEPTED:
                raise AlreadyAccepted()
            if current.status == TransferStatus.EXPIRED:
                raise TransferExpired()
            if ensure_utc(now) > ensure_utc(current.expires_at):
                doc["status"] = TransferStatus.EXPIRED.value
                outcome["status"] = TransferStatus.EXPIRED
                return doc
            doc.update(status=TransferStatus.ACCEPTED.value, to_user_id=to_user_id,
                       accepted_at=now.isoformat())
            outcome["status"] = TransferStatus.ACCEPTED
            return doc

        try:
            doc = await self.store.mutate(TRANSFERS, transfer.id, take)
        except TransferExpired:
            await self._release_ticket(transfer)
            raise

        if outcome["status"] == TransferStatus.EXPIRED:
            await self._release_ticket(transfer)
            logger.info("Transfer %s expired before acceptance", transfer.id)
            raise TransferExpired()

        accepted = Transfer.model_validate(doc)

        def reassign(ticket_doc):
            if ticket_doc.get("pending_transfer_id") != accepted.id:
                return None
            ticket_doc["pending_transfer_id"] = None
            return self.tickets.custody_change(ticket_doc, to_user_id, via="transfer")

        await self.store.mutate(TICKETS, accepted.ticket_id, reassign)
        logger.info("Transfer %s accepted: ticket %s moved from %s to %s",
                    accepted.id, accepted.ticket_id, accepted.from_user_id, to_user_id)
        return accepted

    async def cancel(self, transfer_id: str, caller_id: str) -> Transfer:
        transfer = await self.get(transfer_id)
        if transfer.from_user_id != caller_id:
            raise NotOwner("Only the sender can cancel a transfer")
        now = self.clock()

        def withdraw(doc):
            status = doc["status"]
            if status == TransferStatus.CANCELLED.value:
                return None
            if status != TransferStatus.PENDING.value:
                raise TransferNotPending(f"Transfer is {status}")
            doc.update(status=TransferStatus.CANCELLED.value, cancelled_at=now.isoformat())
            return doc

        cancelled = Transfer.model_validate(await self.store.mutate(TRANSFERS, transfer_id, withdraw))
        await self._release_ticket(cancelled)
        logger.info("Transfer %s cancelled by %s", transfer_id, caller_id)
        return cancelled

    async def list_for_user(self, user_id: str) -> List[Transfer]:
        docs = await self.store.find(TRANSFERS, {"from_user_id": user_id})
        transfers = [Transfer.model_validate(doc) for doc in docs]
        return sorted(transfers, key=lambda t: t.created_at, reverse=True)

    async def list_incoming(self, email: str) -> List[Transfer]:
        """Pending transfers addressed to ``email``; overdue ones are lapsed, not listed."""
        docs = await self.store.find(TRANSFERS, {
            "recipient_email": normalize_email(email),
            "status": TransferStatus.PENDING.value,
        })
        now = ensure_utc(self.clock())
        incoming = []
        for transfer in map(Transfer.model_validate, docs):
            if now > ensure_utc(transfer.expires_at):
                await self._expire_if_stale(transfer.id)
                continue
            incoming.append(transfer)
        return sorted(incoming, key=lambda t: t.created_at, reverse=True)

    async def _by_code(self, code: str) -> Transfer:
        # Codes are only unique among pending transfers; older ones are kept for the error report
        docs = await self.store.find(TRANSFERS, {"code": code, "status": TransferStatus.PENDING.value}, limit=1)
        if not docs:
            docs = await self.store.find(TRANSFERS, {"code": code})
        if not docs:
            raise TransferNotFound()
        return max(map(Transfer.model_validate, docs), key=lambda t: t.created_at)

    async def _expire_if_stale(self, transfer_id: str) -> None:
        """Lapse a pending transfer past its TTL so the ticket can move again."""
        now = self.clock()

        def lapse(doc):
            if doc["status"] != TransferStatus.PENDING.value:
                return None
            if ensure_utc(now) <= ensure_utc(Transfer.model_validate(doc).expires_at):
                return None
            doc["status"] = TransferStatus.EXPIRED.value
            return doc

        doc = await self.store.mutate(TRANSFERS, transfer_id, lapse)
        if doc is not None and doc["status"] == TransferStatus.EXPIRED.value:
            await self._release_ticket(Transfer.model_validate(doc))

    async def _release_ticket(self, transfer: Transfer) -> None:
        def clear(doc):
            if doc.get("pending_transfer_id") != transfer.id:
                return None
            doc["pending_transfer_id"] = None
            return doc

        await self.store.mutate(TICKETS, transfer.ticket_id, clear)
