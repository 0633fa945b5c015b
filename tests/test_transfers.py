import asyncio

import pytest

from ticketing_engine.errors import (
    AlreadyAccepted,
    InvalidTransfer,
    NotOwner,
    TransferExpired,
    TransferNotFound,
    TransferNotPending,
)
from ticketing_engine.models.transfer import TransferStatus

from conftest import buy


@pytest.fixture
async def ticket(seeded):
    order = await buy(seeded, "alice", quantity=2)
    return await seeded.tickets.get(order.tickets[0])


class TestInitiate:
    async def test_initiate_marks_ticket(self, seeded, ticket):
        transfer = await seeded.transfers.initiate(ticket.id, "alice", "bob@example.com")
        assert transfer.status == TransferStatus.PENDING
        assert len(transfer.code) == 12 and transfer.code == transfer.code.upper()
        assert (await seeded.tickets.get(ticket.id)).pending_transfer_id == transfer.id

    async def test_one_pending_transfer_per_ticket(self, seeded, ticket):
        await seeded.transfers.initiate(ticket.id, "alice")
        with pytest.raises(InvalidTransfer):
            await seeded.transfers.initiate(ticket.id, "alice")

    async def test_only_owner_initiates(self, seeded, ticket):
        with pytest.raises(NotOwner):
            await seeded.transfers.initiate(ticket.id, "mallory")

    async def test_bundled_ticket_cannot_be_transferred(self, seeded, ticket):
        await seeded.sharing.create_bundle(ticket.order_id, "general", 2, "alice")
        with pytest.raises(InvalidTransfer):
            await seeded.transfers.initiate(ticket.id, "alice")

    async def test_stale_pending_transfer_does_not_block(self, seeded, ticket, clock):
        old = await seeded.transfers.initiate(ticket.id, "alice")
        clock.advance(hours=25)
        fresh = await seeded.transfers.initiate(ticket.id, "alice")
        assert (await seeded.transfers.get(old.id)).status == TransferStatus.EXPIRED
        assert (await seeded.tickets.get(ticket.id)).pending_transfer_id == fresh.id


class TestAccept:
    async def test_accept_moves_ownership(self, seeded, ticket):
        transfer = await seeded.transfers.initiate(ticket.id, "alice")
        accepted = await seeded.transfers.accept(transfer.code.lower(), "bob")
        assert accepted.status == TransferStatus.ACCEPTED
        moved = await seeded.tickets.get(ticket.id)
        assert moved.owner_id == "bob"
        assert moved.original_owner_id == "alice"
        assert moved.pending_transfer_id is None
        assert moved.history[-1].via == "transfer"

    async def test_double_accept(self, seeded, ticket):
        transfer = await seeded.transfers.initiate(ticket.id, "alice")
        results = await asyncio.gather(
            seeded.transfers.accept(transfer.code, "bob"),
            seeded.transfers.accept(transfer.code, "carol"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, AlreadyAccepted) for r in results) == 1
        winner = next(r for r in results if not isinstance(r, Exception))
        assert (await seeded.tickets.get(ticket.id)).owner_id == winner.to_user_id

    async def test_self_transfer(self, seeded, ticket):
        transfer = await seeded.transfers.initiate(ticket.id, "alice")
        with pytest.raises(InvalidTransfer):
            await seeded.transfers.accept(transfer.code, "alice")

    async def test_unknown_code(self, seeded, ticket):
        with pytest.raises(TransferNotFound):
            await seeded.transfers.accept("NOSUCHCODE", "bob")

    async def test_expired_code_releases_ticket(self, seeded, ticket, clock):
        transfer = await seeded.transfers.initiate(ticket.id, "alice")
        clock.advance(hours=24, seconds=1)
        with pytest.raises(TransferExpired):
            await seeded.transfers.accept(transfer.code, "bob")
        current = await seeded.tickets.get(ticket.id)
        assert current.owner_id == "alice" and current.pending_transfer_id is None
        with pytest.raises(TransferExpired):
            await seeded.transfers.accept(transfer.code, "bob")

    async def test_new_owner_can_pass_it_on(self, seeded, ticket):
        first = await seeded.transfers.initiate(ticket.id, "alice")
        await seeded.transfers.accept(first.code, "bob")
        second = await seeded.transfers.initiate(ticket.id, "bob")
        await seeded.transfers.accept(second.code, "carol")
        assert [h.to_user_id for h in (await seeded.tickets.get(ticket.id)).history] == ["bob", "carol"]


class TestCancel:
    async def test_cancel_invalidates_code(self, seeded, ticket):
        transfer = await seeded.transfers.initiate(ticket.id, "alice")
        cancelled = await seeded.transfers.cancel(transfer.id, "alice")
        assert cancelled.status == TransferStatus.CANCELLED
        assert (await seeded.tickets.get(ticket.id)).pending_transfer_id is None
        with pytest.raises(TransferNotFound):
            await seeded.transfers.accept(transfer.code, "bob")
        assert (await seeded.transfers.cancel(transfer.id, "alice")).status == TransferStatus.CANCELLED

    async def test_accepted_transfer_cannot_be_cancelled(self, seeded, ticket):
        transfer = await seeded.transfers.initiate(ticket.id, "alice")
        await seeded.transfers.accept(transfer.code, "bob")
        with pytest.raises(TransferNotPending):
            await seeded.transfers.cancel(transfer.id, "alice")

    async def test_only_sender_cancels(self, seeded, ticket):
        transfer = await seeded.transfers.initiate(ticket.id, "alice")
        with pytest.raises(NotOwner):
            await seeded.transfers.cancel(transfer.id, "bob")


class TestListing:
    async def test_list_outgoing(self, seeded, ticket):
        transfer = await seeded.transfers.initiate(ticket.id, "alice")
        assert [t.id for t in await seeded.transfers.list_for_user("alice")] == [transfer.id]
        assert await seeded.transfers.list_for_user("bob") == []

    async def test_incoming_by_recipient_email(self, seeded, ticket, clock):
        transfer = await seeded.transfers.initiate(ticket.id, "alice", " Bob@Example.com ")
        assert transfer.recipient_email == "bob@example.com"
        assert [t.id for t in await seeded.transfers.list_incoming("BOB@example.com")] == [transfer.id]
        assert await seeded.transfers.list_incoming("carol@example.com") == []

        clock.advance(hours=25)
        assert await seeded.transfers.list_incoming("bob@example.com") == []
        assert (await seeded.transfers.get(transfer.id)).status == TransferStatus.EXPIRED
        assert (await seeded.tickets.get(ticket.id)).pending_transfer_id is None


class TestCodeReuse:
    async def test_code_resolves_to_pending_transfer(self, seeded, ticket, monkeypatch):
        monkeypatch.setattr("ticketing_engine.services.transfers.generate_transfer_code", lambda: "C0FFEE000001")
        other = next(t for t in await seeded.tickets.list_for_owner("alice") if t.id != ticket.id)

        first = await seeded.transfers.initiate(ticket.id, "alice")
        await seeded.transfers.accept(first.code, "bob")
        second = await seeded.transfers.initiate(other.id, "alice")
        assert second.code == first.code

        accepted = await seeded.transfers.accept(second.code, "carol")
        assert accepted.id == second.id
        assert (await seeded.tickets.get(other.id)).owner_id == "carol"
        with pytest.raises(AlreadyAccepted):
            await seeded.transfers.accept(second.code, "dave")
