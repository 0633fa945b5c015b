import asyncio
from decimal import Decimal

import pytest

from ticketing_engine.database import RESERVATIONS
from ticketing_engine.errors import (
    InsufficientInventory,
    InvalidQuantity,
    NotOwner,
    ReservationAlreadyConsumed,
    ReservationExpired,
    ReservationNotFound,
    StoreContention,
    TierNotFound,
)
from ticketing_engine.models.reservation import ReservationItem, ReservationStatus
from ticketing_engine.models.tier import TierCreate

from conftest import EVENT_ID


def items(**quantities):
    return [ReservationItem(tier_id=tier_id, quantity=qty) for tier_id, qty in quantities.items()]


class TestReserve:
    async def test_reserve_holds_inventory(self, seeded, clock):
        reservation = await seeded.reservations.reserve(EVENT_ID, items(general=2, vip=1), customer_id="u1")
        assert reservation.status == ReservationStatus.ACTIVE
        assert reservation.expires_at == clock.now + seeded.reservations.hold_duration
        assert (await seeded.ledger.get_tier(EVENT_ID, "general")).held == 2
        assert (await seeded.ledger.get_tier(EVENT_ID, "vip")).held == 1

    async def test_failed_item_rolls_back_earlier_holds(self, seeded):
        await seeded.reservations.reserve(EVENT_ID, items(vip=2), customer_id="u0")
        with pytest.raises(InsufficientInventory):
            await seeded.reservations.reserve(EVENT_ID, items(general=2, vip=1), customer_id="u1")
        assert (await seeded.ledger.get_tier(EVENT_ID, "general")).held == 0

    async def test_unknown_tier(self, seeded):
        with pytest.raises(TierNotFound):
            await seeded.reservations.reserve(EVENT_ID, items(balcony=1), customer_id="u1")

    async def test_quantity_limits(self, seeded):
        with pytest.raises(InvalidQuantity):
            await seeded.reservations.reserve(EVENT_ID, items(general=11), customer_id="u1")

    async def test_same_reservation_id_is_idempotent(self, seeded):
        first = await seeded.reservations.reserve(EVENT_ID, items(general=2), customer_id="u1", reservation_id="r-1")
        again = await seeded.reservations.reserve(EVENT_ID, items(general=2), customer_id="u1", reservation_id="r-1")
        assert again.id == first.id
        assert (await seeded.ledger.get_tier(EVENT_ID, "general")).held == 2

    async def test_reservation_id_of_another_customer(self, seeded):
        await seeded.reservations.reserve(EVENT_ID, items(general=1), customer_id="u1", reservation_id="r-1")
        with pytest.raises(NotOwner):
            await seeded.reservations.reserve(EVENT_ID, items(general=1), customer_id="u2", reservation_id="r-1")


class TestConcurrentReserve:
    async def test_last_ticket_goes_to_one_buyer(self, seeded):
        results = await asyncio.gather(
            seeded.reservations.reserve(EVENT_ID, items(vip=2), customer_id="u1"),
            seeded.reservations.reserve(EVENT_ID, items(vip=2), customer_id="u2"),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, InsufficientInventory)]
        assert len(winners) == 1 and len(losers) == 1
        tier = await seeded.ledger.get_tier(EVENT_ID, "vip")
        assert tier.held == 2

    async def test_many_buyers_never_exceed_capacity(self, seeded):
        results = await asyncio.gather(
            *(seeded.reservations.reserve(EVENT_ID, items(general=1), customer_id=f"u{i}") for i in range(25)),
            return_exceptions=True,
        )
        assert sum(not isinstance(r, Exception) for r in results) == 10
        tier = await seeded.ledger.get_tier(EVENT_ID, "general")
        assert tier.held + tier.sold <= tier.capacity


class TestExpiry:
    async def test_get_expires_lazily_and_releases(self, seeded, clock):
        reservation = await seeded.reservations.reserve(EVENT_ID, items(general=3), customer_id="u1")
        clock.advance(minutes=10)
        expired = await seeded.reservations.get(reservation.id)
        assert expired.status == ReservationStatus.EXPIRED
        assert (await seeded.ledger.get_tier(EVENT_ID, "general")).held == 0

    async def test_still_active_just_before_ttl(self, seeded, clock):
        reservation = await seeded.reservations.reserve(EVENT_ID, items(general=1), customer_id="u1")
        clock.advance(minutes=9, seconds=59)
        assert (await seeded.reservations.get(reservation.id)).status == ReservationStatus.ACTIVE

    async def test_consume_after_ttl_fails(self, seeded, clock):
        reservation = await seeded.reservations.reserve(EVENT_ID, items(general=1), customer_id="u1")
        clock.advance(minutes=11)
        with pytest.raises(ReservationExpired):
            await seeded.reservations.consume(reservation.id, "ORD-x")
        tier = await seeded.ledger.get_tier(EVENT_ID, "general")
        assert (tier.held, tier.sold) == (0, 0)

    async def test_sweeper_releases_once(self, seeded, clock):
        await seeded.reservations.reserve(EVENT_ID, items(general=2), customer_id="u1")
        await seeded.reservations.reserve(EVENT_ID, items(vip=1), customer_id="u2")
        clock.advance(minutes=15)
        assert await seeded.reservations.sweep_expired() == 2
        assert await seeded.reservations.sweep_expired() == 0
        assert (await seeded.ledger.get_tier(EVENT_ID, "general")).held == 0
        assert (await seeded.ledger.get_tier(EVENT_ID, "vip")).held == 0

    async def test_sweeper_and_lazy_expiry_race(self, seeded, clock):
        reservation = await seeded.reservations.reserve(EVENT_ID, items(general=4), customer_id="u1")
        await seeded.ledger.try_hold(EVENT_ID, "general", 1)
        clock.advance(minutes=15)
        await asyncio.gather(seeded.reservations.sweep_expired(), seeded.reservations.get(reservation.id))
        assert (await seeded.ledger.get_tier(EVENT_ID, "general")).held == 1


class TestConsume:
    async def test_consume_commits_inventory(self, seeded):
        reservation = await seeded.reservations.reserve(EVENT_ID, items(general=2), customer_id="u1")
        consumed = await seeded.reservations.consume(reservation.id, "ORD-1")
        assert consumed.status == ReservationStatus.CONSUMED
        tier = await seeded.ledger.get_tier(EVENT_ID, "general")
        assert (tier.held, tier.sold) == (0, 2)

    async def test_double_consume(self, seeded):
        reservation = await seeded.reservations.reserve(EVENT_ID, items(general=2), customer_id="u1")
        await seeded.reservations.consume(reservation.id, "ORD-1")
        for order_id in ("ORD-1", "ORD-2"):
            with pytest.raises(ReservationAlreadyConsumed):
                await seeded.reservations.consume(reservation.id, order_id)
        assert (await seeded.ledger.get_tier(EVENT_ID, "general")).sold == 2

    async def test_concurrent_consume_commits_once(self, seeded):
        reservation = await seeded.reservations.reserve(EVENT_ID, items(general=3), customer_id="u1")
        await asyncio.gather(
            *(seeded.reservations.consume(reservation.id, "ORD-1") for _ in range(5)),
            return_exceptions=True,
        )
        tier = await seeded.ledger.get_tier(EVENT_ID, "general")
        assert (tier.held, tier.sold) == (0, 3)

    async def test_failed_commit_is_finished_for_same_order(self, seeded, monkeypatch):
        reservation = await seeded.reservations.reserve(EVENT_ID, items(general=2, vip=1), customer_id="u1")
        real_commit = seeded.ledger.commit
        calls = []

        async def flaky_commit(event_id, tier_id, quantity):
            calls.append(tier_id)
            if tier_id == "vip" and calls.count("vip") == 1:
                raise StoreContention()
            await real_commit(event_id, tier_id, quantity)

        monkeypatch.setattr(seeded.ledger, "commit", flaky_commit)
        with pytest.raises(StoreContention):
            await seeded.reservations.consume(reservation.id, "ORD-1")
        vip = await seeded.ledger.get_tier(EVENT_ID, "vip")
        assert (vip.held, vip.sold) == (1, 0)

        with pytest.raises(ReservationAlreadyConsumed):
            await seeded.reservations.complete_consume(reservation.id, "ORD-2")
        done = await seeded.reservations.complete_consume(reservation.id, "ORD-1")
        assert sorted(done.committed_tier_ids) == ["general", "vip"]
        await seeded.reservations.complete_consume(reservation.id, "ORD-1")

        assert calls == ["general", "vip", "vip"]
        general = await seeded.ledger.get_tier(EVENT_ID, "general")
        vip = await seeded.ledger.get_tier(EVENT_ID, "vip")
        assert (general.held, general.sold) == (0, 2)
        assert (vip.held, vip.sold) == (0, 1)


class TestCancel:
    async def test_cancel_releases(self, seeded):
        reservation = await seeded.reservations.reserve(EVENT_ID, items(vip=2), customer_id="u1")
        cancelled = await seeded.reservations.cancel(reservation.id, "u1")
        assert cancelled.status == ReservationStatus.CANCELLED
        assert (await seeded.ledger.get_tier(EVENT_ID, "vip")).held == 0
        again = await seeded.reservations.cancel(reservation.id, "u1")
        assert again.status == ReservationStatus.CANCELLED
        assert (await seeded.ledger.get_tier(EVENT_ID, "vip")).held == 0

    async def test_only_owner_cancels(self, seeded):
        reservation = await seeded.reservations.reserve(EVENT_ID, items(vip=1), customer_id="u1")
        with pytest.raises(NotOwner):
            await seeded.reservations.cancel(reservation.id, "u2")

    async def test_unknown_reservation(self, seeded):
        with pytest.raises(ReservationNotFound):
            await seeded.reservations.get("missing")


class TestLapsedHolds:
    async def test_expired_hold_frees_sold_out_tier_for_next_buyer(self, seeded, clock):
        await seeded.ledger.create_tier(EVENT_ID, TierCreate(tier_id="solo", name="Solo", price=Decimal("500"), capacity=1))
        first = await seeded.reservations.reserve(EVENT_ID, items(solo=1), customer_id="u1")
        with pytest.raises(InsufficientInventory):
            await seeded.reservations.reserve(EVENT_ID, items(solo=1), customer_id="u2")

        clock.advance(minutes=11)
        second = await seeded.reservations.reserve(EVENT_ID, items(solo=1), customer_id="u2")
        assert second.status == ReservationStatus.ACTIVE
        assert (await seeded.store.read(RESERVATIONS, first.id))["status"] == "expired"
        assert (await seeded.ledger.get_tier(EVENT_ID, "solo")).held == 1

    async def test_racing_insert_for_other_customer(self, seeded, monkeypatch):
        await seeded.reservations.reserve(EVENT_ID, items(general=1), customer_id="u1", reservation_id="r-1")
        real_load = seeded.reservations._load
        loads = []

        async def load_missing_once(reservation_id):
            loads.append(reservation_id)
            return None if len(loads) == 1 else await real_load(reservation_id)

        monkeypatch.setattr(seeded.reservations, "_load", load_missing_once)
        with pytest.raises(NotOwner):
            await seeded.reservations.reserve(EVENT_ID, items(general=1), customer_id="u2", reservation_id="r-1")
        assert (await seeded.ledger.get_tier(EVENT_ID, "general")).held == 1
