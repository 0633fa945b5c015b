# ticketing_engine/services/reservations.py
"""
Time-boxed inventory holds.

    active --consume()--> consumed
    active --TTL elapsed--> expired     (lazily on read, or by the sweeper)
    active --cancel()--> cancelled

Whichever caller wins the conditional status write out of ``active`` is the
one that releases (or commits) the held inventory, so a hold is returned to
the pool exactly once. Commits are tracked per tier on the reservation so a
failed commit can be finished by a later call for the same order.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ticketing_engine.database import RESERVATIONS
from ticketing_engine.errors import (
    InsufficientInventory,
    InvalidQuantity,
    NotOwner,
    ReservationAlreadyConsumed,
    ReservationCancelled,
    ReservationExpired,
    ReservationNotFound,
    SalesClosed,
    TierNotFound,
)
from ticketing_engine.models.reservation import Reservation, ReservationItem, ReservationStatus
from ticketing_engine.services.inventory import (
    INSUFFICIENT_INVENTORY,
    INVALID_QUANTITY,
    SALES_CLOSED,
    TIER_NOT_FOUND,
    HoldResult,
    InventoryLedger,
    utcnow,
)
from ticketing_engine.store import ConditionalStore, DuplicateDocument
from ticketing_engine.utils.pricing import ensure_utc

logger = logging.getLogger(__name__)

HOLD_FAILURES = {
    INSUFFICIENT_INVENTORY: InsufficientInventory,
    TIER_NOT_FOUND: TierNotFound,
    SALES_CLOSED: SalesClosed,
    INVALID_QUANTITY: InvalidQuantity,
}


def is_expired(reservation: Reservation, now: datetime) -> bool:
    """The single TTL rule: an active reservation past expires_at is expired."""
    return (
        reservation.status == ReservationStatus.ACTIVE
        and ensure_utc(now) >= ensure_utc(reservation.expires_at)
    )


class _StatusChanged(Exception):
    def __init__(self, reservation: Reservation):
        self.reservation = reservation


class ReservationManager:
    def __init__(self, store: ConditionalStore, ledger: InventoryLedger,
                 hold_minutes: int = 10, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.ledger = ledger
        self.hold_duration = timedelta(minutes=hold_minutes)
        self.clock = clock

    async def reserve(self, event_id: str, items: List[ReservationItem], customer_id: str,
                      device_id: Optional[str] = None,
                      reservation_id: Optional[str] = None) -> Reservation:
        """
        Hold every item or none of them.

        A failed hold rolls back the holds already taken by this request and
        raises the error for the failing tier.
        """
        if reservation_id:
            existing = await self._load(reservation_id)
            if existing is not None:
                return await self._settle_expiry(self._owned(existing, customer_id))

        held: List[ReservationItem] = []
        for item in items:
            result = await self.ledger.try_hold(event_id, item.tier_id, item.quantity)
            if result.reason == INSUFFICIENT_INVENTORY and await self.sweep_expired(event_id=event_id, limit=None):
                # Lapsed holds on this event go back to the pool before we give up
                result = await self.ledger.try_hold(event_id, item.tier_id, item.quantity)
            if not result.ok:
                await self._rollback(event_id, held)
                raise self._hold_error(item, result)
            held.append(item)

        now = self.clock()
        reservation = Reservation(
            id=reservation_id or str(uuid.uuid4()),
            event_id=event_id,
            customer_id=customer_id,
            device_id=device_id,
            items=items,
            status=ReservationStatus.ACTIVE,
            created_at=now,
            expires_at=now + self.hold_duration,
        )
        try:
            doc = await self.store.insert(RESERVATIONS, reservation.model_dump(mode="json"))
        except DuplicateDocument:
            # Lost a race with a retry of the same request; keep the winner's hold only
            await self._rollback(event_id, held)
            return self._owned(await self.get(reservation.id), customer_id)

        logger.info("Reservation %s created for %s on event %s, expires %s",
                    reservation.id, customer_id, event_id, reservation.expires_at.isoformat())
        return Reservation.model_validate(doc)

    async def get(self, reservation_id: str) -> Reservation:
        """Load a reservation, expiring it first if its hold window has passed."""
        reservation = await self._load(reservation_id)
        if reservation is None:
            raise ReservationNotFound()
        return await self._settle_expiry(reservation)

    async def consume(self, reservation_id: str, order_id: str) -> Reservation:
        """
        Turn the hold into a sale. Succeeds once per reservation; any later
        call raises ReservationAlreadyConsumed, whatever the order id.
        """
        reservation = await self.get(reservation_id)
        self.ensure_active(reservation)

        now = self.clock()

        def mark_consumed(doc):
            current = Reservation.model_validate(doc)
            if current.status != ReservationStatus.ACTIVE or is_expired(current, now):
                raise _StatusChanged(current)
            doc.update(status=ReservationStatus.CONSUMED.value, order_id=order_id,
                       committed_tier_ids=[], updated_at=now.isoformat())
            return doc

        try:
            await self.store.mutate(RESERVATIONS, reservation_id, mark_consumed)
        except _StatusChanged as changed:
            self.ensure_active(await self._settle_expiry(changed.reservation))
            raise

        logger.info("Reservation %s consumed by order %s", reservation_id, order_id)
        return await self.complete_consume(reservation_id, order_id)

    async def complete_consume(self, reservation_id: str, order_id: str) -> Reservation:
        """
        Commit the held units of every tier on a consumed reservation that
        has not been committed yet.

        A tier is claimed in ``committed_tier_ids`` before its ledger commit
        and unclaimed again if the commit fails, so each tier is committed
        at most once and a retry for the same order finishes what is left.
        """
        reservation = await self._load(reservation_id)
        if reservation is None:
            raise ReservationNotFound()
        if reservation.status != ReservationStatus.CONSUMED or reservation.order_id != order_id:
            raise ReservationAlreadyConsumed(f"Reservation is not held by order {order_id}")

        for item in reservation.items:
            if item.tier_id in reservation.committed_tier_ids:
                continue
            if not await self._mark_committed(reservation_id, item.tier_id, True):
                continue
            try:
                await self.ledger.commit(reservation.event_id, item.tier_id, item.quantity)
            except Exception:
                await self._mark_committed(reservation_id, item.tier_id, False)
                logger.warning("Commit of %s for reservation %s failed; left for retry",
                               item.tier_id, reservation_id)
                raise
        return await self._load(reservation_id)

    async def cancel(self, reservation_id: str, caller_id: str) -> Reservation:
        reservation = await self.get(reservation_id)
        if reservation.customer_id != caller_id:
            raise NotOwner("Only the customer who made the reservation can cancel it")
        if reservation.status == ReservationStatus.CANCELLED:
            return reservation
        if reservation.status == ReservationStatus.CONSUMED:
            raise ReservationAlreadyConsumed()
        if reservation.status == ReservationStatus.EXPIRED:
            raise ReservationExpired()

        cancelled = await self._close(reservation, ReservationStatus.CANCELLED)
        if cancelled.status != ReservationStatus.CANCELLED:
            # Someone else closed it first
            self.ensure_active(cancelled)
        return cancelled

    async def sweep_expired(self, now: Optional[datetime] = None, limit: Optional[int] = 50,
                            event_id: Optional[str] = None) -> int:
        """Expire overdue active reservations and release their inventory."""
        now = now or self.clock()
        filters = {"status": ReservationStatus.ACTIVE.value}
        if event_id is not None:
            filters["event_id"] = event_id
        docs = await self.store.find(RESERVATIONS, filters)
        overdue = [r for r in map(Reservation.model_validate, docs) if is_expired(r, now)][:limit]
        if overdue:
            logger.info("[Cleanup] Found %d expired reservations", len(overdue))

        released = 0
        for reservation in overdue:
            closed = await self._close(reservation, ReservationStatus.EXPIRED, now)
            if closed.status == ReservationStatus.EXPIRED:
                released += 1
        return released

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Background loop for the app lifespan; stops when cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep_expired()
            except Exception:
                logger.exception("Reservation sweep failed")

    async def _load(self, reservation_id: str) -> Optional[Reservation]:
        doc = await self.store.read(RESERVATIONS, reservation_id)
        return Reservation.model_validate(doc) if doc else None

    async def _settle_expiry(self, reservation: Reservation) -> Reservation:
        now = self.clock()
        if not is_expired(reservation, now):
            return reservation
        return await self._close(reservation, ReservationStatus.EXPIRED, now)

    async def _close(self, reservation: Reservation, status: ReservationStatus,
                     now: Optional[datetime] = None) -> Reservation:
        """
        Move an active reservation to expired/cancelled and release its hold.
        Returns the stored reservation; if another caller closed it first the
        returned status is theirs and nothing is released here.
        """
        now = now or self.clock()
        won = False

        def close(doc):
            nonlocal won
            won = False
            if doc["status"] != ReservationStatus.ACTIVE.value:
                return None
            doc.update(status=status.value, updated_at=now.isoformat())
            won = True
            return doc

        doc = await self.store.mutate(RESERVATIONS, reservation.id, close)
        closed = Reservation.model_validate(doc)
        if won:
            await self._rollback(closed.event_id, closed.items)
            logger.info("Reservation %s %s, inventory released", closed.id, status.value)
        return closed

    async def _rollback(self, event_id: str, items: List[ReservationItem]) -> None:
        for item in items:
            await self.ledger.release(event_id, item.tier_id, item.quantity)

    async def _mark_committed(self, reservation_id: str, tier_id: str, committed: bool) -> bool:
        """Add or remove a tier in committed_tier_ids. False if it was already so."""
        changed = False

        def mark(doc):
            nonlocal changed
            changed = False
            tier_ids = doc.get("committed_tier_ids") or []
            if (tier_id in tier_ids) == committed:
                return None
            doc["committed_tier_ids"] = (
                tier_ids + [tier_id] if committed else [t for t in tier_ids if t != tier_id]
            )
            changed = True
            return doc

        await self.store.mutate(RESERVATIONS, reservation_id, mark)
        return changed

    @staticmethod
    def _owned(reservation: Reservation, customer_id: str) -> Reservation:
        if reservation.customer_id != customer_id:
            raise NotOwner("Reservation belongs to another customer")
        return reservation

    @staticmethod
    def _hold_error(item: ReservationItem, result: HoldResult):
        error_class = HOLD_FAILURES.get(result.reason, InsufficientInventory)
        return error_class(result.message, tier_id=item.tier_id, available=result.available)

    @staticmethod
    def ensure_active(reservation: Reservation) -> None:
        if reservation.status == ReservationStatus.EXPIRED:
            raise ReservationExpired()
        if reservation.status == ReservationStatus.CANCELLED:
            raise ReservationCancelled()
        if reservation.status == ReservationStatus.CONSUMED:
            raise ReservationAlreadyConsumed()
