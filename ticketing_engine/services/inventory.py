# ticketing_engine/services/inventory.py
"""
Inventory ledger.

Each (event, tier) pair is one document holding ``capacity``, ``held`` and
``sold``. Every change is a conditional write against the version that was
read, so competing holds on a tier are totally ordered and the tier can
never be oversold.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from pydantic import BaseModel

from ticketing_engine.database import TIERS
from ticketing_engine.errors import LedgerError, TierNotFound
from ticketing_engine.models.tier import TierAvailability, TierCounter, TierCreate, tier_doc_id
from ticketing_engine.store import ConditionalStore, DuplicateDocument
from ticketing_engine.utils.pricing import ensure_utc

logger = logging.getLogger(__name__)

INSUFFICIENT_INVENTORY = "insufficient_inventory"
TIER_NOT_FOUND = "tier_not_found"
SALES_CLOSED = "sales_closed"
INVALID_QUANTITY = "invalid_quantity"


class HoldResult(BaseModel):
    ok: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    available: Optional[int] = None


class _Rejected(Exception):
    def __init__(self, result: HoldResult):
        self.result = result


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InventoryLedger:
    def __init__(self, store: ConditionalStore, currency: str = "INR",
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.currency = currency
        self.clock = clock

    async def create_tier(self, event_id: str, tier: TierCreate) -> TierCounter:
        counter = TierCounter(
            id=tier_doc_id(event_id, tier.tier_id),
            event_id=event_id,
            currency=self.currency,
            **tier.model_dump(),
        )
        try:
            doc = await self.store.insert(TIERS, counter.model_dump(mode="json"))
        except DuplicateDocument:
            raise ValueError(f"Tier {tier.tier_id} already exists for event {event_id}")
        logger.info("Created tier %s for event %s with capacity %d", tier.tier_id, event_id, tier.capacity)
        return TierCounter.model_validate(doc)

    async def get_tier(self, event_id: str, tier_id: str) -> TierCounter:
        doc = await self.store.read(TIERS, tier_doc_id(event_id, tier_id))
        if doc is None:
            raise TierNotFound(f"Ticket tier not found: {tier_id}", tier_id=tier_id)
        return TierCounter.model_validate(doc)

    async def list_tiers(self, event_id: str) -> List[TierAvailability]:
        docs = await self.store.find(TIERS, {"event_id": event_id})
        tiers = [TierCounter.model_validate(doc) for doc in docs]
        return [
            TierAvailability(
                tier_id=t.tier_id, name=t.name, price=t.price, capacity=t.capacity,
                held=t.held, sold=t.sold, available=t.available,
            )
            for t in sorted(tiers, key=lambda t: t.tier_id)
        ]

    async def try_hold(self, event_id: str, tier_id: str, quantity: int) -> HoldResult:
        """Hold ``quantity`` units if held + sold + quantity fits within capacity."""
        now = self.clock()

        def hold(doc):
            tier = TierCounter.model_validate(doc)
            if quantity < tier.min_per_order or quantity > tier.max_per_order:
                raise _Rejected(HoldResult(
                    ok=False, reason=INVALID_QUANTITY, available=tier.available,
                    message=f"Invalid quantity for {tier.name}. "
                            f"Limits: {tier.min_per_order}-{tier.max_per_order}",
                ))
            if tier.sales_end and now > ensure_utc(tier.sales_end):
                raise _Rejected(HoldResult(
                    ok=False, reason=SALES_CLOSED, available=tier.available,
                    message=f"{tier.name} sales have ended",
                ))
            if tier.held + tier.sold + quantity > tier.capacity:
                raise _Rejected(HoldResult(
                    ok=False, reason=INSUFFICIENT_INVENTORY, available=tier.available,
                    message=f"{tier.name} is sold out" if tier.available <= 0
                    else f"Only {tier.available} {tier.name} tickets available",
                ))
            doc["held"] = tier.held + quantity
            return doc

        try:
            doc = await self.store.mutate(TIERS, tier_doc_id(event_id, tier_id), hold)
        except _Rejected as rejected:
            return rejected.result
        if doc is None:
            return HoldResult(ok=False, reason=TIER_NOT_FOUND, message=f"Ticket tier not found: {tier_id}")

        tier = TierCounter.model_validate(doc)
        logger.info("Held %d x %s/%s (held=%d sold=%d capacity=%d)",
                    quantity, event_id, tier_id, tier.held, tier.sold, tier.capacity)
        return HoldResult(ok=True, available=tier.available)

    async def release(self, event_id: str, tier_id: str, quantity: int) -> None:
        """Return held units to the pool."""

        def release(doc):
            if doc["held"] < quantity:
                logger.warning("Releasing %d from %s/%s but only %d held",
                               quantity, event_id, tier_id, doc["held"])
            doc["held"] = max(0, doc["held"] - quantity)
            return doc

        doc = await self.store.mutate(TIERS, tier_doc_id(event_id, tier_id), release)
        if doc is None:
            logger.warning("Release for unknown tier %s/%s ignored", event_id, tier_id)
            return
        logger.info("Released %d x %s/%s", quantity, event_id, tier_id)

    async def commit(self, event_id: str, tier_id: str, quantity: int) -> None:
        """Convert held units into sold units."""

        def commit(doc):
            if doc["held"] < quantity:
                raise LedgerError(
                    f"Cannot commit {quantity} x {tier_id}: only {doc['held']} held",
                    tier_id=tier_id,
                )
            doc["held"] -= quantity
            doc["sold"] += quantity
            return doc

        doc = await self.store.mutate(TIERS, tier_doc_id(event_id, tier_id), commit)
        if doc is None:
            raise TierNotFound(f"Ticket tier not found: {tier_id}", tier_id=tier_id)
        logger.info("Committed %d x %s/%s (sold=%d)", quantity, event_id, tier_id, doc["sold"])
