# ticketing_engine/services/pricing.py
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from ticketing_engine.database import PROMO_REDEMPTIONS, PROMOS, REFERRALS
from ticketing_engine.models.pricing import PriceQuote
from ticketing_engine.models.promo import (
    Promo,
    PromoCreate,
    PromoRedemption,
    Referral,
    ReferralCreate,
    code_doc_id,
)
from ticketing_engine.models.reservation import ReservationItem
from ticketing_engine.models.tier import TierCounter
from ticketing_engine.services.inventory import InventoryLedger, utcnow
from ticketing_engine.store import ConditionalStore, DuplicateDocument
from ticketing_engine.utils.pricing import FeeSchedule, calculate_quote

logger = logging.getLogger(__name__)


class PricingService:
    """Loads tiers and codes from the store and runs the pure quote calculation."""

    def __init__(self, store: ConditionalStore, ledger: InventoryLedger, fee_schedule: FeeSchedule,
                 currency: str = "INR", clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.ledger = ledger
        self.fee_schedule = fee_schedule
        self.currency = currency
        self.clock = clock

    async def quote(self, event_id: str, items: List[ReservationItem],
                    promo_code: Optional[str] = None, referral_code: Optional[str] = None,
                    user_id: Optional[str] = None) -> PriceQuote:
        tiers: Dict[str, TierCounter] = {}
        for item in items:
            tiers[item.tier_id] = await self.ledger.get_tier(event_id, item.tier_id)

        promo = None
        user_redemptions = 0
        if promo_code:
            promo = await self.get_promo(event_id, promo_code)
            if promo is not None and promo.max_per_user is not None and user_id:
                user_redemptions = len(await self.store.find(
                    PROMO_REDEMPTIONS, {"promo_id": promo.id, "user_id": user_id}
                ))

        referral = None
        if referral_code:
            doc = await self.store.read(REFERRALS, code_doc_id(event_id, referral_code))
            referral = Referral.model_validate(doc) if doc else None

        quote = calculate_quote(
            event_id=event_id,
            items=items,
            tiers=tiers,
            fee_schedule=self.fee_schedule,
            now=self.clock(),
            currency=self.currency,
            promo_code=promo_code,
            promo=promo,
            promo_user_redemptions=user_redemptions,
            referral_code=referral_code,
            referral=referral,
            user_id=user_id,
        )
        if quote.promo_error:
            logger.warning("Promo %r dropped for event %s: %s", promo_code, event_id, quote.promo_error)
        if quote.referral_error:
            logger.warning("Referral %r dropped for event %s: %s", referral_code, event_id, quote.referral_error)
        return quote

    async def get_promo(self, event_id: str, code: str) -> Optional[Promo]:
        doc = await self.store.read(PROMOS, code_doc_id(event_id, code))
        return Promo.model_validate(doc) if doc else None

    async def create_promo(self, promo: PromoCreate, created_by: str) -> Promo:
        record = Promo(id=code_doc_id(promo.event_id, promo.code), created_by=created_by,
                       **promo.model_dump())
        try:
            doc = await self.store.insert(PROMOS, record.model_dump(mode="json"))
        except DuplicateDocument:
            raise ValueError("Promo code already exists.")
        return Promo.model_validate(doc)

    async def list_promos(self, created_by: str) -> List[Promo]:
        docs = await self.store.find(PROMOS, {"created_by": created_by}, limit=100)
        return [Promo.model_validate(doc) for doc in docs]

    async def create_referral(self, referral: ReferralCreate) -> Referral:
        record = Referral(id=code_doc_id(referral.event_id, referral.code), **referral.model_dump())
        try:
            doc = await self.store.insert(REFERRALS, record.model_dump(mode="json"))
        except DuplicateDocument:
            raise ValueError("Referral code already exists.")
        return Referral.model_validate(doc)

    async def record_redemption(self, promo_id: str, order_id: str, user_id: str,
                                discount_amount: Decimal) -> None:
        """Count a promo use once per order."""
        redemption = PromoRedemption(
            id=f"{promo_id}:{order_id}",
            promo_id=promo_id,
            order_id=order_id,
            user_id=user_id,
            discount_amount=discount_amount,
            redeemed_at=self.clock(),
        )
        try:
            await self.store.insert(PROMO_REDEMPTIONS, redemption.model_dump(mode="json"))
        except DuplicateDocument:
            return

        def increment(doc):
            doc["current_usage"] = doc.get("current_usage", 0) + 1
            return doc

        doc = await self.store.mutate(PROMOS, promo_id, increment)
        if doc is None:
            logger.warning("Redemption recorded for missing promo %s", promo_id)
        elif doc.get("max_usage") is not None and doc["current_usage"] > doc["max_usage"]:
            logger.warning("Promo %s redeemed beyond its limit (%d/%d) by order %s",
                           promo_id, doc["current_usage"], doc["max_usage"], order_id)
