# ticketing_engine/utils/pricing.py
"""
Deterministic price calculation.

Nothing in this module touches the store: callers load tiers, promo and
referral documents and pass them in together with ``now``. The same inputs
always produce the same quote.

Order of operations (each stage rounded once, half-up, to 0.01):

1. subtotal        = sum(unit price x quantity)
2. promo discount  = percentage of the applicable subtotal, or a fixed amount
3. referral        = percentage of (subtotal - promo), or a fixed amount
4. discounted      = subtotal - discounts, never below zero
5. fees            = platform (percent + flat), payment processing (percent),
                     tax (percent of platform + payment processing)
6. grand total     = discounted + fees
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from ticketing_engine.errors import TierNotFound
from ticketing_engine.models.pricing import AppliedDiscount, Fees, PriceQuote, QuoteLine
from ticketing_engine.models.promo import DiscountRule, Promo, Referral
from ticketing_engine.models.reservation import ReservationItem
from ticketing_engine.models.tier import TierCounter

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeSchedule:
    platform_percent: Decimal = Decimal("5")
    platform_flat: Decimal = Decimal("0")
    payment_percent: Decimal = Decimal("2.5")
    tax_percent: Decimal = Decimal("18")  # charged on platform + payment fees


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def round_currency(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(value: Decimal) -> int:
    """Rupees to paise (or any two-decimal currency to its smallest unit)."""
    return int(round_currency(value) * 100)


def effective_unit_price(tier: TierCounter, now: datetime) -> Tuple[Decimal, Optional[str]]:
    """A scheduled price whose window contains ``now`` wins over the base price."""
    now = ensure_utc(now)
    for schedule in tier.scheduled_prices:
        if ensure_utc(schedule.starts_at) <= now <= ensure_utc(schedule.ends_at):
            return schedule.price, schedule.name
    return tier.price, None


def _discount_amount(rule: DiscountRule, base: Decimal) -> Decimal:
    if rule.discount_type == "percentage":
        amount = base * rule.discount_value / HUNDRED
    else:
        amount = rule.discount_value
    return round_currency(min(amount, base))


def promo_rejection(promo: Optional[Promo], now: datetime, user_redemptions: int = 0,
                    tier_ids: Iterable[str] = ()) -> Optional[str]:
    """Return why a promo cannot be used, or None when it applies."""
    if promo is None:
        return "Invalid promo code"
    if not promo.active:
        return "This promo code is no longer active"
    now = ensure_utc(now)
    if promo.starts_at and now < ensure_utc(promo.starts_at):
        return "This promo code is not yet active"
    if promo.expiry and ensure_utc(promo.expiry) < now:
        return "This promo code has expired"
    if promo.max_usage is not None and promo.current_usage >= promo.max_usage:
        return "This promo code has reached its maximum uses"
    if promo.max_per_user is not None and user_redemptions >= promo.max_per_user:
        return "You have already used this promo code"
    if promo.tier_ids and not set(promo.tier_ids) & set(tier_ids):
        return "This promo code does not apply to your selected tickets"
    return None


def referral_rejection(referral: Optional[Referral], user_id: Optional[str]) -> Optional[str]:
    if referral is None:
        return "Invalid referral code"
    if not referral.active:
        return "This referral code is no longer active"
    if user_id is not None and referral.referrer_id == user_id:
        return "You cannot use your own referral code"
    return None


def calculate_quote(
    event_id: str,
    items: List[ReservationItem],
    tiers: Dict[str, TierCounter],
    fee_schedule: FeeSchedule,
    now: datetime,
    currency: str = "INR",
    promo_code: Optional[str] = None,
    promo: Optional[Promo] = None,
    promo_user_redemptions: int = 0,
    referral_code: Optional[str] = None,
    referral: Optional[Referral] = None,
    user_id: Optional[str] = None,
) -> PriceQuote:
    """
    Price a cart. Bad promo or referral codes are dropped and reported in
    ``promo_error`` / ``referral_error`` instead of failing the quote.
    """
    # 1. Subtotal
    lines = []
    raw_subtotal = Decimal("0")
    for item in items:
        tier = tiers.get(item.tier_id)
        if tier is None:
            raise TierNotFound(f"Ticket tier not found: {item.tier_id}", tier_id=item.tier_id)
        unit_price, label = effective_unit_price(tier, now)
        line_total = unit_price * item.quantity
        raw_subtotal += line_total
        lines.append(QuoteLine(
            tier_id=tier.tier_id,
            name=tier.name,
            quantity=item.quantity,
            unit_price=round_currency(unit_price),
            price_label=label,
            line_total=round_currency(line_total),
        ))
    subtotal = round_currency(raw_subtotal)

    discounts = []
    promo_error = None
    referral_error = None

    # 2. Promo code
    promo_amount = ZERO
    if promo_code:
        promo_error = promo_rejection(promo, now, promo_user_redemptions, [line.tier_id for line in lines])
        if promo_error is None:
            applicable = sum(
                (line.unit_price * line.quantity for line in lines
                 if not promo.tier_ids or line.tier_id in promo.tier_ids),
                Decimal("0"),
            )
            promo_amount = _discount_amount(promo, min(round_currency(applicable), subtotal))
            discounts.append(AppliedDiscount(
                kind="promo",
                code=promo.code,
                amount=promo_amount,
                label=f"{promo.discount_value.normalize():f}% off" if promo.discount_type == "percentage"
                else f"{promo_amount} off",
            ))

    # 3. Referral code
    referral_amount = ZERO
    if referral_code:
        if promo_amount > 0 and not promo.combinable:
            referral_error = "Referral codes cannot be combined with this promo code"
        else:
            referral_error = referral_rejection(referral, user_id)
        if referral_error is None:
            referral_amount = _discount_amount(referral, subtotal - promo_amount)
            discounts.append(AppliedDiscount(
                kind="referral",
                code=referral.code,
                amount=referral_amount,
                label="Referral discount",
            ))

    # 4. Discounted subtotal
    discount_total = round_currency(promo_amount + referral_amount)
    discounted = max(ZERO, subtotal - discount_total)

    # 5. Fees
    fees = Fees()
    if discounted > 0:
        platform = round_currency(
            discounted * fee_schedule.platform_percent / HUNDRED + fee_schedule.platform_flat
        )
        payment = round_currency(discounted * fee_schedule.payment_percent / HUNDRED)
        tax = round_currency((platform + payment) * fee_schedule.tax_percent / HUNDRED)
        fees = Fees(platform=platform, payment_processing=payment, tax=tax,
                    total=round_currency(platform + payment + tax))

    # 6. Grand total
    grand_total = round_currency(discounted + fees.total)

    return PriceQuote(
        event_id=event_id,
        currency=currency,
        items=lines,
        subtotal=subtotal,
        discounts=discounts,
        discount_total=discount_total,
        fees=fees,
        grand_total=grand_total,
        is_free=grand_total == 0,
        promo_error=promo_error,
        referral_error=referral_error,
    )
