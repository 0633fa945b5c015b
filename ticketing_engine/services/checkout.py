# ticketing_engine/services/checkout.py
"""
Checkout: reservation -> order -> confirmed order, exactly once.

The order id is derived from the reservation id (``ORD-<reservation>``), so a
retried checkout lands on the same order, and the order id is the
idempotency key for payment verification. Confirmation is a conditional
write from ``pending_payment`` to ``confirmed``; the reservation's own
conditional consume guarantees the ledger commit runs once.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from ticketing_engine.database import ORDERS, RESERVATIONS
from ticketing_engine.errors import (
    NotOwner,
    OrderNotFound,
    OrderNotPayable,
    PaymentVerificationFailed,
    ReservationAlreadyConsumed,
    ReservationExpired,
)
from ticketing_engine.models.order import (
    BuyerDetails,
    CheckoutResponse,
    GatewaySignaturePayload,
    Order,
    OrderStatus,
    PaymentParams,
    order_id_for,
)
from ticketing_engine.models.promo import code_doc_id
from ticketing_engine.models.reservation import Reservation, ReservationStatus
from ticketing_engine.services.inventory import InventoryLedger, utcnow
from ticketing_engine.services.pricing import PricingService
from ticketing_engine.services.reservations import ReservationManager
from ticketing_engine.services.tickets import TicketBook
from ticketing_engine.store import ConditionalStore, DuplicateDocument
from ticketing_engine.utils.payments import PaymentGateway
from ticketing_engine.utils.pricing import to_minor_units

logger = logging.getLogger(__name__)

STALE_PAYMENT_REASON = "Inventory no longer available after payment timeout. Manual refund required."


class CheckoutOrchestrator:
    def __init__(self, store: ConditionalStore, ledger: InventoryLedger,
                 reservations: ReservationManager, pricing: PricingService,
                 tickets: TicketBook, gateway: PaymentGateway,
                 payment_timeout_minutes: int = 20, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.ledger = ledger
        self.reservations = reservations
        self.pricing = pricing
        self.tickets = tickets
        self.gateway = gateway
        self.payment_timeout = timedelta(minutes=payment_timeout_minutes)
        self.clock = clock

    async def get_order(self, order_id: str, caller_id: Optional[str] = None) -> Order:
        doc = await self.store.read(ORDERS, order_id)
        if doc is None:
            raise OrderNotFound()
        order = Order.model_validate(doc)
        if caller_id is not None and order.user_id != caller_id:
            raise NotOwner("Order belongs to another customer")
        return order

    async def initiate_checkout(self, reservation_id: str, caller_id: str, buyer: BuyerDetails,
                                promo_code: Optional[str] = None, referral_code: Optional[str] = None,
                                client_total: Optional[Decimal] = None) -> CheckoutResponse:
        order_id = order_id_for(reservation_id)
        existing = await self.store.read(ORDERS, order_id)
        if existing is not None:
            order = await self.get_order(order_id, caller_id)
            if order.status == OrderStatus.PENDING_PAYMENT and order.quote.is_free:
                order = await self._finalize(order, payment_ref=None, source="zero_total")
            return self._response(order)

        reservation = await self.reservations.get(reservation_id)
        if reservation.customer_id != caller_id:
            raise NotOwner("Reservation belongs to another customer")
        self.reservations.ensure_active(reservation)

        # Always re-price on the server; anything the client sends is advisory
        quote = await self.pricing.quote(reservation.event_id, reservation.items,
                                         promo_code=promo_code, referral_code=referral_code,
                                         user_id=caller_id)
        if client_total is not None and client_total != quote.grand_total:
            logger.warning("Client total %s for reservation %s differs from server total %s",
                           client_total, reservation_id, quote.grand_total)

        gateway_order_id = None
        if not quote.is_free:
            gateway_order = await self.gateway.create_order(
                amount=to_minor_units(quote.grand_total),
                currency=quote.currency,
                receipt=order_id,
                notes={"reservation_id": reservation_id, "event_id": reservation.event_id},
            )
            gateway_order_id = gateway_order["id"]

        order = Order(
            id=order_id,
            reservation_id=reservation_id,
            user_id=caller_id,
            event_id=reservation.event_id,
            buyer=buyer,
            status=OrderStatus.PENDING_PAYMENT,
            quote=quote,
            promo_code=quote.promo_discount.code if quote.promo_discount else None,
            referral_code=next((d.code for d in quote.discounts if d.kind == "referral"), None),
            gateway_order_id=gateway_order_id,
            created_at=self.clock(),
        )
        try:
            doc = await self.store.insert(ORDERS, order.model_dump(mode="json"))
        except DuplicateDocument:
            return self._response(await self.get_order(order_id, caller_id))
        order = Order.model_validate(doc)
        logger.info("Order %s created for reservation %s (total %s %s)",
                    order_id, reservation_id, quote.grand_total, quote.currency)

        if quote.is_free:
            order = await self._finalize(order, payment_ref=None, source="zero_total")
        return self._response(order)

    async def verify_payment(self, order_id: str, payload: GatewaySignaturePayload,
                             caller_id: Optional[str] = None) -> Order:
        """
        Confirm a paid order. Fails closed on a bad signature and leaves the
        order untouched; a repeat call for a confirmed order returns it as is.
        """
        order = await self.get_order(order_id, caller_id)

        if order.gateway_order_id != payload.gateway_order_id or not self.gateway.verify_signature(
            payload.gateway_order_id, payload.payment_id, payload.signature
        ):
            logger.warning("Payment verification failed for order %s (payment %s)",
                           order_id, payload.payment_id)
            raise PaymentVerificationFailed()

        if order.status == OrderStatus.CONFIRMED:
            logger.info("[Orders] Order %s already confirmed, skipping.", order_id)
            await self.reservations.complete_consume(order.reservation_id, order.id)
            return order
        if order.status != OrderStatus.PENDING_PAYMENT:
            logger.error("Payment %s received for %s order %s. Manual refund required.",
                         payload.payment_id, order.status.value, order_id)
            raise OrderNotPayable(f"Order is {order.status.value}", failure_reason=order.failure_reason)

        return await self._finalize(order, payment_ref=payload.payment_id, source="payment_gateway")

    async def sweep_stale_orders(self, now: Optional[datetime] = None, limit: int = 20) -> int:
        """Fail orders stuck in pending_payment past the payment timeout."""
        now = now or self.clock()
        docs = await self.store.find(ORDERS, {"status": OrderStatus.PENDING_PAYMENT.value})
        stale = [o for o in map(Order.model_validate, docs)
                 if o.created_at + self.payment_timeout < now][:limit]
        if not stale:
            return 0

        logger.info("[Cleanup] Found %d stale pending orders", len(stale))
        failed = 0
        for order in stale:
            updated = await self._mark_failed(order.id, "Payment timeout", now)
            if updated.status != OrderStatus.FAILED:
                continue
            failed += 1
            reservation = await self.reservations.get(order.reservation_id)
            if reservation.status == ReservationStatus.ACTIVE:
                await self.reservations.cancel(reservation.id, reservation.customer_id)
        return failed

    async def _finalize(self, order: Order, payment_ref: Optional[str], source: str) -> Order:
        try:
            await self.reservations.consume(order.reservation_id, order.id)
        except ReservationAlreadyConsumed:
            # A retry for this same order; finish any commit the first attempt left behind
            await self.reservations.complete_consume(order.reservation_id, order.id)
        except ReservationExpired:
            if not await self._secure_expired(order):
                failed = await self._mark_failed(order.id, STALE_PAYMENT_REASON)
                logger.error("[Orders] Inventory exhausted for expired order %s. Marked for manual refund.",
                             order.id)
                raise ReservationExpired(failure_reason=failed.failure_reason, order_id=order.id)

        ticket_ids = await self.tickets.issue(order)
        now = self.clock()

        def confirm(doc):
            if doc["status"] != OrderStatus.PENDING_PAYMENT.value:
                return None
            doc.update(
                status=OrderStatus.CONFIRMED.value,
                tickets=ticket_ids,
                payment_ref=payment_ref,
                confirmation_source=source,
                confirmed_at=now.isoformat(),
                updated_at=now.isoformat(),
            )
            return doc

        confirmed = Order.model_validate(await self.store.mutate(ORDERS, order.id, confirm))
        if confirmed.status != OrderStatus.CONFIRMED:
            logger.error("Order %s finished as %s after inventory was committed",
                         order.id, confirmed.status.value)
            raise OrderNotPayable(f"Order is {confirmed.status.value}")

        promo = confirmed.quote.promo_discount
        if promo is not None:
            await self.pricing.record_redemption(
                promo_id=code_doc_id(confirmed.event_id, promo.code),
                order_id=confirmed.id,
                user_id=confirmed.user_id,
                discount_amount=promo.amount,
            )
        logger.info("Order %s confirmed via %s", order.id, source)
        return confirmed

    async def _secure_expired(self, order: Order) -> bool:
        """
        A valid payment arrived after the hold lapsed. Take the inventory again
        if it is still there and bind the expired reservation to this order.
        """
        logger.info("[Orders] Payment received for expired reservation %s. Re-checking inventory...",
                    order.reservation_id)
        reservation = await self.reservations.get(order.reservation_id)
        if reservation.status == ReservationStatus.CONSUMED:
            return await self._bound_to(reservation, order)

        held = []
        for item in reservation.items:
            result = await self.ledger.try_hold(reservation.event_id, item.tier_id, item.quantity)
            if not result.ok:
                for taken in held:
                    await self.ledger.release(reservation.event_id, taken.tier_id, taken.quantity)
                return await self._bound_to(await self.reservations.get(order.reservation_id), order)
            held.append(item)

        now = self.clock()
        bound = False

        def bind(doc):
            nonlocal bound
            bound = False
            if doc["status"] != ReservationStatus.EXPIRED.value:
                return None
            doc.update(status=ReservationStatus.CONSUMED.value, order_id=order.id,
                       committed_tier_ids=[], updated_at=now.isoformat())
            bound = True
            return doc

        stored = Reservation.model_validate(await self.store.mutate(RESERVATIONS, reservation.id, bind))
        if not bound:
            for item in held:
                await self.ledger.release(reservation.event_id, item.tier_id, item.quantity)
            return await self._bound_to(stored, order)

        await self.reservations.complete_consume(reservation.id, order.id)
        logger.info("[Orders] Inventory re-secured for stale order %s", order.id)
        return True

    async def _bound_to(self, reservation: Reservation, order: Order) -> bool:
        if reservation.status != ReservationStatus.CONSUMED or reservation.order_id != order.id:
            return False
        await self.reservations.complete_consume(reservation.id, order.id)
        return True

    async def _mark_failed(self, order_id: str, reason: str, now: Optional[datetime] = None) -> Order:
        now = now or self.clock()

        def fail(doc):
            if doc["status"] != OrderStatus.PENDING_PAYMENT.value:
                return None
            doc.update(status=OrderStatus.FAILED.value, failure_reason=reason, updated_at=now.isoformat())
            return doc

        return Order.model_validate(await self.store.mutate(ORDERS, order_id, fail))

    def _response(self, order: Order) -> CheckoutResponse:
        if order.status != OrderStatus.PENDING_PAYMENT:
            return CheckoutResponse(order=order, requires_payment=False)
        return CheckoutResponse(
            order=order,
            requires_payment=True,
            payment_params=PaymentParams(
                key_id=self.gateway.key_id,
                gateway_order_id=order.gateway_order_id,
                amount=to_minor_units(order.quote.grand_total),
                currency=order.quote.currency,
                receipt=order.id,
            ),
        )
