# ticketing_engine/engine.py
import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import Request

from ticketing_engine.config import Settings
from ticketing_engine.services.checkout import CheckoutOrchestrator
from ticketing_engine.services.inventory import InventoryLedger, utcnow
from ticketing_engine.services.pricing import PricingService
from ticketing_engine.services.reservations import ReservationManager
from ticketing_engine.services.sharing import ShareBundleManager
from ticketing_engine.services.tickets import TicketBook
from ticketing_engine.services.transfers import TransferManager
from ticketing_engine.store import ConditionalStore
from ticketing_engine.utils.payments import PaymentGateway

logger = logging.getLogger(__name__)


class TicketingEngine:
    """Wires every service onto one store, one settings object and one clock."""

    def __init__(self, store: ConditionalStore, settings: Settings,
                 clock: Callable[[], datetime] = utcnow,
                 gateway: Optional[PaymentGateway] = None):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.gateway = gateway or PaymentGateway(settings.razorpay_key_id, settings.razorpay_key_secret)

        self.ledger = InventoryLedger(store, currency=settings.currency, clock=clock)
        self.reservations = ReservationManager(store, self.ledger, hold_minutes=settings.hold_minutes,
                                               clock=clock)
        self.pricing = PricingService(store, self.ledger, settings.fee_schedule,
                                      currency=settings.currency, clock=clock)
        self.tickets = TicketBook(store, settings.ticket_qr_secret, clock=clock)
        self.checkout = CheckoutOrchestrator(
            store, self.ledger, self.reservations, self.pricing, self.tickets, self.gateway,
            payment_timeout_minutes=settings.order_payment_timeout_minutes, clock=clock,
        )
        self.sharing = ShareBundleManager(store, self.tickets, ttl_hours=settings.share_bundle_ttl_hours,
                                          clock=clock)
        self.transfers = TransferManager(store, self.tickets, ttl_hours=settings.transfer_ttl_hours,
                                         clock=clock)
        self._background: List[asyncio.Task] = []

    async def run_order_sweeper(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.checkout.sweep_stale_orders()
            except Exception:
                logger.exception("Stale order sweep failed")

    def start_background_tasks(self) -> None:
        interval = self.settings.sweep_interval_seconds
        if interval <= 0 or self._background:
            return
        self._background = [
            asyncio.create_task(self.reservations.run_sweeper(interval)),
            asyncio.create_task(self.run_order_sweeper(interval)),
        ]
        logger.info("Started background sweepers every %ss", interval)

    async def stop_background_tasks(self) -> None:
        for task in self._background:
            task.cancel()
        for task in self._background:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._background = []


def get_engine(request: Request) -> TicketingEngine:
    return request.app.state.engine
