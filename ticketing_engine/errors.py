# ticketing_engine/errors.py
from typing import Optional


class TicketingError(Exception):
    """Base class for domain failures. Rendered as {"detail", "code"} by the API."""

    status_code = 400
    code = "ticketing_error"

    def __init__(self, message: Optional[str] = None, **context):
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.message)


# Inventory

class InsufficientInventory(TicketingError):
    """Not enough tickets left in this tier."""
    status_code = 409
    code = "insufficient_inventory"


class TierNotFound(TicketingError):
    """Ticket tier not found."""
    status_code = 404
    code = "tier_not_found"


class SalesClosed(TicketingError):
    """Sales for this tier have ended."""
    code = "sales_closed"


class InvalidQuantity(TicketingError):
    """Quantity is outside the per-order limits for this tier."""
    code = "invalid_quantity"


class LedgerError(TicketingError):
    """Inventory counters are inconsistent."""
    status_code = 500
    code = "ledger_error"


# Reservations

class ReservationNotFound(TicketingError):
    """Reservation not found."""
    status_code = 404
    code = "reservation_not_found"


class ReservationExpired(TicketingError):
    """Reservation has expired. Please select tickets again."""
    status_code = 410
    code = "reservation_expired"


class ReservationAlreadyConsumed(TicketingError):
    """Reservation has already been checked out."""
    status_code = 409
    code = "reservation_already_consumed"


class ReservationCancelled(TicketingError):
    """Reservation was cancelled."""
    status_code = 409
    code = "reservation_cancelled"


# Pricing

class InvalidOrExpiredPromo(TicketingError):
    """Promo code is invalid or no longer active."""
    code = "invalid_or_expired_promo"


# Checkout

class OrderNotFound(TicketingError):
    """Order not found."""
    status_code = 404
    code = "order_not_found"


class OrderNotPayable(TicketingError):
    """Order can no longer be paid."""
    status_code = 409
    code = "order_not_payable"


class OrderNotConfirmed(TicketingError):
    """Only confirmed orders can do this."""
    status_code = 409
    code = "order_not_confirmed"


class PaymentVerificationFailed(TicketingError):
    """Payment signature could not be verified."""
    status_code = 402
    code = "payment_verification_failed"


# Custody

class TicketNotFound(TicketingError):
    """Ticket not found."""
    status_code = 404
    code = "ticket_not_found"


class InvalidTicket(TicketingError):
    """Ticket is not valid for entry."""
    code = "invalid_ticket"


class TicketAlreadyUsed(TicketingError):
    """Ticket has already been scanned."""
    status_code = 409
    code = "ticket_already_used"


class NotOwner(TicketingError):
    """Only the owner can perform this action."""
    status_code = 403
    code = "not_owner"


class BundleNotFound(TicketingError):
    """Invalid share link."""
    status_code = 404
    code = "bundle_not_found"


class BundleExpired(TicketingError):
    """Share link has expired."""
    status_code = 410
    code = "bundle_expired"


class AlreadyClaimed(TicketingError):
    """This ticket has already been claimed."""
    status_code = 409
    code = "already_claimed"


class InvalidClaim(TicketingError):
    """This ticket cannot be claimed."""
    code = "invalid_claim"


class ShareLimitExceeded(TicketingError):
    """Not enough unshared tickets on this order."""
    code = "share_limit_exceeded"


class TransferNotFound(TicketingError):
    """Invalid transfer code."""
    status_code = 404
    code = "transfer_not_found"


class AlreadyAccepted(TicketingError):
    """Transfer has already been accepted."""
    status_code = 409
    code = "already_accepted"


class TransferExpired(TicketingError):
    """Transfer has expired."""
    status_code = 410
    code = "transfer_expired"


class TransferNotPending(TicketingError):
    """Only pending transfers can be changed."""
    status_code = 409
    code = "transfer_not_pending"


class InvalidTransfer(TicketingError):
    """Ticket cannot be transferred."""
    code = "invalid_transfer"


# Store

class StoreContention(TicketingError):
    """Too many concurrent updates, please retry."""
    status_code = 503
    code = "store_contention"
