# ticketing_engine/config.py
from dataclasses import dataclass, field
from decimal import Decimal

from decouple import config

from ticketing_engine.utils.pricing import FeeSchedule


@dataclass(frozen=True)
class Settings:
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db_name: str = "event_ticketing"
    store_backend: str = "mongo"  # "mongo" or "memory"
    store_max_retries: int = 50

    hold_minutes: int = 10
    sweep_interval_seconds: int = 30
    order_payment_timeout_minutes: int = 20
    transfer_ttl_hours: int = 24
    share_bundle_ttl_hours: int = 24 * 7

    currency: str = "INR"
    fee_schedule: FeeSchedule = field(default_factory=FeeSchedule)

    jwt_secret_key: str = "your-secret-key"
    jwt_algorithm: str = "HS256"

    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    ticket_qr_secret: str = "ticket-qr-secret"


def load_settings() -> Settings:
    """Build settings from the environment (and a local .env file)."""
    fees = FeeSchedule(
        platform_percent=config("PLATFORM_FEE_PERCENT", default="5", cast=Decimal),
        platform_flat=config("PLATFORM_FEE_FLAT", default="0", cast=Decimal),
        payment_percent=config("PAYMENT_FEE_PERCENT", default="2.5", cast=Decimal),
        tax_percent=config("TAX_PERCENT", default="18", cast=Decimal),
    )
    return Settings(
        mongo_uri=config("MONGO_URI", default="mongodb://localhost:27017"),
        mongo_db_name=config("MONGO_DB_NAME", default="event_ticketing"),
        store_backend=config("STORE_BACKEND", default="mongo"),
        store_max_retries=config("STORE_MAX_RETRIES", default=50, cast=int),
        hold_minutes=config("HOLD_MINUTES", default=10, cast=int),
        sweep_interval_seconds=config("SWEEP_INTERVAL_SECONDS", default=30, cast=int),
        order_payment_timeout_minutes=config("ORDER_PAYMENT_TIMEOUT_MINUTES", default=20, cast=int),
        transfer_ttl_hours=config("TRANSFER_TTL_HOURS", default=24, cast=int),
        share_bundle_ttl_hours=config("SHARE_BUNDLE_TTL_HOURS", default=24 * 7, cast=int),
        currency=config("CURRENCY", default="INR"),
        fee_schedule=fees,
        jwt_secret_key=config("JWT_SECRET_KEY", default="your-secret-key"),
        jwt_algorithm=config("JWT_ALGORITHM", default="HS256"),
        razorpay_key_id=config("RAZORPAY_KEY_ID", default=""),
        razorpay_key_secret=config("RAZORPAY_KEY_SECRET", default=""),
        ticket_qr_secret=config("TICKET_QR_SECRET", default="ticket-qr-secret"),
    )
