# ticketing_engine/database.py
from motor.motor_asyncio import AsyncIOMotorClient

from ticketing_engine.config import Settings
from ticketing_engine.store import ConditionalStore, MemoryConditionalStore, MongoConditionalStore

# Collection names
TIERS = "tiers"
RESERVATIONS = "reservations"
ORDERS = "orders"
TICKETS = "tickets"
PROMOS = "promos"
PROMO_REDEMPTIONS = "promo_redemptions"
REFERRALS = "referrals"
SHARE_BUNDLES = "share_bundles"
CLAIM_TOKENS = "claim_tokens"
TRANSFERS = "transfers"


def create_store(settings: Settings) -> ConditionalStore:
    if settings.store_backend == "memory":
        return MemoryConditionalStore(max_retries=settings.store_max_retries)

    client = AsyncIOMotorClient(settings.mongo_uri)
    database = client.get_database(settings.mongo_db_name)
    return MongoConditionalStore(database, max_retries=settings.store_max_retries)
