import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING

from siteledger.core.config import settings

logger = logging.getLogger(__name__)


class MongoDatabase:
    """MongoDB connection manager."""

    client: AsyncIOMotorClient = None
    db: AsyncIOMotorDatabase = None

mongodb = MongoDatabase()

async def connect_to_mongo():
    """Connect to MongoDB."""
    mongodb.client = AsyncIOMotorClient(settings.MONGODB_URL, tz_aware=True)
    mongodb.db = mongodb.client[settings.DATABASE_NAME]

    # Create indexes
    await create_indexes()
    logger.info("Connected to MongoDB: %s", settings.DATABASE_NAME)

async def close_mongo_connection():
    """Disconnect from MongoDB."""
    if mongodb.client is not None:
        mongodb.client.close()
        mongodb.client = None
        mongodb.db = None
    logger.info("Disconnected from MongoDB")

async def create_indexes():
    """Create database indexes."""
    # Users
    await mongodb.db["users"].create_index([("company_id", ASCENDING), ("role", ASCENDING)])
    await mongodb.db["users"].create_index("email", unique=True)

    # Money sources - at most one active advance account per user
    await mongodb.db["money_sources"].create_index(
        [("company_id", ASCENDING), ("owner_id", ASCENDING), ("is_advance", ASCENDING)],
        unique=True,
        partialFilterExpression={"is_advance": True, "is_active": True},
    )
    await mongodb.db["money_sources"].create_index([("company_id", ASCENDING), ("is_active", ASCENDING)])

    # Categories
    await mongodb.db["category_groups"].create_index("company_id")
    await mongodb.db["categories"].create_index("company_id")
    await mongodb.db["categories"].create_index(
        "system_key",
        unique=True,
        partialFilterExpression={"system_key": {"$type": "string"}},
    )

    # Transactions - balance, report and pair lookups
    await mongodb.db["transactions"].create_index([("money_source_id", ASCENDING), ("deleted_at", ASCENDING)])
    await mongodb.db["transactions"].create_index([("to_money_source_id", ASCENDING), ("deleted_at", ASCENDING)])
    await mongodb.db["transactions"].create_index([("company_id", ASCENDING), ("date", ASCENDING)])
    await mongodb.db["transactions"].create_index("project_id")
    await mongodb.db["transactions"].create_index("advance_pair_id", sparse=True)

def get_db() -> AsyncIOMotorDatabase:
    """Get database instance."""
    return mongodb.db
