from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from dojo_notices.core.config import settings
import logging

logger = logging.getLogger(__name__)


class Database:
    client: AsyncIOMotorClient = None
    database: AsyncIOMotorDatabase = None


db = Database()


async def get_database() -> AsyncIOMotorDatabase:
    """Get database instance"""
    if db.database is None:
        logger.error("MongoDB is not connected. Ensure connect_to_mongo() ran at startup and MONGODB_URI/DATABASE_NAME are set.")
        raise RuntimeError("MongoDB not connected")
    return db.database


def get_client() -> AsyncIOMotorClient:
    """Get the client (needed for sessions/transactions)"""
    if db.client is None:
        raise RuntimeError("MongoDB not connected")
    return db.client


async def connect_to_mongo():
    """Create database connection"""
    try:
        db.client = AsyncIOMotorClient(settings.MONGODB_URI, tz_aware=True)
        db.database = db.client[settings.DATABASE_NAME]

        # Test the connection
        await db.client.admin.command('ping')
        logger.info("Connected to MongoDB successfully")

    except Exception as e:
        logger.error(f"Failed to connect to MongoDB: {e}")
        raise


async def close_mongo_connection():
    """Close database connection"""
    if db.client:
        db.client.close()
        db.client = None
        db.database = None
        logger.info("Disconnected from MongoDB")


# Database collections
class Collections:
    """Database collection names"""
    NOTICES = "notices"
    NOTICE_INBOX = "notice_inbox"
    MEMBERS = "members"


async def ensure_indexes(database: AsyncIOMotorDatabase) -> None:
    """Create the indexes backing the member and staff notice queries."""
    notices = database[Collections.NOTICES]
    await notices.create_index(
        [("dojo_id", ASCENDING), ("audience_type", ASCENDING), ("status", ASCENDING), ("send_at", DESCENDING)],
        name="broadcast_window",
    )
    await notices.create_index([("dojo_id", ASCENDING), ("end_time", DESCENDING)], name="staff_listing")

    inbox = database[Collections.NOTICE_INBOX]
    await inbox.create_index(
        [("dojo_id", ASCENDING), ("member_uid", ASCENDING), ("status", ASCENDING), ("send_at", DESCENDING)],
        name="inbox_window",
    )
    await inbox.create_index([("dojo_id", ASCENDING), ("notice_id", ASCENDING)], name="inbox_by_notice")
    logger.info("MongoDB indexes ensured")
