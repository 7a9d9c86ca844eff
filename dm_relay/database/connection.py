import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from dm_relay.config import get_settings


logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def connect_to_mongo() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is not None:
        return _db
    settings = get_settings()
    _client = AsyncIOMotorClient(settings.mongodb_url, tz_aware=True)
    _db = _client[settings.mongodb_db]
    logger.info("Connected to MongoDB database %s", settings.mongodb_db)
    return _db


async def close_mongo_connection() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None


def set_database(db: Optional[AsyncIOMotorDatabase]) -> None:
    """Install an already-open database handle (used by tests and scripts)."""
    global _db
    _db = db


def get_database() -> AsyncIOMotorDatabase:
    if _db is None:
        raise RuntimeError("MongoDB connection is not initialised")
    return _db


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()
