import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from doubt_solver.config import MONGO_DB_NAME, MONGO_URI

logger = logging.getLogger(__name__)

client: Optional[AsyncIOMotorClient] = None


async def connect_to_mongo(uri: str = MONGO_URI, db_name: str = MONGO_DB_NAME) -> AsyncIOMotorDatabase:
    global client
    client = AsyncIOMotorClient(uri, tz_aware=True)
    logger.info("Connected to MongoDB database %s", db_name)
    return client[db_name]


async def close_mongo_connection():
    global client
    if client:
        client.close()
        client = None
        logger.info("MongoDB connection closed")
