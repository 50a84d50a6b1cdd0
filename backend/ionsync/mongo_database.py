import logging
import re

from pymongo import AsyncMongoClient

from ionsync.config import settings

logger = logging.getLogger(__name__)

_mongo_client = None


def _masked_uri(uri: str) -> str:
    return re.sub(r"//[^:@/]+:[^@]+@", "//[USERNAME]:[PASSWORD]@", uri)


def init_mongo() -> AsyncMongoClient:
    global _mongo_client
    if _mongo_client is None:
        _mongo_client = AsyncMongoClient(
            settings.mongodb_uri,
            serverSelectionTimeoutMS=settings.mongodb_server_selection_timeout_ms,
            retryWrites=True,
            tz_aware=True,
        )
        logger.info("MongoDB client initialised (%s, db=%s)", _masked_uri(settings.mongodb_uri), settings.mongodb_database)
    return _mongo_client


def get_mongo_database():
    if _mongo_client is None:
        raise RuntimeError("MongoDB client is not initialised")
    return _mongo_client[settings.mongodb_database]


async def close_mongo() -> None:
    global _mongo_client
    if _mongo_client is not None:
        await _mongo_client.close()
        _mongo_client = None
        logger.info("MongoDB client closed")
