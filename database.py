"""
Database connection for FarmLink.

By default the store runs on an in-process mongomock database, the local
embedded engine that stands in for a hosted backend. Point DATABASE_URL at a
mongodb:// server to use a real MongoDB deployment instead.
"""

import logging
import os

import mongomock
from pymongo import MongoClient
from pymongo.errors import DuplicateKeyError as PyMongoDuplicateKeyError, PyMongoError

from errors import StorageUnavailableError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongomock://localhost")
DATABASE_NAME = os.getenv("DATABASE_NAME", "farmlink")
SERVER_SELECTION_TIMEOUT_MS = int(os.getenv("SERVER_SELECTION_TIMEOUT_MS", "5000"))

# mongomock re-exports pymongo's error classes when pymongo is installed
DUPLICATE_KEY_ERRORS = (PyMongoDuplicateKeyError, mongomock.DuplicateKeyError)
STORAGE_ERRORS = (PyMongoError, mongomock.PyMongoError)


def is_embedded(url: str) -> bool:
    return url.startswith("mongomock://")


def open_database(url: str = None, name: str = None):
    """Open the configured database, raising StorageUnavailableError on failure."""
    url = url or DATABASE_URL
    name = name or DATABASE_NAME
    try:
        if is_embedded(url):
            client = mongomock.MongoClient()
        else:
            client = MongoClient(url, serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS)
            client.admin.command("ping")
        db = client[name]
    except STORAGE_ERRORS as e:
        logger.error("Failed to open database %s: %s", name, e)
        raise StorageUnavailableError(f"Database unavailable: {str(e)[:80]}") from e
    logger.info("Opened %s database %s", "embedded" if is_embedded(url) else "remote", name)
    return db
