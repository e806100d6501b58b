"""MongoDB connection manager.

Provides async connectivity (Motor), index setup and a JSON/BSON-safe
conversion helper. The manager is an explicitly owned handle: callers create
it, `connect` lazily, and `close` it on shutdown.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from .schemas import COLLECTION_SPECS


def utc_now() -> datetime:
    """UTC timestamp helper."""
    return datetime.now(timezone.utc)


def jsonify(value: Any) -> Any:
    """Best-effort conversion to JSON/BSON-safe types."""
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool, datetime)):
        return value
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return value.hex()
    if isinstance(value, (list, tuple, set)):
        return [jsonify(v) for v in value]
    if isinstance(value, dict):
        return {str(k): jsonify(v) for k, v in value.items()}
    if hasattr(value, "model_dump"):
        return jsonify(value.model_dump())
    return str(value)


class MongoManager:
    """Async MongoDB manager using Motor."""

    def __init__(self, db_name: str = "order_engine", uri: Optional[str] = None):
        self.uri = uri or os.getenv("MONGODB_URI") or os.getenv("MONGODB_URL")
        if not self.uri:
            raise RuntimeError("MONGODB_URI (or MONGODB_URL) is not set in env.")
        self.db_name = db_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Any = None

    async def connect(self) -> Any:
        """Connect (lazily) and return the database handle."""
        if self.client is None:
            self.client = AsyncIOMotorClient(self.uri)
            self.db = self.client[self.db_name]
        if self.db is None:
            raise RuntimeError("MongoManager failed to connect.")
        return self.db

    async def close(self) -> None:
        """Close client and clear handles."""
        if self.client is not None:
            self.client.close()
        self.client = None
        self.db = None

    def collection(self, name: str) -> Any:
        """Get a collection handle (requires connect)."""
        if self.db is None:
            raise RuntimeError("MongoManager not connected. Call await connect().")
        return self.db[name]

    async def ensure_indexes(self) -> None:
        """Create indexes declared in schemas.py."""
        await self.connect()
        for spec in COLLECTION_SPECS.values():
            col = self.collection(spec.name)
            for idx in spec.indexes:
                try:
                    await col.create_index(list(idx))
                except PyMongoError:
                    # Index may already exist with different options.
                    continue


__all__ = ["MongoManager", "jsonify", "utc_now"]
