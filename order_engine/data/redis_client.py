"""Redis connection handle for the job queue.

The client is created explicitly by the runtime and closed on shutdown; there
is no process-wide pool.
"""

from __future__ import annotations

import redis.asyncio as redis


def create_redis(url: str = "redis://localhost:6379") -> redis.Redis:
    pool = redis.ConnectionPool.from_url(url, decode_responses=True)
    return redis.Redis(connection_pool=pool)


async def close_redis(client: redis.Redis) -> None:
    await client.aclose()
    await client.connection_pool.disconnect()


__all__ = ["close_redis", "create_redis"]
