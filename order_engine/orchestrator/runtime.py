"""Explicitly owned runtime handle.

`open_runtime` builds every collaborator of the pipeline (Redis client, optional
Mongo manager, queue, registry, router, processor, worker pool, coordinator),
starts the event listener and the workers, and tears everything down on exit.
Nothing is kept at module scope.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from ..config import AppConfig, load_config
from ..data.mongo import MongoManager
from ..data.order_store import OrderStore
from ..data.redis_client import close_redis, create_redis
from ..execution.processor import OrderProcessor
from ..execution.router import DexRouter, MockDexRouter
from ..jobs.queue import JobQueue
from .order_service import OrderService
from .subscriptions import SubscriptionRegistry
from .worker_pool import ExecutionWorkerPool

logger = logging.getLogger(__name__)


@dataclass
class EngineRuntime:
    config: AppConfig
    redis: Any
    queue: JobQueue
    registry: SubscriptionRegistry
    router: DexRouter
    processor: OrderProcessor
    pool: ExecutionWorkerPool
    service: OrderService
    mongo: Optional[MongoManager] = None


def build_runtime(
    config: AppConfig,
    *,
    redis: Any,
    router: Optional[DexRouter] = None,
    mongo: Optional[MongoManager] = None,
) -> EngineRuntime:
    router = router or MockDexRouter(
        base_price=config.router.base_price,
        failure_rate=config.router.failure_rate,
        sources=config.router.sources,
    )
    queue = JobQueue.from_config(redis, config.queue)
    registry = SubscriptionRegistry(redis, prefix=config.queue.name)
    processor = OrderProcessor(router=router, registry=registry, config=config.worker, sources=config.router.sources)
    pool = ExecutionWorkerPool(queue=queue, processor=processor, registry=registry, config=config.worker)
    service = OrderService(queue=queue, registry=registry, store=OrderStore(mongo) if mongo else None)
    return EngineRuntime(
        config=config,
        redis=redis,
        queue=queue,
        registry=registry,
        router=router,
        processor=processor,
        pool=pool,
        service=service,
        mongo=mongo,
    )


@asynccontextmanager
async def open_runtime(
    config: Optional[AppConfig] = None,
    *,
    redis: Any = None,
    router: Optional[DexRouter] = None,
    mongo: Optional[MongoManager] = None,
    start_workers: bool = True,
) -> AsyncIterator[EngineRuntime]:
    cfg = config or load_config()

    own_redis = redis is None
    client = redis if redis is not None else create_redis(cfg.queue.redis_url)

    own_mongo = mongo is None and bool(cfg.mongodb_uri)
    if own_mongo:
        mongo = MongoManager(db_name=cfg.mongodb_db, uri=cfg.mongodb_uri)
    if mongo is not None:
        try:
            await mongo.ensure_indexes()
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("order store unavailable at startup: %s", e)

    runtime = build_runtime(cfg, redis=client, router=router, mongo=mongo)
    try:
        await runtime.registry.start()
        if start_workers:
            await runtime.pool.start()
        yield runtime
    finally:
        await runtime.pool.stop()
        await runtime.registry.stop()
        await runtime.service.drain()
        if own_mongo and mongo is not None:
            await mongo.close()
        if own_redis:
            await close_redis(client)


__all__ = ["EngineRuntime", "build_runtime", "open_runtime"]
