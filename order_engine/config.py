"""Central configuration loader.

Read env vars and expose typed config objects and defaults for the queue,
worker pool, mock DEX router and the best-effort order store.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_str(name: str, default: str) -> str:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return val.strip()


def _env_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return int(val)


def _env_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return float(val)


def _env_list(name: str, default: List[str], sep: str = ",") -> List[str]:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return [v.strip() for v in val.split(sep) if v.strip()]


@dataclass(frozen=True)
class QueueConfig:
    redis_url: str = "redis://localhost:6379"
    name: str = "orders"
    attempts: int = 3
    backoff_base_s: float = 0.5
    keep_completed: int = 1000
    lock_ttl_s: float = 30.0


@dataclass(frozen=True)
class WorkerConfig:
    concurrency: int = 10
    poll_interval_s: float = 0.25
    subscriber_grace_s: float = 2.0
    stage_delay_s: float = 0.8
    stage_timeout_s: float = 30.0
    recover_stalled: bool = True


@dataclass(frozen=True)
class RouterConfig:
    sources: Tuple[str, ...] = ("raydium", "meteora")
    base_price: float = 100.0
    failure_rate: float = 0.08


@dataclass(frozen=True)
class AppConfig:
    queue: QueueConfig
    worker: WorkerConfig
    router: RouterConfig
    mongodb_uri: Optional[str]
    mongodb_db: str
    log_level: str


def load_config() -> AppConfig:
    """Load configuration from environment."""
    queue = QueueConfig(
        redis_url=_env_str("REDIS_URL", "redis://localhost:6379"),
        name=_env_str("ORDER_QUEUE_NAME", "orders"),
        attempts=_env_int("ORDER_JOB_ATTEMPTS", 3),
        backoff_base_s=_env_float("ORDER_BACKOFF_BASE_S", 0.5),
        keep_completed=_env_int("ORDER_KEEP_COMPLETED", 1000),
        lock_ttl_s=_env_float("ORDER_LOCK_TTL_S", 30.0),
    )

    worker = WorkerConfig(
        concurrency=_env_int("WORKER_CONCURRENCY", 10),
        poll_interval_s=_env_float("WORKER_POLL_INTERVAL_S", 0.25),
        subscriber_grace_s=_env_float("SUBSCRIBER_GRACE_S", 2.0),
        stage_delay_s=_env_float("STAGE_DELAY_S", 0.8),
        stage_timeout_s=_env_float("STAGE_TIMEOUT_S", 30.0),
        recover_stalled=_env_bool("WORKER_RECOVER_STALLED", True),
    )

    router = RouterConfig(
        sources=tuple(_env_list("DEX_SOURCES", ["raydium", "meteora"])),
        base_price=_env_float("MOCK_BASE_PRICE", 100.0),
        failure_rate=_env_float("MOCK_FAILURE_RATE", 0.08),
    )

    mongodb_uri = os.getenv("MONGODB_URI") or os.getenv("MONGODB_URL")

    return AppConfig(
        queue=queue,
        worker=worker,
        router=router,
        mongodb_uri=mongodb_uri,
        mongodb_db=_env_str("MONGODB_DB", "order_engine"),
        log_level=_env_str("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger (entry points only)."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = [
    "AppConfig",
    "QueueConfig",
    "RouterConfig",
    "WorkerConfig",
    "configure_logging",
    "load_config",
]
