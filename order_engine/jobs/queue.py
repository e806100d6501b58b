"""Durable order job queue on Redis.

One job per order id. Layout under the queue prefix `<name>`:

- `<name>:admit:<id>`  admission marker; set in the same script that writes the
  job, so duplicate submission of a waiting/active/delayed job is a no-op and a
  failed admission leaves nothing behind.
- `<name>:job:<id>`    hash with the validated order JSON, attempt counter,
  queue status, last error and result.
- `<name>:wait`        FIFO list of ids ready to run.
- `<name>:active`      ids currently held by a worker (`LMOVE` from wait, so a
  job is only ever claimed once).
- `<name>:lock:<id>`   per-claim lock with a TTL, refreshed by the worker
  while it runs the job. An active id whose lock has expired belongs to a dead
  process and is the only thing `recover_stalled` re-queues.
- `<name>:delayed`     sorted set of ids waiting out their retry backoff,
  scored by the epoch second they become runnable again.
- `<name>:completed` / `<name>:failed`  terminal id lists.

Retry policy: a failed attempt is re-queued after `base * 2 ** (n - 1)`
seconds (n = failures so far) until `attempts` attempts have been made; the job
is then permanently failed and its admission marker released.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import ValidationError

from ..config import QueueConfig
from ..execution.schemas import Order

logger = logging.getLogger(__name__)


WAITING = "waiting"
ACTIVE = "active"
DELAYED = "delayed"
COMPLETED = "completed"
FAILED = "failed"

FINISHED_STATES = frozenset({COMPLETED, FAILED})


# KEYS: admit, job, wait. ARGV: now, order json, job id.
_ENQUEUE_SCRIPT = """
if not redis.call("set", KEYS[1], ARGV[1], "NX") then
    return 0
end
redis.call("del", KEYS[2])
redis.call("hset", KEYS[2], "data", ARGV[2], "attempts_made", "0", "status", "waiting", "enqueued_at", ARGV[1])
redis.call("rpush", KEYS[3], ARGV[3])
return 1
"""

# KEYS: wait, active. ARGV: key prefix, lock token, lock ttl (ms).
_CLAIM_SCRIPT = """
local job_id = redis.call("lmove", KEYS[1], KEYS[2], "LEFT", "RIGHT")
if not job_id then
    return false
end
redis.call("set", ARGV[1] .. ":lock:" .. job_id, ARGV[2], "PX", ARGV[3])
redis.call("hset", ARGV[1] .. ":job:" .. job_id, "status", "active")
return job_id
"""

# KEYS: lock. ARGV: lock token, lock ttl (ms).
_REFRESH_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""

# KEYS: active, wait. ARGV: key prefix.
_RECOVER_SCRIPT = """
local recovered = {}
for _, job_id in ipairs(redis.call("lrange", KEYS[1], 0, -1)) do
    if redis.call("exists", ARGV[1] .. ":lock:" .. job_id) == 0 then
        redis.call("lrem", KEYS[1], 1, job_id)
        redis.call("lpush", KEYS[2], job_id)
        redis.call("hset", ARGV[1] .. ":job:" .. job_id, "status", "waiting")
        table.insert(recovered, job_id)
    end
end
return recovered
"""


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay_s: float = 0.5

    def delay_for(self, failures: int) -> float:
        """Backoff before the next attempt after `failures` failed attempts."""
        return self.base_delay_s * (2 ** max(0, failures - 1))


@dataclass(frozen=True)
class Job:
    id: str
    order: Order
    attempts_made: int = 0
    max_attempts: int = 3
    token: str = ""

    @property
    def attempt(self) -> int:
        """1-based number of the attempt this claim represents."""
        return self.attempts_made + 1


class JobQueue:
    def __init__(
        self,
        redis: Any,
        *,
        name: str = "orders",
        policy: Optional[RetryPolicy] = None,
        keep_completed: int = 1000,
        lock_ttl_s: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.name = name
        self.policy = policy or RetryPolicy()
        self.keep_completed = keep_completed
        self.lock_ttl_s = lock_ttl_s
        self._clock = clock

    @classmethod
    def from_config(cls, redis: Any, cfg: QueueConfig) -> "JobQueue":
        return cls(
            redis,
            name=cfg.name,
            policy=RetryPolicy(attempts=cfg.attempts, base_delay_s=cfg.backoff_base_s),
            keep_completed=cfg.keep_completed,
            lock_ttl_s=cfg.lock_ttl_s,
        )

    def _key(self, *parts: str) -> str:
        return ":".join((self.name,) + parts)

    def _job_key(self, job_id: str) -> str:
        return self._key("job", job_id)

    def _admit_key(self, job_id: str) -> str:
        return self._key("admit", job_id)

    def _lock_key(self, job_id: str) -> str:
        return self._key("lock", job_id)

    def _lock_ttl_ms(self) -> int:
        return max(1, int(self.lock_ttl_s * 1000))

    async def enqueue(self, order: Order) -> bool:
        """Admit a job for `order`. Returns False if one is already in flight."""
        admitted = await self.redis.eval(
            _ENQUEUE_SCRIPT,
            3,
            self._admit_key(order.id),
            self._job_key(order.id),
            self._key("wait"),
            str(self._clock()),
            order.model_dump_json(),
            order.id,
        )
        if not int(admitted):
            logger.info("order %s already queued; duplicate submission ignored", order.id)
            return False
        logger.info("order %s enqueued", order.id)
        return True

    async def promote_delayed(self) -> int:
        """Move retries whose backoff has elapsed back to the wait list."""
        delayed_key = self._key("delayed")
        due = await self.redis.zrangebyscore(delayed_key, "-inf", self._clock())
        promoted = 0
        for job_id in due:
            # Only the caller that removes the entry may re-queue it.
            if not await self.redis.zrem(delayed_key, job_id):
                continue
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(job_id), "status", WAITING)
                pipe.rpush(self._key("wait"), job_id)
                await pipe.execute()
            promoted += 1
        return promoted

    async def claim(self) -> Optional[Job]:
        """Take the next runnable job, or None if nothing is ready.

        The claim and its lock are written in one step, so a concurrent
        `recover_stalled` never sees the job active without a lock.
        """
        await self.promote_delayed()
        while True:
            token = uuid4().hex
            job_id = await self.redis.eval(
                _CLAIM_SCRIPT,
                2,
                self._key("wait"),
                self._key("active"),
                self.name,
                token,
                self._lock_ttl_ms(),
            )
            if job_id is None:
                return None
            raw = await self.redis.hgetall(self._job_key(job_id))
            try:
                order = Order.model_validate_json(raw["data"])
            except (KeyError, ValidationError) as e:
                logger.error("dropping job %s with malformed payload: %s", job_id, e)
                await self._finish_failed(job_id, int(raw.get("attempts_made") or 0), f"malformed job payload: {e}")
                continue
            return Job(
                id=job_id,
                order=order,
                attempts_made=int(raw.get("attempts_made") or 0),
                max_attempts=self.policy.attempts,
                token=token,
            )

    async def refresh_lock(self, job: Job) -> bool:
        """Extend the claim lock (heartbeat). False if the lock is no longer ours."""
        result = await self.redis.eval(
            _REFRESH_LOCK_SCRIPT, 1, self._lock_key(job.id), job.token, self._lock_ttl_ms()
        )
        return bool(result)

    async def complete(self, job: Job, result: Optional[Dict[str, Any]] = None) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 1, job.id)
            pipe.hset(
                self._job_key(job.id),
                mapping={
                    "status": COMPLETED,
                    "attempts_made": job.attempt,
                    "result": json.dumps(result or {}),
                    "finished_at": self._clock(),
                },
            )
            pipe.delete(self._admit_key(job.id), self._lock_key(job.id))
            pipe.lpush(self._key("completed"), job.id)
            pipe.ltrim(self._key("completed"), 0, max(0, self.keep_completed - 1))
            await pipe.execute()
        logger.info("order %s completed on attempt %d", job.id, job.attempt)

    async def fail(self, job: Job, error: str) -> bool:
        """Record a failed attempt. Returns True if a retry was scheduled."""
        failures = job.attempt
        if failures >= self.policy.attempts:
            await self._finish_failed(job.id, failures, error)
            logger.warning(
                "order %s permanently failed after %d attempts: %s", job.id, failures, error
            )
            return False

        delay = self.policy.delay_for(failures)
        order = job.order.model_copy(update={"attempts": failures})
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 1, job.id)
            pipe.delete(self._lock_key(job.id))
            pipe.hset(
                self._job_key(job.id),
                mapping={
                    "status": DELAYED,
                    "attempts_made": failures,
                    "last_error": error,
                    "data": order.model_dump_json(),
                },
            )
            pipe.zadd(self._key("delayed"), {job.id: self._clock() + delay})
            await pipe.execute()
        logger.warning(
            "order %s attempt %d/%d failed (%s); retrying in %.2fs",
            job.id,
            failures,
            self.policy.attempts,
            error,
            delay,
        )
        return True

    async def _finish_failed(self, job_id: str, attempts_made: int, error: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 1, job_id)
            pipe.hset(
                self._job_key(job_id),
                mapping={
                    "status": FAILED,
                    "attempts_made": attempts_made,
                    "last_error": error,
                    "finished_at": self._clock(),
                },
            )
            pipe.delete(self._admit_key(job_id), self._lock_key(job_id))
            pipe.rpush(self._key("failed"), job_id)
            await pipe.execute()

    async def recover_stalled(self) -> List[str]:
        """Re-queue active jobs whose claim lock has expired.

        Jobs held by live workers keep refreshing their lock and are left alone,
        so this is safe to run while other processes share the queue.
        """
        recovered = await self.redis.eval(_RECOVER_SCRIPT, 2, self._key("active"), self._key("wait"), self.name)
        recovered = list(recovered or [])
        if recovered:
            logger.warning("re-queued %d stalled job(s): %s", len(recovered), ", ".join(recovered))
        return recovered

    async def get_state(self, job_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.redis.hgetall(self._job_key(job_id))
        return dict(raw) if raw else None

    async def wait_finished(self, job_id: str, *, timeout: float, poll_s: float = 0.05) -> Optional[str]:
        """Poll until the job is completed/failed; returns that status or None on timeout."""
        deadline = time.monotonic() + timeout
        while True:
            state = await self.get_state(job_id)
            status = (state or {}).get("status")
            if status in FINISHED_STATES:
                return status
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(poll_s)

    async def counts(self) -> Dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.llen(self._key("wait"))
            pipe.llen(self._key("active"))
            pipe.zcard(self._key("delayed"))
            pipe.llen(self._key("completed"))
            pipe.llen(self._key("failed"))
            waiting, active, delayed, completed, failed = await pipe.execute()
        return {
            WAITING: int(waiting),
            ACTIVE: int(active),
            DELAYED: int(delayed),
            COMPLETED: int(completed),
            FAILED: int(failed),
        }


__all__ = ["FINISHED_STATES", "Job", "JobQueue", "RetryPolicy"]
