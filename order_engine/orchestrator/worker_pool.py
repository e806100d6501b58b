"""Fixed-size pool of asyncio workers pulling from the order job queue.

Each worker holds at most one job and keeps its claim lock alive while the job
runs. Success completes the job; any exception from the processor is reported
to the queue, which decides whether to retry. Once a job is finished for good
its subscriptions are released.

With `recover_stalled` enabled the pool also re-queues, every lock TTL, jobs
whose claim lock expired because the process holding them died.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from ..config import WorkerConfig
from ..execution.processor import OrderProcessor, describe_error
from ..jobs.queue import Job, JobQueue
from .subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)


class ExecutionWorkerPool:
    def __init__(
        self,
        *,
        queue: JobQueue,
        processor: OrderProcessor,
        registry: SubscriptionRegistry,
        config: Optional[WorkerConfig] = None,
    ):
        self.queue = queue
        self.processor = processor
        self.registry = registry
        self.config = config or WorkerConfig()
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._busy = 0

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    @property
    def busy(self) -> int:
        return self._busy

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        concurrency = max(1, int(self.config.concurrency))
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"order-worker-{i}") for i in range(concurrency)
        ]
        if self.config.recover_stalled:
            self._tasks.append(asyncio.create_task(self._recovery_loop(), name="order-recovery"))
        logger.info("started %d order workers", concurrency)

    async def stop(self, timeout: float = 10.0) -> None:
        """Let in-flight jobs finish (up to `timeout`), then cancel the rest."""
        self._stopping.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for t in pending:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("order workers stopped")

    async def _idle(self, seconds: Optional[float] = None) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), seconds or self.config.poll_interval_s)
        except asyncio.TimeoutError:
            pass

    async def _recovery_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.queue.recover_stalled()
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("stalled job recovery failed")
            await self._idle(self.queue.lock_ttl_s)

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                job = await self.queue.claim()
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("worker %d failed to claim a job", index)
                await self._idle()
                continue
            if job is None:
                await self._idle()
                continue
            self._busy += 1
            try:
                await self.run_job(job)
            except Exception:  # pylint: disable=broad-exception-caught
                # Queue bookkeeping failed; the lock expires and recovery re-queues the job.
                logger.exception("worker %d could not record outcome of order %s", index, job.id)
            finally:
                self._busy -= 1

    async def _heartbeat(self, job: Job) -> None:
        interval = max(0.01, self.queue.lock_ttl_s / 3)
        while True:
            await asyncio.sleep(interval)
            try:
                held = await self.queue.refresh_lock(job)
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.warning("could not refresh lock for order %s: %s", job.id, e)
                continue
            if not held:
                logger.warning("lost claim lock for order %s", job.id)
                return

    async def run_job(self, job: Job) -> None:
        logger.info("processing order %s (attempt %d/%d)", job.id, job.attempt, job.max_attempts)
        heartbeat = asyncio.create_task(self._heartbeat(job), name=f"order-heartbeat-{job.id}")
        try:
            try:
                result = await self.processor.process(job)
            finally:
                heartbeat.cancel()
        except Exception as e:  # pylint: disable=broad-exception-caught
            retrying = await self.queue.fail(job, describe_error(e))
            if not retrying:
                await self.registry.release(job.id)
            return
        await self.queue.complete(job, result.to_wire())
        await self.registry.release(job.id)


__all__ = ["ExecutionWorkerPool"]
