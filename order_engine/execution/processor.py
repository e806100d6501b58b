"""Per-order execution state machine.

One call to `OrderProcessor.process` is one attempt:

    pending -> routing -> building -> submitted -> confirmed
                                                -> failed

Any stage that raises (or exceeds `stage_timeout_s`) emits `failed` once and
re-raises so the job queue can account for the attempt. Stages persist nothing.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, Sequence, TypeVar

from ..config import WorkerConfig
from ..jobs.queue import Job
from .errors import RoutingError, StageTimeoutError
from .router import DexRouter, select_best_quote
from .schemas import Order, OrderStatus, Quote, StatusEvent, SwapResult

T = TypeVar("T")


def describe_error(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class OrderProcessor:
    def __init__(
        self,
        *,
        router: DexRouter,
        registry: Any,
        config: Optional[WorkerConfig] = None,
        sources: Optional[Sequence[str]] = None,
    ):
        self.router = router
        self.registry = registry
        self.config = config or WorkerConfig()
        self.sources = tuple(sources or router.sources)
        if len(self.sources) < 2:
            raise ValueError("routing needs at least two liquidity sources")

    async def _emit(self, order_id: str, attempt: int, status: OrderStatus, **payload: Any) -> None:
        event = StatusEvent(order_id=order_id, status=status, attempt=attempt, **payload)
        await self.registry.emit(order_id, event)

    async def _pace(self) -> None:
        if self.config.stage_delay_s > 0:
            await asyncio.sleep(self.config.stage_delay_s)

    async def _stage(self, name: str, aw: Awaitable[T]) -> T:
        timeout = self.config.stage_timeout_s
        try:
            return await asyncio.wait_for(aw, timeout)
        except asyncio.TimeoutError:
            raise StageTimeoutError(name, timeout) from None

    async def route(self, order: Order) -> Quote:
        """Quote every source concurrently, wait for all, pick the cheapest."""
        results = await self._stage(
            "routing",
            asyncio.gather(
                *(self.router.quote(s, order.token_in, order.token_out, order.amount_in) for s in self.sources),
                return_exceptions=True,
            ),
        )
        for source, res in zip(self.sources, results):
            if isinstance(res, BaseException):
                raise RoutingError(f"{source} quote failed: {describe_error(res)}") from res
        return select_best_quote(results)

    async def process(self, job: Job) -> SwapResult:
        order = job.order
        attempt = job.attempt

        # Retries go straight through; the first attempt gives subscribers a chance to attach.
        if job.attempts_made == 0:
            await self.registry.wait_for_subscriber(order.id, self.config.subscriber_grace_s)

        await self._emit(order.id, attempt, OrderStatus.pending)
        try:
            await self._pace()
            await self._emit(order.id, attempt, OrderStatus.routing)
            chosen = await self.route(order)
            await self._pace()
            await self._emit(order.id, attempt, OrderStatus.building, chosen_dex=chosen.dex, quote=chosen)
            await self._pace()
            await self._emit(order.id, attempt, OrderStatus.submitted, chosen_dex=chosen.dex)
            result = await self._stage("execution", self.router.execute(chosen.dex, order))
        except Exception as e:
            await self._emit(order.id, attempt, OrderStatus.failed, error=describe_error(e))
            raise
        await self._emit(
            order.id,
            attempt,
            OrderStatus.confirmed,
            chosen_dex=chosen.dex,
            tx_hash=result.tx_hash,
            executed_price=result.executed_price,
        )
        return result


__all__ = ["OrderProcessor", "describe_error"]
