"""Pipeline coordinator: validate, persist (best effort), attach, enqueue."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Set, Union
from uuid import uuid4

from pydantic import ValidationError

from ..data.order_store import OrderStore
from ..execution.errors import OrderValidationError
from ..execution.schemas import Order, OrderRequest
from ..jobs.queue import JobQueue
from .subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)


OrderPayload = Union[Order, OrderRequest, Mapping[str, Any]]


def build_order(payload: OrderPayload) -> Order:
    """Turn a submission payload into a validated `Order` with an id."""
    if isinstance(payload, Order):
        return payload
    try:
        if isinstance(payload, OrderRequest):
            request = payload
        elif isinstance(payload, Mapping):
            request = OrderRequest.model_validate(dict(payload))
        else:
            raise OrderValidationError("invalid order payload")
        return request.to_order(request.id or str(uuid4()))
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "order" for err in e.errors())
        raise OrderValidationError(f"invalid order fields: {fields}") from e


class OrderService:
    def __init__(
        self,
        *,
        queue: JobQueue,
        registry: SubscriptionRegistry,
        store: Optional[OrderStore] = None,
    ):
        self.queue = queue
        self.registry = registry
        self.store = store
        self._writes: Set[asyncio.Task] = set()

    async def submit(self, payload: OrderPayload, channel: Any = None) -> str:
        """Accept an order and return its id.

        Raises OrderValidationError before anything is written or queued.
        Re-submitting an id whose job is still in flight returns the same id
        without creating a second job.
        """
        order = build_order(payload)
        self._record(order)
        if channel is not None:
            await self.registry.attach(channel, order.id)
        await self.queue.enqueue(order)
        return order.id

    def _record(self, order: Order) -> None:
        if self.store is None:
            return
        task = asyncio.create_task(self.store.record_submission(order))
        self._writes.add(task)
        task.add_done_callback(self._on_write_done)

    def _on_write_done(self, task: asyncio.Task) -> None:
        self._writes.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("order audit write failed: %s", exc)

    async def drain(self, timeout: float = 5.0) -> None:
        """Give outstanding audit writes a chance to land (shutdown only)."""
        if not self._writes:
            return
        _, pending = await asyncio.wait(set(self._writes), timeout=timeout)
        for t in pending:
            t.cancel()


__all__ = ["OrderService", "build_order"]
