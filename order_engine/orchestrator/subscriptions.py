"""Order subscription registry.

Maps an order id to the live channels watching it. A channel is anything with
an `async send_json(data)` method (a FastAPI `WebSocket`, a `MemoryChannel`).
The registry holds non-owning references; a channel that raises on send is
treated as closed and dropped without affecting the others.

Every event of an order carries a sequence number (its position in the order's
history). A channel that attaches mid-flight is first replayed the history
and afterwards only receives events past what it was replayed, so it sees each
event once and in order.

Without Redis the history lives in memory and `emit` delivers directly. With
Redis every process shares the history (`<prefix>:events:<id>` list) and
`emit` publishes on `<prefix>:events`; each process's listener delivers to its
own channels. A worker in one process can then stream to a WebSocket held by
another. `wait_for_subscriber` lets the worker hold the first event until
someone is listening anywhere (or a grace period elapses).
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from ..execution.schemas import StatusEvent

logger = logging.getLogger(__name__)


class MemoryChannel:
    """In-process subscriber channel backed by an asyncio.Queue."""

    def __init__(self) -> None:
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self.received: List[Dict[str, Any]] = []
        self.closed = False

    async def send_json(self, data: Dict[str, Any]) -> None:
        if self.closed:
            return
        self.received.append(data)
        self.queue.put_nowait(data)

    def close(self) -> None:
        self.closed = True

    async def next_event(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return await asyncio.wait_for(self.queue.get(), timeout)

    def statuses(self) -> List[str]:
        return [str(d.get("status")) for d in self.received if "status" in d]


@dataclass
class _Subscriber:
    channel: Any
    seen: int = 0  # highest sequence number delivered


@dataclass
class _OrderLock:
    lock: asyncio.Lock
    users: int = 0


class SubscriptionRegistry:
    def __init__(
        self,
        redis: Any = None,
        *,
        prefix: str = "orders",
        send_timeout_s: float = 5.0,
        history_ttl_s: float = 3600.0,
        poll_s: float = 0.05,
    ):
        self.redis = redis
        self.prefix = prefix
        self.send_timeout_s = send_timeout_s
        self.history_ttl_s = history_ttl_s
        self.poll_s = poll_s
        self._channels: Dict[str, List[_Subscriber]] = {}
        self._history: Dict[str, List[Dict[str, Any]]] = {}
        self._attached: Dict[str, asyncio.Event] = {}
        self._locks: Dict[str, _OrderLock] = {}
        self._pubsub: Any = None
        self._listener: Optional[asyncio.Task] = None

    # --- keys ---

    @property
    def bus_channel(self) -> str:
        return f"{self.prefix}:events"

    def _events_key(self, order_id: str) -> str:
        return f"{self.prefix}:events:{order_id}"

    def _watch_key(self, order_id: str) -> str:
        return f"{self.prefix}:watch:{order_id}"

    # --- lifecycle ---

    async def start(self) -> None:
        """Subscribe to the shared event bus (Redis mode only)."""
        if self.redis is None or self._listener is not None:
            return
        self._pubsub = self.redis.pubsub()
        await self._pubsub.subscribe(self.bus_channel)
        self._listener = asyncio.create_task(self._listen(), name="order-events-listener")

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None

    # --- locking ---

    @asynccontextmanager
    async def _guard(self, order_id: str) -> AsyncIterator[None]:
        """Per-order lock, dropped as soon as nobody holds or awaits it."""
        entry = self._locks.get(order_id)
        if entry is None:
            entry = self._locks[order_id] = _OrderLock(asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(order_id) is entry:
                del self._locks[order_id]

    # --- delivery ---

    async def _send(self, channel: Any, payload: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(channel.send_json(payload), self.send_timeout_s)
            return True
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.debug("dropping subscriber channel: %s", e)
            return False

    async def _fan_out(self, order_id: str, seq: int, payload: Dict[str, Any]) -> int:
        # Caller holds the order's guard.
        delivered = 0
        for sub in list(self._channels.get(order_id, [])):
            if sub.seen >= seq:
                continue
            if await self._send(sub.channel, payload):
                sub.seen = seq
                delivered += 1
            else:
                self._remove(sub.channel, order_id)
        return delivered

    async def _load_history(self, order_id: str) -> List[Dict[str, Any]]:
        if self.redis is None:
            return list(self._history.get(order_id, []))
        raw = await self.redis.lrange(self._events_key(order_id), 0, -1)
        return [json.loads(item) for item in raw]

    async def _listen(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except asyncio.CancelledError:
                raise
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.warning("order event bus read failed: %s", e)
                await asyncio.sleep(1.0)
                continue
            if message is None:
                continue
            try:
                data = json.loads(message["data"])
                order_id, seq, payload = str(data["orderId"]), int(data["seq"]), data["event"]
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("ignoring malformed order event: %s", e)
                continue
            # Nobody here watches this order and no attach is in progress.
            if order_id not in self._channels and order_id not in self._locks:
                continue
            async with self._guard(order_id):
                await self._fan_out(order_id, seq, payload)

    # --- public API ---

    async def attach(self, channel: Any, order_id: str) -> None:
        async with self._guard(order_id):
            if any(s.channel is channel for s in self._channels.get(order_id, [])):
                return
            sub = _Subscriber(channel)
            for payload in await self._load_history(order_id):
                if not await self._send(channel, payload):
                    return
                sub.seen += 1
            self._channels.setdefault(order_id, []).append(sub)
            if self.redis is not None:
                await self.redis.set(self._watch_key(order_id), "1", ex=int(self.history_ttl_s))
            waiter = self._attached.get(order_id)
            if waiter is not None:
                waiter.set()

    async def detach(self, channel: Any, order_id: Optional[str] = None) -> None:
        order_ids = [order_id] if order_id is not None else list(self._channels)
        for oid in order_ids:
            async with self._guard(oid):
                self._remove(channel, oid)

    def _remove(self, channel: Any, order_id: str) -> None:
        subs = self._channels.get(order_id)
        if not subs:
            return
        subs[:] = [s for s in subs if s.channel is not channel]
        if not subs:
            self._channels.pop(order_id, None)

    async def emit(self, order_id: str, event: Union[StatusEvent, Dict[str, Any]]) -> int:
        """Broadcast an event. Never raises.

        Returns how many local channels accepted it, or in Redis mode how many
        processes received it from the bus.
        """
        payload = event.to_wire() if isinstance(event, StatusEvent) else dict(event)
        if self.redis is None:
            async with self._guard(order_id):
                history = self._history.setdefault(order_id, [])
                history.append(payload)
                return await self._fan_out(order_id, len(history), payload)
        try:
            return await self._publish(order_id, payload)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("could not publish event for order %s: %s", order_id, e)
            return 0

    async def _publish(self, order_id: str, payload: Dict[str, Any]) -> int:
        key = self._events_key(order_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.rpush(key, json.dumps(payload))
            pipe.expire(key, int(self.history_ttl_s))
            seq, _ = await pipe.execute()
        message = json.dumps({"orderId": order_id, "seq": int(seq), "event": payload})
        return int(await self.redis.publish(self.bus_channel, message))

    async def _has_subscriber(self, order_id: str) -> bool:
        if self._channels.get(order_id):
            return True
        if self.redis is None:
            return False
        try:
            return bool(await self.redis.exists(self._watch_key(order_id)))
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.debug("subscriber check failed for order %s: %s", order_id, e)
            return False

    async def wait_for_subscriber(self, order_id: str, timeout: float) -> bool:
        """Resolve once anyone is attached to `order_id` or after `timeout` seconds."""
        if await self._has_subscriber(order_id):
            return True
        if timeout <= 0:
            return False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        waiter = self._attached.setdefault(order_id, asyncio.Event())
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return False
                step = remaining if self.redis is None else min(remaining, self.poll_s)
                try:
                    await asyncio.wait_for(waiter.wait(), step)
                    return True
                except asyncio.TimeoutError:
                    pass
                if await self._has_subscriber(order_id):
                    return True
        finally:
            if self._attached.get(order_id) is waiter:
                del self._attached[order_id]

    async def release(self, order_id: str) -> None:
        """Forget an order once its job is finished for good.

        In Redis mode channels stay attached until their owner detaches them,
        since the final events may still be in flight on the bus, and the
        shared history is left to expire for late subscribers.
        """
        async with self._guard(order_id):
            self._history.pop(order_id, None)
            if self.redis is None:
                self._channels.pop(order_id, None)

    def subscriber_count(self, order_id: str) -> int:
        return len(self._channels.get(order_id, []))


__all__ = ["MemoryChannel", "SubscriptionRegistry"]
