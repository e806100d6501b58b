import asyncio
from typing import List, Tuple

import fakeredis

from order_engine.config import AppConfig, QueueConfig, RouterConfig, WorkerConfig
from order_engine.execution.router import DexRouter
from order_engine.execution.schemas import Quote, SwapResult
from order_engine.orchestrator.runtime import open_runtime
from order_engine.orchestrator.subscriptions import MemoryChannel


def run_async(coro):
    return asyncio.run(coro)


class RecordingRouter(DexRouter):
    """Fixed quotes; records which process executed which order."""

    sources = ("raydium", "meteora")

    def __init__(self, process: str, executions: List[Tuple[str, str]], execute_delay_s: float = 0.0):
        self.process = process
        self.executions = executions
        self.execute_delay_s = execute_delay_s

    async def quote(self, source, token_in, token_out, amount):
        return Quote(dex=source, price=100.0 if source == "raydium" else 99.0, fee=0.003)

    async def execute(self, source, order):
        self.executions.append((self.process, order.id))
        if self.execute_delay_s:
            await asyncio.sleep(self.execute_delay_s)
        return SwapResult(tx_hash=f"TX_{order.id}", executed_price=99.0)


def _config() -> AppConfig:
    return AppConfig(
        queue=QueueConfig(name="rt", backoff_base_s=0.01),
        worker=WorkerConfig(
            concurrency=2,
            poll_interval_s=0.01,
            subscriber_grace_s=0.0,
            stage_delay_s=0.0,
            stage_timeout_s=5.0,
        ),
        router=RouterConfig(),
        mongodb_uri=None,
        mongodb_db="order_engine_test",
        log_level="INFO",
    )


def _client(server):
    return fakeredis.FakeAsyncRedis(server=server, decode_responses=True)


ORDER = {"tokenIn": "SOL", "tokenOut": "USDC", "amountIn": 5}


def test_worker_process_streams_to_subscriber_in_api_process():
    async def _test():
        server = fakeredis.FakeServer()
        executions: List[Tuple[str, str]] = []
        api_router = RecordingRouter("api", executions)
        async with open_runtime(_config(), redis=_client(server), router=api_router, start_workers=False) as api:
            worker_router = RecordingRouter("worker", executions)
            async with open_runtime(_config(), redis=_client(server), router=worker_router):
                ch = MemoryChannel()
                order_id = await api.service.submit(ORDER, channel=ch)
                while "confirmed" not in ch.statuses():
                    await ch.next_event(timeout=3.0)

        assert ch.statuses() == ["pending", "routing", "building", "submitted", "confirmed"]
        assert ch.received[2]["chosenDex"] == "meteora"
        assert ch.received[-1]["txHash"] == f"TX_{order_id}"
        assert executions == [("worker", order_id)]

    run_async(_test())


def test_second_process_does_not_steal_a_live_job():
    async def _test():
        server = fakeredis.FakeServer()
        executions: List[Tuple[str, str]] = []
        slow = RecordingRouter("api", executions, execute_delay_s=0.3)
        async with open_runtime(_config(), redis=_client(server), router=slow) as api:
            order_id = await api.service.submit(ORDER)
            for _ in range(300):
                if executions:
                    break
                await asyncio.sleep(0.01)
            assert executions == [("api", order_id)]

            # Starts mid-execution with recovery enabled.
            second_router = RecordingRouter("second", executions)
            async with open_runtime(_config(), redis=_client(server), router=second_router) as second:
                assert await second.queue.wait_finished(order_id, timeout=5.0, poll_s=0.01) == "completed"
                await asyncio.sleep(0.1)

        assert executions == [("api", order_id)]

    run_async(_test())
