"""Run the order execution workers as a standalone process.

Defaults come from env/.env (see order_engine/config.py). The HTTP/WebSocket
API lives in `python -m order_engine.ui.serve` and runs its own workers; use
this entrypoint for extra worker capacity or a quick demo. Workers in any
process share the Redis queue and event bus, so subscribers on the API see
events of orders executed here.

  python run.py                 # work the queue until SIGINT/SIGTERM
  python run.py --demo          # submit one SOL->USDC order and print its events
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
from dataclasses import replace

from dotenv import load_dotenv

from order_engine.config import AppConfig, configure_logging, load_config
from order_engine.execution.schemas import OrderStatus, StatusEvent
from order_engine.orchestrator.runtime import EngineRuntime, open_runtime
from order_engine.orchestrator.subscriptions import MemoryChannel


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="DEX order execution workers")
    p.add_argument("--concurrency", type=int, default=None, help="Worker count (default from env/config)")
    p.add_argument("--demo", action="store_true", help="Submit one SOL->USDC market order, stream it, and exit")
    p.add_argument("--amount", type=float, default=10.0, help="amountIn for --demo")
    p.add_argument(
        "--no-recover",
        action="store_true",
        help="Do not re-queue jobs whose claim lock expired (crashed workers).",
    )
    return p


async def _run_demo(rt: EngineRuntime, amount: float) -> int:
    channel = MemoryChannel()
    order_id = await rt.service.submit(
        {"tokenIn": "SOL", "tokenOut": "USDC", "amountIn": amount}, channel=channel
    )
    print(json.dumps({"orderId": order_id}))
    cfg = rt.config
    wait_s = (cfg.worker.subscriber_grace_s + 6 * cfg.worker.stage_timeout_s) * cfg.queue.attempts
    final = None
    while final is None:
        try:
            event = await channel.next_event(timeout=wait_s)
        except asyncio.TimeoutError:
            print("[WARN] timed out waiting for order events")
            return 1
        print(json.dumps(event))
        status = StatusEvent.model_validate(event)
        if not status.is_terminal:
            continue
        if status.status == OrderStatus.confirmed.value:
            final = "completed"
        elif status.attempt >= cfg.queue.attempts:
            final = "failed"
    return 0 if final == "completed" else 2


async def _run_forever() -> None:
    stop_event = asyncio.Event()

    def _request_stop(*_args: object) -> None:
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:
            signal.signal(sig, lambda *_a: _request_stop())
    await stop_event.wait()


async def _amain() -> int:
    load_dotenv()
    args = _build_arg_parser().parse_args()
    cfg: AppConfig = load_config()
    configure_logging(cfg.log_level)

    worker_cfg = cfg.worker
    if args.concurrency is not None:
        worker_cfg = replace(worker_cfg, concurrency=int(args.concurrency))
    if args.no_recover:
        worker_cfg = replace(worker_cfg, recover_stalled=False)
    cfg = replace(cfg, worker=worker_cfg)

    async with open_runtime(cfg) as rt:
        if args.demo:
            return await _run_demo(rt, args.amount)
        await _run_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_amain()))
