"""FastAPI transport for the order engine.

HTTP submission plus a WebSocket status stream. The app owns one
`EngineRuntime` for its lifetime (workers run in-process).

WebSocket `/api/orders/execute` protocol:
- `?orderId=<id>` attaches immediately and replies `{"subscribed": id}`.
- `{"order": {...}}` submits with this socket pre-attached, replies `{"orderId": id}`.
- `{"subscribeOrderId": id}` attaches to an existing order.
- anything else replies `{"error": "invalid payload"}`.
Status events arrive as `{"orderId", "status", "attempt", ...}` objects.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Set

from dotenv import load_dotenv
from fastapi import Body, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import configure_logging, load_config
from ..data.mongo import utc_now
from ..execution.errors import OrderValidationError
from ..orchestrator.runtime import EngineRuntime, open_runtime

WS_PATH = "/api/orders/execute"

RuntimeFactory = Callable[[], AsyncContextManager[EngineRuntime]]


def _parse_origins(value: str) -> List[str]:
    v = (value or "").strip()
    if not v or v == "*":
        return ["*"]
    return [x.strip() for x in v.split(",") if x.strip()]


def create_app(runtime_factory: Optional[RuntimeFactory] = None) -> FastAPI:
    # Uvicorn does not automatically load `.env` unless you pass `--env-file`.
    load_dotenv(override=False)

    factory: RuntimeFactory = runtime_factory or (lambda: open_runtime(load_config()))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with factory() as runtime:
            app.state.runtime = runtime
            yield

    app = FastAPI(title="DEX Order Execution Engine", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_parse_origins(os.getenv("UI_ALLOWED_ORIGINS", "*")),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def runtime_of() -> EngineRuntime:
        return app.state.runtime

    @app.get("/")
    async def root() -> Dict[str, Any]:
        return {
            "name": "DEX Order Execution Engine",
            "version": __version__,
            "status": "running",
            "endpoints": {
                "POST /api/orders/execute": "Submit a new market order",
                "GET /api/orders/execute (WebSocket)": "Subscribe to order status events",
                "GET /health": "Health check",
            },
        }

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        rt = runtime_of()
        body: Dict[str, Any] = {"status": "healthy", "timestamp": utc_now().isoformat()}
        try:
            body["queue"] = await rt.queue.counts()
        except Exception as e:  # pylint: disable=broad-exception-caught
            body["status"] = "degraded"
            body["error"] = str(e)
        body["workers"] = {"running": rt.pool.running, "busy": rt.pool.busy}
        return body

    @app.post("/api/orders/execute", status_code=202)
    async def execute(body: Optional[Dict[str, Any]] = Body(default=None)) -> Any:
        try:
            order_id = await runtime_of().service.submit(body)  # type: ignore[arg-type]
        except OrderValidationError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})
        return {"orderId": order_id, "ws": WS_PATH}

    @app.websocket(WS_PATH)
    async def order_updates(websocket: WebSocket, orderId: Optional[str] = None) -> None:  # noqa: N803
        await websocket.accept()
        rt = runtime_of()
        subscribed: Set[str] = set()

        async def subscribe(order_id: str) -> None:
            if order_id in subscribed:
                return
            await rt.registry.attach(websocket, order_id)
            subscribed.add(order_id)
            await websocket.send_json({"subscribed": order_id})

        try:
            if orderId:
                await subscribe(orderId)
            while True:
                try:
                    data = await websocket.receive_json()
                except ValueError:
                    await websocket.send_json({"error": "invalid payload"})
                    continue
                if isinstance(data, dict) and isinstance(data.get("order"), dict):
                    try:
                        order_id = await rt.service.submit(data["order"], channel=websocket)
                    except OrderValidationError as e:
                        await websocket.send_json({"error": str(e)})
                        continue
                    subscribed.add(order_id)
                    await websocket.send_json({"orderId": order_id})
                elif isinstance(data, dict) and isinstance(data.get("subscribeOrderId"), str):
                    await subscribe(data["subscribeOrderId"])
                else:
                    await websocket.send_json({"error": "invalid payload"})
        except WebSocketDisconnect:
            return
        finally:
            await rt.registry.detach(websocket)

    return app


def build_default_app() -> FastAPI:
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    return create_app()


__all__ = ["WS_PATH", "create_app", "build_default_app"]
