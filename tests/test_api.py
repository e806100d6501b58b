from contextlib import asynccontextmanager

import fakeredis
from fastapi.testclient import TestClient

from order_engine.config import AppConfig, QueueConfig, RouterConfig, WorkerConfig
from order_engine.execution.router import MockDexRouter
from order_engine.orchestrator.runtime import open_runtime
from order_engine.ui.api import WS_PATH, create_app


def _config() -> AppConfig:
    return AppConfig(
        queue=QueueConfig(name="api-test", backoff_base_s=0.01),
        worker=WorkerConfig(
            concurrency=2,
            poll_interval_s=0.01,
            subscriber_grace_s=0.5,
            stage_delay_s=0.0,
            stage_timeout_s=2.0,
        ),
        router=RouterConfig(),
        mongodb_uri=None,
        mongodb_db="order_engine_test",
        log_level="INFO",
    )


@asynccontextmanager
async def _test_runtime():
    redis = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    router = MockDexRouter(
        failure_rate=0.0,
        quote_latency_s=(0.0, 0.0),
        execute_latency_s=(0.0, 0.0),
        seed=3,
    )
    async with open_runtime(_config(), redis=redis, router=router) as rt:
        yield rt


def _client() -> TestClient:
    return TestClient(create_app(runtime_factory=_test_runtime))


def test_root_and_health():
    with _client() as client:
        r = client.get("/")
        assert r.status_code == 200
        assert r.json()["status"] == "running"

        h = client.get("/health")
        assert h.status_code == 200
        body = h.json()
        assert body["status"] == "healthy"
        assert set(body["queue"]) == {"waiting", "active", "delayed", "completed", "failed"}
        assert body["workers"]["running"] is True


def test_post_rejects_invalid_order():
    with _client() as client:
        r = client.post("/api/orders/execute", json={"tokenIn": "SOL", "amountIn": 1})
        assert r.status_code == 400
        assert "tokenOut" in r.json()["error"]

        r = client.post("/api/orders/execute", json={"tokenIn": "SOL", "tokenOut": "USDC", "amountIn": -2})
        assert r.status_code == 400


def test_post_accepts_order():
    with _client() as client:
        r = client.post("/api/orders/execute", json={"tokenIn": "SOL", "tokenOut": "USDC", "amountIn": 1})
        assert r.status_code == 202
        body = r.json()
        assert body["orderId"]
        assert body["ws"] == WS_PATH


def test_websocket_submit_streams_until_confirmed():
    with _client() as client:
        with client.websocket_connect(WS_PATH) as ws:
            ws.send_json({"order": {"tokenIn": "SOL", "tokenOut": "USDC", "amountIn": 5}})
            messages = []
            while True:
                msg = ws.receive_json()
                messages.append(msg)
                if msg.get("status") in ("confirmed", "failed"):
                    break

    acks = [m for m in messages if "orderId" in m and "status" not in m]
    events = [m for m in messages if "status" in m]
    assert len(acks) == 1
    assert [e["status"] for e in events] == ["pending", "routing", "building", "submitted", "confirmed"]
    assert {e["orderId"] for e in events} == {acks[0]["orderId"]}
    assert events[2]["chosenDex"] in ("raydium", "meteora")
    assert events[-1]["txHash"].startswith("MOCKTX_")


def test_websocket_subscribe_and_invalid_payload():
    with _client() as client:
        with client.websocket_connect(f"{WS_PATH}?orderId=abc") as ws:
            assert ws.receive_json() == {"subscribed": "abc"}
            ws.send_json({"hello": "world"})
            assert ws.receive_json() == {"error": "invalid payload"}
            ws.send_json({"order": {"tokenIn": "SOL"}})
            assert "missing required fields" in ws.receive_json()["error"]


def test_non_finite_amount_is_rejected_on_both_surfaces():
    with _client() as client:
        r = client.post("/api/orders/execute", json={"tokenIn": "SOL", "tokenOut": "USDC", "amountIn": "nan"})
        assert r.status_code == 400
        assert "amountIn" in r.json()["error"]

        with client.websocket_connect(WS_PATH) as ws:
            ws.send_json({"order": {"tokenIn": "SOL", "tokenOut": "USDC", "amountIn": "nan"}})
            assert "amountIn" in ws.receive_json()["error"]
            # The socket survives and still accepts a valid order.
            ws.send_json({"order": {"tokenIn": "SOL", "tokenOut": "USDC", "amountIn": 1}})
            assert "orderId" in ws.receive_json()
