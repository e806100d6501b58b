import asyncio
from dataclasses import replace

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from order_engine.execution.schemas import Order
from order_engine.jobs.queue import JobQueue, RetryPolicy


def run_async(coro):
    return asyncio.run(coro)


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


def _order(order_id: str = "o1") -> Order:
    return Order(id=order_id, token_in="SOL", token_out="USDC", amount_in=10)


def test_retry_policy_backoff_doubles_from_base():
    p = RetryPolicy(attempts=3, base_delay_s=0.5)
    assert [p.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]


def test_enqueue_is_idempotent_while_job_in_flight():
    async def _test():
        q = JobQueue(_redis(), name="t")
        assert await q.enqueue(_order()) is True
        assert await q.enqueue(_order()) is False
        assert (await q.counts())["waiting"] == 1

        job = await q.claim()
        assert job is not None and job.id == "o1"
        # Still active: a resubmission is ignored.
        assert await q.enqueue(_order()) is False

        await q.complete(job, {"txHash": "x"})
        state = await q.get_state("o1")
        assert state["status"] == "completed"
        # Finished jobs release their key.
        assert await q.enqueue(_order()) is True

    run_async(_test())


def test_concurrent_duplicate_submissions_admit_exactly_one():
    async def _test():
        q = JobQueue(_redis(), name="t")
        results = await asyncio.gather(*(q.enqueue(_order("dup")) for _ in range(20)))
        assert results.count(True) == 1
        assert (await q.counts())["waiting"] == 1

    run_async(_test())


def test_claim_is_fifo_and_exclusive():
    async def _test():
        q = JobQueue(_redis(), name="t")
        for i in range(3):
            await q.enqueue(_order(f"o{i}"))
        claimed = await asyncio.gather(q.claim(), q.claim(), q.claim(), q.claim())
        ids = [j.id for j in claimed if j is not None]
        assert sorted(ids) == ["o0", "o1", "o2"]
        assert claimed.count(None) == 1
        counts = await q.counts()
        assert counts["active"] == 3 and counts["waiting"] == 0

    run_async(_test())


def test_claim_order_matches_arrival():
    async def _test():
        q = JobQueue(_redis(), name="t")
        for i in range(3):
            await q.enqueue(_order(f"o{i}"))
        seen = []
        while True:
            job = await q.claim()
            if job is None:
                break
            seen.append(job.id)
        assert seen == ["o0", "o1", "o2"]

    run_async(_test())


def test_failing_job_is_attempted_exactly_three_times_with_growing_backoff():
    async def _test():
        clock = FakeClock()
        q = JobQueue(_redis(), name="t", policy=RetryPolicy(attempts=3, base_delay_s=0.5), clock=clock)
        await q.enqueue(_order())

        delays = []
        attempts = 0
        while True:
            job = await q.claim()
            if job is None:
                # Jump to the scheduled retry time.
                due = await q.redis.zrange("t:delayed", 0, -1, withscores=True)
                if not due:
                    break
                delays.append(due[0][1] - clock.now)
                clock.now = due[0][1]
                continue
            attempts += 1
            assert job.attempt == attempts
            assert job.order.attempts == attempts - 1
            retrying = await q.fail(job, f"boom {attempts}")
            assert retrying is (attempts < 3)

        assert attempts == 3
        assert delays == [0.5, 1.0]
        assert delays[0] < delays[1]
        state = await q.get_state("o1")
        assert state["status"] == "failed"
        assert int(state["attempts_made"]) == 3
        assert state["last_error"] == "boom 3"
        assert (await q.counts())["failed"] == 1
        # Exhausted jobs are not retried again.
        clock.now += 100
        assert await q.claim() is None

    run_async(_test())


def test_delayed_job_is_not_claimable_before_backoff_elapses():
    async def _test():
        clock = FakeClock()
        q = JobQueue(_redis(), name="t", clock=clock)
        await q.enqueue(_order())
        job = await q.claim()
        await q.fail(job, "nope")
        assert await q.claim() is None
        clock.now += 0.49
        assert await q.claim() is None
        clock.now += 0.02
        retry = await q.claim()
        assert retry is not None and retry.attempt == 2

    run_async(_test())


def test_recover_stalled_only_requeues_jobs_with_expired_locks():
    async def _test():
        redis = _redis()
        q = JobQueue(redis, name="t")
        await q.enqueue(_order("a"))
        await q.enqueue(_order("b"))
        held = await q.claim()
        assert held.id == "a"
        assert await redis.get("t:lock:a") == held.token
        assert await redis.pttl("t:lock:a") > 0

        # A second process over the same Redis leaves a live claim alone.
        other = JobQueue(redis, name="t")
        assert await other.recover_stalled() == []
        assert (await other.counts())["active"] == 1

        # The holder died: its lock expires and the job goes back to the front.
        await redis.delete("t:lock:a")
        assert await other.recover_stalled() == ["a"]
        assert (await other.get_state("a"))["status"] == "waiting"
        assert (await other.claim()).id == "a"

    run_async(_test())


def test_lock_refresh_is_owner_only_and_cleared_on_finish():
    async def _test():
        redis = _redis()
        q = JobQueue(redis, name="t", lock_ttl_s=5.0)
        await q.enqueue(_order())
        job = await q.claim()
        assert await q.refresh_lock(job) is True
        assert await q.refresh_lock(replace(job, token="someone-else")) is False
        await q.complete(job)
        assert await redis.exists("t:lock:o1") == 0
        assert await q.refresh_lock(job) is False

    run_async(_test())


class DroppingRedis:
    """Delegates to a real client but loses the connection on the first script call."""

    def __init__(self, inner):
        self._inner = inner
        self.drop_next = True

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def eval(self, *args):
        if self.drop_next:
            self.drop_next = False
            raise RedisConnectionError("connection reset by peer")
        return await self._inner.eval(*args)


def test_failed_admission_leaves_no_marker_behind():
    async def _test():
        redis = _redis()
        q = JobQueue(DroppingRedis(redis), name="t")
        with pytest.raises(RedisConnectionError):
            await q.enqueue(_order())
        assert await redis.exists("t:admit:o1") == 0
        assert await q.enqueue(_order()) is True
        counts = await q.counts()
        assert counts["waiting"] == 1

    run_async(_test())


def test_malformed_payload_is_failed_at_the_boundary():
    async def _test():
        q = JobQueue(_redis(), name="t")
        await q.enqueue(_order("bad"))
        await q.redis.hset("t:job:bad", "data", '{"id": "bad"}')
        await q.enqueue(_order("good"))
        job = await q.claim()
        assert job is not None and job.id == "good"
        state = await q.get_state("bad")
        assert state["status"] == "failed"
        assert "malformed" in state["last_error"]

    run_async(_test())


def test_wait_finished_reports_terminal_status():
    async def _test():
        q = JobQueue(_redis(), name="t")
        await q.enqueue(_order())
        assert await q.wait_finished("o1", timeout=0.05, poll_s=0.01) is None
        job = await q.claim()
        await q.complete(job)
        assert await q.wait_finished("o1", timeout=0.5, poll_s=0.01) == "completed"

    run_async(_test())
